"""ReleaseGate tests."""

from __future__ import annotations

import pytest
from conftest import make_job

from crateci.errors import ConfigurationError
from crateci.model import Trigger
from crateci.release import ChannelPolicy, ReleaseGate

TAG = Trigger(is_tag=True, tag="v1.2.0")
COMMIT = Trigger(branch="master")


class TestDecide:
    @pytest.mark.parametrize(
        "trigger,channel,eligible",
        [
            (TAG, "stable", True),
            (TAG, "nightly", False),
            (COMMIT, "stable", False),
            (COMMIT, "nightly", False),
        ],
    )
    def test_truth_table(self, trigger, channel, eligible) -> None:
        assert ReleaseGate().decide(make_job(channel=channel), trigger).eligible is eligible

    def test_reason_names_the_channel(self) -> None:
        decision = ReleaseGate().decide(make_job(channel="nightly"), TAG)
        assert "nightly" in decision.reason
        assert "stable" in decision.reason

    def test_custom_release_channel(self) -> None:
        gate = ReleaseGate(ChannelPolicy(release_channel="beta"))
        assert gate.decide(make_job(channel="beta"), TAG).eligible
        assert not gate.decide(make_job(channel="stable"), TAG).eligible

    def test_one_release_per_target(self) -> None:
        jobs = [make_job(channel=c) for c in ("stable", "beta", "nightly")]
        eligible = [j for j in jobs if ReleaseGate().decide(j, TAG).eligible]
        assert [j.channel for j in eligible] == ["stable"]


class TestValidate:
    def test_target_without_release_channel_warns(self) -> None:
        jobs = [make_job(target="a"), make_job(target="b", channel="nightly")]
        warnings = ReleaseGate().coverage_warnings(jobs)
        assert len(warnings) == 1
        assert "target b" in warnings[0]

    def test_full_coverage_no_warnings(self) -> None:
        jobs = [make_job(target="a"), make_job(target="a", channel="nightly")]
        assert ReleaseGate().validate(jobs) == []

    def test_shared_artifact_name_rejected(self) -> None:
        jobs = [
            make_job(features="+popcnt", name="windows"),
            make_job(features="-popcnt", name="windows"),
        ]
        with pytest.raises(ConfigurationError, match="artifact name"):
            ReleaseGate().validate(jobs)

    def test_shared_name_off_release_channel_allowed(self) -> None:
        jobs = [make_job(name="windows"), make_job(channel="nightly", name="windows")]
        ReleaseGate().check_artifact_collisions(jobs)

    def test_flag_variants_each_release(self) -> None:
        jobs = [
            make_job(features="+popcnt", name="w-popcount"),
            make_job(features="-popcnt", name="w"),
        ]
        gate = ReleaseGate()
        gate.check_artifact_collisions(jobs)
        assert all(gate.decide(j, TAG).eligible for j in jobs)
