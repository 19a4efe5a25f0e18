# release.py
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Sequence

from .errors import ConfigurationError
from .model import Job, ReleaseDecision, Trigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelPolicy:
    """Which toolchain channel is the single source of published releases."""
    release_channel: str = "stable"


class ReleaseGate:
    """
    Decides which jobs publish on a tag push.

    Among jobs that test the same target on several channels, only the
    release-channel one is eligible, so each target is released at most once.
    """

    def __init__(self, policy: ChannelPolicy | None = None):
        self.policy = policy or ChannelPolicy()

    def decide(self, job: Job, trigger: Trigger) -> ReleaseDecision:
        if not trigger.is_tag:
            return ReleaseDecision(False, "not a tag push")
        if job.channel != self.policy.release_channel:
            return ReleaseDecision(
                False,
                f"channel {job.channel!r} is not the release channel {self.policy.release_channel!r}",
            )
        return ReleaseDecision(True, f"tag {trigger.tag} on {self.policy.release_channel}")

    def coverage_warnings(self, jobs: Sequence[Job]) -> List[str]:
        """One warning per target that has no release-channel job."""
        by_target: Dict[str, List[Job]] = OrderedDict()
        for j in jobs:
            by_target.setdefault(j.target, []).append(j)

        warnings: List[str] = []
        for target, group in by_target.items():
            if not any(j.channel == self.policy.release_channel for j in group):
                channels = sorted({j.channel for j in group})
                warnings.append(
                    f"target {target} has no {self.policy.release_channel!r} job "
                    f"(channels: {', '.join(channels)}); it will not produce a release artifact"
                )
        return warnings

    def check_artifact_collisions(self, jobs: Sequence[Job]) -> None:
        """
        Two release-channel jobs with the same display name would upload the
        same artifact name. That is ambiguous, so refuse it up front.
        """
        seen: Dict[str, Job] = {}
        for j in jobs:
            if j.channel != self.policy.release_channel:
                continue
            other = seen.get(j.name)
            if other is not None:
                raise ConfigurationError(
                    f"release jobs share the artifact name {j.name!r}",
                    details=[f"{other.identity}", f"{j.identity}"],
                )
            seen[j.name] = j

    def validate(self, jobs: Sequence[Job]) -> List[str]:
        self.check_artifact_collisions(jobs)
        warnings = self.coverage_warnings(jobs)
        for w in warnings:
            logger.warning(w)
        return warnings
