"""Shared fixtures: fake command executor, fake release host, sample jobs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Mapping, Optional

import pytest

from crateci.environment import EnvironmentResolver
from crateci.model import Job, Trigger
from crateci.release import ReleaseGate
from crateci.runner import CommandResult, PipelineContext, StepRunner


class FakeExecutor:
    """Records every command; fails (or times out) on commands containing a marker."""

    def __init__(self, fail_on: Optional[str] = None, timeout_on: Optional[str] = None, exit_code: int = 101):
        self.fail_on = fail_on
        self.timeout_on = timeout_on
        self.exit_code = exit_code
        self.calls: List[str] = []
        self.envs: List[Mapping[str, str]] = []

    def __call__(self, cmd, *, cwd, env, timeout):
        self.calls.append(cmd)
        self.envs.append(dict(env))
        if self.timeout_on and self.timeout_on in cmd:
            return CommandResult(returncode=None, stdout="partial", timed_out=True)
        if self.fail_on and self.fail_on in cmd:
            return CommandResult(returncode=self.exit_code, stderr="error[E0425]: cannot find value")
        return CommandResult(returncode=0, stdout="ok")


class FakeHost:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.uploads: List[dict] = []

    def upload(self, *, target, tag, artifact, token, description):
        if self.error is not None:
            raise self.error
        self.uploads.append(
            {"target": target, "tag": tag, "artifact": Path(artifact).name, "token": token, "description": description}
        )
        return f"https://example.invalid/{tag}/{Path(artifact).name}"


def make_job(
    target: str = "x86_64-pc-windows-msvc",
    features: str = "",
    cpu: str = "",
    channel: str = "stable",
    name: Optional[str] = None,
) -> Job:
    return Job(
        target=target,
        features=features,
        cpu=cpu,
        channel=channel,
        name=name or f"{target}-{channel}",
        is_release_channel=(channel == "stable"),
    )


@pytest.fixture
def job() -> Job:
    return make_job(features="+popcnt", name="windows-msvc-64bit-popcount")


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_ctx(tmp_path):
    def _make(executor, trigger: Trigger = Trigger(branch="master"), **kwargs) -> PipelineContext:
        work = tmp_path / "work"
        work.mkdir(exist_ok=True)
        kwargs.setdefault("work_dir", work)
        kwargs.setdefault("base_env", {"PATH": "/usr/bin"})
        return PipelineContext(
            trigger=trigger,
            runner=StepRunner(executor),
            resolver=EnvironmentResolver({}),
            gate=ReleaseGate(),
            **kwargs,
        )

    return _make


@pytest.fixture(autouse=True)
def _restore_root_logging():
    # the CLI and setup_logging replace root handlers
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
