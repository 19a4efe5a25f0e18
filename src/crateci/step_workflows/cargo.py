# step_workflows/cargo.py
from __future__ import annotations

import shlex
from typing import List

from ..environment import codegen_flags
from ..model import Job, Step, Trigger


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, kind: str = "build") -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, kind=kind)


# ---------------------------------------------------------------------
# Toolchain phases
# ---------------------------------------------------------------------

def install_steps(job: Job) -> List[Step]:
    """Install the job's channel and target, then print toolchain versions."""
    channel = shlex.quote(job.channel)
    target = shlex.quote(job.target)
    return [
        sh("install toolchain", f"rustup toolchain install {channel} --profile minimal", kind="install"),
        sh("add target", f"rustup target add {target} --toolchain {channel}", kind="install"),
        sh("rustc version", "rustc -Vv", kind="install"),
        sh("cargo version", "cargo -V", kind="install"),
    ]


def test_phase_steps(job: Job) -> List[Step]:
    """Debug + release builds, then debug + release tests."""
    target = shlex.quote(job.target)
    return [
        sh("build", f"cargo build --target {target}", kind="build"),
        sh("build (release)", f"cargo build --target {target} --release", kind="build"),
        sh("test", f"cargo test --target {target}", kind="test"),
        sh("test (release)", f"cargo test --target {target} --release", kind="test"),
    ]


def deploy_steps(job: Job) -> List[Step]:
    """
    Release build for packaging: LTO plus the job's codegen flags
    passed straight to rustc.
    """
    target = shlex.quote(job.target)
    rustc_args = ["-C", "lto"] + codegen_flags(job.features, job.cpu)
    tail = " ".join(shlex.quote(a) for a in rustc_args)
    return [
        sh("build (release, lto)", f"cargo rustc --target {target} --release -- {tail}", kind="release"),
    ]


def plan(job: Job, trigger: Trigger) -> List[Step]:
    """
    Full ordered step list for one job.

    Tag pushes build the release artifact instead of running the test phase.
    """
    steps = install_steps(job)
    if trigger.is_tag:
        steps += deploy_steps(job)
    else:
        steps += test_phase_steps(job)
    return steps
