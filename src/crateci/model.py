# model.py
from __future__ import annotations

import hashlib
import itertools
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError, StepFailure, StepTimeout


AXES = ("target", "features", "cpu", "channel")

STEP_KINDS = ("install", "build", "test", "release")


# ---------------------------------------------------------------------
# Matrix declaration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class MatrixRow:
    """One declared matrix row: axis values plus an optional display name."""
    values: Mapping[str, str]
    name: Optional[str] = None


@dataclass(frozen=True)
class AxisSet:
    """Ordered matrix rows, as declared."""
    rows: Tuple[MatrixRow, ...] = ()

    @classmethod
    def of(cls, *rows: MatrixRow) -> AxisSet:
        return cls(rows=tuple(rows))

    @classmethod
    def product(cls, **axes: List[str]) -> AxisSet:
        """
        Cross product of axis value lists, first axis varying slowest.

        Example:
            AxisSet.product(target=["a", "b"], channel=["stable", "nightly"])
        """
        keys = list(axes)
        rows = [
            MatrixRow(values=dict(zip(keys, combo)))
            for combo in itertools.product(*(axes[k] for k in keys))
        ]
        return cls(rows=tuple(rows))

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class Job:
    """A fully resolved matrix combination."""
    target: str
    features: str
    cpu: str
    channel: str
    name: str
    is_release_channel: bool = False

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        return (self.target, self.features, self.cpu, self.channel)

    @property
    def slug(self) -> str:
        # readable prefix + short digest keeps "+popcnt" and "-popcnt" apart
        readable = re.sub(r"[^A-Za-z0-9_.-]+", "_", self.name).strip("_") or "job"
        digest = hashlib.sha256("\x1f".join(self.identity).encode("utf-8")).hexdigest()
        return f"{readable}-{digest[:8]}"


# ---------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Trigger:
    """Why the pipeline is running: an ordinary commit or a tag push."""
    is_tag: bool = False
    tag: Optional[str] = None
    branch: Optional[str] = None

    def __post_init__(self) -> None:
        if self.is_tag and not self.tag:
            raise ConfigurationError("tag-triggered run requires a tag name")

    @property
    def skip_tests(self) -> bool:
        # deploy runs never run the test phase
        return self.is_tag

    @property
    def ref(self) -> Optional[str]:
        return self.tag if self.is_tag else self.branch


# ---------------------------------------------------------------------
# Steps and results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single shell command inside a job's pipeline."""
    name: str
    run: str
    kind: str = "build"

    def __post_init__(self) -> None:
        if self.kind not in STEP_KINDS:
            raise ValueError(f"Unknown step kind {self.kind!r}; expected one of {STEP_KINDS}")


@dataclass(frozen=True)
class StepResult:
    step: str
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(frozen=True)
class RunOutcome:
    results: Tuple[StepResult, ...] = ()
    failed_step: Optional[str] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failed_step is None and not self.cancelled

    @property
    def executed(self) -> List[str]:
        return [r.step for r in self.results]

    def result_for(self, step_name: str) -> Optional[StepResult]:
        for r in self.results:
            if r.step == step_name:
                return r
        return None

    def failure(self, job: str, commands: Mapping[str, str] | None = None) -> Optional[StepFailure]:
        """StepFailure (or StepTimeout) describing the failed step, or None."""
        if self.failed_step is None:
            return None
        failed = self.result_for(self.failed_step)
        cmd = (commands or {}).get(self.failed_step, "")
        cls = StepTimeout if failed is not None and failed.timed_out else StepFailure
        return cls(
            job=job,
            step=self.failed_step,
            cmd=cmd,
            exit_code=failed.exit_code if failed else None,
            stdout=failed.stdout[-4000:] if failed else "",
            stderr=failed.stderr[-4000:] if failed else "",
        )

    def raise_for_failure(self, job: str, commands: Mapping[str, str] | None = None) -> None:
        err = self.failure(job, commands)
        if err is not None:
            raise err


# ---------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class EnvironmentSpec:
    """Process environment needed to run toolchain commands for one job."""
    channel: str
    rustflags: str = ""
    path_prepend: Tuple[str, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)
    target_dir: str = "target"
    cargo_home: str = ""

    def as_process_env(self, base: Mapping[str, str] | None = None, *, pathsep: str = os.pathsep) -> Dict[str, str]:
        """Merge these settings into a copy of `base` (defaults to os.environ)."""
        env = dict(os.environ if base is None else base)
        env.update(self.variables)
        env["RUSTUP_TOOLCHAIN"] = self.channel
        env["CARGO_TARGET_DIR"] = self.target_dir
        if self.cargo_home:
            env["CARGO_HOME"] = self.cargo_home
        if self.rustflags:
            env["RUSTFLAGS"] = self.rustflags
        else:
            env.pop("RUSTFLAGS", None)
        if self.path_prepend:
            current = env.get("PATH", "")
            parts = list(self.path_prepend) + ([current] if current else [])
            env["PATH"] = pathsep.join(parts)
        return env


# ---------------------------------------------------------------------
# Cache / release / publish
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheKey:
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ReleaseDecision:
    eligible: bool
    reason: str


@dataclass(frozen=True)
class PublishResult:
    job: str
    artifacts: Tuple[str, ...]
    urls: Tuple[str, ...] = ()


@dataclass
class JobReport:
    """
    Per-job summary produced by the orchestrator.

    status is one of:
      - "ok"
      - "failed"      (a step failed or timed out)
      - "cancelled"   (never started)
    """
    job: Job
    status: str
    outcome: Optional[RunOutcome] = None
    release: Optional[ReleaseDecision] = None
    publish: Optional[PublishResult] = None
    publish_error: Optional[str] = None
    cache: str = ""
    error: Optional[str] = None

    @property
    def build_ok(self) -> bool:
        return self.status == "ok"
