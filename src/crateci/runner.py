# runner.py
from __future__ import annotations

import logging
import os
import subprocess
import tarfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .cache import DEFAULT_CACHE_PATHS, CacheManager, cache_key
from .environment import EnvironmentResolver
from .errors import PublishError
from .model import EnvironmentSpec, Job, JobReport, RunOutcome, Step, StepResult, Trigger
from .publish import ArtifactPublisher, Credentials
from .release import ReleaseGate
from .step_workflows.cargo import plan
from .ui.console import get_console

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Command execution
# ----------------------------------------------------------------------

@dataclass
class CommandResult:
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


class CommandExecutor(Protocol):
    """Runs one shell command. Swap in a fake for tests."""

    def __call__(
        self,
        cmd: str,
        *,
        cwd: str,
        env: Mapping[str, str],
        timeout: Optional[float],
    ) -> CommandResult:
        ...


def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def shell_executor(
    cmd: str,
    *,
    cwd: str,
    env: Mapping[str, str],
    timeout: Optional[float],
) -> CommandResult:
    try:
        proc = subprocess.run(
            cmd,
            shell=True,
            cwd=cwd,
            env=dict(env),
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        return CommandResult(returncode=None, stdout=_text(e.stdout), stderr=_text(e.stderr), timed_out=True)
    return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


# ----------------------------------------------------------------------
# StepRunner
# ----------------------------------------------------------------------

class StepRunner:
    """
    Runs a job's steps strictly in order and stops at the first failure.

    Whether to skip the test phase is the caller's decision (derived from
    the trigger); the runner only filters `kind == "test"` steps out.
    """

    def __init__(
        self,
        executor: Optional[CommandExecutor] = None,
        *,
        timeout: Optional[float] = None,
    ):
        self.executor = executor or shell_executor
        self.timeout = timeout

    def run(
        self,
        steps: Sequence[Step],
        env: EnvironmentSpec,
        *,
        skip_tests: bool = False,
        cwd: str | Path = ".",
        base_env: Optional[Mapping[str, str]] = None,
        cancel: Optional[threading.Event] = None,
        on_step: Optional[Callable[[Step], None]] = None,
    ) -> RunOutcome:
        process_env = env.as_process_env(base_env)
        results: List[StepResult] = []

        for step in steps:
            if skip_tests and step.kind == "test":
                continue
            if cancel is not None and cancel.is_set():
                return RunOutcome(results=tuple(results), cancelled=True)

            if on_step is not None:
                on_step(step)

            started = time.monotonic()
            res = self.executor(step.run, cwd=str(cwd), env=process_env, timeout=self.timeout)
            result = StepResult(
                step=step.name,
                exit_code=res.returncode,
                stdout=res.stdout,
                stderr=res.stderr,
                duration=time.monotonic() - started,
                timed_out=res.timed_out,
            )
            results.append(result)

            if not result.ok:
                logger.debug("step %r failed (exit=%s, timed_out=%s)", step.name, result.exit_code, result.timed_out)
                return RunOutcome(results=tuple(results), failed_step=step.name)

        return RunOutcome(results=tuple(results))


# ----------------------------------------------------------------------
# Job lifecycle
# ----------------------------------------------------------------------

@dataclass
class PipelineContext:
    """Collaborators shared by every job of one run."""
    trigger: Trigger
    runner: StepRunner
    resolver: EnvironmentResolver
    gate: ReleaseGate
    cache: Optional[CacheManager] = None
    cache_paths: List[str] = field(default_factory=lambda: list(DEFAULT_CACHE_PATHS))
    cache_version: str = "v1"
    publisher: Optional[ArtifactPublisher] = None
    credentials: Credentials = field(default_factory=lambda: Credentials(""))
    work_dir: Path = Path(".")
    cancel: threading.Event = field(default_factory=threading.Event)
    base_env: Optional[Mapping[str, str]] = None


def _cache_paths_for(ctx: PipelineContext, job: Job, env: EnvironmentSpec) -> List[str]:
    paths = []
    for p in ctx.cache_paths:
        if "{cargo_home}" in p and not env.cargo_home:
            logger.debug("[%s] no per-job CARGO_HOME; skipping cache path %s", job.name, p)
            continue
        paths.append(p.format(target_dir=env.target_dir, cargo_home=env.cargo_home, slug=job.slug))
    return paths


def _restore_cache(ctx: PipelineContext, job: Job) -> str:
    if ctx.cache is None:
        return "disabled"
    key = cache_key(job, version=ctx.cache_version)
    try:
        blob = ctx.cache.restore(key)
        if blob is None:
            return "miss"
        ctx.cache.unpack(blob, ctx.work_dir)
    except (tarfile.TarError, OSError, ValueError) as e:
        # a broken entry only costs a cold build
        logger.warning("[%s] cache restore failed: %s", job.name, e)
        return f"restore failed ({e})"
    return "hit"


def _save_cache(ctx: PipelineContext, job: Job, env: EnvironmentSpec) -> str:
    if ctx.cache is None:
        return "disabled"
    key = cache_key(job, version=ctx.cache_version)
    try:
        blob = ctx.cache.pack(_cache_paths_for(ctx, job, env), ctx.work_dir)
        if blob is None:
            return "nothing to save"
        ctx.cache.save(key, blob, job=job)
    except (tarfile.TarError, OSError) as e:
        logger.warning("[%s] cache save failed: %s", job.name, e)
        return f"save failed ({e})"
    return f"saved ({key.value[:12]}...)"


def run_job(job: Job, ctx: PipelineContext) -> JobReport:
    """
    restore cache -> install -> build/test (or release build) -> save cache
    -> release gate -> publish.

    Never raises for a step failure; the report carries it.
    """
    console = get_console()
    if ctx.cancel.is_set():
        return JobReport(job=job, status="cancelled")

    console.print_job_start(job.name)
    restored = _restore_cache(ctx, job)
    console.print_cache(job.name, restored)

    env = ctx.resolver.resolve(job)
    steps = plan(job, ctx.trigger)
    outcome = ctx.runner.run(
        steps,
        env,
        skip_tests=ctx.trigger.skip_tests,
        cwd=ctx.work_dir,
        base_env=ctx.base_env,
        cancel=ctx.cancel,
        on_step=lambda step: console.print_step(job.name, step.name),
    )

    report = JobReport(job=job, status="ok", outcome=outcome, cache=restored)

    if outcome.cancelled:
        report.status = "cancelled"
        return report

    if not outcome.ok:
        report.status = "failed"
        err = outcome.failure(job.name, {s.name: s.run for s in steps})
        failed = outcome.result_for(outcome.failed_step)
        report.error = str(err)
        console.print_failure(
            job.name,
            str(err),
            exit_code=err.exit_code,
            output=failed.output if failed else None,
        )
        # no cache save after a failed run
        return report

    report.cache = _save_cache(ctx, job, env)
    console.print_cache(job.name, report.cache)

    report.release = ctx.gate.decide(job, ctx.trigger)
    if report.release.eligible:
        if ctx.publisher is None:
            report.publish_error = "release eligible but no publisher is configured"
        else:
            build_output = Path(ctx.work_dir) / env.target_dir
            try:
                report.publish = ctx.publisher.publish(job, build_output, ctx.credentials, tag=ctx.trigger.tag)
            except PublishError as e:
                report.publish_error = str(e)
                logger.error("%s", e)

    return report


# ----------------------------------------------------------------------
# Matrix orchestration
# ----------------------------------------------------------------------

def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def run_matrix(
    jobs: Sequence[Job],
    ctx: PipelineContext,
    *,
    max_workers: Optional[int] = None,
) -> List[JobReport]:
    """
    Run every job as an independent unit in a thread pool.

    A failing job never stops its siblings. Reports come back in job order.
    """
    if max_workers is None:
        max_workers = default_workers()

    reports: Dict[int, JobReport] = {}
    pool = ThreadPoolExecutor(max_workers=max_workers)
    try:
        futures = {pool.submit(run_job, job, ctx): idx for idx, job in enumerate(jobs)}
        for fut in as_completed(futures):
            idx = futures[fut]
            try:
                reports[idx] = fut.result()
            except Exception as e:
                # executor/OS errors: fail this job, keep the rest going
                logger.exception("[%s] job crashed", jobs[idx].name)
                reports[idx] = JobReport(job=jobs[idx], status="failed", error=f"{type(e).__name__}: {e}")
    except BaseException:
        # Ctrl-C: stop scheduling, let running steps finish their current command
        ctx.cancel.set()
        pool.shutdown(wait=True, cancel_futures=True)
        raise
    else:
        pool.shutdown(wait=True)

    return [reports.get(i) or JobReport(job=job, status="cancelled") for i, job in enumerate(jobs)]


def pipeline_exit_code(reports: Sequence[JobReport]) -> int:
    """0 only if every job's build/test phase passed. Publish failures don't count."""
    return 0 if all(r.build_ok for r in reports) else 1
