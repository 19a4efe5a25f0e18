# cli.py
from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import click

from crateci.cache import CacheManager, CacheStore
from crateci.config import PipelineConfig, discover_pipeline, load_pipeline
from crateci.environment import EnvironmentResolver
from crateci.errors import ConfigurationError, CrateCIError
from crateci.git_facts.git import head_sha
from crateci.log import setup_logging
from crateci.matrix import expand, select
from crateci.model import Job, Trigger
from crateci.publish import ArtifactPublisher, Credentials, GitHubReleases
from crateci.release import ChannelPolicy, ReleaseGate
from crateci.runner import PipelineContext, StepRunner, pipeline_exit_code, run_matrix
from crateci.trigger import BranchFilter, detect_trigger
from crateci.ui.console import Console, get_console, set_console


EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def _load(pipeline: Optional[str]) -> tuple[Path, PipelineConfig, List[Job], ReleaseGate]:
    """Load + validate everything that must be right before any job runs."""
    path = discover_pipeline(pipeline)
    cfg = load_pipeline(path).apply_env(os.environ)
    jobs = expand(cfg.axis_set, cfg.defaults, release_channel=cfg.release_channel)
    gate = ReleaseGate(ChannelPolicy(release_channel=cfg.release_channel))
    for warning in gate.validate(jobs):
        get_console().print_warning(warning)
    return path, cfg, jobs, gate


def _fail_config(ctx: click.Context, e: ConfigurationError) -> None:
    get_console().print_error(
        "Invalid pipeline configuration",
        str(e),
        details=e.details or None,
    )
    ctx.exit(EXIT_CONFIG_ERROR)


def _build_publisher(cfg: PipelineConfig, work_dir: Path) -> Optional[ArtifactPublisher]:
    if not cfg.deploy.repository:
        return None
    return ArtifactPublisher(
        crate=cfg.crate,
        host=GitHubReleases(cfg.deploy.repository),
        staging_root=work_dir / ".crateci" / "deploy",
        artifact_glob=cfg.deploy.artifact,
        description=cfg.deploy.description,
    )


trigger_options = [
    click.option("--tag", default=None, help="Treat this run as a push of TAG (deploy run)"),
    click.option("--branch", default=None, help="Branch name for an ordinary commit run"),
    click.option("--git-trigger/--no-git-trigger", default=False, help="Fall back to git to detect a tag on HEAD"),
]


def with_trigger_options(fn):
    for opt in reversed(trigger_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and full step output")
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level")
@click.option("--json-logs", is_flag=True, default=False, help="Emit log records as JSON lines")
@click.pass_context
def cli(ctx, debug, log_level, json_logs):
    """crateci: matrix build/test/deploy runner for cargo crates."""
    set_console(Console(debug=debug))
    setup_logging("DEBUG" if debug else log_level, json_output=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to crateci.yml if present)")
@with_trigger_options
@click.pass_context
def plan(ctx, pipeline, tag, branch, git_trigger):
    """Show the expanded jobs and which of them would publish."""
    try:
        _path, _cfg, jobs, gate = _load(pipeline)
        trigger = detect_trigger(os.environ, tag=tag, branch=branch, use_git=git_trigger)
    except ConfigurationError as e:
        _fail_config(ctx, e)
        return
    get_console().print_plan(jobs, [gate.decide(j, trigger) for j in jobs])


@cli.command()
@click.argument("job_name")
@click.option("--pipeline", default=None, help="Pipeline file (defaults to crateci.yml if present)")
@click.pass_context
def env(ctx, job_name, pipeline):
    """Print the environment a job's toolchain commands run with."""
    try:
        _path, cfg, jobs, _gate = _load(pipeline)
        job = select(jobs, [job_name])[0]
    except ConfigurationError as e:
        _fail_config(ctx, e)
        return
    spec = EnvironmentResolver(cfg.path_augment, cargo_home_root=cfg.cargo_home_root).resolve(job)
    console = get_console()
    console.print_info(f"RUSTUP_TOOLCHAIN={spec.channel}")
    console.print_info(f"RUSTFLAGS={spec.rustflags}")
    console.print_info(f"CARGO_TARGET_DIR={spec.target_dir}")
    if spec.cargo_home:
        console.print_info(f"CARGO_HOME={spec.cargo_home}")
    for entry in spec.path_prepend:
        console.print_info(f"PATH+={entry}")
    for k, v in sorted(spec.variables.items()):
        console.print_info(f"{k}={v}")


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to crateci.yml if present)")
@click.option("--job", "job_names", multiple=True, help="Run only these jobs (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--no-cache", is_flag=True, default=False, help="Neither restore nor save caches")
@click.option("--timeout", "step_timeout", default=None, type=float, help="Per-step timeout in seconds")
@with_trigger_options
@click.pass_context
def run(ctx, pipeline, job_names, workers, cache_dir, no_cache, step_timeout, tag, branch, git_trigger):
    """Run the build matrix."""
    console = get_console()

    try:
        path, cfg, jobs, gate = _load(pipeline)
        jobs = select(jobs, job_names)
        trigger: Trigger = detect_trigger(os.environ, tag=tag, branch=branch, use_git=git_trigger)
        branch_filter = BranchFilter(cfg.branches_only)
    except ConfigurationError as e:
        _fail_config(ctx, e)
        return

    if not branch_filter.allows(trigger.ref):
        console.print_info(f"Ref {trigger.ref!r} is not in branches.only; nothing to do.")
        ctx.exit(0)

    work_dir = Path(cfg.work_dir).resolve()
    cache = None
    if not no_cache:
        cache = CacheManager(CacheStore(cfg.cache_root(cache_dir)))

    token = os.environ.get(cfg.deploy.token_env, "")
    pctx = PipelineContext(
        trigger=trigger,
        runner=StepRunner(timeout=step_timeout or cfg.step_timeout),
        resolver=EnvironmentResolver(cfg.path_augment, cargo_home_root=cfg.cargo_home_root),
        gate=gate,
        cache=cache,
        cache_paths=cfg.cache_paths,
        cache_version=cfg.cache_version,
        publisher=_build_publisher(cfg, work_dir) if trigger.is_tag else None,
        credentials=Credentials(token),
        work_dir=work_dir,
    )

    try:
        commit = head_sha(cwd=str(work_dir))[:12]
    except (subprocess.CalledProcessError, FileNotFoundError):
        commit = None
    console.print_debug(f"work_dir={work_dir} cache={'off' if cache is None else cache.store.root}")

    try:
        console.print_run_started(
            crate=cfg.crate,
            pipeline=path.name,
            trigger=trigger,
            job_count=len(jobs),
            commit=commit,
        )
        reports = run_matrix(jobs, pctx, max_workers=workers or cfg.workers)
        console.print_results(reports)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except CrateCIError as e:
        console.print_exception(e)
        sys.exit(1)

    ctx.exit(pipeline_exit_code(reports))


@cli.command("prune-cache")
@click.option("--pipeline", default=None, help="Pipeline file whose cache store to prune")
@click.option("--cache-dir", default=None, help="Cache directory (defaults to the pipeline's cache_dir under work_dir)")
@click.option("--keep", default=10, show_default=True, type=int, help="Entries to keep")
@click.pass_context
def prune_cache(ctx, pipeline, cache_dir, keep):
    """Drop all but the newest cache entries."""
    if cache_dir:
        root = Path(cache_dir)
    else:
        # same store `run` uses, including CRATECI_WORK_DIR / CRATECI_CACHE_DIR
        try:
            cfg = load_pipeline(discover_pipeline(pipeline)).apply_env(os.environ)
        except ConfigurationError as e:
            _fail_config(ctx, e)
            return
        root = cfg.cache_root()
    dropped = CacheManager(CacheStore(root)).prune(keep=keep)
    get_console().print_info(f"Removed {len(dropped)} cache entr{'y' if len(dropped) == 1 else 'ies'} from {root}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
