# config.py
from __future__ import annotations

import os
import re
import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .cache import DEFAULT_CACHE_DIR, DEFAULT_CACHE_PATHS
from .environment import DEFAULT_CARGO_HOME_ROOT
from .errors import ConfigurationError
from .matrix import normalise_defaults, rows_from_document
from .model import AxisSet
from .trigger import DEFAULT_BRANCHES_ONLY

DEFAULT_PIPELINE_FILES = ("crateci.yml", "crateci.yaml", "crateci_pipeline.py")


@dataclass
class DeployConfig:
    repository: str = ""
    artifact: str = "*.zip"
    description: str = ""
    token_env: str = "GITHUB_TOKEN"


@dataclass
class PipelineConfig:
    """Everything a pipeline document declares, plus runtime knobs."""
    crate: str
    axis_set: AxisSet
    defaults: Dict[str, str] = field(default_factory=dict)
    release_channel: str = "stable"
    path_augment: Optional[Dict[str, List[str]]] = None
    cache_paths: List[str] = field(default_factory=lambda: list(DEFAULT_CACHE_PATHS))
    cargo_home_root: str = DEFAULT_CARGO_HOME_ROOT
    cache_version: str = "v1"
    branches_only: List[str] = field(default_factory=lambda: list(DEFAULT_BRANCHES_ONLY))
    deploy: DeployConfig = field(default_factory=DeployConfig)

    # runtime knobs (env: CRATECI_*; CLI flags override)
    work_dir: str = "."
    cache_dir: str = DEFAULT_CACHE_DIR
    workers: Optional[int] = None
    step_timeout: Optional[float] = None

    def apply_env(self, environ: Mapping[str, str]) -> PipelineConfig:
        if environ.get("CRATECI_WORK_DIR"):
            self.work_dir = environ["CRATECI_WORK_DIR"]
        if environ.get("CRATECI_CACHE_DIR"):
            self.cache_dir = environ["CRATECI_CACHE_DIR"]
        if environ.get("CRATECI_WORKERS"):
            self.workers = _as_int(environ["CRATECI_WORKERS"], "CRATECI_WORKERS")
        if environ.get("CRATECI_STEP_TIMEOUT"):
            self.step_timeout = _as_float(environ["CRATECI_STEP_TIMEOUT"], "CRATECI_STEP_TIMEOUT")
        return self

    def cache_root(self, override: str | Path | None = None) -> Path:
        """Cache store location: an explicit override, else cache_dir under work_dir."""
        if override:
            return Path(override).expanduser().resolve()
        return (Path(self.work_dir).expanduser() / Path(self.cache_dir).expanduser()).resolve()


def _as_int(value: Any, what: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{what}: expected an integer, got {value!r}") from e
    if n < 1:
        raise ConfigurationError(f"{what}: must be >= 1, got {n}")
    return n


def _as_float(value: Any, what: str) -> float:
    try:
        x = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{what}: expected a number, got {value!r}") from e
    if x <= 0:
        raise ConfigurationError(f"{what}: must be > 0, got {x}")
    return x


def _str_list(value: Any, what: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"{what}: expected a list of strings, got {value!r}")
    return list(value)


# ----------------------------------------------------------------------
# Document -> PipelineConfig
# ----------------------------------------------------------------------

KNOWN_KEYS = {
    "crate", "defaults", "release_channel", "matrix", "path_augment",
    "cache", "cargo_home", "branches", "deploy", "workers", "step_timeout",
}


def pipeline_from_dict(doc: Mapping[str, Any]) -> PipelineConfig:
    """Validate a parsed pipeline document and build a PipelineConfig."""
    if not isinstance(doc, Mapping):
        raise ConfigurationError(f"pipeline document must be a mapping, got {type(doc).__name__}")

    unknown = sorted(set(doc) - KNOWN_KEYS)
    if unknown:
        raise ConfigurationError(f"unknown top-level key(s): {unknown}", details=[f"known: {sorted(KNOWN_KEYS)}"])

    crate = doc.get("crate")
    if not isinstance(crate, str) or not crate.strip():
        raise ConfigurationError("'crate' is required and must be a non-empty string")

    defaults = normalise_defaults(doc.get("defaults"))
    release_channel = doc.get("release_channel") or defaults.get("channel") or "stable"
    if not isinstance(release_channel, str):
        raise ConfigurationError(f"release_channel must be a string, got {release_channel!r}")

    path_augment = None
    raw_pa = doc.get("path_augment")
    if raw_pa is not None:
        if not isinstance(raw_pa, Mapping):
            raise ConfigurationError("path_augment must map target -> list of directories")
        path_augment = {str(k): _str_list(v, f"path_augment.{k}") for k, v in raw_pa.items()}

    cfg = PipelineConfig(
        crate=crate.strip(),
        axis_set=rows_from_document(doc.get("matrix")),
        defaults=defaults,
        release_channel=release_channel,
        path_augment=path_augment,
    )

    cache = doc.get("cache")
    if isinstance(cache, list):
        cfg.cache_paths = _str_list(cache, "cache")
    elif isinstance(cache, Mapping):
        if "paths" in cache:
            cfg.cache_paths = _str_list(cache["paths"], "cache.paths")
        if "version" in cache:
            cfg.cache_version = str(cache["version"])
    elif cache is not None:
        raise ConfigurationError("cache must be a list of paths or a mapping with 'paths'/'version'")

    cargo_home = doc.get("cargo_home", DEFAULT_CARGO_HOME_ROOT)
    if cargo_home is None:
        cargo_home = ""
    if not isinstance(cargo_home, str):
        raise ConfigurationError(f"cargo_home must be a directory or empty, got {cargo_home!r}")
    cfg.cargo_home_root = cargo_home

    branches = doc.get("branches")
    if isinstance(branches, Mapping):
        cfg.branches_only = _str_list(branches.get("only"), "branches.only")
    elif branches is not None:
        raise ConfigurationError("branches must be a mapping with an 'only' list")

    deploy = doc.get("deploy")
    if deploy is not None:
        if not isinstance(deploy, Mapping):
            raise ConfigurationError("deploy must be a mapping")
        repository = str(deploy.get("repository", "") or "")
        if repository and not re.fullmatch(r"[\w.-]+/[\w.-]+", repository):
            raise ConfigurationError(f"deploy.repository must look like 'owner/name', got {repository!r}")
        cfg.deploy = DeployConfig(
            repository=repository,
            artifact=str(deploy.get("artifact", "*.zip")),
            description=str(deploy.get("description", "") or ""),
            token_env=str(deploy.get("token_env", "GITHUB_TOKEN")),
        )

    if doc.get("workers") is not None:
        cfg.workers = _as_int(doc["workers"], "workers")
    if doc.get("step_timeout") is not None:
        cfg.step_timeout = _as_float(doc["step_timeout"], "step_timeout")

    return cfg


# ----------------------------------------------------------------------
# Loading (YAML or Python)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> PipelineConfig:
    """
    Load a pipeline from a YAML document or a Python file.

    A Python file must define either:
      - pipeline() -> PipelineConfig | dict
      - PIPELINE = PipelineConfig(...) | {...}
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigurationError(f"Pipeline file not found: {p}")

    if p.suffix in (".yml", ".yaml"):
        try:
            doc = yaml.safe_load(p.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{p.name}: invalid YAML: {e}") from e
        return pipeline_from_dict(doc or {})

    if p.suffix == ".py":
        globals_dict = runpy.run_path(str(p), run_name=f"crateci_pipeline_{p.stem}")
        if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
            value = globals_dict["pipeline"]()
        elif "PIPELINE" in globals_dict:
            value = globals_dict["PIPELINE"]
        else:
            raise ConfigurationError(f"{p.name} must define pipeline() or PIPELINE")
        if isinstance(value, PipelineConfig):
            return value
        if isinstance(value, Mapping):
            return pipeline_from_dict(value)
        raise ConfigurationError(f"{p.name}: pipeline must be a PipelineConfig or a dict, got {type(value).__name__}")

    raise ConfigurationError(f"Pipeline must be a .yml/.yaml/.py file, got: {p.name}")


def find_pipeline_files(directory: str | Path = ".") -> List[Path]:
    d = Path(directory)
    return [d / name for name in DEFAULT_PIPELINE_FILES if (d / name).exists()]


def discover_pipeline(explicit: Optional[str], environ: Mapping[str, str] = os.environ) -> Path:
    """Explicit path, then $CRATECI_PIPELINE, then the single default file in cwd."""
    chosen = explicit or environ.get("CRATECI_PIPELINE")
    if chosen:
        return Path(chosen)
    found = find_pipeline_files(".")
    if not found:
        raise ConfigurationError(
            "No pipeline file found",
            details=["Looked for:"] + [f"  {n}" for n in DEFAULT_PIPELINE_FILES],
        )
    if len(found) > 1:
        raise ConfigurationError(
            "Multiple pipeline files found; pass --pipeline",
            details=[f"  {f}" for f in found],
        )
    return found[0]
