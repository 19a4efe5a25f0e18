# environment.py
from __future__ import annotations

from pathlib import PurePosixPath
from typing import Dict, List, Mapping, Optional, Sequence

from .model import EnvironmentSpec, Job


# Targets whose linker/runtime lives outside the default toolchain PATH.
DEFAULT_PATH_AUGMENT: Dict[str, List[str]] = {
    "x86_64-pc-windows-gnu": [r"C:\msys64\mingw64\bin"],
    "i686-pc-windows-gnu": [r"C:\msys64\mingw32\bin"],
}


# Per-job CARGO_HOME parent (registry index and crate sources), relative
# to the work dir. Empty means "inherit the user's CARGO_HOME".
DEFAULT_CARGO_HOME_ROOT = ".crateci/cargo-home"


def codegen_flags(features: str, cpu: str) -> List[str]:
    """
    Compiler flag tokens for a feature string and cpu hint.

    Each one is its own `-C` pair and is left out when empty, so an
    empty value means "platform default" and the two never merge.
    """
    flags: List[str] = []
    if features:
        flags += ["-C", f"target-feature={features}"]
    if cpu:
        flags += ["-C", f"target-cpu={cpu}"]
    return flags


class EnvironmentResolver:
    """Pure mapping Job -> EnvironmentSpec."""

    def __init__(
        self,
        path_augment: Optional[Mapping[str, Sequence[str]]] = None,
        *,
        target_root: str = "target",
        cargo_home_root: str = DEFAULT_CARGO_HOME_ROOT,
        extra_env: Optional[Mapping[str, str]] = None,
    ):
        table = dict(DEFAULT_PATH_AUGMENT)
        if path_augment is not None:
            table.update({k: list(v) for k, v in path_augment.items()})
        self.path_augment = table
        self.target_root = target_root
        self.cargo_home_root = cargo_home_root
        self.extra_env = dict(extra_env or {})

    def resolve(self, job: Job) -> EnvironmentSpec:
        rustflags = " ".join(codegen_flags(job.features, job.cpu))
        # build output and registry are per job so concurrent jobs never share them
        target_dir = str(PurePosixPath(self.target_root) / job.slug)
        cargo_home = str(PurePosixPath(self.cargo_home_root) / job.slug) if self.cargo_home_root else ""
        return EnvironmentSpec(
            channel=job.channel,
            rustflags=rustflags,
            path_prepend=tuple(self.path_augment.get(job.target, ())),
            variables=dict(self.extra_env),
            target_dir=target_dir,
            cargo_home=cargo_home,
        )
