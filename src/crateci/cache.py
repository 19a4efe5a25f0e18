# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .model import CacheKey, Job

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Job-level caching keyed by job identity only:
#   cache_key = sha256(version, target, features, cpu, channel)
#
# The trigger never enters the key, so a tag build restores what the
# last ordinary commit built for the same job. Nothing is invalidated
# automatically; bump `version` to drop every entry.
#
# Cache entry layout:
#   root/
#     <key>/
#       contents.tar.gz
#       manifest.json
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".crateci/cache"

# Per-job registry and build output; {cargo_home}, {target_dir} and {slug}
# are filled in from the job's resolved environment.
DEFAULT_CACHE_PATHS = ["{cargo_home}/registry", "{target_dir}"]

DEFAULT_CACHE_EXCLUDES = [
    "**/.DS_Store",
    "**/*.tmp",
]


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def cache_key(job: Job, *, version: str = "v1") -> CacheKey:
    payload = {
        "v": version,
        "target": job.target,
        "features": job.features,
        "cpu": job.cpu,
        "channel": job.channel,
    }
    return CacheKey(_sha256_str(_json_dumps_stable(payload)))


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


class CacheStore:
    """
    File-based blob store addressed by CacheKey.

    Writes go to a temp file in the same directory and are renamed into
    place, so a reader sees either the full blob or nothing.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _entry_dir(self, key: CacheKey) -> Path:
        return self.root / key.value

    def artifact_path(self, key: CacheKey) -> Path:
        return self._entry_dir(key) / "contents.tar.gz"

    def manifest_path(self, key: CacheKey) -> Path:
        return self._entry_dir(key) / "manifest.json"

    def contains(self, key: CacheKey) -> bool:
        return self.artifact_path(key).exists()

    def get(self, key: CacheKey) -> Optional[bytes]:
        art = self.artifact_path(key)
        if not art.exists():
            return None
        return art.read_bytes()

    def put(self, key: CacheKey, data: bytes, manifest: Optional[Dict] = None) -> None:
        d = self._entry_dir(key)
        d.mkdir(parents=True, exist_ok=True)
        art = self.artifact_path(key)

        fd, tmp_name = tempfile.mkstemp(dir=str(d), suffix=".tmp")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        if manifest is not None:
            self.manifest_path(key).write_text(
                json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8"
            )

    def read_manifest(self, key: CacheKey) -> Dict:
        man = self.manifest_path(key)
        if not man.exists():
            return {}
        return json.loads(man.read_text(encoding="utf-8"))

    def keys(self) -> List[CacheKey]:
        return [CacheKey(p.name) for p in sorted(self.root.iterdir()) if (p / "contents.tar.gz").exists()]

    def delete(self, key: CacheKey) -> None:
        shutil.rmtree(self._entry_dir(key), ignore_errors=True)


class CacheManager:
    """restore/save around a job's lifecycle, plus tree packing helpers."""

    def __init__(self, store: CacheStore, *, excludes: Optional[List[str]] = None):
        self.store = store
        self.excludes = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    def restore(self, key: CacheKey) -> Optional[bytes]:
        data = self.store.get(key)
        logger.debug("cache %s for %s", "hit" if data is not None else "miss", key.value[:12])
        return data

    def save(self, key: CacheKey, contents: bytes, *, job: Optional[Job] = None) -> None:
        if not contents:
            raise ValueError("refusing to cache an empty payload")
        manifest = {
            "key": key.value,
            "size": len(contents),
            "saved_at_unix": int(time.time()),
        }
        if job is not None:
            manifest["job"] = {
                "name": job.name,
                "target": job.target,
                "features": job.features,
                "cpu": job.cpu,
                "channel": job.channel,
            }
        self.store.put(key, contents, manifest)
        logger.debug("cache saved %s (%d bytes)", key.value[:12], len(contents))

    # ---- directory trees <-> blob ----

    def pack(self, paths: Iterable[str | Path], root: str | Path = ".") -> Optional[bytes]:
        """
        Tar+gzip the given files/dirs (relative to root, `~` allowed).

        Entries are stored relative to root, or to the home directory as
        `~/...`; anything outside both is skipped. Returns None when nothing exists.
        """
        root_p = Path(root).resolve()
        buf = io.BytesIO()
        added = 0
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for entry in paths:
                src = (root_p / Path(entry).expanduser()).resolve()
                if not src.exists():
                    continue
                files = [src] if src.is_file() else list(_iter_files_under(src))
                for f in files:
                    arcname = self._arcname(f, root_p)
                    if arcname is None:
                        logger.warning("cache: skipping %s (outside workspace and home)", f)
                        continue
                    if _matches_any_glob(arcname, self.excludes):
                        continue
                    tar.add(str(f), arcname=arcname, recursive=False)
                    added += 1
        if not added:
            return None
        return buf.getvalue()

    def unpack(self, contents: bytes, root: str | Path = ".") -> List[str]:
        root_p = Path(root).resolve()
        written: List[str] = []
        with tarfile.open(fileobj=io.BytesIO(contents), mode="r:gz") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                dest = self._dest_for(member.name, root_p)
                dest.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src, dest.open("wb") as out:
                    shutil.copyfileobj(src, out)
                written.append(str(dest))
        return written

    def prune(self, keep: int = 10) -> List[CacheKey]:
        """Keep only the newest `keep` entries (by artifact mtime)."""
        keys = sorted(
            self.store.keys(),
            key=lambda k: self.store.artifact_path(k).stat().st_mtime,
            reverse=True,
        )
        dropped = keys[keep:]
        for k in dropped:
            self.store.delete(k)
        return dropped

    # ---- helpers ----

    @staticmethod
    def _arcname(path: Path, root: Path) -> Optional[str]:
        try:
            return str(path.relative_to(root)).replace("\\", "/")
        except ValueError:
            pass
        try:
            return "~/" + str(path.relative_to(Path.home().resolve())).replace("\\", "/")
        except ValueError:
            return None

    @staticmethod
    def _dest_for(arcname: str, root: Path) -> Path:
        base = Path.home().resolve() if arcname.startswith("~/") else root
        rel = arcname[2:] if arcname.startswith("~/") else arcname
        dest = (base / rel).resolve()
        if base not in dest.parents:
            raise ValueError(f"cache entry escapes its root: {arcname}")
        return dest
