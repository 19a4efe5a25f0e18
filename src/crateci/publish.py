# publish.py
from __future__ import annotations

import fnmatch
import json
import logging
import re
import shutil
import threading
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .errors import PublishError
from .model import Job, PublishResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------

class Credentials:
    """Opaque upload token. Never printed, logged, or put in error messages."""

    __slots__ = ("_token",)

    def __init__(self, token: str):
        self._token = token

    @property
    def token(self) -> str:
        return self._token

    def __bool__(self) -> bool:
        return bool(self._token)

    def __repr__(self) -> str:
        return "Credentials(token=***)"

    __str__ = __repr__


# ---------------------------------------------------------------------
# Release host collaborator
# ---------------------------------------------------------------------

class ReleaseHost(Protocol):
    def upload(self, *, target: str, tag: str, artifact: Path, token: str, description: str) -> str:
        """Upload one artifact for `tag`. Returns a URL; raises on failure."""
        ...


class ReleaseHostError(Exception):
    """Raised by ReleaseHost implementations when the remote call fails."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class GitHubReleases:
    """
    GitHub Releases host.

    Finds the release for a tag (creating it if missing), then uploads one
    asset. No retries.

    Matrix jobs upload concurrently, so the release lookup is serialized and
    remembered per tag: only the first job of a run creates the release.
    A 422 on create means another runner made it first; it is fetched again.
    """

    def __init__(
        self,
        repository: str,
        *,
        api_url: str = "https://api.github.com",
        uploads_url: str = "https://uploads.github.com",
        timeout: float = 60.0,
    ):
        if not re.fullmatch(r"[\w.-]+/[\w.-]+", repository or ""):
            raise ValueError(f"repository must look like 'owner/name', got {repository!r}")
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.uploads_url = uploads_url.rstrip("/")
        self.timeout = timeout
        self._lock = threading.Lock()
        self._releases: Dict[str, dict] = {}

    def _request(
        self,
        method: str,
        url: str,
        token: str,
        *,
        data: Optional[bytes] = None,
        content_type: str = "application/json",
    ) -> dict:
        req = urllib.request.Request(
            url,
            data=data,
            method=method,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "Content-Type": content_type,
                "User-Agent": "crateci",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise ReleaseHostError(
                f"{method} {url} -> HTTP {e.code} {e.reason}. {error_body[:500]}", status=e.code
            ) from e
        except urllib.error.URLError as e:
            raise ReleaseHostError(f"Network error: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise ReleaseHostError(f"Invalid JSON response from {url}: {e}") from e

    def _release_for_tag(self, tag: str, token: str, description: str) -> dict:
        with self._lock:
            release = self._releases.get(tag)
            if release is None:
                release = self._find_or_create(tag, token, description)
                self._releases[tag] = release
            return release

    def _find_or_create(self, tag: str, token: str, description: str) -> dict:
        quoted = urllib.parse.quote(tag, safe="")
        url = f"{self.api_url}/repos/{self.repository}/releases/tags/{quoted}"
        try:
            return self._request("GET", url, token)
        except ReleaseHostError as e:
            if e.status != 404:
                raise
        payload = json.dumps({"tag_name": tag, "name": tag, "body": description}).encode("utf-8")
        try:
            return self._request("POST", f"{self.api_url}/repos/{self.repository}/releases", token, data=payload)
        except ReleaseHostError as e:
            if e.status != 422:
                raise
        logger.debug("release %s already exists, fetching it", tag)
        return self._request("GET", url, token)

    def upload(self, *, target: str, tag: str, artifact: Path, token: str, description: str) -> str:
        release = self._release_for_tag(tag, token, description)
        release_id = release.get("id")
        if release_id is None:
            raise ReleaseHostError(f"release for {tag} has no id")
        query = urllib.parse.urlencode({"name": artifact.name, "label": target})
        url = f"{self.uploads_url}/repos/{self.repository}/releases/{release_id}/assets?{query}"
        asset = self._request("POST", url, token, data=artifact.read_bytes(), content_type="application/zip")
        return asset.get("browser_download_url", "")


# ---------------------------------------------------------------------
# Packaging + publishing
# ---------------------------------------------------------------------

def binary_name(crate: str, target: str) -> str:
    return f"{crate}.exe" if "windows" in target else crate


@dataclass
class ArtifactPublisher:
    """
    Packages a job's release binary and uploads it.

    Not idempotent: publishing the same tag/job twice may leave duplicate
    or conflicting assets on the host.
    """
    crate: str
    host: ReleaseHost
    staging_root: Path = Path(".crateci/deploy")
    artifact_glob: str = "*.zip"
    description: str = ""

    def artifact_name(self, job: Job, tag: str) -> str:
        return f"{self.crate}-{tag}-{job.name}.zip"

    def package(self, job: Job, build_output: Path, *, tag: str) -> List[Path]:
        """
        Zip the release binary into this job's staging dir and return the
        staged files matching the glob.

        The staging dir is emptied first so archives from earlier tags are
        never uploaded again.
        """
        binary = Path(build_output) / job.target / "release" / binary_name(self.crate, job.target)
        if not binary.is_file():
            raise PublishError(job=job.name, message="release binary not found", details={"path": str(binary)})

        staging = Path(self.staging_root) / job.slug
        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True, exist_ok=True)
        archive = staging / self.artifact_name(job, tag)
        try:
            with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.write(binary, arcname=binary.name)
        except OSError as e:
            raise PublishError(job=job.name, message=f"packaging failed: {e}", details={"archive": str(archive)}) from e

        matched = sorted(p for p in staging.iterdir() if p.is_file() and fnmatch.fnmatch(p.name, self.artifact_glob))
        if not matched:
            raise PublishError(
                job=job.name,
                message="no packaged file matches the artifact pattern",
                details={"pattern": self.artifact_glob, "staging": str(staging)},
            )
        return matched

    def publish(self, job: Job, build_output: Path, credentials: Credentials, *, tag: str) -> PublishResult:
        if not credentials:
            raise PublishError(job=job.name, message="no upload token configured")

        artifacts = self.package(job, build_output, tag=tag)
        urls: List[str] = []
        for artifact in artifacts:
            logger.info("[%s] uploading %s", job.name, artifact.name)
            try:
                url = self.host.upload(
                    target=job.target,
                    tag=tag,
                    artifact=artifact,
                    token=credentials.token,
                    description=self.description,
                )
            except Exception as e:
                # host errors can echo request details; keep the token out
                message = str(e).replace(credentials.token, "***")
                raise PublishError(
                    job=job.name,
                    message=f"upload failed: {message}",
                    details={"artifact": artifact.name},
                ) from None
            urls.append(url)

        return PublishResult(job=job.name, artifacts=tuple(a.name for a in artifacts), urls=tuple(urls))
