# matrix.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ConfigurationError
from .model import AXES, AxisSet, Job, MatrixRow

logger = logging.getLogger(__name__)


BUILTIN_DEFAULTS: Dict[str, str] = {
    "features": "",
    "cpu": "",
    "channel": "stable",
}

# Vocabulary of the CI files these matrices are usually lifted from.
AXIS_ALIASES: Dict[str, str] = {
    "target": "target",
    "features": "features",
    "cpu": "cpu",
    "channel": "channel",
    "rust_version": "channel",
    "toolchain": "channel",
}

ROW_NAME_KEYS = ("name", "display_name")


# ---------------------------------------------------------------------
# Document -> AxisSet
# ---------------------------------------------------------------------

def _normalise_axis(key: Any, where: str) -> str:
    if not isinstance(key, str):
        raise ConfigurationError(f"{where}: axis names must be strings, got {key!r}")
    canon = AXIS_ALIASES.get(key.strip().lower())
    if canon is None:
        raise ConfigurationError(
            f"{where}: unknown axis {key!r}",
            details=[f"known axes: {sorted(AXIS_ALIASES)}"],
        )
    return canon


def _as_axis_value(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigurationError(f"{where}: axis values must be strings, got {value!r}")
    return str(value)


def normalise_defaults(raw: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in (raw or {}).items():
        axis = _normalise_axis(k, "defaults")
        out[axis] = _as_axis_value(v, f"defaults.{axis}")
    return out


def rows_from_document(raw_rows: Iterable[Any]) -> AxisSet:
    """
    Convert parsed matrix rows (list of dicts from YAML) into an AxisSet.

    Axis keys are case-insensitive, so rows copied from a CI file
    (TARGET, FEATURES, RUST_VERSION, NAME) load unchanged.
    """
    if raw_rows is None:
        raise ConfigurationError("matrix: no rows declared")
    if isinstance(raw_rows, (str, bytes)) or not isinstance(raw_rows, Iterable):
        raise ConfigurationError(f"matrix: expected a list of rows, got {type(raw_rows).__name__}")

    rows: List[MatrixRow] = []
    for idx, raw in enumerate(raw_rows):
        where = f"matrix[{idx}]"
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"{where}: expected a mapping, got {raw!r}")

        name: Optional[str] = None
        values: Dict[str, str] = {}
        for k, v in raw.items():
            if isinstance(k, str) and k.strip().lower() in ROW_NAME_KEYS:
                name = _as_axis_value(v, f"{where}.name") or None
                continue
            axis = _normalise_axis(k, where)
            if axis in values:
                raise ConfigurationError(f"{where}: axis {axis!r} given twice")
            values[axis] = _as_axis_value(v, f"{where}.{axis}")
        rows.append(MatrixRow(values=values, name=name))

    return AxisSet(rows=tuple(rows))


# ---------------------------------------------------------------------
# AxisSet -> Jobs
# ---------------------------------------------------------------------

def _flag_label(features: str) -> str:
    # "+popcnt,-sse4.2" -> "popcnt-no-sse4.2"
    parts = []
    for token in features.split(","):
        token = token.strip()
        if not token:
            continue
        if token.startswith("-"):
            parts.append(f"no-{token[1:]}")
        else:
            parts.append(token.lstrip("+"))
    return "-".join(parts)


def default_job_name(target: str, features: str, cpu: str, channel: str, release_channel: str) -> str:
    parts = [target, _flag_label(features), cpu]
    if channel != release_channel:
        parts.append(channel)
    return "-".join(p for p in parts if p)


def expand(
    axis_set: AxisSet,
    defaults: Optional[Mapping[str, str]] = None,
    *,
    release_channel: str = "stable",
) -> List[Job]:
    """
    Expand matrix rows into Jobs, one per row, in row order.

    Missing axis values come from `defaults` (then BUILTIN_DEFAULTS);
    a value given on the row always wins.

    Raises ConfigurationError on a row without a target or when two rows
    resolve to the same (target, features, cpu, channel) identity.
    """
    merged_defaults = dict(BUILTIN_DEFAULTS)
    for k, v in (defaults or {}).items():
        if k not in AXES:
            raise ConfigurationError(f"defaults: unknown axis {k!r}")
        merged_defaults[k] = v
    if merged_defaults.get("target"):
        # a global target would hide rows that forgot theirs
        raise ConfigurationError("defaults: 'target' cannot have a global default")

    jobs: List[Job] = []
    seen: Dict[tuple, int] = {}

    for idx, row in enumerate(axis_set.rows):
        for k in row.values:
            if k not in AXES:
                raise ConfigurationError(f"matrix[{idx}]: unknown axis {k!r}")

        target = (row.values.get("target") or "").strip()
        if not target:
            raise ConfigurationError(f"matrix[{idx}]: missing required axis 'target'")

        resolved = {axis: row.values.get(axis, merged_defaults.get(axis, "")) for axis in AXES}
        resolved["target"] = target
        channel = resolved["channel"] or release_channel

        name = row.name or default_job_name(
            target, resolved["features"], resolved["cpu"], channel, release_channel
        )
        job = Job(
            target=target,
            features=resolved["features"],
            cpu=resolved["cpu"],
            channel=channel,
            name=name,
            is_release_channel=(channel == release_channel),
        )

        if job.identity in seen:
            raise ConfigurationError(
                f"matrix[{idx}] duplicates matrix[{seen[job.identity]}]",
                details=[
                    f"target={job.target}",
                    f"features={job.features!r}",
                    f"cpu={job.cpu!r}",
                    f"channel={job.channel}",
                ],
            )
        seen[job.identity] = idx
        jobs.append(job)

    logger.debug("expanded %d matrix rows into %d jobs", len(axis_set), len(jobs))
    return jobs


def select(jobs: List[Job], names: Iterable[str]) -> List[Job]:
    """Keep only jobs whose display name is in `names`, preserving order."""
    wanted = list(names)
    if not wanted:
        return list(jobs)
    known = {j.name for j in jobs}
    missing = [n for n in wanted if n not in known]
    if missing:
        raise ConfigurationError(f"unknown job name(s): {missing}", details=[f"known: {sorted(known)}"])
    return [j for j in jobs if j.name in set(wanted)]
