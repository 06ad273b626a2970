from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, TextIO, Tuple
import csv
import json
import os
import uuid


# =============================================================================
# Metadata convention
# =============================================================================
# Injected by Logger.log into every row; writers treat them as indexing fields.
META_KEYS: Tuple[str, str, str] = ("step", "wall_time", "timestamp")


# =============================================================================
# Run directory utilities
# =============================================================================
def _generate_run_id() -> str:
    """Return ``"{YYYY-mm-dd_HH-MM-SS}_{8-hex}"`` (local time)."""
    ts = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    return f"{ts}_{uuid.uuid4().hex[:8]}"


def _make_run_dir(
    log_dir: str,
    exp_name: str,
    *,
    run_id: Optional[str] = None,
    overwrite: bool = False,
    resume: bool = False,
) -> str:
    """
    Resolve ``{log_dir}/{exp_name}/{run_id}`` for a run.

    Parameters
    ----------
    log_dir : str
        Root logging directory.
    exp_name : str
        Experiment name.
    run_id : Optional[str], default=None
        Explicit identifier. Auto-generated when None.
    overwrite : bool, default=False
        Reuse the path even if it already exists.
    resume : bool, default=False
        Return the path as-is; it must exist.

    Returns
    -------
    run_dir : str

    Raises
    ------
    FileNotFoundError
        If ``resume=True`` but the directory does not exist.

    Notes
    -----
    For a fresh run whose directory already exists, the first free
    ``{path}_{k}`` is used instead.
    """
    path = os.path.join(str(log_dir), str(exp_name), str(run_id or _generate_run_id()))

    if resume:
        if not os.path.exists(path):
            raise FileNotFoundError(f"resume=True but run_dir does not exist: {path}")
        return path

    if overwrite or (not os.path.exists(path)):
        return path

    i = 1
    while os.path.exists(f"{path}_{i}"):
        i += 1
    return f"{path}_{i}"


# =============================================================================
# Metric row helpers
# =============================================================================
def _split_meta(row: Mapping[str, Any]) -> Tuple[Dict[str, float], Dict[str, float]]:
    """Split a row into (meta, metrics) using META_KEYS."""
    meta = {k: float(row[k]) for k in META_KEYS if k in row}
    metrics = {str(k): float(v) for k, v in row.items() if k not in META_KEYS}
    return meta, metrics


def _get_step(row: Mapping[str, Any]) -> int:
    try:
        return int(row.get("step", 0))
    except (TypeError, ValueError):
        return 0


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


# =============================================================================
# Filesystem helpers for writers
# =============================================================================
def _open_append(path: str, *, newline: Optional[str] = None, encoding: str = "utf-8") -> TextIO:
    """Open `path` for appending, creating the parent directory if needed."""
    dirpath = os.path.dirname(path)
    if dirpath:
        os.makedirs(dirpath, exist_ok=True)
    return open(path, "a", newline=newline, encoding=encoding)


def _safe_call(obj: Optional[Any], method: str) -> None:
    """
    Best-effort ``obj.method()``; never raises.

    Used for flush/close on writer handles, where a failure must not interrupt
    training.
    """
    if obj is None:
        return
    fn = getattr(obj, method, None)
    if not callable(fn):
        return
    try:
        fn()
    except (OSError, ValueError):
        pass


def _file_is_empty(f: TextIO) -> bool:
    try:
        f.seek(0, os.SEEK_END)
        return int(f.tell()) == 0
    except OSError:
        return True


def _seek_eof(f: TextIO) -> None:
    try:
        f.seek(0, os.SEEK_END)
    except OSError:
        pass


def _read_csv_header(*, path: str, encoding: str = "utf-8") -> Optional[List[str]]:
    """First CSV row of `path`, or None if missing / unreadable / empty."""
    try:
        with open(path, "r", newline="", encoding=encoding) as rf:
            header = next(csv.reader(rf), None)
    except (OSError, csv.Error):
        return None
    if not header:
        return None
    return [str(h) for h in header]


def _extract_meta(row: Mapping[str, Any]) -> Tuple[Any, Any, Any]:
    """(step, wall_time, timestamp) from `row`, each defaulting to ``""``."""
    return tuple(row.get(k, "") for k in META_KEYS)  # type: ignore[return-value]
