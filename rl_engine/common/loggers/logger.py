from __future__ import annotations

import json
import os
import socket
import sys
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import numpy as np
import torch as th

from .base_writer import Writer
from ..utils.common_utils import _to_scalar
from ..utils.logger_utils import META_KEYS, _make_run_dir


class Logger:
    """
    Run-scoped scalar logger that fans rows out to writer backends.

    One instance owns one run directory. It turns loosely typed metric
    mappings into flat ``{key: float}`` rows stamped with ``step``,
    ``wall_time`` and ``timestamp``, then hands each row to every attached
    :class:`Writer`. File formats and buffering live in the writers.

    Parameters
    ----------
    log_dir : str, default="./runs"
        Parent folder of all experiments.
    exp_name : str, default="exp"
        Per-experiment folder inside `log_dir`.
    run_id : str, optional
        Run folder name; a timestamp-based one is generated when omitted.
    overwrite : bool, default=False
        Write into an existing run folder instead of picking a suffixed one.
    resume : bool, default=False
        Continue an existing run folder. Raises if it does not exist.
    writers : Iterable[Writer], optional
        Initial backends; more can be attached with :meth:`add_writer`.
    console_every : int, default=1
        Echo every N-th :meth:`log` call to stdout (or a tqdm bar).
        Non-positive disables it.
    flush_every : int, default=200
        Flush backends every N-th :meth:`log` call. Non-positive disables it.
    drop_non_finite : bool, default=False
        Skip NaN and Inf values instead of forwarding them.
    strict : bool, default=False
        Propagate backend exceptions. Otherwise they are collected in
        `errors`, the first one is reported on stderr and logging goes on.

    Notes
    -----
    The step of a row is the explicit ``step`` argument when given, else the
    value of the callable installed with :meth:`set_step_fn`, else 0.
    """

    def __init__(
        self,
        *,
        log_dir: str = "./runs",
        exp_name: str = "exp",
        run_id: Optional[str] = None,
        overwrite: bool = False,
        resume: bool = False,
        writers: Optional[Iterable[Writer]] = None,
        console_every: int = 1,
        flush_every: int = 200,
        drop_non_finite: bool = False,
        strict: bool = False,
    ) -> None:
        self.strict = bool(strict)
        self.errors: List[str] = []

        self.run_dir = _make_run_dir(
            log_dir,
            exp_name,
            run_id=run_id,
            overwrite=bool(overwrite),
            resume=bool(resume),
        )
        os.makedirs(self.run_dir, exist_ok=True)

        self.console_every = int(console_every)
        self.flush_every = int(flush_every)
        self.drop_non_finite = bool(drop_non_finite)

        self._start_time = time.time()
        self._log_calls = 0
        self._step_fn: Optional[Callable[[], int]] = None

        self._buffer: Dict[str, List[float]] = defaultdict(list)
        self._writers: List[Writer] = list(writers) if writers is not None else []

        try:
            self.dump_metadata(filename="metadata.json")
        except OSError as e:
            self._handle_exception(e, "dump_metadata")

    # ---------------------------------------------------------------------
    # Context manager
    # ---------------------------------------------------------------------
    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------------------------------------------------------------------
    # Step inference
    # ---------------------------------------------------------------------
    def set_step_fn(self, fn: Optional[Callable[[], int]]) -> None:
        """
        Set a callable returning the current global step (e.g. the rollout
        coordinator's real-step counter). None disables inference.
        """
        self._step_fn = fn

    def _infer_step(self, step: Optional[int]) -> int:
        if step is not None:
            return int(step)
        if self._step_fn is not None:
            return int(self._step_fn())
        return 0

    # ---------------------------------------------------------------------
    # Error handling
    # ---------------------------------------------------------------------
    def _handle_exception(self, err: Exception, context: str) -> None:
        """
        Apply the `strict` policy to a writer/metadata failure.

        Non-strict: record in `errors`; the first failure of each context is
        echoed to stderr. Strict: re-raise.
        """
        msg = f"[{self.__class__.__name__}] {context}: {type(err).__name__}: {err}"
        first = not any(e.startswith(f"[{self.__class__.__name__}] {context}:") for e in self.errors)
        self.errors.append(msg)
        if self.strict:
            raise err
        if first:
            print(f"[WARN] {msg}", file=sys.stderr)

    # ---------------------------------------------------------------------
    # Key normalization
    # ---------------------------------------------------------------------
    @staticmethod
    def _norm_prefix(prefix: str) -> str:
        p = str(prefix).strip()
        if not p:
            return ""
        return p.replace("\\", "/").strip("/") + "/"

    @staticmethod
    def _norm_key(key: Any) -> str:
        return str(key).strip().replace("\\", "/").lstrip("/")

    def _join_name(self, prefix: str, key: Any) -> str:
        p = self._norm_prefix(prefix)
        k = self._norm_key(key)
        return f"{p}{k}" if p else k

    def _scalarize(self, v: Any) -> Optional[float]:
        val = _to_scalar(v)
        if val is None:
            return None
        if self.drop_non_finite and not np.isfinite(val):
            return None
        return float(val)

    # ---------------------------------------------------------------------
    # Public logging APIs
    # ---------------------------------------------------------------------
    def log(
        self,
        metrics: Mapping[str, Any],
        step: Optional[int] = None,
        *,
        pbar: Optional[Any] = None,
        prefix: str = "",
    ) -> None:
        """
        Build one row from `metrics` and send it to every writer now.

        Parameters
        ----------
        metrics : Mapping[str, Any]
            Metric mapping. Values are converted with `_to_scalar`;
            non-scalar values are skipped.
        step : int, optional
            Row step; inferred when None.
        pbar : Any, optional
            tqdm-like object. Console output goes to its description instead
            of a new line.
        prefix : str, default=""
            Prefix applied to all keys (e.g. "train", "rollout").

        Notes
        -----
        Meta keys ``step``, ``wall_time`` and ``timestamp`` are injected into
        every row.
        """
        s = self._infer_step(step)
        self._log_calls += 1

        row: Dict[str, float] = {}
        for k, v in metrics.items():
            fval = self._scalarize(v)
            if fval is not None:
                row[self._join_name(prefix, k)] = fval

        now = time.time()
        row["step"] = float(s)
        row["wall_time"] = float(now - self._start_time)
        row["timestamp"] = float(now)

        for w in self._writers:
            try:
                w.write(row)
            except (OSError, ValueError) as e:
                self._handle_exception(e, f"writer.write({w.__class__.__name__})")

        if self.console_every > 0 and (self._log_calls % self.console_every == 0):
            self._print_console(row, pbar=pbar)

        if self.flush_every > 0 and (self._log_calls % self.flush_every == 0):
            self.flush()

    def record(self, metrics: Mapping[str, Any], *, prefix: str = "") -> None:
        """Buffer metrics for later aggregation by :meth:`dump`."""
        for k, v in metrics.items():
            fval = self._scalarize(v)
            if fval is not None:
                self._buffer[self._join_name(prefix, k)].append(fval)

    def dump(
        self,
        step: Optional[int] = None,
        *,
        prefix: str = "",
        agg: str = "mean",
        clear: bool = True,
    ) -> None:
        """
        Aggregate buffered scalars and emit them via `log()`.

        Parameters
        ----------
        agg : {"mean", "min", "max", "std"}, default="mean"
            Aggregation operator.

        Raises
        ------
        ValueError
            If `agg` is unknown.
        """
        op = str(agg).lower().strip()
        ops = {"mean": np.mean, "min": np.min, "max": np.max, "std": np.std}
        if op not in ops:
            raise ValueError(f"Unknown agg={agg!r}. Use mean|min|max|std.")

        out = {k: float(ops[op](np.asarray(v, dtype=np.float64))) for k, v in self._buffer.items() if v}
        if clear:
            self._buffer.clear()
        if not out:
            return
        self.log(out, step=step, prefix=prefix)

    # ---------------------------------------------------------------------
    # Config / metadata
    # ---------------------------------------------------------------------
    def dump_config(self, config: Mapping[str, Any], filename: str = "config.json") -> None:
        """Write `config` as JSON into `run_dir` (non-JSON values via ``str``)."""
        path = os.path.join(self.run_dir, filename)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(dict(config), f, indent=2, ensure_ascii=False, default=str)

    def dump_metadata(self, filename: str = "metadata.json") -> None:
        meta: Dict[str, Any] = {
            "run_dir": self.run_dir,
            "start_time_unix": float(self._start_time),
            "start_time_iso": datetime.fromtimestamp(self._start_time).isoformat(),
            "host": socket.gethostname(),
            "pid": os.getpid(),
            "python": sys.version.replace("\n", " "),
            "platform": sys.platform,
            "torch": str(th.__version__),
            "cuda_available": bool(th.cuda.is_available()),
        }
        path = os.path.join(self.run_dir, filename)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2, ensure_ascii=False, default=str)

    # ---------------------------------------------------------------------
    # Writer lifecycle
    # ---------------------------------------------------------------------
    @property
    def writers(self) -> List[Writer]:
        return list(self._writers)

    def add_writer(self, writer: Writer) -> None:
        self._writers.append(writer)

    def add_writers(self, writers: Iterable[Writer]) -> None:
        for w in writers:
            self.add_writer(w)

    def flush(self) -> None:
        for w in self._writers:
            try:
                w.flush()
            except (OSError, ValueError) as e:
                self._handle_exception(e, f"writer.flush({w.__class__.__name__})")

    def close(self) -> None:
        """Flush, then close every writer even if flushing fails."""
        try:
            self.flush()
        finally:
            for w in self._writers:
                try:
                    w.close()
                except (OSError, ValueError) as e:
                    self._handle_exception(e, f"writer.close({w.__class__.__name__})")

    # ---------------------------------------------------------------------
    # Console output
    # ---------------------------------------------------------------------
    @staticmethod
    def _print_console(row: Mapping[str, float], *, pbar: Optional[Any] = None) -> None:
        """
        Render a compact console line. Common RL metrics are preferred; other
        rows show their first few keys.
        """
        step = int(row.get("step", 0.0))
        wall = float(row.get("wall_time", 0.0))

        preferred = (
            "rollout/episode_return",
            "train/loss/q",
            "train/loss/total",
            "train/loss/policy",
            "train/loss/value",
            "train/lr",
            "train/lr/actor",
        )
        shown = [f"{k}={row[k]:.4g}" for k in preferred if k in row]
        if not shown:
            shown = [f"{k}={v:.4g}" for k, v in row.items() if k not in META_KEYS][:6]

        msg = f"[step={step} | t={wall:.1f}s] " + " ".join(shown)
        if pbar is not None:
            pbar.set_description_str(msg, refresh=True)
            return
        print(msg)
