from __future__ import annotations

import csv
import json
import os
from typing import Any, Callable, Dict, List, Mapping, Tuple

from rl_engine.common.loggers import CSVWriter, JSONLWriter, Logger, Writer, build_logger
from rl_engine.common.testers.test_utils import (
    assert_close,
    assert_eq,
    assert_file_exists,
    assert_in,
    assert_raises,
    assert_true,
    mk_tmp_dir,
    read_text,
    rm_tmp_dir,
    run_tests,
)
from rl_engine.common.utils import latest_versioned_path, next_versioned_path


class MemoryWriter(Writer):
    """Keeps every row in memory."""

    def __init__(self) -> None:
        self.rows: List[Dict[str, float]] = []
        self.flushed = 0
        self.closed = False

    def write(self, row: Mapping[str, float]) -> None:
        self.rows.append(dict(row))

    def flush(self) -> None:
        self.flushed += 1

    def close(self) -> None:
        self.closed = True


class BrokenWriter(Writer):
    def write(self, row: Mapping[str, float]) -> None:
        raise OSError("disk full")

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


def _logger(tmp: str, **kw: Any) -> Tuple[Logger, MemoryWriter]:
    mem = MemoryWriter()
    base = dict(log_dir=tmp, exp_name="t", run_id="r", writers=[mem], console_every=0)
    base.update(kw)
    return Logger(**base), mem


# =============================================================================
# Writers
# =============================================================================
def test_jsonl_writer_writes_lines():
    tmp = mk_tmp_dir()
    try:
        w = JSONLWriter(tmp, filename="m.jsonl")
        w.write({"a": 1.0, "step": 3.0})
        w.write({"b": 2.5, "step": 4.0})
        w.close()

        lines = [ln for ln in read_text(os.path.join(tmp, "m.jsonl")).splitlines() if ln.strip()]
        assert_eq(len(lines), 2)
        assert_eq(json.loads(lines[0])["a"], 1.0)
        assert_eq(json.loads(lines[1])["step"], 4.0)
        assert_raises(ValueError, lambda: w.write({"a": 1.0}))
    finally:
        rm_tmp_dir(tmp)


def test_csv_long_and_wide():
    tmp = mk_tmp_dir()
    try:
        w = CSVWriter(tmp, wide=True, long=True)
        w.write({"step": 1.0, "wall_time": 0.1, "timestamp": 100.0, "loss": 0.5, "q": 2.0})
        w.write({"step": 2.0, "wall_time": 0.2, "timestamp": 101.0, "loss": 0.25, "extra": 9.0})
        w.close()

        with open(w.long_path, "r", encoding="utf-8", newline="") as f:
            rows = list(csv.reader(f))
        assert_eq(rows[0], ["step", "wall_time", "timestamp", "key", "value"])
        keys = [r[3] for r in rows[1:]]
        assert_eq(keys, ["loss", "q", "loss", "extra"], "long format keeps every key")

        with open(w.wide_path, "r", encoding="utf-8", newline="") as f:
            header = next(csv.reader(f))
        assert_true("extra" not in header, "wide schema is frozen on the first row")
        assert_in("loss", header)
    finally:
        rm_tmp_dir(tmp)


# =============================================================================
# Logger frontend
# =============================================================================
def test_prefix_and_meta_keys():
    tmp = mk_tmp_dir()
    try:
        logger, mem = _logger(tmp)
        logger.log({"loss/q": 1.5, "/odd": 2}, step=7, prefix="train/")
        row = mem.rows[0]
        assert_eq(row["train/loss/q"], 1.5)
        assert_eq(row["train/odd"], 2.0)
        assert_eq(row["step"], 7.0)
        for k in ("wall_time", "timestamp"):
            assert_in(k, row)
        assert_file_exists(os.path.join(logger.run_dir, "metadata.json"))
        logger.close()
        assert_true(mem.closed)
    finally:
        rm_tmp_dir(tmp)


def test_step_inference_uses_step_fn():
    tmp = mk_tmp_dir()
    try:
        logger, mem = _logger(tmp)
        logger.log({"x": 1.0})
        counter = {"n": 41}
        logger.set_step_fn(lambda: counter["n"])
        logger.log({"x": 2.0})
        logger.log({"x": 3.0}, step=3)
        assert_eq([r["step"] for r in mem.rows], [0.0, 41.0, 3.0])
    finally:
        rm_tmp_dir(tmp)


def test_record_and_dump_aggregate():
    tmp = mk_tmp_dir()
    try:
        logger, mem = _logger(tmp)
        for v in (1.0, 2.0, 6.0):
            logger.record({"r": v}, prefix="rollout")
        logger.dump(step=5, agg="max", clear=False)
        logger.dump(step=6)
        assert_eq(mem.rows[0]["rollout/r"], 6.0)
        assert_close(mem.rows[1]["rollout/r"], 3.0)

        logger.dump(step=7)
        assert_eq(len(mem.rows), 2, "empty buffer emits nothing")
        assert_raises(ValueError, lambda: logger.dump(agg="median"))
    finally:
        rm_tmp_dir(tmp)


def test_non_scalar_and_non_finite_values():
    tmp = mk_tmp_dir()
    try:
        logger, mem = _logger(tmp, drop_non_finite=True)
        logger.log({"ok": 1, "nan": float("nan"), "vec": [1.0, 2.0], "s": "text"}, step=1)
        row = mem.rows[0]
        assert_in("ok", row)
        for k in ("nan", "vec", "s"):
            assert_true(k not in row, f"{k} must be skipped")

        keep, mem2 = _logger(tmp, run_id="r2")
        keep.log({"nan": float("nan")}, step=1)
        assert_in("nan", mem2.rows[0])
    finally:
        rm_tmp_dir(tmp)


def test_writer_failure_policy():
    tmp = mk_tmp_dir()
    try:
        lenient = Logger(log_dir=tmp, exp_name="t", run_id="a", writers=[BrokenWriter()], console_every=0)
        lenient.log({"x": 1.0}, step=1)
        lenient.log({"x": 2.0}, step=2)
        assert_eq(len(lenient.errors), 2)
        assert_in("disk full", lenient.errors[0])

        strict = Logger(log_dir=tmp, exp_name="t", run_id="b", writers=[BrokenWriter()], console_every=0, strict=True)
        assert_raises(OSError, lambda: strict.log({"x": 1.0}, step=1))
    finally:
        rm_tmp_dir(tmp)


def test_run_dir_resolution():
    tmp = mk_tmp_dir()
    try:
        a, _ = _logger(tmp)
        b, _ = _logger(tmp)
        assert_eq(a.run_dir, os.path.join(tmp, "t", "r"))
        assert_eq(b.run_dir, os.path.join(tmp, "t", "r_1"))

        c, _ = _logger(tmp, overwrite=True)
        assert_eq(c.run_dir, a.run_dir)
        assert_raises(FileNotFoundError, lambda: _logger(tmp, run_id="missing", resume=True))
    finally:
        rm_tmp_dir(tmp)


def test_dump_config_writes_json():
    tmp = mk_tmp_dir()
    try:
        logger, _ = _logger(tmp)
        logger.dump_config({"lr": 1e-3, "sizes": [2, 3], "device": object()})
        cfg = json.loads(read_text(os.path.join(logger.run_dir, "config.json")))
        assert_eq(cfg["lr"], 1e-3)
        assert_eq(cfg["sizes"], [2, 3])
        assert_true(isinstance(cfg["device"], str))
    finally:
        rm_tmp_dir(tmp)


def test_build_logger_creates_backends():
    tmp = mk_tmp_dir()
    try:
        logger = build_logger(log_dir=tmp, exp_name="b", run_id="x", use_tensorboard=False, console_every=0)
        assert_eq(sorted(type(w).__name__ for w in logger.writers), ["CSVWriter", "JSONLWriter"])
        logger.log({"loss": 1.0}, step=1, prefix="train")
        logger.close()
        assert_file_exists(os.path.join(logger.run_dir, "metrics_long.csv"))
        assert_in("train/loss", read_text(os.path.join(logger.run_dir, "metrics.jsonl")))

        tb = build_logger(log_dir=tmp, exp_name="b", run_id="tb", use_csv=False, use_jsonl=False, console_every=0)
        assert_eq([type(w).__name__ for w in tb.writers], ["TensorBoardWriter"])
        tb.log({"loss": 1.0}, step=1)
        tb.close()
        assert_true(any(f.startswith("events.out.tfevents") for f in os.listdir(tb.run_dir)))
    finally:
        rm_tmp_dir(tmp)


# =============================================================================
# Versioned artifacts
# =============================================================================
def test_versioned_paths():
    tmp = mk_tmp_dir()
    try:
        assert_raises(FileNotFoundError, lambda: latest_versioned_path(tmp, "modelPolicy"))
        p1 = next_versioned_path(tmp, "modelPolicy")
        assert_eq(os.path.basename(p1), "modelPolicy_1.pt")

        for name in ("modelPolicy_1.pt", "modelPolicy_3.pt", "modelPolicy_x.pt", "modelPolicy_old_7.pt", "modelPolicy_9.pt.bak", "modelTarget_7.pt"):
            with open(os.path.join(tmp, name), "wb"):
                pass
        assert_eq(os.path.basename(latest_versioned_path(tmp, "modelPolicy")), "modelPolicy_3.pt")
        assert_eq(os.path.basename(next_versioned_path(tmp, "modelPolicy")), "modelPolicy_4.pt")
    finally:
        rm_tmp_dir(tmp)


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    # writers
    ("jsonl_writer", test_jsonl_writer_writes_lines),
    ("csv_long_and_wide", test_csv_long_and_wide),

    # logger
    ("prefix_and_meta", test_prefix_and_meta_keys),
    ("step_inference", test_step_inference_uses_step_fn),
    ("record_dump", test_record_and_dump_aggregate),
    ("non_scalar_non_finite", test_non_scalar_and_non_finite_values),
    ("writer_failure_policy", test_writer_failure_policy),
    ("run_dir_resolution", test_run_dir_resolution),
    ("dump_config", test_dump_config_writes_json),
    ("build_logger", test_build_logger_creates_backends),

    # artifacts
    ("versioned_paths", test_versioned_paths),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="loggers")


if __name__ == "__main__":
    raise SystemExit(main())
