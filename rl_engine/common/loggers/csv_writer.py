from __future__ import annotations

import csv
import os
from typing import Any, List, Mapping, Optional, TextIO

from .base_writer import Writer
from ..utils.logger_utils import (
    META_KEYS,
    _extract_meta,
    _file_is_empty,
    _open_append,
    _read_csv_header,
    _safe_call,
    _seek_eof,
)


class CSVWriter(Writer):
    """
    CSV backend writer supporting two complementary formats.

    1) Long CSV (``metrics_long.csv``, on by default)
       - One row per metric key/value, fixed schema
         ``[step, wall_time, timestamp, key, value]``.
       - Lossless when different call sites log different keys (update
         metrics vs. episode returns).

    2) Wide CSV (``metrics.csv``, opt-in)
       - One row per logging call with a *frozen* column schema: taken from the
         first row for a new file, or from the existing header on resume.
       - Keys outside the frozen schema are ignored.

    Parameters
    ----------
    run_dir : str
        Directory where CSV files are created/appended.
    wide : bool, default=False
        Enable wide CSV output.
    long : bool, default=True
        Enable long CSV output.
    wide_filename, long_filename : str
        Filenames relative to ``run_dir``.

    Notes
    -----
    Both files are append-only so a resumed run continues where it left off.
    """

    def __init__(
        self,
        run_dir: str,
        *,
        wide: bool = False,
        long: bool = True,
        wide_filename: str = "metrics.csv",
        long_filename: str = "metrics_long.csv",
        encoding: str = "utf-8",
    ) -> None:
        self._encoding = encoding
        self._wide_path = os.path.join(run_dir, wide_filename)
        self._long_path = os.path.join(run_dir, long_filename)

        self._wide_file: Optional[TextIO] = (
            _open_append(self._wide_path, newline="", encoding=encoding) if wide else None
        )
        self._wide_writer: Optional[csv.DictWriter] = None
        self._wide_fieldnames: List[str] = []

        self._long_file: Optional[TextIO] = (
            _open_append(self._long_path, newline="", encoding=encoding) if long else None
        )
        self._long_writer: Optional[Any] = None

    @property
    def wide_path(self) -> str:
        return self._wide_path

    @property
    def long_path(self) -> str:
        return self._long_path

    # ---------------------------------------------------------------------
    # Writer interface
    # ---------------------------------------------------------------------
    def write(self, row: Mapping[str, float]) -> None:
        if self._wide_file is not None:
            self._write_wide(row)
        if self._long_file is not None:
            self._write_long(row)

    def flush(self) -> None:
        _safe_call(self._wide_file, "flush")
        _safe_call(self._long_file, "flush")

    def close(self) -> None:
        try:
            self.flush()
        finally:
            _safe_call(self._wide_file, "close")
            _safe_call(self._long_file, "close")
            self._wide_file = None
            self._long_file = None
            self._wide_writer = None
            self._long_writer = None

    # ---------------------------------------------------------------------
    # Wide CSV
    # ---------------------------------------------------------------------
    def _write_wide(self, row: Mapping[str, float]) -> None:
        assert self._wide_file is not None
        if self._wide_writer is None:
            self._prepare_wide_schema(first_row=row)

        out = {k: row.get(k, "") for k in self._wide_fieldnames}
        self._wide_writer.writerow(out)

    def _prepare_wide_schema(self, first_row: Mapping[str, float]) -> None:
        """
        Freeze the wide schema.

        A new/empty file takes ``first_row``'s keys and gets a header. A
        non-empty file (resume) reuses its existing header, read through a
        separate handle because the append handle sits at EOF.
        """
        assert self._wide_file is not None

        header = None if _file_is_empty(self._wide_file) else _read_csv_header(
            path=self._wide_path, encoding=self._encoding
        )

        if header:
            self._wide_fieldnames = [h for h in header if h]
            self._wide_writer = csv.DictWriter(self._wide_file, fieldnames=self._wide_fieldnames)
        else:
            self._wide_fieldnames = list(first_row.keys())
            self._wide_writer = csv.DictWriter(self._wide_file, fieldnames=self._wide_fieldnames)
            self._wide_writer.writeheader()
        _seek_eof(self._wide_file)

    # ---------------------------------------------------------------------
    # Long CSV
    # ---------------------------------------------------------------------
    def _write_long(self, row: Mapping[str, float]) -> None:
        assert self._long_file is not None
        if self._long_writer is None:
            self._long_writer = csv.writer(self._long_file)
            if _file_is_empty(self._long_file):
                self._long_writer.writerow([*META_KEYS, "key", "value"])
            _seek_eof(self._long_file)

        step, wall_time, timestamp = _extract_meta(row)
        for k, v in row.items():
            if k in META_KEYS:
                continue
            self._long_writer.writerow([step, wall_time, timestamp, str(k), str(v)])
