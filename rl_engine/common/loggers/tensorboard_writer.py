from __future__ import annotations

from typing import Mapping

from torch.utils.tensorboard import SummaryWriter

from .base_writer import Writer
from ..utils.logger_utils import _get_step, _split_meta


class TensorBoardWriter(Writer):
    """
    TensorBoard writer backend for scalar metrics.

    Each non-meta key of a row becomes one ``add_scalar`` call with
    ``global_step = row["step"]``.

    Parameters
    ----------
    run_dir : str
        Directory where TensorBoard event files are written.
    flush_secs : int, default=30
        Forwarded to ``SummaryWriter``.
    """

    def __init__(self, run_dir: str, *, flush_secs: int = 30) -> None:
        self._tb = SummaryWriter(log_dir=run_dir, flush_secs=int(flush_secs))

    def write(self, row: Mapping[str, float]) -> None:
        step = _get_step(row)
        _, metrics = _split_meta(row)
        for k, v in metrics.items():
            self._tb.add_scalar(str(k), float(v), global_step=int(step))

    def flush(self) -> None:
        self._tb.flush()

    def close(self) -> None:
        self._tb.close()
