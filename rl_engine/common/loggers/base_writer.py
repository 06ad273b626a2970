from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Mapping


class Writer(ABC):
    """
    Abstract base class for metric writer backends.

    A writer consumes flat rows of scalar metrics produced by
    :class:`~rl_engine.common.loggers.logger.Logger` and owns its own
    serialization and persistence.

    Contract
    --------
    - `write(row)` accepts a mapping of metric names to floats. Rows carry the
      meta keys ``step``, ``wall_time`` and ``timestamp``.
    - `flush()` and `close()` should be best-effort and idempotent.
    - Implementations raise on write failure; the Logger decides whether that
      is fatal (``strict``) or recorded.
    """

    @abstractmethod
    def write(self, row: Mapping[str, float]) -> None:
        raise NotImplementedError

    @abstractmethod
    def flush(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError
