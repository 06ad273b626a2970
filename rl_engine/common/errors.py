from __future__ import annotations


class RLEngineError(Exception):
    """
    Base class for all errors raised by rl_engine.

    The hierarchy separates three failure families so that callers can decide
    how to react:

    - :class:`ConfigurationError`
        Programmer errors (bad options, size mismatches, wrong API for the
        agent kind). These are fatal and should not be retried.
    - :class:`DataError`
        Not enough experience yet, or a malformed batch. The caller may choose
        to accumulate more experience and try again.
    - :class:`NumericalError`
        Non-finite loss or gradient detected during an update. Raised *before*
        parameters are touched.

    Notes
    -----
    Subclasses additionally inherit from the matching builtin
    (ValueError / RuntimeError / FloatingPointError) so call sites that catch
    the builtin keep working.
    """


class ConfigurationError(RLEngineError, ValueError):
    """Invalid option values, mismatched sizes, missing environments, API misuse."""


class DataError(RLEngineError, RuntimeError):
    """Problems with stored or sampled experience."""


class InsufficientDataError(DataError):
    """Sampling more transitions than are currently stored."""


class BatchShapeError(DataError):
    """A batch, priority vector or transition has an unexpected shape."""


class NumericalError(RLEngineError, FloatingPointError):
    """Numerical failure during optimization."""


class NonFiniteLossError(NumericalError):
    """
    Loss (or pre-clip gradient norm) is NaN or +/-Inf.

    Parameters
    ----------
    name : str
        Name of the offending quantity (e.g. ``"loss/q"``).
    value : float
        Observed value.
    update : int
        Update counter of the core at detection time.
    """

    def __init__(self, name: str, value: float, update: int) -> None:
        self.name = str(name)
        self.value = float(value)
        self.update = int(update)
        super().__init__(f"non-finite {self.name}={self.value} at update {self.update}")


class CoordinatorHaltedError(RLEngineError, RuntimeError):
    """A previous step of the rollout coordinator failed; it refuses to continue."""


__all__ = [
    "RLEngineError",
    "ConfigurationError",
    "DataError",
    "InsufficientDataError",
    "BatchShapeError",
    "NumericalError",
    "NonFiniteLossError",
    "CoordinatorHaltedError",
]
