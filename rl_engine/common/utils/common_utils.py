from __future__ import annotations

from typing import Any, Optional, Union
import math

import numpy as np
import torch as th

from ..errors import BatchShapeError


# =============================================================================
# NumPy / Torch conversion utilities
# =============================================================================
def _to_numpy(x: Any, *, ensure_1d: bool = False) -> np.ndarray:
    """
    Convert an input to a NumPy array on CPU.

    Parameters
    ----------
    x : Any
        ``np.ndarray``, ``torch.Tensor``, Python scalar or (nested) sequence.
    ensure_1d : bool, default=False
        If True, 0-d results are promoted to shape (1,).

    Returns
    -------
    arr : np.ndarray
        Array on CPU. Dtype is not forced.
    """
    if isinstance(x, np.ndarray):
        arr = x
    elif th.is_tensor(x):
        arr = x.detach().cpu().numpy()
    else:
        arr = np.asarray(x)

    if ensure_1d and arr.shape == ():
        arr = arr.reshape(1)
    return arr


def _to_tensor(
    x: Any,
    device: Union[str, th.device],
    dtype: th.dtype = th.float32,
) -> th.Tensor:
    """
    Convert input to a torch.Tensor on the given device and dtype.

    NumPy arrays go through ``torch.from_numpy`` first (shared CPU memory) and
    are then moved, so a CPU round-trip costs no copy.
    """
    dev = th.device(device)
    if th.is_tensor(x):
        return x.to(device=dev, dtype=dtype)
    if isinstance(x, np.ndarray):
        return th.from_numpy(np.ascontiguousarray(x)).to(device=dev, dtype=dtype)
    return th.as_tensor(x, dtype=dtype, device=dev)


def _to_scalar(x: Any) -> Optional[float]:
    """
    Convert a scalar-like input to a Python float.

    Returns None for anything holding more than one element, so callers never
    silently drop data.
    """
    if th.is_tensor(x):
        if x.numel() == 1:
            return float(x.detach().cpu().item())
        return None

    if isinstance(x, (bool, int, float, np.number)):
        return float(x)

    try:
        arr = np.asarray(x)
    except (TypeError, ValueError):
        return None
    if arr.size == 1 and np.issubdtype(arr.dtype, np.number):
        return float(arr.reshape(-1)[0])
    return None


def _is_finite(x: Any) -> bool:
    """True iff every element of a scalar / array / tensor is finite."""
    if th.is_tensor(x):
        return bool(th.isfinite(x).all().item())
    v = _to_scalar(x)
    if v is not None:
        return math.isfinite(v)
    return bool(np.all(np.isfinite(np.asarray(x, dtype=np.float64))))


# =============================================================================
# Batch formatting
# =============================================================================
def _as_state_batch(states: Any, state_size: int) -> np.ndarray:
    """
    Stack a batch of states into a float32 array of shape (B, state_size).

    Parameters
    ----------
    states : Any
        Sequence of per-environment states or an array already shaped (B, D).
        A single 1D state is accepted and promoted to a batch of one.
    state_size : int
        Expected flat state dimension.

    Raises
    ------
    BatchShapeError
        If the stacked array does not match (B, state_size) or B == 0.
    """
    if isinstance(states, np.ndarray) or th.is_tensor(states):
        arr = _to_numpy(states).astype(np.float32, copy=False)
    else:
        rows = [_to_numpy(s).reshape(-1) for s in states]
        if len(rows) == 0:
            raise BatchShapeError("empty state batch")
        try:
            arr = np.stack(rows).astype(np.float32, copy=False)
        except ValueError as e:
            raise BatchShapeError(f"states have inconsistent shapes: {e}") from e
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape[0] == 0 or arr.shape[1] != int(state_size):
        raise BatchShapeError(f"expected states of shape (B, {state_size}), got {arr.shape}")
    return arr
