from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Tuple, Union

import numpy as np
import torch as th
from tqdm.auto import tqdm


# =============================================================================
# Device / randomness
# =============================================================================
def resolve_device(device: Optional[Union[str, th.device]] = None) -> th.device:
    """
    Resolve the compute device.

    ``None`` or ``"auto"`` picks CUDA when available, else CPU.
    """
    if device is None or str(device).lower() == "auto":
        return th.device("cuda" if th.cuda.is_available() else "cpu")
    return th.device(device)


def make_generators(
    seed: Optional[int],
    device: Union[str, th.device] = "cpu",
) -> Tuple[np.random.Generator, th.Generator]:
    """
    Build the explicit RNG pair owned by an agent.

    Parameters
    ----------
    seed : Optional[int]
        Base seed. ``None`` draws fresh OS entropy for both generators.
    device : str or torch.device
        Device for the torch generator. Noise and sampling tensors are created
        on this device, so the generator must live there too.

    Returns
    -------
    rng : numpy.random.Generator
        CPU-side draws (epsilon coin flips, random actions, minibatch shuffles,
        replay sampling).
    generator : torch.Generator
        Device-side draws (noisy-layer noise, policy sampling).

    Notes
    -----
    Nothing here touches the global numpy / torch RNG state, so two agents in
    one process never share randomness.
    """
    rng = np.random.default_rng(seed)
    generator = th.Generator(device=th.device(device))
    if seed is None:
        generator.seed()
    else:
        generator.manual_seed(int(seed))
    return rng, generator


@contextmanager
def seeded_init(seed: Optional[int]) -> Iterator[None]:
    """
    Scope for deterministic weight initialization.

    Forks the CPU torch RNG, seeds it with `seed` (if given) and restores the
    previous global state on exit.
    """
    with th.random.fork_rng(devices=[]):
        if seed is not None:
            th.manual_seed(int(seed))
        yield


# =============================================================================
# Progress bar
# =============================================================================
def _make_pbar(**kwargs: Any) -> Any:
    """Create a tqdm progress bar (``dynamic_ncols`` on by default)."""
    kwargs.setdefault("dynamic_ncols", True)
    return tqdm(**kwargs)
