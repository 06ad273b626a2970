from __future__ import annotations

from typing import Any, Dict, Union
import os
import re

import torch as th


ARTIFACT_EXT = ".pt"


def _highest_version(directory: str, component: str) -> int:
    """
    Highest k among files named exactly ``{component}_{k}.pt`` in `directory`
    (0 if none). ``modelPolicy_old_7.pt`` or ``modelPolicy_x.pt`` do not count.
    """
    if not os.path.isdir(directory):
        return 0

    pattern = re.compile(rf"^{re.escape(component)}_(\d+){re.escape(ARTIFACT_EXT)}$")
    best = 0
    for fname in os.listdir(directory):
        m = pattern.match(fname)
        if m is not None:
            best = max(best, int(m.group(1)))
    return best


def next_versioned_path(directory: str, component: str) -> str:
    """Path for the next artifact of `component` (highest suffix + 1)."""
    k = _highest_version(directory, component) + 1
    return os.path.join(directory, f"{component}_{k}{ARTIFACT_EXT}")


def latest_versioned_path(directory: str, component: str) -> str:
    """
    Path of the newest artifact of `component`.

    Raises
    ------
    FileNotFoundError
        If `directory` holds no artifact for `component`.
    """
    k = _highest_version(directory, component)
    if k == 0:
        raise FileNotFoundError(f"no '{component}_<k>{ARTIFACT_EXT}' artifact in {directory!r}")
    return os.path.join(directory, f"{component}_{k}{ARTIFACT_EXT}")


def save_components(directory: str, components: Dict[str, Any]) -> Dict[str, str]:
    """
    Write one versioned artifact per component.

    Parameters
    ----------
    directory : str
        Target directory; created if missing.
    components : Dict[str, Any]
        component name -> torch-serializable payload (usually a state dict).

    Returns
    -------
    paths : Dict[str, str]
        component name -> written path.
    """
    os.makedirs(directory, exist_ok=True)
    paths: Dict[str, str] = {}
    for name, payload in components.items():
        path = next_versioned_path(directory, name)
        th.save(payload, path)
        paths[name] = path
    return paths


def load_component(directory: str, component: str, map_location: Union[str, th.device]) -> Any:
    """Load the newest artifact of `component` from `directory`."""
    return th.load(latest_versioned_path(directory, component), map_location=map_location)
