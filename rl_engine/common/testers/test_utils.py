from __future__ import annotations

from typing import Any, Callable, List, Optional, Sequence, Tuple

import math
import os
import shutil
import sys
import tempfile
import traceback

import numpy as np
import torch as th


class Color:
    RESET = "\033[0m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"


def colorize(text: str, color: str, *, enable: bool = True) -> str:
    if not enable:
        return text
    return f"{color}{text}{Color.RESET}"


# =============================================================================
# Mini test framework (runs standalone or under pytest)
# =============================================================================
class TestFailure(AssertionError):
    __test__ = False


class TestSkip(Exception):
    """Raised to mark a skipped test."""

    __test__ = False


def assert_true(cond: bool, msg: str = "") -> None:
    if not cond:
        raise TestFailure(msg or "assert_true failed")


def assert_eq(a: Any, b: Any, msg: str = "") -> None:
    if a != b:
        raise TestFailure(msg or f"assert_eq failed: {a!r} != {b!r}")


def assert_in(x: Any, xs: Any, msg: str = "") -> None:
    if x not in xs:
        raise TestFailure(msg or f"assert_in failed: {x!r} not in {xs!r}")


def assert_ge(a: float, b: float, msg: str = "") -> None:
    if float(a) < float(b):
        raise TestFailure(msg or f"assert_ge failed: {a} < {b}")


def assert_close(a: float, b: float, *, rtol: float = 1e-6, atol: float = 1e-8, msg: str = "assert_close failed") -> None:
    if not math.isclose(float(a), float(b), rel_tol=rtol, abs_tol=atol):
        raise TestFailure(f"{msg}: {a} vs {b} (rtol={rtol}, atol={atol})")


def assert_allclose(
    a: Any,
    b: Any,
    msg: str = "",
    *,
    rtol: float = 1e-6,
    atol: float = 1e-8,
) -> None:
    """
    Assert two numeric objects are close (supports scalar / ndarray / torch tensor).

    - torch.Tensor -> torch.allclose
    - array-like   -> np.allclose
    """
    if th.is_tensor(a) or th.is_tensor(b):
        ta = (a if th.is_tensor(a) else th.as_tensor(a)).detach().cpu().double()
        tb = (b if th.is_tensor(b) else th.as_tensor(b)).detach().cpu().double()
        if not bool(th.allclose(ta, tb, rtol=rtol, atol=atol)):
            raise TestFailure(msg or f"assert_allclose failed: {ta} != {tb}")
        return

    aa = np.asarray(a, dtype=np.float64)
    bb = np.asarray(b, dtype=np.float64)
    if not bool(np.allclose(aa, bb, rtol=rtol, atol=atol)):
        raise TestFailure(msg or f"assert_allclose failed: {aa} != {bb}")


def assert_raises(exc_type: type, fn: Callable[[], Any], *, msg: str = "assert_raises failed") -> Any:
    """Run `fn` and return the raised exception of type `exc_type`."""
    try:
        fn()
    except exc_type as e:
        return e
    except Exception as e:
        raise TestFailure(f"{msg}: expected {exc_type.__name__}, got {type(e).__name__}: {e}")
    raise TestFailure(f"{msg}: expected {exc_type.__name__} but no exception raised")


def _shape_of(x: Any) -> Tuple[int, ...]:
    if th.is_tensor(x):
        return tuple(int(d) for d in x.shape)
    return tuple(int(d) for d in np.asarray(x).shape)


def assert_shape(x: Any, shape: Sequence[int], msg: str = "") -> None:
    got = _shape_of(x)
    exp = tuple(int(s) for s in shape)
    if got != exp:
        raise TestFailure(msg or f"assert_shape failed: got {got}, expected {exp}")


def assert_finite(x: Any, msg: str = "") -> None:
    """Assert all values are finite (no NaN/Inf)."""
    if th.is_tensor(x):
        if not bool(th.isfinite(x).all().item()):
            raise TestFailure(msg or "assert_finite failed: tensor has NaN/Inf")
        return

    arr = np.asarray(x, dtype=np.float64)
    if not np.all(np.isfinite(arr)):
        raise TestFailure(msg or f"assert_finite failed: array has NaN/Inf, shape={arr.shape}")


def mk_tmp_dir(prefix: str = "rl_engine_tests_") -> str:
    return tempfile.mkdtemp(prefix=prefix)


def rm_tmp_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)


def assert_file_exists(path: str) -> None:
    if not os.path.exists(path):
        raise TestFailure(f"file not found: {path}")


def read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def params_snapshot(module: th.nn.Module) -> List[th.Tensor]:
    return [p.detach().clone() for p in module.parameters()]


def assert_params_equal(module: th.nn.Module, snapshot: Sequence[th.Tensor], msg: str = "") -> None:
    for p, q in zip(module.parameters(), snapshot):
        if not th.equal(p.detach(), q):
            raise TestFailure(msg or "parameters changed")


def _report(suite_name: str, passed: List[str], skipped: List[str], failed: List[Tuple[str, str]]) -> None:
    tag = f"[{suite_name}]"
    print()
    print(colorize(f"{tag} ---- results ----", Color.CYAN))
    print(colorize(f"{tag} ok={len(passed)} skipped={len(skipped)} failed={len(failed)}", Color.CYAN))
    for name, err in failed:
        print(colorize(f"{tag}   x {name}", Color.RED))
        print(colorize(f"{tag}       {err}", Color.RED))
    print()


def run_tests(
    tests: Sequence[Tuple[str, Callable[[], Any]]],
    *,
    argv: Optional[List[str]] = None,
    suite_name: str = "tests",
) -> int:
    """
    Execute ``(name, fn)`` pairs in order and print a per-test status line.

    Parameters
    ----------
    tests : Sequence[Tuple[str, Callable[[], Any]]]
        Named zero-argument callables.
    argv : Optional[List[str]]
        Command-line arguments without the program name (defaults to
        ``sys.argv[1:]``). The first one, when given, keeps only tests whose
        name contains it.
    suite_name : str
        Tag printed in front of every summary line.

    Returns
    -------
    int
        Process exit code: 0 on success, 1 when a test failed, 2 when the
        name filter selected nothing.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    pattern = args[0] if args else ""
    chosen = [(name, fn) for name, fn in tests if pattern in name]
    if not chosen:
        print(f"[{suite_name}] nothing matches {pattern!r}")
        return 2

    suffix = f", filter {pattern!r}" if pattern else ""
    print(f"[{suite_name}] {len(chosen)} test(s){suffix}")

    passed: List[str] = []
    skipped: List[str] = []
    failed: List[Tuple[str, str]] = []
    for name, fn in chosen:
        try:
            fn()
        except TestSkip as exc:
            skipped.append(name)
            print(colorize(f"  skip  {name} ({exc})", Color.YELLOW))
            continue
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            failed.append((name, reason))
            print(colorize(f"  FAIL  {name}: {reason}", Color.RED))
            traceback.print_exc()
            continue
        passed.append(name)
        print(colorize(f"  ok    {name}", Color.GREEN))

    _report(suite_name, passed, skipped, failed)
    return 1 if failed else 0
