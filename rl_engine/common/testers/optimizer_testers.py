from __future__ import annotations

import math
from typing import Any, Callable, List, Tuple

import torch as th
import torch.nn as nn

from rl_engine.common.errors import ConfigurationError
from rl_engine.common.optimizers import (
    build_optimizer,
    build_scheduler,
    clip_grad_norm,
    load_optimizer_state_dict,
    load_scheduler_state_dict,
    optimizer_state_dict,
    scheduler_state_dict,
)
from rl_engine.common.testers.test_utils import (
    assert_close,
    assert_eq,
    assert_raises,
    assert_true,
    run_tests,
)


def _toy_model(seed: int = 0) -> nn.Module:
    th.manual_seed(seed)
    return nn.Sequential(nn.Linear(4, 8), nn.ReLU(), nn.Linear(8, 2))


def _step_once(model: nn.Module, opt: th.optim.Optimizer) -> None:
    opt.zero_grad(set_to_none=True)
    loss = model(th.randn(16, 4)).pow(2).mean()
    loss.backward()
    opt.step()


def _lr(opt: th.optim.Optimizer) -> float:
    return float(opt.param_groups[0]["lr"])


# =============================================================================
# Optimizers
# =============================================================================
def test_build_optimizer_variants():
    expected = {
        "adam": th.optim.Adam,
        "AdamW": th.optim.AdamW,
        "adam_weight_decay": th.optim.AdamW,
        "sgd": th.optim.SGD,
        "rms-prop": th.optim.RMSprop,
        "radam": th.optim.RAdam,
    }
    for name, cls in expected.items():
        model = _toy_model()
        opt = build_optimizer(model.parameters(), name=name, lr=1e-3, momentum=0.0)
        assert_true(isinstance(opt, cls), f"{name} -> {type(opt).__name__}")
        assert_close(_lr(opt), 1e-3)
        _step_once(model, opt)


def test_build_optimizer_param_groups():
    model = _toy_model()
    groups = [
        {"params": model[0].parameters(), "lr": 1e-2},
        {"params": model[2].parameters()},
    ]
    opt = build_optimizer(groups, name="adam", lr=1e-4)
    assert_close(opt.param_groups[0]["lr"], 1e-2)
    assert_close(opt.param_groups[1]["lr"], 1e-4)


def test_build_optimizer_rejects_bad_args():
    params = lambda: _toy_model().parameters()
    assert_raises(ConfigurationError, lambda: build_optimizer(params(), lr=0.0))
    assert_raises(ConfigurationError, lambda: build_optimizer(params(), weight_decay=-1.0))
    assert_raises(ConfigurationError, lambda: build_optimizer(params(), eps=0.0))
    assert_raises(ConfigurationError, lambda: build_optimizer(params(), betas=(0.9, 1.0)))
    assert_raises(ConfigurationError, lambda: build_optimizer(params(), name="sgd", momentum=-0.1))
    assert_raises(ConfigurationError, lambda: build_optimizer(params(), name="lion"))


def test_clip_grad_norm_returns_pre_clip_norm():
    w = nn.Parameter(th.zeros(2))
    w.grad = th.tensor([3.0, 4.0])
    total = clip_grad_norm([w], max_norm=1.0)
    assert_close(total, 5.0, atol=1e-6)
    assert_close(float(w.grad.norm()), 1.0, atol=1e-5)

    w.grad = th.tensor([3.0, 4.0])
    assert_close(clip_grad_norm([w], max_norm=0.0), 5.0, atol=1e-6)
    assert_close(float(w.grad.norm()), 5.0, atol=1e-6, msg="max_norm <= 0 only measures")

    assert_eq(clip_grad_norm([nn.Parameter(th.zeros(3))], max_norm=1.0), 0.0)

    w.grad = th.tensor([float("inf"), 0.0])
    assert_true(not math.isfinite(clip_grad_norm([w], max_norm=1.0)))


def test_optimizer_state_roundtrip():
    model = _toy_model()
    opt = build_optimizer(model.parameters(), name="adam", lr=1e-3)
    _step_once(model, opt)
    state = optimizer_state_dict(opt)

    clone = _toy_model()
    clone.load_state_dict(model.state_dict())
    opt2 = build_optimizer(clone.parameters(), name="adam", lr=5e-2)
    load_optimizer_state_dict(opt2, state)
    assert_close(_lr(opt2), 1e-3)

    th.manual_seed(7)
    _step_once(model, opt)
    th.manual_seed(7)
    _step_once(clone, opt2)
    for p, q in zip(model.parameters(), clone.parameters()):
        assert_true(th.allclose(p, q, atol=1e-7), "restored optimizer must continue identically")


# =============================================================================
# Schedulers
# =============================================================================
def test_scheduler_none_and_constant():
    opt = build_optimizer(_toy_model().parameters(), lr=1e-3)
    assert_true(build_scheduler(opt, name="none") is None)
    assert_true(build_scheduler(opt, name="constant") is None)
    assert_eq(scheduler_state_dict(None), {})
    load_scheduler_state_dict(None, {"x": 1})


def test_cyclic_scheduler_range():
    model = _toy_model()
    opt = build_optimizer(model.parameters(), name="adam", lr=1e-3)
    sched = build_scheduler(opt, name="cyclic", step_size_up=4, step_size_down=4)
    assert_close(_lr(opt), 0.5e-3, rtol=1e-6)

    seen = []
    for _ in range(8):
        _step_once(model, opt)
        sched.step()
        seen.append(_lr(opt))
    assert_close(max(seen), 2e-3, rtol=1e-6)
    assert_close(seen[-1], 0.5e-3, rtol=1e-6)


def test_linear_and_cosine_need_total_steps():
    opt = build_optimizer(_toy_model().parameters(), lr=1.0, name="sgd")
    for name in ("linear", "cosine"):
        assert_raises(ConfigurationError, lambda: build_scheduler(opt, name=name))

    model = _toy_model()
    opt = build_optimizer(model.parameters(), lr=1.0, name="sgd")
    sched = build_scheduler(opt, name="linear", total_steps=10, min_lr_ratio=0.0)
    for _ in range(10):
        _step_once(model, opt)
        sched.step()
    assert_close(_lr(opt), 0.0, atol=1e-9)


def test_scheduler_rejects_bad_args():
    opt = build_optimizer(_toy_model().parameters(), lr=1e-3)
    assert_raises(ConfigurationError, lambda: build_scheduler(opt, name="poly"))
    assert_raises(ConfigurationError, lambda: build_scheduler(opt, name="step", step_size=0))
    assert_raises(ConfigurationError, lambda: build_scheduler(opt, name="exponential", gamma=0.0))
    assert_raises(ConfigurationError, lambda: build_scheduler(opt, name="cyclic", base_lr_ratio=3.0, max_lr_ratio=2.0))
    assert_raises(ConfigurationError, lambda: build_scheduler(None, name="cyclic"))


def test_scheduler_state_roundtrip():
    model = _toy_model()
    opt = build_optimizer(model.parameters(), lr=1e-2, name="sgd")
    sched = build_scheduler(opt, name="step", step_size=2, gamma=0.5)
    for _ in range(5):
        _step_once(model, opt)
        sched.step()
    state = scheduler_state_dict(sched)

    opt2 = build_optimizer(_toy_model().parameters(), lr=1e-2, name="sgd")
    sched2 = build_scheduler(opt2, name="step", step_size=2, gamma=0.5)
    load_scheduler_state_dict(sched2, state)
    assert_eq(sched2.last_epoch, sched.last_epoch)
    assert_close(sched2.get_last_lr()[0], sched.get_last_lr()[0])


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    # optimizers
    ("optimizer_variants", test_build_optimizer_variants),
    ("optimizer_param_groups", test_build_optimizer_param_groups),
    ("optimizer_bad_args", test_build_optimizer_rejects_bad_args),
    ("clip_grad_norm", test_clip_grad_norm_returns_pre_clip_norm),
    ("optimizer_state_roundtrip", test_optimizer_state_roundtrip),

    # schedulers
    ("scheduler_none_constant", test_scheduler_none_and_constant),
    ("cyclic_range", test_cyclic_scheduler_range),
    ("linear_cosine_total_steps", test_linear_and_cosine_need_total_steps),
    ("scheduler_bad_args", test_scheduler_rejects_bad_args),
    ("scheduler_state_roundtrip", test_scheduler_state_roundtrip),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="optimizers")


if __name__ == "__main__":
    raise SystemExit(main())
