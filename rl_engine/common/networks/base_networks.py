from __future__ import annotations

from typing import Optional, Type

import math
import torch as th
import torch.nn as nn
import torch.nn.functional as F

from ..errors import ConfigurationError


def _validate_width_depth(width: int, depth: int) -> None:
    if int(width) < 1:
        raise ConfigurationError(f"width must be >= 1, got {width}")
    if int(depth) < 1:
        raise ConfigurationError(f"depth must be >= 1, got {depth}")


# =============================================================================
# Feature Extractors
# =============================================================================

class MLPFeaturesExtractor(nn.Module):
    """
    Standard MLP feature extractor (shared trunk / encoder).

    Parameters
    ----------
    input_dim : int
        Input dimensionality (e.g., state dimension).
    width : int
        Width of every hidden layer.
    depth : int
        Number of (Linear -> Activation) blocks. Must be >= 1.
    activation_fn : type[nn.Module], optional
        Activation module class inserted after each ``nn.Linear`` layer
        (default: ``nn.ReLU``).

    Attributes
    ----------
    net : nn.Sequential
        Sequential stack: (Linear -> Activation) repeated.
    out_dim : int
        Output feature dimensionality (= ``width``).

    Raises
    ------
    ConfigurationError
        If width or depth is < 1.
    """

    def __init__(
        self,
        input_dim: int,
        width: int,
        depth: int,
        activation_fn: Type[nn.Module] = nn.ReLU,
    ) -> None:
        super().__init__()
        _validate_width_depth(width, depth)

        layers: list[nn.Module] = []
        prev_dim = int(input_dim)
        for _ in range(int(depth)):
            layers.append(nn.Linear(prev_dim, int(width)))
            layers.append(activation_fn())
            prev_dim = int(width)

        self.net = nn.Sequential(*layers)
        self.out_dim = int(width)

    def forward(self, x: th.Tensor) -> th.Tensor:
        """(B, input_dim) -> (B, width)"""
        return self.net(x)


# =============================================================================
# Noisy Networks
# =============================================================================

class NoisyLinear(nn.Module):
    """
    Factorized Noisy Linear layer (Fortunato et al.).

    This layer replaces deterministic Linear weights with:
        W = W_mu + W_sigma ⊙ eps_W
        b = b_mu + b_sigma ⊙ eps_b
    where eps is sampled from a factorized noise distribution.

    Parameters
    ----------
    in_features : int
        Input feature dimension.
    out_features : int
        Output feature dimension.
    std_init : float, optional
        Initial scale for sigma parameters (default: 0.5).

    Attributes
    ----------
    weight_mu, weight_sigma : nn.Parameter
        Shape ``(out_features, in_features)``.
    weight_epsilon : torch.Tensor (buffer)
        Current weight noise, same shape.
    bias_mu, bias_sigma : nn.Parameter
        Shape ``(out_features,)``.
    bias_epsilon : torch.Tensor (buffer)
        Current bias noise, shape ``(out_features,)``.

    Notes
    -----
    - Noise is resampled only by an explicit :meth:`reset_noise` call, which
      takes the owner's ``torch.Generator``.
    - In ``eval()`` mode the layer uses the mean weights only, so inference is
      deterministic.
    - ``forward()`` clones epsilons to avoid autograd version-counter errors
      if noise is reset between forwards.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        std_init: float = 0.5,
    ) -> None:
        super().__init__()
        self.in_features = int(in_features)
        self.out_features = int(out_features)
        self.std_init = float(std_init)

        self.weight_mu = nn.Parameter(th.empty(self.out_features, self.in_features))
        self.weight_sigma = nn.Parameter(th.empty(self.out_features, self.in_features))
        self.register_buffer("weight_epsilon", th.zeros(self.out_features, self.in_features))

        self.bias_mu = nn.Parameter(th.empty(self.out_features))
        self.bias_sigma = nn.Parameter(th.empty(self.out_features))
        self.register_buffer("bias_epsilon", th.zeros(self.out_features))

        self.reset_parameters()

    def reset_parameters(self) -> None:
        """
        Initialize mu and sigma parameters.

        Notes
        -----
        - mu is uniform in [-1/sqrt(in), 1/sqrt(in)]
        - sigma is constant scaled by std_init
        """
        mu_range = 1.0 / math.sqrt(self.in_features)
        with th.no_grad():
            self.weight_mu.uniform_(-mu_range, mu_range)
            self.weight_sigma.fill_(self.std_init / math.sqrt(self.in_features))

            self.bias_mu.uniform_(-mu_range, mu_range)
            self.bias_sigma.fill_(self.std_init / math.sqrt(self.out_features))

    @staticmethod
    def _scale_noise(
        size: int,
        device: th.device,
        dtype: th.dtype,
        generator: Optional[th.Generator],
    ) -> th.Tensor:
        """Factorized noise vector f(x) = sign(x) * sqrt(|x|), shape ``(size,)``."""
        x = th.randn(size, device=device, dtype=dtype, generator=generator)
        return x.sign() * x.abs().sqrt()

    def reset_noise(self, generator: Optional[th.Generator] = None) -> None:
        """Resample factorized noise for weights and biases."""
        device = self.weight_epsilon.device
        dtype = self.weight_epsilon.dtype

        eps_in = self._scale_noise(self.in_features, device, dtype, generator)
        eps_out = self._scale_noise(self.out_features, device, dtype, generator)

        with th.no_grad():
            self.weight_epsilon.copy_(eps_out.unsqueeze(1) * eps_in.unsqueeze(0))  # (out, in)
            self.bias_epsilon.copy_(eps_out)

    def forward(self, x: th.Tensor) -> th.Tensor:
        if not self.training:
            return F.linear(x, self.weight_mu, self.bias_mu)

        w_eps = self.weight_epsilon.detach().clone()
        b_eps = self.bias_epsilon.detach().clone()

        w = self.weight_mu + self.weight_sigma * w_eps
        b = self.bias_mu + self.bias_sigma * b_eps
        return F.linear(x, w, b)

    def extra_repr(self) -> str:
        return f"in_features={self.in_features}, out_features={self.out_features}, std_init={self.std_init}"


class NoisyMLPFeaturesExtractor(nn.Module):
    """
    MLP feature extractor with NoisyLinear layers.

    Architecture
    ------------
    - First layer: deterministic ``nn.Linear``
    - Remaining ``depth - 1`` layers: ``NoisyLinear``

    Parameters
    ----------
    input_dim : int
        Input dimensionality.
    width, depth : int
        Hidden width and number of blocks (>= 1).
    std_init : float, optional
        Sigma scale passed to every NoisyLinear.
    activation_fn : type[nn.Module], optional
        Activation module class (default: ``nn.ReLU``).
    """

    def __init__(
        self,
        input_dim: int,
        width: int,
        depth: int,
        std_init: float = 0.5,
        activation_fn: Type[nn.Module] = nn.ReLU,
    ) -> None:
        super().__init__()
        _validate_width_depth(width, depth)

        layers: list[nn.Module] = [nn.Linear(int(input_dim), int(width)), activation_fn()]
        for _ in range(int(depth) - 1):
            layers.append(NoisyLinear(int(width), int(width), std_init=std_init))
            layers.append(activation_fn())

        self.net = nn.Sequential(*layers)
        self.out_dim = int(width)

    def forward(self, x: th.Tensor) -> th.Tensor:
        return self.net(x)


def noisy_layers(module: nn.Module) -> list[NoisyLinear]:
    """All NoisyLinear submodules of `module`, in registration order."""
    return [m for m in module.modules() if isinstance(m, NoisyLinear)]


def reset_noise(module: nn.Module, generator: Optional[th.Generator] = None) -> int:
    """
    Resample noise in every NoisyLinear under `module`.

    Returns
    -------
    n : int
        Number of layers whose noise was resampled.
    """
    layers = noisy_layers(module)
    for layer in layers:
        layer.reset_noise(generator)
    return len(layers)
