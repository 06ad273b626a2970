from __future__ import annotations

from .base_networks import (
    MLPFeaturesExtractor,
    NoisyLinear,
    NoisyMLPFeaturesExtractor,
    noisy_layers,
    reset_noise,
)
from .distributions import LOG_STD_MAX, LOG_STD_MIN, MultiHeadActionDistribution
from .policy_networks import ActorNetwork, RecurrentActorNetwork
from .q_networks import CategoricalQNetwork, DuelingMixin, QNetwork
from .value_networks import CriticNetwork

__all__ = [
    # building blocks
    "MLPFeaturesExtractor",
    "NoisyLinear",
    "NoisyMLPFeaturesExtractor",
    "noisy_layers",
    "reset_noise",
    "DuelingMixin",

    # value-based
    "QNetwork",
    "CategoricalQNetwork",

    # policy-gradient
    "ActorNetwork",
    "RecurrentActorNetwork",
    "CriticNetwork",
    "MultiHeadActionDistribution",
    "LOG_STD_MIN",
    "LOG_STD_MAX",
]
