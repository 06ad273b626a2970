from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import torch as th
from torch.distributions import Categorical, Normal


LOG_STD_MIN = -20.0
LOG_STD_MAX = 2.0


# =============================================================================
# Mixed discrete / continuous action distribution
# =============================================================================
class MultiHeadActionDistribution:
    """
    Product distribution over several independent action heads.

    An action vector is laid out as ``[d_0, ..., d_{H-1}, c_0, ..., c_{C-1}]``:
    one index per discrete head followed by one value per continuous
    dimension. Discrete indices travel as floats in that vector.

    Parameters
    ----------
    logits : Sequence[torch.Tensor]
        One (B, A_h) logits tensor per discrete head.
    mean : Optional[torch.Tensor]
        Gaussian means, shape (B, C). None when there is no continuous head.
    log_std : Optional[torch.Tensor]
        Gaussian log standard deviations, shape (B, C). Clamped to
        [LOG_STD_MIN, LOG_STD_MAX].

    Notes
    -----
    - ``log_prob`` sums over heads (independent factors).
    - ``entropy`` averages over heads so the entropy bonus does not scale with
      the number of heads.
    - Sampling takes an explicit ``torch.Generator``; torch.distributions
      objects are only used for the closed-form densities.
    """

    def __init__(
        self,
        logits: Sequence[th.Tensor],
        mean: Optional[th.Tensor] = None,
        log_std: Optional[th.Tensor] = None,
    ) -> None:
        if len(logits) == 0 and mean is None:
            raise ValueError("distribution needs at least one discrete or continuous head")
        if (mean is None) != (log_std is None):
            raise ValueError("mean and log_std must be given together")

        self.logits: List[th.Tensor] = list(logits)
        self.categoricals = [Categorical(logits=lg) for lg in self.logits]

        self.mean = mean
        self.log_std = None if log_std is None else th.clamp(log_std, LOG_STD_MIN, LOG_STD_MAX)
        self.normal = None if mean is None else Normal(self.mean, th.exp(self.log_std))

    @property
    def n_discrete(self) -> int:
        return len(self.logits)

    @property
    def n_continuous(self) -> int:
        return 0 if self.mean is None else int(self.mean.shape[-1])

    @property
    def action_dim(self) -> int:
        return self.n_discrete + self.n_continuous

    def _split(self, actions: th.Tensor) -> Tuple[th.Tensor, th.Tensor]:
        return actions[..., : self.n_discrete], actions[..., self.n_discrete:]

    def sample(self, generator: Optional[th.Generator] = None) -> th.Tensor:
        """Stochastic action vector, shape (B, action_dim)."""
        parts: List[th.Tensor] = []
        for cat in self.categoricals:
            idx = th.multinomial(cat.probs, 1, generator=generator)
            parts.append(idx.to(dtype=th.float32))
        if self.normal is not None:
            noise = th.randn(
                self.mean.shape,
                device=self.mean.device,
                dtype=self.mean.dtype,
                generator=generator,
            )
            parts.append(self.mean + self.normal.stddev * noise)
        return th.cat(parts, dim=-1)

    def mode(self) -> th.Tensor:
        """Deterministic action vector (argmax / mean), shape (B, action_dim)."""
        parts: List[th.Tensor] = [lg.argmax(dim=-1, keepdim=True).to(dtype=th.float32) for lg in self.logits]
        if self.mean is not None:
            parts.append(self.mean)
        return th.cat(parts, dim=-1)

    def log_prob(self, actions: th.Tensor) -> th.Tensor:
        """Joint log-probability of `actions` (B, action_dim), shape (B,)."""
        disc, cont = self._split(actions)
        total = th.zeros(actions.shape[:-1], device=actions.device, dtype=th.float32)
        for h, cat in enumerate(self.categoricals):
            total = total + cat.log_prob(disc[..., h].long())
        if self.normal is not None:
            total = total + self.normal.log_prob(cont).sum(dim=-1)
        return total

    def entropy(self) -> th.Tensor:
        """Entropy averaged over heads, shape (B,)."""
        ents: List[th.Tensor] = [cat.entropy() for cat in self.categoricals]
        if self.normal is not None:
            ents.extend(self.normal.entropy().unbind(dim=-1))
        return th.stack(ents, dim=-1).mean(dim=-1)
