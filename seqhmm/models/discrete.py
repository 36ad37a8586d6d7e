# models/discrete.py
import torch
from typing import Optional, Union

from seqhmm.constants import DTYPE
from seqhmm.distributions import Multinomial
from seqhmm.models.base import HiddenMarkovModel
from seqhmm.utilities.constraints import Transitions

SYMBOL_PRIOR = 0.01


class DiscreteHMM(HiddenMarkovModel):
    """HMM over integer symbol sequences with one Multinomial per state."""

    def __init__(
        self,
        n_states: int,
        n_symbols: int,
        transitions: Union[str, Transitions] = Transitions.LEFT_TO_RIGHT,
        max_skip: int = 2,
        symbol_prior: float = SYMBOL_PRIOR,
        seed: Optional[int] = None,
        **overrides,
    ):
        self.n_symbols = int(n_symbols)
        states = [Multinomial(self.n_symbols, prior=symbol_prior) for _ in range(n_states)]
        super().__init__(states, transitions=transitions, max_skip=max_skip, seed=seed, **overrides)

    @property
    def emission_probs(self) -> torch.Tensor:
        """(N, n_symbols) matrix of per-state symbol probabilities."""
        return torch.stack([s.bins for s in self.states]).to(DTYPE)

    @emission_probs.setter
    def emission_probs(self, values):
        values = torch.as_tensor(values, dtype=DTYPE).reshape(self.n_states, self.n_symbols)
        for s, row in zip(self.states, values):
            s.bins = row / row.sum()
