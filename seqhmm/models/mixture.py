# models/mixture.py
from typing import Optional, Union

from seqhmm.constants import MIN_VARIANCE
from seqhmm.distributions import GaussianMixture
from seqhmm.models.base import HiddenMarkovModel
from seqhmm.utilities.constraints import Transitions


class GaussianMixtureHMM(HiddenMarkovModel):
    """HMM whose states are K-component diagonal Gaussian mixtures."""

    def __init__(
        self,
        n_states: int,
        n_features: int,
        n_components: int,
        transitions: Union[str, Transitions] = Transitions.LEFT_TO_RIGHT,
        max_skip: int = 2,
        min_var: float = MIN_VARIANCE,
        seed: Optional[int] = None,
        **overrides,
    ):
        self.n_components = int(n_components)
        states = [
            GaussianMixture(n_features, self.n_components, min_var=min_var, seed=seed)
            for _ in range(n_states)
        ]
        super().__init__(states, transitions=transitions, max_skip=max_skip, seed=seed,
                         min_var=min_var, **overrides)
