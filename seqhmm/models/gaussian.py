# models/gaussian.py
import torch
import numpy as np
from sklearn.cluster import KMeans
from typing import Optional, Union

from seqhmm.constants import DTYPE, MIN_VARIANCE, HMMError, logger
from seqhmm.distributions import DiagonalGaussian, Gaussian1D
from seqhmm.models.base import HiddenMarkovModel
from seqhmm.utilities.constraints import Transitions


class GaussianHMM(HiddenMarkovModel):
    """
    HMM with one axis-independent Gaussian per state.

    Features:
        - Gaussian1D states for scalar sequences, DiagonalGaussian otherwise
        - Full or left-right transitions
        - Optional k-means initialization of the state means
        - Variance floor and fixed-variance training via ``update_var``
    """

    def __init__(
        self,
        n_states: int,
        n_features: int = 1,
        transitions: Union[str, Transitions] = Transitions.FULL,
        max_skip: int = 2,
        min_var: float = MIN_VARIANCE,
        update_var: bool = True,
        seed: Optional[int] = None,
        **overrides,
    ):
        if n_features == 1:
            states = [Gaussian1D(min_var=min_var) for _ in range(n_states)]
        else:
            states = [DiagonalGaussian(n_features, min_var=min_var) for _ in range(n_states)]
        super().__init__(
            states,
            transitions=transitions,
            max_skip=max_skip,
            seed=seed,
            min_var=min_var,
            update_var=update_var,
            **overrides,
        )

    @property
    def means(self) -> torch.Tensor:
        return torch.stack([s.mean for s in self.states])

    @means.setter
    def means(self, values):
        values = torch.as_tensor(values, dtype=DTYPE).reshape(self.n_states, -1)
        for s, m in zip(self.states, values):
            s.mean = m

    @property
    def variances(self) -> torch.Tensor:
        return torch.stack([s.var for s in self.states])

    @variances.setter
    def variances(self, values):
        values = torch.as_tensor(values, dtype=DTYPE).reshape(self.n_states, -1)
        for s, v in zip(self.states, values):
            s.var = v

    def init_kmeans(self, sequences) -> "GaussianHMM":
        """
        Seed the states from a k-means partition of all frames.

        Clusters are ordered by the mean of their first feature so that state indices
        follow the data. The transition table is reset to its default.
        """
        obs = self._observations(sequences)
        X = obs.as_batch()
        if X.shape[0] < self.n_states:
            raise HMMError(f"k-means needs at least {self.n_states} frames, got {X.shape[0]}")
        km = KMeans(n_clusters=self.n_states, n_init=10, random_state=self.seed % (2**32))
        labels = torch.as_tensor(km.fit_predict(X.numpy()), dtype=torch.long)
        order = np.argsort(km.cluster_centers_[:, 0])
        for state, k in zip(self.states, order.tolist()):
            members = X[labels == k]
            if not state.fit(members):
                logger.warning(f"k-means init: cluster {k} is empty")
        self.topology.reset()
        self.floor_variance()
        return self
