# distributions/mixture.py
import torch
import numpy as np
from functools import partial
from sklearn.cluster import KMeans
from typing import Any, Callable, Dict, List, Optional, Union

from seqhmm.constants import DTYPE, LOG_ZERO, MIN_VARIANCE, HMMError, logger
from seqhmm.distributions.base import ObservationModel
from seqhmm.distributions.gaussian import DiagonalGaussian
from seqhmm.distributions.multinomial import Multinomial
from seqhmm.utilities.constraints import Report
from seqhmm.utilities.logmath import logsum


class GaussianMixture(ObservationModel):
    """
    Weighted mixture of K Gaussian components.

    The component weights are held in a Multinomial and the likelihood is combined
    in the log domain: ``log p(x) = logadd_k(log w_k + log p_k(x))``. Fitting runs an
    inner EM loop; components that have never been fitted are first seeded with a
    sample-weighted k-means partition of the data.

    Args:
        n_features: Dimensionality of the observations.
        n_components: Number of mixture components K.
        component_factory: Callable building one blank component from ``n_features``.
            Defaults to a DiagonalGaussian with the same ``min_var``.
        min_var: Variance floor handed to the default components.
        max_iter: Cap on inner EM iterations per fit.
        tol: Inner EM stops once the relative change of the weighted log-likelihood
            falls below this value.
        seed: Seed for the k-means initialization.
    """

    def __init__(
        self,
        n_features: int,
        n_components: int,
        component_factory: Optional[Callable[[int], ObservationModel]] = None,
        min_var: float = MIN_VARIANCE,
        max_iter: int = 200,
        tol: float = 1e-5,
        seed: Optional[int] = None,
        report: Union[str, Report] = Report.LOGLIK,
    ):
        super().__init__(n_features, report)
        if int(n_components) < 1:
            raise HMMError("n_components must be positive")
        self.min_var = float(min_var)
        self.max_iter = int(max_iter)
        self.tol = float(tol)
        self.seed = seed
        self._factory = component_factory or partial(DiagonalGaussian, min_var=self.min_var)
        self.weights = Multinomial(int(n_components))
        self.components: List[ObservationModel] = [self._factory(n_features) for _ in range(int(n_components))]
        for c in self.components:
            if c.dimensionality != n_features:
                raise HMMError("component dimensionality does not match the mixture")
        self.fitted = False
        self.n_iter_ = 0

    @property
    def n_components(self) -> int:
        return len(self.components)

    # ---------------- Evaluation ----------------

    def _joint_log_prob(self, X: torch.Tensor) -> torch.Tensor:
        """log w_k + log p_k(x_t) for every component and frame, shape (K, T)."""
        comp = torch.stack([c.log_prob(X) for c in self.components])
        return (self.weights.log_bins.unsqueeze(-1) + comp).clamp_min(LOG_ZERO)

    def log_prob(self, X: torch.Tensor) -> torch.Tensor:
        X = self._prepare(X)
        return logsum(self._joint_log_prob(X), dim=0)

    # ---------------- Learning ----------------

    def fit(self, X, weights: Optional[torch.Tensor] = None) -> bool:
        X = self._prepare(X)
        w = self._prepare_weights(weights, X.shape[0])
        if w.sum() <= 0:
            logger.debug("GaussianMixture.fit skipped: zero total weight")
            return False
        if not self.fitted:
            self._init_components(X, w)

        prev_ll = None
        it = 0
        for it in range(1, self.max_iter + 1):
            joint = self._joint_log_prob(X)
            frame_ll = logsum(joint, dim=0)
            ll = float((w * frame_ll).sum())
            if prev_ll is not None and abs(ll - prev_ll) <= self.tol * abs(prev_ll):
                break
            prev_ll = ll
            resp = torch.exp(joint - frame_ll.unsqueeze(0)) * w.unsqueeze(0)
            self._maximize(X, resp)
        self.n_iter_ = it
        self.fitted = True
        return True

    def _maximize(self, X: torch.Tensor, resp: torch.Tensor) -> None:
        mass = resp.sum(-1)
        for k, c in enumerate(self.components):
            if not c.fit(X, resp[k]):
                logger.debug(f"GaussianMixture: component {k} received no weight")
        self.weights.bins = mass / mass.sum()

    def _init_components(self, X: torch.Tensor, w: torch.Tensor) -> None:
        active = w > 0
        Xa, wa = X[active], w[active]
        n_clusters = min(self.n_components, int(torch.unique(Xa, dim=0).shape[0]))
        km = KMeans(n_clusters=n_clusters, n_init=10, random_state=self.seed)
        labels = torch.as_tensor(km.fit_predict(Xa.numpy(), sample_weight=wa.numpy()), dtype=torch.long)

        mass = torch.zeros(self.n_components, dtype=DTYPE)
        for k, c in enumerate(self.components):
            wk = wa * (labels == k).to(DTYPE)
            if wk.sum() > 0 and c.fit(Xa, wk):
                mass[k] = wk.sum()
            else:
                c.fit(Xa, wa)
                mass[k] = wa.sum() / self.n_components
        self.weights.bins = mass / mass.sum()
        logger.debug(f"GaussianMixture: k-means seeded {n_clusters} of {self.n_components} components")

    def floor_variance(self, min_var: float) -> None:
        self.min_var = float(min_var)
        for c in self.components:
            c.floor_variance(min_var)

    def remove_component(self, k: int) -> "GaussianMixture":
        """Return a copy of this mixture without component ``k``; weights are renormalized."""
        if self.n_components == 1:
            raise HMMError("cannot remove the only component of a mixture")
        if not 0 <= k < self.n_components:
            raise HMMError(f"component index {k} out of range")
        out = self.duplicate()
        keep = [i for i in range(self.n_components) if i != k]
        out.components = [out.components[i] for i in keep]
        bins = self.weights.bins[keep]
        out.weights = Multinomial(len(keep), bins=bins / bins.sum() if bins.sum() > 0 else None)
        return out

    # ---------------- Sampling / copying ----------------

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        k = int(self.weights.sample(generator).item())
        return self.components[k].sample(generator)

    def parameters(self) -> Dict[str, Any]:
        return {"weights": self.weights.bins.clone(),
                "components": [c.parameters() for c in self.components]}

    def __repr__(self) -> str:
        return (f"GaussianMixture(n_features={self.dimensionality}, n_components={self.n_components}, "
                f"weights={np.round(self.weights.bins.numpy(), 4).tolist()})")
