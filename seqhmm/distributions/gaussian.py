# distributions/gaussian.py
import torch
from torch.distributions import Normal
from typing import Any, Dict, Optional, Union

from seqhmm.constants import DTYPE, EPS, MIN_VARIANCE, HMMError, logger
from seqhmm.distributions.base import ObservationModel
from seqhmm.utilities.constraints import Report


class DiagonalGaussian(ObservationModel):
    """
    Gaussian with an independent mean and variance per axis.

    Args:
        n_features: Dimensionality of the observation vectors.
        mean: Initial means, shape (D,). Defaults to zeros.
        var: Initial variances, shape (D,). Defaults to ones.
        min_var: Floor applied to every variance after a fit.
        learn_variance: When False, fits only move the means.
        report: Whether ``eval`` returns log-likelihoods or probabilities.
    """

    def __init__(
        self,
        n_features: int,
        mean: Optional[torch.Tensor] = None,
        var: Optional[torch.Tensor] = None,
        min_var: float = MIN_VARIANCE,
        learn_variance: bool = True,
        report: Union[str, Report] = Report.LOGLIK,
    ):
        super().__init__(n_features, report)
        self.min_var = float(min_var)
        self.learn_variance = learn_variance
        self.fitted = mean is not None
        self._mean = torch.zeros(n_features, dtype=DTYPE)
        self._var = torch.ones(n_features, dtype=DTYPE)
        if mean is not None:
            self.mean = mean
        if var is not None:
            self.var = var

    # ---------------- Properties ----------------

    @property
    def mean(self) -> torch.Tensor:
        return self._mean

    @mean.setter
    def mean(self, value):
        value = torch.as_tensor(value, dtype=DTYPE).reshape(-1)
        if value.shape[0] != self.dimensionality:
            raise HMMError(f"mean must have {self.dimensionality} entries, got {value.shape[0]}")
        self._mean = value.clone()
        self.fitted = True

    @property
    def var(self) -> torch.Tensor:
        return self._var

    @var.setter
    def var(self, value):
        value = torch.as_tensor(value, dtype=DTYPE).reshape(-1)
        if value.shape[0] != self.dimensionality:
            raise HMMError(f"var must have {self.dimensionality} entries, got {value.shape[0]}")
        if (value <= 0).any():
            raise HMMError("variances must be positive")
        self._var = value.clone()

    # ---------------- Evaluation ----------------

    def log_prob(self, X: torch.Tensor) -> torch.Tensor:
        X = self._prepare(X)
        return Normal(self._mean, self._var.sqrt(), validate_args=False).log_prob(X).sum(-1)

    # ---------------- Learning ----------------

    def fit(self, X, weights: Optional[torch.Tensor] = None) -> bool:
        """
        Weighted maximum-likelihood update.

        Uses the two-pass weighted algorithm: the mean first, then the centred sums
        ``a = Σw·d²`` and ``b = Σw·d`` with the correction term ``b²/W`` and the
        reliability-weights denominator ``W - Σw²/W``. For unit weights this is the
        usual n-1 estimator. With a single effective sample the variance is reset to 1.

        Returns:
            False when the total weight is zero (parameters untouched), True otherwise.
        """
        X = self._prepare(X)
        w = self._prepare_weights(weights, X.shape[0])
        W = w.sum()
        if W <= 0:
            logger.debug(f"{self.__class__.__name__}.fit skipped: zero total weight")
            return False

        wc = w.unsqueeze(-1)
        mean = (wc * X).sum(0) / W
        self._mean = mean
        self.fitted = True
        if not self.learn_variance:
            return True

        d = X - mean
        a = (wc * d * d).sum(0)
        b = (wc * d).sum(0)
        denom = W - (w * w).sum() / W
        if denom <= EPS * W:
            var = torch.ones_like(mean)
        else:
            var = (a - b * b / W) / denom
        self._var = var.clamp_min(self.min_var)
        return True

    def floor_variance(self, min_var: float) -> None:
        self.min_var = float(min_var)
        self._var = self._var.clamp_min(self.min_var)

    # ---------------- Sampling / copying ----------------

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        return torch.normal(self._mean, self._var.sqrt(), generator=generator)

    def parameters(self) -> Dict[str, Any]:
        return {"mean": self._mean.clone(), "var": self._var.clone()}

    def __repr__(self) -> str:
        return (f"{self.__class__.__name__}(mean={self._mean.tolist()}, "
                f"var={self._var.tolist()})")


class Gaussian1D(DiagonalGaussian):
    """Univariate Gaussian; ``mu`` and ``sigma2`` expose the parameters as floats."""

    def __init__(
        self,
        mean: Optional[float] = None,
        var: Optional[float] = None,
        min_var: float = MIN_VARIANCE,
        learn_variance: bool = True,
        report: Union[str, Report] = Report.LOGLIK,
    ):
        super().__init__(
            1,
            mean=None if mean is None else torch.tensor([float(mean)], dtype=DTYPE),
            var=None if var is None else torch.tensor([float(var)], dtype=DTYPE),
            min_var=min_var,
            learn_variance=learn_variance,
            report=report,
        )

    @property
    def mu(self) -> float:
        return float(self._mean[0])

    @property
    def sigma2(self) -> float:
        return float(self._var[0])

