# distributions/base.py
from __future__ import annotations
import copy
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

import torch

from seqhmm.constants import DTYPE, LOG_ZERO, HMMError
from seqhmm.utilities import constraints
from seqhmm.utilities.constraints import Report
from seqhmm.utilities.utils import as_sequence


class ObservationModel(ABC):
    """
    Per-state observation distribution.

    Every model has a fixed dimensionality and exposes the same contract:

        - log_prob(X): vectorized log-likelihood of each frame of a (T, D) sequence.
        - eval(x): likelihood of a single vector, as a log-likelihood or a probability
          depending on ``report``.
        - fit(X, weights): (weighted) maximum-likelihood update; returns False when the
          data cannot support an update, leaving the parameters untouched.
        - sample(generator): draw one observation vector.
        - duplicate(): deep copy with identical parameters.
    """

    def __init__(self, dimensionality: int, report: Union[str, Report] = Report.LOGLIK):
        if int(dimensionality) < 1:
            raise HMMError("dimensionality must be positive")
        self._dimensionality = int(dimensionality)
        self.report = constraints.resolve_report(report)

    @property
    def dimensionality(self) -> int:
        return self._dimensionality

    # ---------------- Evaluation ----------------

    @abstractmethod
    def log_prob(self, X: torch.Tensor) -> torch.Tensor:
        """Log-likelihood of every frame of ``X`` (shape (T, D)) as a tensor of shape (T,)."""

    def eval(self, x) -> float:
        x = torch.as_tensor(x, dtype=DTYPE).reshape(-1)
        constraints.check_dimension(x, self.dimensionality)
        lp = float(self.log_prob(x.unsqueeze(0))[0])
        return self._report(lp)

    def eval_sequence(self, X) -> float:
        """Joint likelihood of all frames, treating them as independent draws."""
        lp = float(self.log_prob(self._prepare(X)).sum().clamp_min(LOG_ZERO))
        return self._report(lp)

    def _report(self, lp: float) -> float:
        if self.report is Report.PROB:
            return 0.0 if lp <= LOG_ZERO else math.exp(lp)
        return lp

    # ---------------- Learning ----------------

    @abstractmethod
    def fit(self, X, weights: Optional[torch.Tensor] = None) -> bool:
        ...

    def floor_variance(self, min_var: float) -> None:
        pass

    # ---------------- Sampling / copying ----------------

    @abstractmethod
    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        ...

    def duplicate(self) -> "ObservationModel":
        return copy.deepcopy(self)

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        ...

    # ---------------- Helpers ----------------

    def _prepare(self, X) -> torch.Tensor:
        X = as_sequence(X)
        constraints.check_dimension(X, self.dimensionality, label="sequence")
        return X

    def _prepare_weights(self, weights, n_samples: int) -> torch.Tensor:
        if weights is None:
            return torch.ones(n_samples, dtype=DTYPE)
        return constraints.validate_weights(weights, n_samples)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(dimensionality={self.dimensionality})"
