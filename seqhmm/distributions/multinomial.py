# distributions/multinomial.py
import torch
from typing import Any, Dict, Optional, Union

from seqhmm.constants import DTYPE, HMMError, logger
from seqhmm.distributions.base import ObservationModel
from seqhmm.utilities.constraints import Report
from seqhmm.utilities.logmath import safe_log


class Multinomial(ObservationModel):
    """
    Categorical distribution over the symbols ``0 .. n_symbols - 1``.

    Observations are one integer symbol per frame, so the dimensionality is 1.
    ``prior`` is a pseudo-count added to every bin after a fit has normalized the
    counts, which keeps unseen symbols from collapsing to probability zero.
    """

    def __init__(
        self,
        n_symbols: int,
        bins: Optional[torch.Tensor] = None,
        prior: float = 0.0,
        report: Union[str, Report] = Report.LOGLIK,
    ):
        super().__init__(1, report)
        if int(n_symbols) < 1:
            raise HMMError("n_symbols must be positive")
        self.n_symbols = int(n_symbols)
        self.prior = float(prior)
        if bins is None:
            bins = torch.full((self.n_symbols,), 1.0 / self.n_symbols, dtype=DTYPE)
        self.bins = bins

    @property
    def bins(self) -> torch.Tensor:
        return self._bins

    @bins.setter
    def bins(self, value):
        value = torch.as_tensor(value, dtype=DTYPE).reshape(-1)
        if value.shape[0] != self.n_symbols:
            raise HMMError(f"bins must have {self.n_symbols} entries, got {value.shape[0]}")
        if (value < 0).any():
            raise HMMError("bin probabilities must be nonnegative")
        self._bins = value.clone()
        self._log_bins = safe_log(self._bins)

    @property
    def log_bins(self) -> torch.Tensor:
        return self._log_bins

    def set(self, symbol: int, p: float) -> None:
        """Set one bin without renormalizing; call ``normalize`` afterwards."""
        bins = self._bins.clone()
        bins[self._check_symbol(symbol)] = float(p)
        self.bins = bins

    def normalize(self) -> None:
        total = self._bins.sum()
        if total <= 0:
            raise HMMError("cannot normalize an all-zero multinomial")
        self.bins = self._bins / total

    def add_prior(self, prior: Optional[float] = None) -> None:
        prior = self.prior if prior is None else float(prior)
        if prior <= 0:
            return
        self.bins = self._bins + prior
        self.normalize()

    # ---------------- Evaluation ----------------

    def _symbols(self, X) -> torch.Tensor:
        X = self._prepare(X)[:, 0]
        if not torch.equal(X, torch.floor(X)):
            raise HMMError("multinomial observations must be integer symbols")
        if (X < 0).any() or (X >= self.n_symbols).any():
            raise HMMError(f"symbols must lie in [0, {self.n_symbols})")
        return X.long()

    def _check_symbol(self, symbol: int) -> int:
        symbol = int(symbol)
        if not 0 <= symbol < self.n_symbols:
            raise HMMError(f"symbol {symbol} outside [0, {self.n_symbols})")
        return symbol

    def log_prob(self, X: torch.Tensor) -> torch.Tensor:
        return self._log_bins[self._symbols(X)]

    # ---------------- Learning ----------------

    def fit(self, X, weights: Optional[torch.Tensor] = None) -> bool:
        symbols = self._symbols(X)
        w = self._prepare_weights(weights, symbols.shape[0])
        counts = torch.bincount(symbols, weights=w, minlength=self.n_symbols).to(DTYPE)
        total = counts.sum()
        if total <= 0:
            logger.debug("Multinomial.fit skipped: zero total weight")
            return False
        self.bins = counts / total
        self.add_prior()
        return True

    # ---------------- Sampling / copying ----------------

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        idx = torch.multinomial(self._bins, 1, generator=generator)
        return idx.to(DTYPE)

    def parameters(self) -> Dict[str, Any]:
        return {"bins": self._bins.clone(), "prior": self.prior}

    def __repr__(self) -> str:
        return f"Multinomial(n_symbols={self.n_symbols}, bins={[round(b, 4) for b in self._bins.tolist()]})"
