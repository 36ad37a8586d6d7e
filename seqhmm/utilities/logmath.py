# utilities/logmath.py
import math
from typing import Union

import torch

from seqhmm.constants import LOG_ZERO, DTYPE

Number = Union[float, torch.Tensor]


def logadd(a: Number, b: Number) -> Number:
    """
    Compute log(exp(a) + exp(b)) without leaving the log domain.

    Either argument at (or below) LOG_ZERO acts as the identity and the other one
    is returned unchanged. Tensors are combined elementwise with the same rule.
    """
    if torch.is_tensor(a) or torch.is_tensor(b):
        a = torch.as_tensor(a, dtype=DTYPE)
        b = torch.as_tensor(b, dtype=DTYPE)
        out = torch.logaddexp(a, b)
        out = torch.where(a <= LOG_ZERO, b, out)
        out = torch.where(b <= LOG_ZERO, a, out)
        return saturate(out)

    if a <= LOG_ZERO:
        return b
    if b <= LOG_ZERO:
        return a
    if math.isnan(a) or math.isnan(b):
        return float("nan")
    if a < b:
        a, b = b, a
    return a + math.log1p(math.exp(b - a))


def logsum(x: torch.Tensor, dim: int = -1, keepdim: bool = False) -> torch.Tensor:
    """Saturated log-sum-exp reduction; an all-LOG_ZERO slice reduces to LOG_ZERO."""
    x = saturate(x)
    peak = x.amax(dim=dim, keepdim=True)
    dead = peak <= LOG_ZERO
    shifted = torch.where(dead, torch.zeros_like(peak), peak)
    out = shifted + torch.log(torch.exp(x - shifted).sum(dim=dim, keepdim=True))
    out = torch.where(dead, torch.full_like(out, LOG_ZERO), out)
    if not keepdim:
        out = out.squeeze(dim)
    return saturate(out)


def saturate(x: torch.Tensor) -> torch.Tensor:
    """Clamp log values at LOG_ZERO so -inf and underflowed sums stay ordered."""
    return torch.nan_to_num(x, nan=float("nan"), neginf=LOG_ZERO).clamp_min(LOG_ZERO)


def safe_log(p: torch.Tensor) -> torch.Tensor:
    p = torch.as_tensor(p, dtype=DTYPE)
    return torch.where(p > 0, torch.log(p.clamp_min(1e-300)), torch.full_like(p, LOG_ZERO))


def log_normalize(x: torch.Tensor, dim: int = -1) -> torch.Tensor:
    norm = logsum(x, dim=dim, keepdim=True)
    out = torch.where(norm <= LOG_ZERO, torch.full_like(x, LOG_ZERO), x - norm)
    return saturate(torch.where(x <= LOG_ZERO, torch.full_like(x, LOG_ZERO), out))


def to_prob(x: torch.Tensor) -> torch.Tensor:
    """Exponentiate log values, mapping LOG_ZERO to an exact 0."""
    return torch.where(x <= LOG_ZERO, torch.zeros_like(x), torch.exp(x))
