import torch
from enum import Enum
from typing import Optional, Union

from seqhmm.constants import DTYPE, LOG_ZERO, HMMError, DimensionMismatchError, TopologyError, logger
from seqhmm.utilities.logmath import logsum


class Transitions(Enum):
    FULL = "full"
    LEFT_TO_RIGHT = "left-to-right"

class Report(Enum):
    LOGLIK = "loglik"
    PROB = "prob"


def _resolve_type(val, enum_type) -> str:
    if isinstance(val, enum_type): return val.value
    if isinstance(val, str):
        valid = {e.value for e in enum_type}
        if val not in valid:
            logger.error(f"Unknown {enum_type.__name__} value: {val}")
            raise HMMError(f"Expected one of {sorted(valid)}, got {val!r}")
        return val
    logger.error(f"Invalid type for _resolve_type: {type(val)}")
    raise HMMError(f"Expected {enum_type} or str, got {type(val)}")

# -------------------------
# Validation
# -------------------------
def is_row_stochastic(log_rows: torch.Tensor, atol: float = 1e-6, mask: Optional[torch.Tensor] = None) -> bool:
    """Check that each selected row of a log table sums to one in probability space."""
    if torch.isnan(log_rows).any():
        logger.error("Transition table invalid: NaN entries")
        return False
    sums = torch.exp(logsum(log_rows, dim=-1))
    if mask is not None:
        sums = sums[mask]
    if not torch.allclose(sums, torch.ones_like(sums), atol=atol):
        logger.error(f"Transition table invalid: row sums {sums.tolist()}")
        return False
    return True

def validate_log_rows(log_rows: torch.Tensor, n_states: int, width: Optional[int] = None) -> torch.Tensor:
    log_rows = torch.as_tensor(log_rows, dtype=DTYPE)
    expected = (n_states, width if width is not None else n_states)
    if tuple(log_rows.shape) != expected:
        logger.error(f"Transition table shape mismatch: expected {expected}, got {tuple(log_rows.shape)}")
        raise TopologyError(f"Transition table must have shape {expected}")
    if not is_row_stochastic(log_rows):
        raise TopologyError("Transition rows must sum to one")
    return log_rows.clamp_min(LOG_ZERO)

def validate_weights(weights: torch.Tensor, n_samples: int) -> torch.Tensor:
    weights = torch.as_tensor(weights, dtype=DTYPE).reshape(-1)
    if weights.shape[0] != n_samples:
        logger.error(f"Weight count {weights.shape[0]} does not match {n_samples} samples")
        raise DimensionMismatchError(f"Expected {n_samples} weights, got {weights.shape[0]}")
    if not torch.isfinite(weights).all() or (weights < 0).any():
        logger.error("Weights must be finite and nonnegative")
        raise HMMError("Weights must be finite and nonnegative")
    return weights

def check_dimension(x: torch.Tensor, dimensionality: int, label: str = "observation") -> None:
    d = x.shape[-1] if x.ndim > 0 else 1
    if d != dimensionality:
        logger.error(f"{label} has dimensionality {d}, expected {dimensionality}")
        raise DimensionMismatchError(f"{label} has dimensionality {d}, expected {dimensionality}")

def validate_overlap(overlap: float) -> float:
    overlap = float(overlap)
    if not 0.0 <= overlap < 1.0:
        logger.error(f"Segment overlap must lie in [0, 1), got {overlap}")
        raise HMMError(f"Segment overlap must lie in [0, 1), got {overlap}")
    return overlap

def resolve_transitions(kind: Union[str, Transitions]) -> Transitions:
    return Transitions(_resolve_type(kind, Transitions))

def resolve_report(mode: Union[str, Report]) -> Report:
    return Report(_resolve_type(mode, Report))
