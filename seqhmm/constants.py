# seqhmm/constants.py
import torch
import logging

EPS = 1e-12
DTYPE = torch.float64

# Finite stand-in for log(0); sums involving it are clamped back to it.
LOG_ZERO = -1e300
LOG_ONE = 0.0

MIN_VARIANCE = 1e-6
DEFAULT_SELF_PROB = 0.9
DEFAULT_LEAVE_PROB = 0.1

# -------------------------
# Logger
# -------------------------
logger = logging.getLogger("seqhmm")
if not logger.hasHandlers():
    logger.setLevel(logging.INFO)
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('[%(levelname)s] %(name)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


class HMMError(ValueError):
    """Base error for the seqhmm package."""
    pass


class DimensionMismatchError(HMMError):
    """An observation does not match the dimensionality of the model evaluating it."""
    pass


class TopologyError(HMMError):
    """Invalid transition structure or an operation the topology does not support."""
    pass


class NumericalError(HMMError):
    """NaN encountered while numeric checks are enabled."""
    pass
