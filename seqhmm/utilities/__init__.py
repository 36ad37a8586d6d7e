from . import constraints
from . import logmath
from .convergence import ConvergenceHandler
from .seed import SeedGenerator
from . import utils


__all__ = [
    'constraints',
    'logmath',
    'ConvergenceHandler',
    'SeedGenerator',
    'utils',
]
