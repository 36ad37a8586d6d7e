from .constants import HMMError, DimensionMismatchError, TopologyError, NumericalError, LOG_ZERO, LOG_ONE
from .utilities import constraints, logmath, ConvergenceHandler, SeedGenerator, utils
from .utilities.constraints import Transitions, Report
from .utilities.utils import Observations, ScoredWindow, TrainingConfig
from .distributions import ObservationModel, Gaussian1D, DiagonalGaussian, Multinomial, GaussianMixture
from .topology import TransitionTopology, FullTopology, LeftRightTopology
from .models import HiddenMarkovModel, GaussianHMM, DiscreteHMM, GaussianMixtureHMM

__all__ = [
    'HMMError',
    'DimensionMismatchError',
    'TopologyError',
    'NumericalError',
    'LOG_ZERO',
    'LOG_ONE',
    'constraints',
    'logmath',
    'ConvergenceHandler',
    'SeedGenerator',
    'utils',
    'Transitions',
    'Report',
    'Observations',
    'ScoredWindow',
    'TrainingConfig',
    'ObservationModel',
    'Gaussian1D',
    'DiagonalGaussian',
    'Multinomial',
    'GaussianMixture',
    'TransitionTopology',
    'FullTopology',
    'LeftRightTopology',
    'HiddenMarkovModel',
    'GaussianHMM',
    'DiscreteHMM',
    'GaussianMixtureHMM',
]
