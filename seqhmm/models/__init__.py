from .base import HiddenMarkovModel
from .gaussian import GaussianHMM
from .discrete import DiscreteHMM
from .mixture import GaussianMixtureHMM

__all__ = [
    'HiddenMarkovModel',
    'GaussianHMM',
    'DiscreteHMM',
    'GaussianMixtureHMM',
]
