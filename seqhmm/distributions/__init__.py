from .base import ObservationModel
from .gaussian import DiagonalGaussian, Gaussian1D
from .multinomial import Multinomial
from .mixture import GaussianMixture

__all__ = [
    'ObservationModel',
    'DiagonalGaussian',
    'Gaussian1D',
    'Multinomial',
    'GaussianMixture',
]
