import numpy as np
import pytest
import torch

from seqhmm import HMMError, Observations, TrainingConfig, SeedGenerator, GaussianHMM
from seqhmm.utilities.utils import as_sequence


def test_as_sequence_shapes_and_copy_semantics():
    data = np.arange(4.0)
    seq = as_sequence(data)
    assert seq.shape == (4, 1) and seq.dtype == torch.float64
    seq[0, 0] = 99.0
    assert data[0] == 0.0
    assert as_sequence([[1.0, 2.0], [3.0, 4.0]]).shape == (2, 2)
    with pytest.raises(HMMError):
        as_sequence(np.zeros((2, 2, 2)))
    with pytest.raises(HMMError):
        as_sequence([])


def test_observations_wrap_and_validation():
    obs = Observations.wrap([np.zeros(3), np.ones(5)])
    assert obs.n_sequences == 2
    assert obs.lengths == [3, 5]
    assert obs.total_length == 8
    assert obs.feature_dim == 1
    assert obs.as_batch().shape == (8, 1)
    assert Observations.wrap(obs) is obs
    assert Observations.wrap(torch.zeros(6, 2)).n_sequences == 1
    frames = [[0.1], [0.0], [3.5]]
    assert Observations.wrap(frames).lengths == [3]
    assert Observations.wrap([frames, [[1.0], [2.0]]]).lengths == [3, 2]
    assert Observations.wrap([1.0, 2.0, 3.0]).n_sequences == 1
    with pytest.raises(HMMError):
        Observations([np.zeros((3, 1)), np.zeros((3, 2))])
    with pytest.raises(HMMError):
        Observations([np.zeros(3)], lengths=[4])


def test_training_config_overrides():
    cfg = TrainingConfig()
    assert (cfg.max_iter, cfg.tol) == (50, 1e-3)
    model = GaussianHMM(2, max_iter=7, tol=0.5)
    assert model.config.max_iter == 7 and model.config.tol == 0.5
    with pytest.raises(HMMError):
        TrainingConfig(max_iter=0)
    with pytest.raises(HMMError):
        TrainingConfig(min_var=0.0)


def test_seed_generator_is_reproducible():
    a, b = SeedGenerator(123), SeedGenerator(123)
    assert torch.equal(torch.rand(3, generator=a.get()), torch.rand(3, generator=b.get()))
    a.reseed(5)
    assert a.seed == 5
    assert torch.equal(torch.rand(3, generator=a.get()), torch.rand(3, generator=SeedGenerator(5).get()))


def test_model_seed_setter_reseeds_sampling():
    model = GaussianHMM(2, transitions="full", seed=1)
    first = model.sample(20)[0]
    model.seed = 1
    assert model.seed == 1
    assert torch.equal(model.sample(20)[0], first)
