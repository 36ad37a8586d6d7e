import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest
import torch


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture(autouse=True)
def _torch_seed():
    torch.manual_seed(0)
