import math

import numpy as np
import pytest
import torch
from scipy.special import logsumexp

from seqhmm.constants import LOG_ZERO
from seqhmm.utilities.logmath import logadd, logsum, log_normalize, safe_log, saturate, to_prob


@pytest.mark.parametrize("a,b", [(0.0, 0.0), (-1.0, -2.5), (3.0, -700.0), (-1000.0, -1000.5), (12.0, 11.0)])
def test_logadd_matches_direct_formula(a, b):
    expected = float(logsumexp([a, b]))
    assert logadd(a, b) == pytest.approx(expected, rel=1e-12, abs=1e-12)


def test_logadd_identity_and_commutativity():
    for a in (-3.2, 0.0, 7.5):
        assert logadd(a, LOG_ZERO) == a
        assert logadd(LOG_ZERO, a) == a
        assert logadd(a, -1.1) == logadd(-1.1, a)
    assert logadd(LOG_ZERO, LOG_ZERO) == LOG_ZERO


def test_logadd_is_monotonic():
    for a, b in [(-5.0, -4.0), (2.0, 2.0), (-0.1, -50.0)]:
        assert logadd(a, b) >= max(a, b)


def test_logadd_repeated_application_is_order_free():
    xs = [-2.0, 0.5, -7.0, 1.25]
    forward = xs[0]
    for x in xs[1:]:
        forward = logadd(forward, x)
    backward = xs[-1]
    for x in reversed(xs[:-1]):
        backward = logadd(backward, x)
    assert forward == pytest.approx(backward, rel=1e-12)
    assert forward == pytest.approx(float(logsumexp(xs)), rel=1e-12)


def test_logadd_tensor_path_saturates():
    a = torch.tensor([0.0, LOG_ZERO, -3.0], dtype=torch.float64)
    b = torch.tensor([0.0, -2.0, LOG_ZERO], dtype=torch.float64)
    out = logadd(a, b)
    assert out[0].item() == pytest.approx(math.log(2.0))
    assert out[1].item() == -2.0
    assert out[2].item() == -3.0


def test_logsum_handles_dead_rows():
    x = torch.tensor([[LOG_ZERO, LOG_ZERO], [math.log(0.25), math.log(0.75)]], dtype=torch.float64)
    out = logsum(x, dim=-1)
    assert out[0].item() == LOG_ZERO
    assert out[1].item() == pytest.approx(0.0, abs=1e-12)
    assert not torch.isnan(out).any()


def test_sums_of_log_zero_stay_saturated():
    x = torch.full((3,), LOG_ZERO, dtype=torch.float64)
    out = saturate(x + x + torch.tensor(-5.0, dtype=torch.float64))
    assert torch.all(out == LOG_ZERO)
    assert torch.all(to_prob(out) == 0.0)


def test_log_normalize_and_safe_log():
    p = torch.tensor([0.0, 2.0, 6.0], dtype=torch.float64)
    logp = log_normalize(safe_log(p))
    assert logp[0].item() == LOG_ZERO
    np.testing.assert_allclose(to_prob(logp).numpy(), [0.0, 0.25, 0.75], atol=1e-12)
