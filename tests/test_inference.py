import math

import numpy as np
import pytest
import torch

from seqhmm import (
    DiscreteHMM, FullTopology, GaussianHMM, HiddenMarkovModel, Gaussian1D,
    DimensionMismatchError, HMMError, NumericalError, TopologyError, LOG_ZERO,
)
from seqhmm.utilities.logmath import logsum


def two_state_gaussian():
    model = GaussianHMM(2, transitions="full")
    model.means = [[0.0], [3.5]]
    model.variances = [[1.0], [1.0]]
    return model


def three_state_left_right(var=0.25):
    model = GaussianHMM(3, transitions="left-to-right", max_skip=2)
    model.means = [[0.0], [5.0], [10.0]]
    model.variances = [[var], [var], [var]]
    return model


# -------------------------
# Decoding scenarios
# -------------------------
def test_two_state_gaussian_decodes_regimes():
    model = two_state_gaussian()
    score, path = model.viterbi([0.1, 0.0, -0.1, 3.5, 3.4, 3.6])
    assert path.tolist() == [0, 0, 0, 1, 1, 1]
    assert score > LOG_ZERO


def test_discrete_full_model_viterbi_path():
    model = DiscreteHMM(2, 2, transitions="full")
    model.topology = FullTopology.from_probs([[0.8, 0.2], [0.2, 0.8]], start=[0.5, 0.5], end=[0.5, 0.5])
    model.emission_probs = [[0.7, 0.3], [0.3, 0.7]]
    path = model.decode([0, 0, 1, 0, 0, 0, 0, 1, 1])
    assert path.tolist() == [0, 0, 0, 0, 0, 0, 0, 1, 1]


def test_forward_matches_brute_force_enumeration():
    model = DiscreteHMM(2, 2, transitions="full")
    model.topology = FullTopology.from_probs([[0.6, 0.4], [0.3, 0.7]], start=[0.9, 0.1], end=[0.5, 0.5])
    model.emission_probs = [[0.7, 0.3], [0.2, 0.8]]
    seq = [0, 1, 1]
    A = np.array([[0.6, 0.4], [0.3, 0.7]])
    B = np.array([[0.7, 0.3], [0.2, 0.8]])
    pi, end = np.array([0.9, 0.1]), np.array([0.5, 0.5])
    total = 0.0
    for s0 in range(2):
        for s1 in range(2):
            for s2 in range(2):
                total += (pi[s0] * B[s0, seq[0]] * A[s0, s1] * B[s1, seq[1]]
                          * A[s1, s2] * B[s2, seq[2]] * end[s2])
    assert model.score(seq) == pytest.approx(math.log(total), rel=1e-10)


@pytest.mark.parametrize("transitions", ["full", "left-to-right"])
def test_viterbi_never_exceeds_forward(rng, transitions):
    model = GaussianHMM(4, n_features=2, transitions=transitions, max_skip=2)
    model.means = rng.normal(0.0, 3.0, size=(4, 2))
    model.variances = rng.uniform(0.5, 2.0, size=(4, 2))
    for _ in range(5):
        x = rng.normal(0.0, 3.0, size=(int(rng.integers(4, 30)), 2))
        score, _ = model.viterbi(x)
        assert score <= model.score(x) + 1e-9


def test_left_right_likelihood_ends_in_last_state():
    model = three_state_left_right()
    x = [0.0, 5.0, 10.0, 10.0]
    trellis = model.trellis(x)
    assert trellis.log_likelihood == pytest.approx(trellis.alpha[-1, 2].item())
    _, path = model.viterbi(x)
    assert path[0].item() == 0 and path[-1].item() == 2


def test_posteriors_are_normalized(rng):
    model = two_state_gaussian()
    gamma = model.posteriors(rng.normal(1.5, 2.0, size=20))
    np.testing.assert_allclose(gamma.sum(-1).numpy(), np.ones(20), atol=1e-9)


def test_unexplainable_sequence_scores_log_zero():
    model = three_state_left_right()
    # two frames cannot reach the last state with max_skip=1
    model.topology = type(model.topology)(3, max_skip=1)
    assert model.score([0.0, 10.0]) == LOG_ZERO


def test_score_sums_over_sequence_lists():
    model = two_state_gaussian()
    a, b = [0.0, 0.2, 3.1], [3.6, 3.4]
    assert model.score([a, b]) == pytest.approx(model.score(a) + model.score(b))


def test_dimension_mismatch_is_reported():
    model = GaussianHMM(2, n_features=2)
    with pytest.raises(DimensionMismatchError):
        model.score(torch.zeros(5, 3))
    with pytest.raises(DimensionMismatchError):
        HiddenMarkovModel([Gaussian1D(), GaussianHMM(1, n_features=2).states[0]])


def test_nan_parameters_raise_when_checking_enabled():
    model = GaussianHMM(2, check_nan=True)
    model.states[0].mean = [float("nan")]
    with pytest.raises(NumericalError):
        model.score([0.0, 1.0])


# -------------------------
# Subsequence search
# -------------------------
LOG_DENSITY_AT_MEAN = -0.5 * math.log(2.0 * math.pi * 0.25)


def pattern_sequence():
    return [20.0] * 5 + [0.0, 0.0, 5.0, 5.0, 10.0, 10.0] + [20.0] * 5


def test_best_window_restart_search():
    model = three_state_left_right()
    window = model.find_best_subsequence(pattern_sequence())
    expected = (4 * LOG_DENSITY_AT_MEAN + math.log(0.2 / 3) + math.log(0.9) + math.log(0.1))
    assert (window.start, window.length) == (6, 4)
    assert window.score == pytest.approx(expected, rel=1e-9)
    assert window.as_slice() == slice(6, 10)


def test_best_window_normalized_exhaustive():
    model = three_state_left_right()
    window = model.find_best_subsequence(pattern_sequence(), normalize=True, min_length=1)
    assert (window.start, window.length) == (5, 6)


def test_best_window_length_bounds():
    model = three_state_left_right()
    window = model.find_best_subsequence(pattern_sequence(), min_length=5, max_length=5)
    assert (window.start, window.length) == (6, 5)
    assert model.find_best_subsequence(pattern_sequence(), min_length=3, max_length=2) is None


def test_best_window_respects_analysis_range():
    model = three_state_left_right()
    window = model.find_best_subsequence(pattern_sequence(), start=7)
    assert window.start >= 7


def test_best_window_requires_left_right_topology():
    with pytest.raises(TopologyError):
        two_state_gaussian().find_best_subsequence([0.0, 1.0])


# -------------------------
# Sampling
# -------------------------
def test_left_right_sampling_is_monotone():
    model = three_state_left_right(var=0.01)
    X, path = model.sample(60, generator=5)
    assert X.shape == (path.shape[0], 1)
    assert path.shape[0] <= 60
    assert path[0].item() == 0
    steps = path[1:] - path[:-1]
    assert torch.all(steps >= 0) and torch.all(steps <= 2)
    assert torch.allclose(X[:, 0], model.means[path, 0], atol=0.6)


def test_sampling_is_reproducible():
    model = two_state_gaussian()
    X1, p1 = model.sample(25, generator=11)
    X2, p2 = model.sample(25, generator=11)
    assert torch.equal(X1, X2) and torch.equal(p1, p2)


# -------------------------
# Input shapes
# -------------------------
def test_nested_frame_list_scores_as_one_sequence():
    model = two_state_gaussian()
    frames = [[0.1], [0.0], [-0.1], [3.5], [3.4], [3.6]]
    ll = model.score(frames)
    assert ll == pytest.approx(model.score(np.array(frames)), rel=1e-12)
    assert model.viterbi(frames)[0] <= ll + 1e-9
    assert model.decode(frames).tolist() == [0, 0, 0, 1, 1, 1]


def test_nested_frame_list_with_several_features():
    model = GaussianHMM(2, n_features=2, transitions="full")
    model.means = [[0.0, 1.0], [3.0, 3.0]]
    model.variances = [[1.0, 1.0], [1.0, 1.0]]
    frames = [[0.0, 1.0], [0.5, 1.5], [3.0, 3.0]]
    assert model.score(frames) == pytest.approx(model.score(torch.tensor(frames)), rel=1e-12)
    two = [frames, [[3.0, 3.0], [2.9, 3.1]]]
    assert model.score(two) == pytest.approx(model.score(frames) + model.score(two[1]), rel=1e-12)


def test_posteriors_need_both_tables():
    model = two_state_gaussian()
    trellis = model.trellis([0.0, 3.5])
    trellis.beta = None
    with pytest.raises(HMMError):
        trellis.posteriors()
