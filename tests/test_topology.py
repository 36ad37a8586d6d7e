import math

import numpy as np
import pytest
import torch

from seqhmm import FullTopology, LeftRightTopology, LOG_ZERO, TopologyError, Transitions
from seqhmm.topology import build_topology
from seqhmm.utilities.logmath import safe_log, to_prob


def test_full_defaults():
    topo = FullTopology(3)
    probs = to_prob(topo.dense())
    np.testing.assert_allclose(probs.diagonal().numpy(), [0.9] * 3)
    assert probs[0, 1].item() == pytest.approx(0.05)
    np.testing.assert_allclose(to_prob(topo.log_start).numpy(), [1 / 3] * 3)
    np.testing.assert_allclose(to_prob(topo.log_end).numpy(), [1 / 3] * 3)
    np.testing.assert_allclose(to_prob(topo.log_leave).numpy(), [0.1] * 3)
    assert topo.is_row_stochastic()
    assert topo.must_start_in() is None and topo.must_end_in() is None


def test_left_right_defaults_are_geometric():
    topo = LeftRightTopology(4, max_skip=2)
    rows = [to_prob(r).tolist() for r in topo.rows()]
    assert rows[0] == pytest.approx([0.9, 0.2 / 3, 0.1 / 3])
    assert rows[1] == pytest.approx([0.9, 0.2 / 3, 0.1 / 3])
    assert rows[2] == pytest.approx([0.9, 0.1])
    assert rows[3] == pytest.approx([1.0])
    assert topo.is_row_stochastic()
    assert topo.must_start_in() == 0 and topo.must_end_in() == 3
    assert topo.log_start[0].item() == 0.0 and topo.log_start[1].item() == LOG_ZERO
    assert to_prob(topo.log_leave).tolist() == pytest.approx([0.0, 0.0, 0.0, 0.5])


def test_left_right_structure_queries():
    topo = LeftRightTopology(5, max_skip=2)
    assert topo.successors(1) == [1, 2, 3]
    assert topo.successors(4) == [4]
    assert topo.predecessors(0) == [0]
    assert topo.predecessors(3) == [1, 2, 3]
    assert topo.log_transition(3, 1) == LOG_ZERO
    assert topo.log_transition(0, 3) == LOG_ZERO
    assert topo.log_transition(0, 1) == pytest.approx(math.log(0.2 / 3))
    dense = topo.dense()
    assert dense.shape == (5, 5)
    below = torch.ones(5, 5, dtype=torch.bool).tril(-1)
    assert torch.all(dense[below] == LOG_ZERO)


def test_dense_and_banded_recursion_steps_agree():
    lr = LeftRightTopology(5, max_skip=2)
    full = FullTopology.from_probs(to_prob(lr.dense()))
    prev = torch.tensor([-1.0, -2.0, -0.5, -3.0, -4.0], dtype=torch.float64)
    s_lr, _ = lr.forward_step(prev)
    s_full, _ = full.forward_step(prev)
    assert torch.allclose(s_lr, s_full, atol=1e-10)
    m_lr, p_lr = lr.forward_step(prev, reduce="max")
    m_full, p_full = full.forward_step(prev, reduce="max")
    assert torch.allclose(m_lr, m_full, atol=1e-10)
    assert torch.equal(p_lr, p_full)
    assert torch.allclose(lr.backward_step(prev), full.backward_step(prev), atol=1e-10)


def test_reestimate_falls_back_to_uniform():
    topo = LeftRightTopology(3, max_skip=1)
    counts = topo.zero_counts()
    counts[0, 0], counts[0, 1] = 3.0, 1.0
    empty = topo.reestimate(counts)
    assert empty == [1, 2]
    assert to_prob(topo.table[0]).tolist() == pytest.approx([0.75, 0.25])
    assert to_prob(topo.table[1]).tolist() == pytest.approx([0.5, 0.5])
    assert to_prob(topo.table[2]).tolist() == pytest.approx([1.0, 0.0])
    assert topo.is_row_stochastic()


def test_from_dense_rejects_mass_outside_band():
    probs = torch.tensor([[0.5, 0.5, 0.0], [0.2, 0.8, 0.0], [0.0, 0.0, 1.0]], dtype=torch.float64)
    with pytest.raises(TopologyError):
        LeftRightTopology.from_dense(safe_log(probs), max_skip=2)


def test_reachability_and_min_path_length():
    probs = torch.tensor([
        [0.9, 0.1, 0.0, 0.0],
        [0.0, 0.9, 0.0, 0.1],
        [0.0, 0.0, 0.9, 0.1],
        [0.0, 0.0, 0.0, 1.0],
    ], dtype=torch.float64)
    topo = LeftRightTopology.from_dense(safe_log(probs), max_skip=2)
    assert topo.reachable().tolist() == [True, True, False, True]
    assert topo.min_path_length() == 3
    assert LeftRightTopology(6, max_skip=2).min_path_length() == 4
    assert FullTopology(4).min_path_length() == 1


def test_blend_mixes_probabilities():
    a = FullTopology.from_probs([[1.0, 0.0], [0.0, 1.0]])
    b = FullTopology.from_probs([[0.0, 1.0], [1.0, 0.0]])
    a.blend(b, 0.25)
    assert to_prob(a.table).tolist()[0] == pytest.approx([0.75, 0.25])
    with pytest.raises(TopologyError):
        a.blend(LeftRightTopology(2), 0.5)


def test_build_topology_accepts_strings():
    assert isinstance(build_topology("full", 2), FullTopology)
    topo = build_topology(Transitions.LEFT_TO_RIGHT, 4, max_skip=1)
    assert isinstance(topo, LeftRightTopology) and topo.width == 2
    with pytest.raises(ValueError):
        build_topology("sideways", 2)
