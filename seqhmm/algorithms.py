# seqhmm/algorithms.py
"""
Log-domain dynamic programming over a ``TransitionTopology``.

Every function is stateless: it takes the topology and the (T, N) matrix of
per-state log emission scores and returns fresh tensors, so several sequences
can be scored against one model without sharing scratch space.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import torch

from seqhmm.constants import DTYPE, LOG_ZERO, HMMError, TopologyError, logger
from seqhmm.distributions.base import ObservationModel
from seqhmm.topology import TransitionTopology
from seqhmm.utilities.constraints import Transitions
from seqhmm.utilities.logmath import logsum, saturate, to_prob
from seqhmm.utilities.utils import ScoredWindow


@dataclass
class Trellis:
    """Per-call DP tables for one sequence."""
    log_b: torch.Tensor
    alpha: Optional[torch.Tensor] = None
    beta: Optional[torch.Tensor] = None
    log_likelihood: float = LOG_ZERO

    @property
    def n_frames(self) -> int:
        return self.log_b.shape[0]

    def posteriors(self) -> torch.Tensor:
        """State occupancy probabilities gamma[t, i], shape (T, N)."""
        if self.alpha is None or self.beta is None:
            raise HMMError("posteriors need both forward and backward tables")
        if self.log_likelihood <= LOG_ZERO:
            return torch.zeros_like(self.alpha)
        return to_prob(saturate(self.alpha + self.beta) - self.log_likelihood)


def emission_scores(states: Sequence[ObservationModel], X: torch.Tensor) -> torch.Tensor:
    """log_b[t, i] = log p_i(x_t)."""
    return saturate(torch.stack([s.log_prob(X) for s in states], dim=-1))


def forward(topology: TransitionTopology, log_b: torch.Tensor) -> Tuple[torch.Tensor, float]:
    """
    Forward recursion.

    ``alpha[0, i] = log_start[i] + log_b[0, i]`` and every later frame adds the
    emission score to the log-sum over the valid predecessors.

    Returns:
        Tuple (alpha, log_likelihood) where the likelihood closes the trellis with
        the end prior; for left-right models this is ``alpha[T-1, N-1]``.
    """
    T, N = log_b.shape
    alpha = torch.empty(T, N, dtype=DTYPE)
    alpha[0] = saturate(topology.log_start + log_b[0])
    for t in range(1, T):
        incoming, _ = topology.forward_step(alpha[t - 1], reduce="sum")
        alpha[t] = saturate(incoming + log_b[t])
    ll = float(logsum(saturate(alpha[-1] + topology.log_end), dim=-1))
    return alpha, ll


def backward(topology: TransitionTopology, log_b: torch.Tensor) -> torch.Tensor:
    """
    Backward recursion seeded with the end prior.

    ``beta[T-1, i] = log_end[i]`` and ``beta[t, i] = logsum_j(A[i, j] + log_b[t+1, j] + beta[t+1, j])``,
    so that ``alpha + beta`` is the joint log-probability of the sequence and the state at t.
    """
    T, N = log_b.shape
    beta = torch.empty(T, N, dtype=DTYPE)
    beta[-1] = topology.log_end.clone()
    for t in range(T - 2, -1, -1):
        beta[t] = saturate(topology.backward_step(saturate(log_b[t + 1] + beta[t + 1])))
    return beta


def forward_backward(topology: TransitionTopology, log_b: torch.Tensor) -> Trellis:
    alpha, ll = forward(topology, log_b)
    beta = backward(topology, log_b)
    return Trellis(log_b=log_b, alpha=alpha, beta=beta, log_likelihood=ll)


def viterbi(topology: TransitionTopology, log_b: torch.Tensor) -> Tuple[float, torch.Tensor]:
    """
    Most probable state path.

    The final state is the forced end state for left-right models and otherwise the
    state maximizing ``m[T-1, i] + log_end[i]``. Ties go to the lowest state index.

    Returns:
        Tuple (score, path) with ``path`` a LongTensor of shape (T,). The score
        includes the end prior and is therefore never above the forward likelihood.
    """
    T, N = log_b.shape
    m = torch.empty(T, N, dtype=DTYPE)
    parents = torch.zeros(T, N, dtype=torch.long)
    m[0] = saturate(topology.log_start + log_b[0])
    for t in range(1, T):
        best, ptr = topology.forward_step(m[t - 1], reduce="max")
        m[t] = saturate(best + log_b[t])
        parents[t] = ptr
    final = saturate(m[-1] + topology.log_end)
    end = topology.must_end_in()
    if end is None:
        end = int(torch.argmax(final))
    score = float(final[end])

    path = torch.empty(T, dtype=torch.long)
    path[-1] = end
    for t in range(T - 1, 0, -1):
        path[t - 1] = parents[t, path[t]]
    return score, path


def best_window(
    topology: TransitionTopology,
    log_b: torch.Tensor,
    normalize: bool = False,
    min_length: Optional[int] = None,
    max_length: Optional[int] = None,
    start: int = 0,
    stop: Optional[int] = None,
) -> Optional[ScoredWindow]:
    """
    Highest-scoring contiguous window of the frames ``[start, stop)``.

    The model may enter state 0 at any frame at no cost and a window closes whenever
    the last state is occupied. Without length bounds a single restart-Viterbi pass is
    used; with ``min_length``/``max_length`` every admissible (start, length) pair is
    scored explicitly. With ``normalize`` the score is divided by the window length.

    Returns:
        A ScoredWindow, or None when no window of admissible length can be aligned.
    """
    if topology.kind is not Transitions.LEFT_TO_RIGHT:
        logger.error("best_window requested on a non left-right topology")
        raise TopologyError("subsequence search needs a left-right topology")
    T = log_b.shape[0]
    stop = T if stop is None else min(int(stop), T)
    start = max(int(start), 0)
    if start >= stop:
        return None
    log_b = log_b[start:stop]

    if min_length is None and max_length is None:
        found = _restart_viterbi(topology, log_b, normalize)
    else:
        lo = max(int(min_length or 1), 1)
        hi = log_b.shape[0] if max_length is None else min(int(max_length), log_b.shape[0])
        if lo > hi:
            return None
        found = _bounded_scan(topology, log_b, normalize, lo, hi)
    if found is None:
        return None
    s, length, score = found
    return ScoredWindow(start=start + s, length=length, score=score)


def _restart_viterbi(topology, log_b, normalize):
    T, N = log_b.shape
    last = N - 1
    prev = saturate(topology.log_start + log_b[0])
    origin = torch.zeros(N, dtype=torch.long)
    best = None
    for t in range(T):
        if t > 0:
            incoming, ptr = topology.forward_step(prev, reduce="max")
            cur = saturate(incoming + log_b[t])
            new_origin = origin[ptr]
            # state 0 may also open a fresh window at this frame
            fresh = log_b[t, 0]
            if fresh > cur[0]:
                cur[0] = fresh
                new_origin[0] = t
            prev, origin = cur, new_origin
        if prev[last] <= LOG_ZERO:
            continue
        length = t - int(origin[last]) + 1
        score = float(prev[last]) / length if normalize else float(prev[last])
        if best is None or score > best[2]:
            best = (int(origin[last]), length, score)
    return best


def _bounded_scan(topology, log_b, normalize, lo, hi):
    T, N = log_b.shape
    last = N - 1
    best = None
    for i in range(T - lo + 1):
        m = saturate(topology.log_start + log_b[i])
        for j in range(i, min(i + hi, T)):
            if j > i:
                incoming, _ = topology.forward_step(m, reduce="max")
                m = saturate(incoming + log_b[j])
            length = j - i + 1
            if length < lo or m[last] <= LOG_ZERO:
                continue
            score = float(m[last]) / length if normalize else float(m[last])
            if best is None or score > best[2]:
                best = (i, length, score)
    return best
