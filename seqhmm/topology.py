# seqhmm/topology.py
from __future__ import annotations
import copy
import math
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import torch

from seqhmm.constants import (
    DTYPE, LOG_ZERO, LOG_ONE, DEFAULT_SELF_PROB, DEFAULT_LEAVE_PROB, TopologyError, logger,
)
from seqhmm.utilities import constraints
from seqhmm.utilities.constraints import Transitions
from seqhmm.utilities.logmath import logsum, log_normalize, safe_log, saturate, to_prob


class TransitionTopology(ABC):
    """
    State-to-state transition structure of an HMM.

    Owns the log-transition table in its native layout together with the start,
    end and leave priors. The recursions in ``seqhmm.algorithms`` only talk to a
    topology through ``forward_step``, ``backward_step`` and ``edge_posteriors``,
    so the dense and banded layouts share one implementation of forward, backward
    and Viterbi.
    """

    kind: Transitions

    def __init__(self, n_states: int, self_prob: float = DEFAULT_SELF_PROB):
        if int(n_states) < 1:
            raise TopologyError("n_states must be positive")
        if not 0.0 < self_prob < 1.0:
            raise TopologyError("self_prob must lie in (0, 1)")
        self._n_states = int(n_states)
        self.self_prob = float(self_prob)
        self.log_start = torch.full((self._n_states,), LOG_ZERO, dtype=DTYPE)
        self.log_end = torch.full((self._n_states,), LOG_ZERO, dtype=DTYPE)
        self.log_leave = torch.full((self._n_states,), LOG_ZERO, dtype=DTYPE)
        self.table = torch.empty(0, dtype=DTYPE)
        self.reset()

    @property
    def n_states(self) -> int:
        return self._n_states

    # ---------------- Structure ----------------

    @abstractmethod
    def reset(self) -> None:
        """Restore the default transition table and priors."""

    @abstractmethod
    def predecessors(self, i: int) -> List[int]:
        ...

    @abstractmethod
    def successors(self, i: int) -> List[int]:
        ...

    @abstractmethod
    def log_transition(self, a: int, b: int) -> float:
        ...

    def must_start_in(self) -> Optional[int]:
        return None

    def must_end_in(self) -> Optional[int]:
        return None

    @abstractmethod
    def dense(self) -> torch.Tensor:
        """Full (N, N) log-transition matrix; entries outside the structure hold LOG_ZERO."""

    @abstractmethod
    def valid_mask(self) -> torch.Tensor:
        """Boolean mask over ``table`` marking the entries the structure allows."""

    # ---------------- Recursion steps ----------------

    @abstractmethod
    def forward_step(self, prev: torch.Tensor, reduce: str = "sum") -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Combine a frame of scores with the incoming transitions of every state.

        Args:
            prev: Scores of the previous frame, shape (N,).
            reduce: "sum" for log-sum-exp (forward), "max" for Viterbi.

        Returns:
            Tuple (scores, parents). ``parents`` holds the best predecessor per state
            for "max" (lowest index on ties) and is None for "sum".
        """

    @abstractmethod
    def backward_step(self, nxt: torch.Tensor) -> torch.Tensor:
        """``out[i] = logsum_j(A[i, j] + nxt[j])`` over the successors of each state."""

    @abstractmethod
    def edge_posteriors(self, alpha: torch.Tensor, log_b: torch.Tensor,
                        beta: torch.Tensor, log_likelihood: float) -> torch.Tensor:
        """Expected transition counts summed over time, in the layout of ``table``."""

    @abstractmethod
    def edge_index(self, a: int, b: int) -> Tuple[int, int]:
        """Position of transition a -> b in ``table``."""

    # ---------------- Re-estimation ----------------

    def zero_counts(self) -> torch.Tensor:
        return torch.zeros_like(self.table)

    def reestimate(self, counts: torch.Tensor) -> List[int]:
        """
        Replace the table with normalized counts.

        Rows that received no mass fall back to a uniform distribution over their
        allowed entries.

        Returns:
            Indices of the rows that fell back to uniform.
        """
        mask = self.valid_mask()
        counts = torch.where(mask, counts.clamp_min(0.0), torch.zeros_like(counts))
        totals = counts.sum(-1)
        empty = totals < 1e-14
        uniform = mask.to(DTYPE) / mask.sum(-1, keepdim=True).clamp_min(1).to(DTYPE)
        probs = torch.where(empty.unsqueeze(-1), uniform, counts / totals.clamp_min(1e-300).unsqueeze(-1))
        self.table = torch.where(mask, safe_log(probs), torch.full_like(probs, LOG_ZERO))
        self._after_update()
        return empty.nonzero().flatten().tolist()

    def _after_update(self) -> None:
        pass

    def blend(self, other: "TransitionTopology", weight: float) -> None:
        """Mix ``other``'s transition probabilities into this table: (1 - weight)·self + weight·other."""
        if type(other) is not type(self) or other.table.shape != self.table.shape:
            raise TopologyError("can only blend topologies of the same kind and shape")
        if not 0.0 <= weight <= 1.0:
            raise TopologyError("blend weight must lie in [0, 1]")
        probs = (1.0 - weight) * to_prob(self.table) + weight * to_prob(other.table)
        self.table = log_normalize(safe_log(probs), dim=-1)
        self._after_update()

    def is_row_stochastic(self, atol: float = 1e-6) -> bool:
        return constraints.is_row_stochastic(self.table, atol=atol)

    # ---------------- Reachability ----------------

    def reachable(self) -> torch.Tensor:
        """States that can be visited from a state with nonzero start probability."""
        seen = torch.zeros(self.n_states, dtype=torch.bool)
        frontier = [i for i in range(self.n_states) if self.log_start[i] > LOG_ZERO]
        for i in frontier:
            seen[i] = True
        while frontier:
            i = frontier.pop()
            for j in self.successors(i):
                if not seen[j] and self.log_transition(i, j) > LOG_ZERO:
                    seen[j] = True
                    frontier.append(j)
        return seen

    def min_path_length(self) -> int:
        """Fewest frames a sequence needs to go from a start state to an end state."""
        dist = [-1] * self.n_states
        queue = [i for i in range(self.n_states) if self.log_start[i] > LOG_ZERO]
        for i in queue:
            dist[i] = 1
        head = 0
        while head < len(queue):
            i = queue[head]
            head += 1
            for j in self.successors(i):
                if dist[j] < 0 and j != i and self.log_transition(i, j) > LOG_ZERO:
                    dist[j] = dist[i] + 1
                    queue.append(j)
        ends = [dist[i] for i in range(self.n_states) if self.log_end[i] > LOG_ZERO and dist[i] > 0]
        return min(ends) if ends else -1

    @abstractmethod
    def subset(self, keep: List[int]) -> "TransitionTopology":
        """New topology over the states in ``keep``, rows renormalized."""

    def duplicate(self) -> "TransitionTopology":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(n_states={self.n_states})"


class FullTopology(TransitionTopology):
    """Unconstrained (ergodic) transitions stored as a dense (N, N) log matrix."""

    kind = Transitions.FULL

    def reset(self) -> None:
        N = self.n_states
        if N == 1:
            probs = torch.ones(1, 1, dtype=DTYPE)
        else:
            probs = torch.full((N, N), (1.0 - self.self_prob) / (N - 1), dtype=DTYPE)
            probs.fill_diagonal_(self.self_prob)
        self.table = safe_log(probs)
        self.log_start = torch.full((N,), math.log(1.0 / N), dtype=DTYPE)
        self.log_end = torch.full((N,), math.log(1.0 / N), dtype=DTYPE)
        self.log_leave = torch.full((N,), math.log(DEFAULT_LEAVE_PROB), dtype=DTYPE)

    @classmethod
    def from_probs(cls, probs, start=None, end=None) -> "FullTopology":
        probs = torch.as_tensor(probs, dtype=DTYPE)
        topo = cls(probs.shape[0])
        topo.table = constraints.validate_log_rows(safe_log(probs), topo.n_states)
        if start is not None:
            topo.log_start = _log_prior(start, topo.n_states, "start")
        if end is not None:
            topo.log_end = _log_prior(end, topo.n_states, "end")
        return topo

    def predecessors(self, i: int) -> List[int]:
        return list(range(self.n_states))

    def successors(self, i: int) -> List[int]:
        return list(range(self.n_states))

    def log_transition(self, a: int, b: int) -> float:
        return float(self.table[a, b])

    def dense(self) -> torch.Tensor:
        return self.table.clone()

    def valid_mask(self) -> torch.Tensor:
        return torch.ones_like(self.table, dtype=torch.bool)

    def forward_step(self, prev, reduce="sum"):
        scores = saturate(prev.unsqueeze(-1) + self.table)
        if reduce == "max":
            best, parents = scores.max(dim=0)
            return best, parents
        return logsum(scores, dim=0), None

    def backward_step(self, nxt):
        return logsum(self.table + nxt.unsqueeze(0), dim=-1)

    def edge_posteriors(self, alpha, log_b, beta, log_likelihood):
        if alpha.shape[0] < 2:
            return self.zero_counts()
        head = alpha[:-1].unsqueeze(-1)
        tail = (log_b[1:] + beta[1:]).unsqueeze(1)
        xi = saturate(head + self.table.unsqueeze(0) + tail) - log_likelihood
        return to_prob(saturate(xi)).sum(0)

    def edge_index(self, a, b):
        return a, b

    def subset(self, keep):
        probs = to_prob(self.table[keep][:, keep])
        totals = probs.sum(-1, keepdim=True)
        eye = torch.eye(len(keep), dtype=DTYPE)
        probs = torch.where(totals > 0, probs / totals.clamp_min(1e-300), eye)
        out = FullTopology.from_probs(probs)
        out.self_prob = self.self_prob
        out.log_start = _renormalize_prior(self.log_start[keep])
        out.log_end = _renormalize_prior(self.log_end[keep])
        out.log_leave = self.log_leave[keep].clone()
        return out


class LeftRightTopology(TransitionTopology):
    """
    Banded left-to-right transitions.

    Row ``i`` holds the destinations ``i, i+1, ..., i+max_skip`` (clipped at the last
    state) in a padded (N, max_skip+1) table whose column k is the jump of k states.
    Sequences start in state 0 and end in state N-1, whose only transition is the
    self loop.
    """

    kind = Transitions.LEFT_TO_RIGHT

    def __init__(self, n_states: int, max_skip: int = 2, self_prob: float = DEFAULT_SELF_PROB):
        if int(max_skip) < 1:
            raise TopologyError("max_skip must be at least 1")
        self.max_skip = int(max_skip)
        super().__init__(n_states, self_prob)

    @property
    def width(self) -> int:
        return self.max_skip + 1

    def _dest(self) -> torch.Tensor:
        return torch.arange(self.n_states).unsqueeze(-1) + torch.arange(self.width).unsqueeze(0)

    def valid_mask(self) -> torch.Tensor:
        return self._dest() < self.n_states

    def reset(self) -> None:
        N, W = self.n_states, self.width
        table = torch.full((N, W), LOG_ZERO, dtype=DTYPE)
        for i in range(N - 1):
            n_left = min(N - i - 1, self.max_skip)
            # longer jumps get geometrically less mass: the next state gets the most
            factor = float(2 ** n_left - 1)
            base = (1.0 - self.self_prob) / factor
            table[i, 0] = math.log(self.self_prob)
            for k in range(n_left, 0, -1):
                table[i, k] = math.log(base)
                base *= 2.0
        self.table = table
        self._after_update()
        self.log_start = torch.full((N,), LOG_ZERO, dtype=DTYPE)
        self.log_start[0] = LOG_ONE
        self.log_end = torch.full((N,), LOG_ZERO, dtype=DTYPE)
        self.log_end[N - 1] = LOG_ONE
        self.log_leave = torch.full((N,), LOG_ZERO, dtype=DTYPE)
        self.log_leave[N - 1] = math.log(0.5)

    def _after_update(self) -> None:
        self.table[self.n_states - 1] = LOG_ZERO
        self.table[self.n_states - 1, 0] = LOG_ONE
        self.table = torch.where(self.valid_mask(), self.table, torch.full_like(self.table, LOG_ZERO))

    @classmethod
    def from_dense(cls, log_matrix: torch.Tensor, max_skip: int = 2) -> "LeftRightTopology":
        log_matrix = torch.as_tensor(log_matrix, dtype=DTYPE)
        N = log_matrix.shape[0]
        topo = cls(N, max_skip=max_skip)
        dest = topo._dest()
        inside = torch.zeros(N, N, dtype=torch.bool)
        rows = torch.arange(N).unsqueeze(-1).expand_as(dest)
        mask = topo.valid_mask()
        inside[rows[mask], dest[mask]] = True
        if (log_matrix[~inside] > LOG_ZERO).any():
            logger.error("Dense matrix has mass outside the left-right band")
            raise TopologyError(f"transition matrix does not fit a left-right band with max_skip={max_skip}")
        table = torch.full((N, topo.width), LOG_ZERO, dtype=DTYPE)
        table[mask] = log_matrix[rows[mask], dest[mask]]
        topo.table = constraints.validate_log_rows(table, N, topo.width)
        topo._after_update()
        return topo

    def rows(self) -> List[torch.Tensor]:
        """Ragged view: row i holds log P(i -> i+k) for the jumps allowed from i."""
        mask = self.valid_mask()
        return [self.table[i][mask[i]].clone() for i in range(self.n_states)]

    def must_start_in(self) -> Optional[int]:
        return 0

    def must_end_in(self) -> Optional[int]:
        return self.n_states - 1

    def predecessors(self, i: int) -> List[int]:
        return [i - k for k in range(self.width - 1, -1, -1) if i - k >= 0]

    def successors(self, i: int) -> List[int]:
        return [i + k for k in range(self.width) if i + k < self.n_states]

    def log_transition(self, a: int, b: int) -> float:
        k = b - a
        if k < 0 or k >= self.width or b >= self.n_states:
            return LOG_ZERO
        return float(self.table[a, k])

    def dense(self) -> torch.Tensor:
        N = self.n_states
        out = torch.full((N, N), LOG_ZERO, dtype=DTYPE)
        mask = self.valid_mask()
        rows = torch.arange(N).unsqueeze(-1).expand_as(mask)
        out[rows[mask], self._dest()[mask]] = self.table[mask]
        return out

    def _incoming(self, prev: torch.Tensor) -> torch.Tensor:
        """Score of each (state, predecessor) pair; column c is predecessor i - (W-1) + c."""
        N, W = self.n_states, self.width
        jumps = torch.arange(W - 1, -1, -1)
        src = torch.arange(N).unsqueeze(-1) - jumps.unsqueeze(0)
        ok = src >= 0
        src_c = src.clamp_min(0)
        scores = prev[src_c] + self.table[src_c, jumps.unsqueeze(0).expand_as(src_c)]
        return torch.where(ok, saturate(scores), torch.full_like(scores, LOG_ZERO)), src_c

    def forward_step(self, prev, reduce="sum"):
        scores, src = self._incoming(prev)
        if reduce == "max":
            best, col = scores.max(dim=-1)
            return best, src.gather(-1, col.unsqueeze(-1)).squeeze(-1)
        return logsum(scores, dim=-1), None

    def backward_step(self, nxt):
        dest = self._dest()
        mask = self.valid_mask()
        vals = self.table + nxt[dest.clamp_max(self.n_states - 1)]
        return logsum(torch.where(mask, vals, torch.full_like(vals, LOG_ZERO)), dim=-1)

    def edge_posteriors(self, alpha, log_b, beta, log_likelihood):
        if alpha.shape[0] < 2:
            return self.zero_counts()
        dest = self._dest().clamp_max(self.n_states - 1)
        tail = (log_b[1:] + beta[1:])[:, dest]
        xi = saturate(alpha[:-1].unsqueeze(-1) + self.table.unsqueeze(0) + tail) - log_likelihood
        xi = torch.where(self.valid_mask().unsqueeze(0), saturate(xi), torch.full_like(xi, LOG_ZERO))
        return to_prob(xi).sum(0)

    def edge_index(self, a, b):
        k = b - a
        if k < 0 or k >= self.width:
            raise TopologyError(f"transition {a} -> {b} is outside the left-right band")
        return a, k

    def subset(self, keep):
        dense = to_prob(self.dense()[keep][:, keep])
        totals = dense.sum(-1, keepdim=True)
        eye = torch.eye(len(keep), dtype=DTYPE)
        dense = torch.where(totals > 0, dense / totals.clamp_min(1e-300), eye)
        out = LeftRightTopology.from_dense(safe_log(dense), max_skip=self.max_skip)
        out.self_prob = self.self_prob
        return out

    def __repr__(self) -> str:
        return f"LeftRightTopology(n_states={self.n_states}, max_skip={self.max_skip})"


def _log_prior(values, n_states: int, label: str) -> torch.Tensor:
    values = torch.as_tensor(values, dtype=DTYPE).reshape(-1)
    if values.shape[0] != n_states:
        raise TopologyError(f"{label} prior must have {n_states} entries")
    if (values < 0).any() or values.sum() <= 0:
        raise TopologyError(f"{label} prior must be a nonnegative, nonzero vector")
    return safe_log(values / values.sum())


def _renormalize_prior(log_prior: torch.Tensor) -> torch.Tensor:
    if (log_prior <= LOG_ZERO).all():
        return torch.full_like(log_prior, math.log(1.0 / log_prior.shape[0]))
    return log_normalize(log_prior, dim=-1)


def build_topology(kind, n_states: int, max_skip: int = 2,
                   self_prob: float = DEFAULT_SELF_PROB) -> TransitionTopology:
    t = constraints.resolve_transitions(kind)
    if t is Transitions.FULL:
        return FullTopology(n_states, self_prob=self_prob)
    return LeftRightTopology(n_states, max_skip=max_skip, self_prob=self_prob)
