# models/base.py
from __future__ import annotations
import copy
import dataclasses
import math
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import torch
from tqdm.auto import trange

from seqhmm import algorithms
from seqhmm.algorithms import Trellis
from seqhmm.constants import (
    DTYPE, LOG_ZERO, DimensionMismatchError, NumericalError, TopologyError, HMMError, logger,
)
from seqhmm.distributions.base import ObservationModel
from seqhmm.topology import TransitionTopology, build_topology
from seqhmm.utilities import constraints, ConvergenceHandler, SeedGenerator
from seqhmm.utilities.constraints import Transitions
from seqhmm.utilities.logmath import to_prob
from seqhmm.utilities.seed import resolve_generator
from seqhmm.utilities.utils import Observations, ScoredWindow, TrainingConfig, as_sequence, is_sequence_list


class HiddenMarkovModel:
    """
    Hidden Markov Model over a pluggable transition topology.

    The model owns one ``TransitionTopology`` and one ``ObservationModel`` per state.
    Inference (``score``, ``viterbi``, ``posteriors``, ``find_best_subsequence``) only
    reads the parameters; the DP tables live in per-call ``Trellis`` objects.
    Training (``init_segmental``, ``fit_baum_welch``, ``fit_viterbi``) mutates the
    parameters in place but never changes the number of states or the dimensionality.

    Args:
        states: One observation model per hidden state, all of the same dimensionality.
        topology: Transition structure. Built from ``transitions`` when omitted.
        transitions: ``Transitions.FULL`` or ``Transitions.LEFT_TO_RIGHT`` (or the string value).
        max_skip: Largest forward jump of a left-right topology.
        config: Training defaults; keyword overrides (``max_iter``, ``tol``, ``min_var``,
            ``update_var``, ``verbose``, ``check_nan``) are applied on top of it.
        seed: Seed of the generator used by ``sample``.
    """

    def __init__(
        self,
        states: Sequence[ObservationModel],
        topology: Optional[TransitionTopology] = None,
        transitions: Union[str, Transitions] = Transitions.FULL,
        max_skip: int = 2,
        config: Optional[TrainingConfig] = None,
        seed: Optional[int] = None,
        **overrides: Any,
    ):
        states = list(states)
        if not states:
            raise HMMError("an HMM needs at least one state")
        dims = {s.dimensionality for s in states}
        if len(dims) != 1:
            logger.error(f"State dimensionalities differ: {sorted(dims)}")
            raise DimensionMismatchError("all states must share one dimensionality")

        self.states: List[ObservationModel] = states
        self.topology = topology or build_topology(transitions, len(states), max_skip=max_skip)
        if self.topology.n_states != len(states):
            raise TopologyError(f"topology has {self.topology.n_states} states, got {len(states)} observation models")

        config = config or TrainingConfig()
        self.config = dataclasses.replace(config, **overrides) if overrides else config
        self._seed_gen = SeedGenerator(seed)
        self.conv: Optional[ConvergenceHandler] = None
        self.n_iter_ = 0

    # ---------------- Properties ----------------

    @property
    def n_states(self) -> int:
        return len(self.states)

    @property
    def n_features(self) -> int:
        return self.states[0].dimensionality

    @property
    def kind(self) -> Transitions:
        return self.topology.kind

    @property
    def seed(self) -> int:
        return self._seed_gen.seed

    @seed.setter
    def seed(self, value: int) -> None:
        self._seed_gen.reseed(value)

    def dense_transitions(self) -> torch.Tensor:
        """(N, N) log-transition matrix; banded tables are materialized on demand."""
        return self.topology.dense()

    def parameters(self) -> Dict[str, Any]:
        return {
            "transitions": self.dense_transitions(),
            "log_start": self.topology.log_start.clone(),
            "log_end": self.topology.log_end.clone(),
            "states": [s.parameters() for s in self.states],
        }

    def min_path_length(self) -> int:
        return self.topology.min_path_length()

    # ---------------- Inference ----------------

    def _sequence(self, X) -> torch.Tensor:
        X = as_sequence(X)
        constraints.check_dimension(X, self.n_features, label="sequence")
        return X

    def _observations(self, sequences) -> Observations:
        obs = Observations.wrap(sequences)
        if obs.feature_dim != self.n_features:
            logger.error(f"Training data has {obs.feature_dim} features, model expects {self.n_features}")
            raise DimensionMismatchError(f"expected {self.n_features} features, got {obs.feature_dim}")
        return obs

    def emission_scores(self, X) -> torch.Tensor:
        return algorithms.emission_scores(self.states, self._sequence(X))

    def _check(self, label: str, *tensors: torch.Tensor) -> None:
        if self.config.check_nan and any(torch.isnan(t).any() for t in tensors):
            logger.error(f"NaN detected in {label}")
            raise NumericalError(f"NaN detected in {label}")

    def trellis(self, X) -> Trellis:
        """Forward and backward tables of one sequence."""
        log_b = self.emission_scores(X)
        self._check("emission scores", log_b)
        trellis = algorithms.forward_backward(self.topology, log_b)
        self._check("forward/backward tables", trellis.alpha, trellis.beta)
        return trellis

    def score(self, X) -> float:
        """
        Log-likelihood of one sequence, or the summed log-likelihood of a list of sequences.

        A sequence the model cannot produce scores LOG_ZERO.
        """
        if isinstance(X, Observations) or is_sequence_list(X):
            return sum(self.score(s) for s in self._observations(X))
        log_b = self.emission_scores(X)
        self._check("emission scores", log_b)
        alpha, ll = algorithms.forward(self.topology, log_b)
        self._check("forward table", alpha)
        return max(ll, LOG_ZERO)

    eval = score

    def viterbi(self, X) -> Tuple[float, torch.Tensor]:
        log_b = self.emission_scores(X)
        self._check("emission scores", log_b)
        return algorithms.viterbi(self.topology, log_b)

    def decode(self, X) -> torch.Tensor:
        return self.viterbi(X)[1]

    def posteriors(self, X) -> torch.Tensor:
        """State occupancy probabilities, shape (T, N)."""
        return self.trellis(X).posteriors()

    def find_best_subsequence(
        self,
        X,
        normalize: bool = False,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        start: int = 0,
        stop: Optional[int] = None,
    ) -> Optional[ScoredWindow]:
        """
        Locate the window of ``X`` that this left-right model explains best.

        Args:
            X: Sequence to search, shape (T, D).
            normalize: Divide window scores by their length before comparing.
            min_length: Shortest admissible window. Defaults to unconstrained.
            max_length: Longest admissible window. Defaults to unconstrained.
            start: First frame of the analysed range.
            stop: One past the last frame of the analysed range.

        Returns:
            ScoredWindow(start, length, score) in frame indices of ``X``, or None when
            no admissible window exists.
        """
        log_b = self.emission_scores(X)
        return algorithms.best_window(self.topology, log_b, normalize=normalize, min_length=min_length,
                                      max_length=max_length, start=start, stop=stop)

    # ---------------- Sampling ----------------

    def sample(self, n_steps: int, generator: Optional[Union[int, torch.Generator]] = None
               ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Draw a state path and the matching observations.

        Left-right models start in state 0 and stop early once the last state is left
        through its leave probability.

        Returns:
            Tuple (X, path) with X of shape (T, D), T <= n_steps.
        """
        if n_steps < 1:
            raise HMMError("n_steps must be positive")
        gen = resolve_generator(generator) or self._seed_gen.get()
        trans = to_prob(self.dense_transitions())
        state = int(torch.multinomial(to_prob(self.topology.log_start), 1, generator=gen))
        last = self.topology.must_end_in()
        path, frames = [], []
        for _ in range(n_steps):
            path.append(state)
            frames.append(self.states[state].sample(gen).to(DTYPE).reshape(-1))
            if last is not None and state == last:
                leave = to_prob(self.topology.log_leave[state])
                if float(torch.rand(1, generator=gen, dtype=DTYPE)) < float(leave):
                    break
            state = int(torch.multinomial(trans[state], 1, generator=gen))
        return torch.stack(frames), torch.tensor(path, dtype=torch.long)

    # ---------------- Initialization ----------------

    @staticmethod
    def segment_bounds(n_frames: int, n_states: int, overlap: float = 0.0) -> List[Tuple[int, int]]:
        """
        Split ``n_frames`` into ``n_states`` contiguous, non-empty blocks [a, b).

        Without overlap, block i is ``[i*T//N, max((i+1)*T//N, a+1))``. With overlap p
        every block has length ``L = T / (N - (N-1)p)`` and consecutive blocks share
        ``L*p`` frames; bounds are rounded half up and clipped to the sequence.
        """
        T, N = int(n_frames), int(n_states)
        overlap = constraints.validate_overlap(overlap)
        bounds = []
        if overlap == 0.0:
            for i in range(N):
                a = min(i * T // N, T - 1)
                bounds.append((a, max((i + 1) * T // N, a + 1)))
            return bounds
        length = T / (N - (N - 1) * overlap)
        step = length - length * overlap
        for i in range(N):
            a = min(int(math.floor(i * step + 0.5)), T - 1)
            b = min(int(math.floor(i * step + length + 0.5)), T)
            bounds.append((a, max(b, a + 1)))
        return bounds

    def init_segmental(self, sequences, overlap: float = 0.0) -> "HiddenMarkovModel":
        """
        Seed every state from an even split of the training sequences.

        Each sequence is cut into ``n_states`` blocks (see ``segment_bounds``); state i is
        fitted to the concatenation of block i of every sequence, and the transition
        table is reset to its default.
        """
        obs = self._observations(sequences)
        blocks: List[List[torch.Tensor]] = [[] for _ in range(self.n_states)]
        for X in obs:
            for i, (a, b) in enumerate(self.segment_bounds(X.shape[0], self.n_states, overlap)):
                blocks[i].append(X[a:b])
        for i, state in enumerate(self.states):
            data = torch.cat(blocks[i], dim=0)
            if not state.fit(data):
                logger.warning(f"Segmental init: state {i} could not be fitted from {data.shape[0]} frames")
        self.topology.reset()
        self.floor_variance()
        return self

    # ---------------- Training ----------------

    def _snapshot(self) -> Tuple[List[ObservationModel], TransitionTopology]:
        return [s.duplicate() for s in self.states], self.topology.duplicate()

    def _restore(self, snapshot) -> None:
        self.states, self.topology = snapshot

    def _gaussian_parts(self) -> List[ObservationModel]:
        return [part for s in self.states for part in getattr(s, "components", [s])
                if hasattr(part, "learn_variance")]

    @contextmanager
    def _variance_learning(self, enabled: bool):
        # flags are re-applied by position since a rollback swaps in copied states
        flags = [part.learn_variance for part in self._gaussian_parts()]
        try:
            if not enabled:
                for part in self._gaussian_parts():
                    part.learn_variance = False
            yield
        finally:
            for part, flag in zip(self._gaussian_parts(), flags):
                part.learn_variance = flag

    def _expectations(self, X: torch.Tensor):
        """E-step of one sequence: occupancies, expected transition counts and log-likelihood."""
        trellis = self.trellis(X)
        if trellis.log_likelihood <= LOG_ZERO:
            return None
        gamma = trellis.posteriors()
        xi = self.topology.edge_posteriors(trellis.alpha, trellis.log_b, trellis.beta, trellis.log_likelihood)
        return gamma, xi, trellis.log_likelihood

    def _maximize(self, obs: Observations, stats) -> None:
        """M-step from the E-step results of every sequence."""
        kept = [(X, st) for X, st in zip(obs, stats) if st is not None]
        counts = self.topology.zero_counts()
        for _, (_, xi, _) in kept:
            counts = counts + xi
        self._update_transitions(counts)

        X_all = torch.cat([X for X, _ in kept], dim=0)
        gamma_all = torch.cat([g for _, (g, _, _) in kept], dim=0)
        for i, state in enumerate(self.states):
            occupancy = gamma_all[:, i].sum()
            if occupancy < 1e-14:
                logger.warning(f"State {i} has zero occupancy; keeping its parameters")
                continue
            if not state.fit(X_all, gamma_all[:, i] / occupancy):
                logger.warning(f"State {i}: degenerate fit skipped this iteration")

    def _update_transitions(self, counts: torch.Tensor) -> None:
        empty = self.topology.reestimate(counts)
        last = self.topology.must_end_in()
        empty = [i for i in empty if i != last]
        if empty:
            logger.debug(f"Transition rows {empty} received no mass; reset to uniform")

    def fit_baum_welch(
        self,
        sequences,
        max_iter: Optional[int] = None,
        tol: Optional[float] = None,
        update_var: Optional[bool] = None,
        verbose: Optional[bool] = None,
        plot_conv: bool = False,
        callbacks: Optional[List[Callable]] = None,
    ) -> int:
        """
        Re-estimate all parameters with Baum-Welch (EM).

        Each iteration runs the E-step on every sequence independently against a frozen
        copy of the parameters and then performs a single M-step. Training stops when the
        total log-likelihood changes by at most ``tol``, after ``max_iter`` updates, or as
        soon as an update lowers the likelihood, in which case that update is undone.

        Args:
            sequences: One (T, D) sequence or a list of them.
            max_iter: Update cap. Defaults to ``config.max_iter``.
            tol: Convergence threshold on the total log-likelihood. Defaults to ``config.tol``.
            update_var: Re-estimate Gaussian variances. Defaults to ``config.update_var``.
            verbose: Show a progress bar and per-iteration scores.
            plot_conv: Plot the convergence curve when done.
            callbacks: Called as ``fn(handler, iteration, score, delta, converged)`` after every
                retained update.

        Returns:
            Number of retained parameter updates.
        """
        obs = self._observations(sequences)
        cfg = self.config
        max_iter = cfg.max_iter if max_iter is None else int(max_iter)
        tol = cfg.tol if tol is None else float(tol)
        update_var = cfg.update_var if update_var is None else update_var
        verbose = cfg.verbose if verbose is None else verbose

        self.conv = ConvergenceHandler(max_iter=max_iter, tol=tol, verbose=verbose, callbacks=callbacks,
                                       label="Baum-Welch")
        snapshot = None
        updates = 0
        with self._variance_learning(update_var):
            for it in trange(max_iter + 1, desc="Baum-Welch", disable=not verbose, leave=False):
                stats = [self._expectations(X) for X in obs]
                if all(st is None for st in stats):
                    logger.warning("No training sequence can be produced by the model; stopping")
                    break
                total = sum(st[2] for st in stats if st is not None)
                self.conv.push(total, it)
                if it > 0:
                    if self.conv.decreased(it):
                        self.conv.mark_rejected(it)
                        self._restore(snapshot)
                        updates -= 1
                        break
                    if self.conv.check_converged(it):
                        break
                if it == max_iter:
                    break
                snapshot = self._snapshot()
                self._maximize(obs, stats)
                updates += 1

        self.cleanup()
        self.n_iter_ = updates
        if plot_conv:
            self.conv.plot_convergence()
        return updates

    def fit_viterbi(
        self,
        sequences,
        max_iter: Optional[int] = None,
        update_var: Optional[bool] = None,
        verbose: Optional[bool] = None,
        plot_conv: bool = False,
        callbacks: Optional[List[Callable]] = None,
    ) -> int:
        """
        Re-estimate all parameters from hard Viterbi alignments (segmental k-means).

        Every iteration decodes each sequence, refits each state to the frames assigned to
        it and sets the transitions to the empirical frequencies of the decoded paths.
        Converges when no decoded path changes; an update that lowers the summed Viterbi
        score is undone.

        Returns:
            Number of retained parameter updates.
        """
        obs = self._observations(sequences)
        cfg = self.config
        max_iter = cfg.max_iter if max_iter is None else int(max_iter)
        update_var = cfg.update_var if update_var is None else update_var
        verbose = cfg.verbose if verbose is None else verbose

        self.conv = ConvergenceHandler(max_iter=max_iter, tol=cfg.tol, verbose=verbose, callbacks=callbacks,
                                       label="Viterbi")
        snapshot = None
        prev_paths = None
        updates = 0
        with self._variance_learning(update_var):
            for it in trange(max_iter + 1, desc="Viterbi", disable=not verbose, leave=False):
                decoded = [self.viterbi(X) for X in obs]
                alive = [(X, path) for X, (sc, path) in zip(obs, decoded) if sc > LOG_ZERO]
                if not alive:
                    logger.warning("No training sequence can be aligned to the model; stopping")
                    break
                self.conv.push(sum(sc for sc, _ in decoded if sc > LOG_ZERO), it)
                paths = [path for _, path in decoded]
                if it > 0:
                    if self.conv.decreased(it):
                        self.conv.mark_rejected(it)
                        self._restore(snapshot)
                        updates -= 1
                        break
                    unchanged = all(torch.equal(p, q) for p, q in zip(paths, prev_paths))
                    self.conv.check_converged(it)
                    self.conv.is_converged = unchanged
                    if unchanged:
                        break
                if it == max_iter:
                    break
                snapshot = self._snapshot()
                self._maximize_hard(alive)
                prev_paths = paths
                updates += 1

        self.cleanup()
        self.n_iter_ = updates
        if plot_conv:
            self.conv.plot_convergence()
        return updates

    def _maximize_hard(self, alignments: List[Tuple[torch.Tensor, torch.Tensor]]) -> None:
        counts = self.topology.zero_counts()
        for _, path in alignments:
            for a, b in zip(path[:-1].tolist(), path[1:].tolist()):
                counts[self.topology.edge_index(a, b)] += 1
        self._update_transitions(counts)

        X_all = torch.cat([X for X, _ in alignments], dim=0)
        path_all = torch.cat([p for _, p in alignments], dim=0)
        for i, state in enumerate(self.states):
            members = path_all == i
            if not members.any():
                logger.warning(f"State {i} received no frames; keeping its parameters")
                continue
            if not state.fit(X_all[members]):
                logger.warning(f"State {i}: degenerate fit skipped this iteration")

    # ---------------- Cleanup / pruning ----------------

    def floor_variance(self, min_var: Optional[float] = None) -> None:
        min_var = self.config.min_var if min_var is None else float(min_var)
        for s in self.states:
            s.floor_variance(min_var)

    def unreachable_states(self) -> List[int]:
        return (~self.topology.reachable()).nonzero().flatten().tolist()

    def cleanup(self) -> List[int]:
        """Apply the variance floor and report states no path can reach."""
        self.floor_variance()
        dead = self.unreachable_states()
        if dead:
            logger.warning(f"Unreachable states after training: {dead}")
        return dead

    def prune_unreachable(self) -> "HiddenMarkovModel":
        """Return a new model without the unreachable states; this model is left untouched."""
        dead = set(self.unreachable_states())
        out = self.duplicate()
        if not dead:
            return out
        keep = [i for i in range(self.n_states) if i not in dead]
        out.states = [out.states[i] for i in keep]
        out.topology = self.topology.subset(keep)
        logger.info(f"Pruned {len(dead)} unreachable states; {len(keep)} remain")
        return out

    def duplicate(self) -> "HiddenMarkovModel":
        out = copy.copy(self)
        out.states = [s.duplicate() for s in self.states]
        out.topology = self.topology.duplicate()
        out._seed_gen = SeedGenerator(self._seed_gen.seed)
        out.conv = None
        return out

    # ---------------- Display ----------------

    def describe(self) -> str:
        lines = [f"{self.__class__.__name__}: {self.n_states} states, {self.n_features} features, "
                 f"{self.kind.value} transitions"]
        trans = to_prob(self.dense_transitions())
        for i, s in enumerate(self.states):
            row = " ".join(f"{p:.3f}" for p in trans[i].tolist())
            lines.append(f"  state {i}: {s!r}")
            lines.append(f"    -> [{row}]")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (f"{self.__class__.__name__}(n_states={self.n_states}, n_features={self.n_features}, "
                f"transitions={self.kind.value!r})")
