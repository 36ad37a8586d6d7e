import torch
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from seqhmm.constants import DTYPE, MIN_VARIANCE, HMMError

ArrayLike = Union[torch.Tensor, np.ndarray, Sequence]


def as_sequence(x: ArrayLike, dtype: torch.dtype = DTYPE) -> torch.Tensor:
    """Return a (T, D) tensor view/copy of ``x``; 1-D input becomes a single column."""
    t = torch.as_tensor(np.asarray(x) if not torch.is_tensor(x) else x).to(dtype=dtype).clone()
    if t.ndim == 0:
        t = t.reshape(1, 1)
    elif t.ndim == 1:
        t = t.unsqueeze(-1)
    elif t.ndim != 2:
        raise HMMError(f"Sequences must be 1-D or 2-D, got shape {tuple(t.shape)}")
    if t.shape[0] == 0:
        raise HMMError("Sequences must contain at least one frame")
    return t


def _is_nested_list(s) -> bool:
    return isinstance(s, (list, tuple)) and len(s) > 0 and all(
        isinstance(f, (list, tuple, np.ndarray)) or torch.is_tensor(f) for f in s)


def is_sequence_list(data) -> bool:
    """
    True for a list or tuple of several sequences.

    Items must be tensors, arrays or (T, D) nested lists. A plain list of frames such as
    ``[[0.1], [0.0], [3.5]]`` is one (T, D) sequence; pass 1-D sequences as arrays.
    """
    if not isinstance(data, (list, tuple)) or len(data) == 0:
        return False
    if all(torch.is_tensor(s) or isinstance(s, np.ndarray) for s in data):
        return True
    return all(torch.is_tensor(s) or isinstance(s, np.ndarray) or _is_nested_list(s) for s in data) \
        and any(_is_nested_list(s) for s in data)


# -----------------------------
# Observations
# -----------------------------
@dataclass(frozen=False)
class Observations:
    sequence: List[torch.Tensor]
    lengths: Optional[List[int]] = None

    def __post_init__(self):
        if not self.sequence:
            raise HMMError("`sequence` cannot be empty.")
        seqs = [as_sequence(s) for s in self.sequence]
        seq_lengths = self.lengths or [s.shape[0] for s in seqs]
        if len(seq_lengths) != len(seqs) or any(s.shape[0] != l for s, l in zip(seqs, seq_lengths)):
            raise HMMError("Mismatch between sequence lengths and `lengths`.")
        object.__setattr__(self, "sequence", seqs)
        object.__setattr__(self, "lengths", list(seq_lengths))
        _ = self.feature_dim

    @classmethod
    def wrap(cls, data: Union["Observations", ArrayLike, List[ArrayLike]]) -> "Observations":
        """Accept one sequence, a list of sequences, or an existing Observations.

        A list of tensors, arrays or nested (T, D) lists is read as several sequences.
        """
        if isinstance(data, Observations):
            return data
        if is_sequence_list(data):
            return cls(list(data))
        return cls([data])

    @property
    def n_sequences(self) -> int:
        return len(self.sequence)

    @property
    def total_length(self) -> int:
        return sum(self.lengths)

    @property
    def feature_dim(self) -> int:
        dims = {s.shape[-1] for s in self.sequence}
        if len(dims) > 1:
            raise HMMError("Inconsistent feature dimensions across sequences.")
        return dims.pop()

    def __len__(self) -> int:
        return self.n_sequences

    def __iter__(self):
        return iter(self.sequence)

    def __getitem__(self, idx: Union[int, slice]) -> Union[torch.Tensor, "Observations"]:
        if isinstance(idx, slice):
            return Observations(self.sequence[idx], self.lengths[idx])
        return self.sequence[idx]

    def as_batch(self) -> torch.Tensor:
        return torch.cat(self.sequence, dim=0)


# -----------------------------
# Results and configuration
# -----------------------------
@dataclass(frozen=True)
class ScoredWindow:
    """Best-matching window of a longer sequence: first frame, frame count, score."""
    start: int
    length: int
    score: float

    @property
    def stop(self) -> int:
        return self.start + self.length

    def as_slice(self) -> slice:
        return slice(self.start, self.stop)


@dataclass(frozen=True)
class TrainingConfig:
    max_iter: int = 50
    tol: float = 1e-3
    update_var: bool = True
    min_var: float = MIN_VARIANCE
    verbose: bool = False
    check_nan: bool = False

    def __post_init__(self):
        if self.max_iter < 1:
            raise HMMError("max_iter must be positive")
        if self.tol < 0:
            raise HMMError("tol must be nonnegative")
        if self.min_var <= 0:
            raise HMMError("min_var must be positive")
