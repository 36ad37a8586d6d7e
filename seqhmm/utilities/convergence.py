import torch
import matplotlib.pyplot as plt
import json
import numpy as np
from typing import Callable, List, Optional
from threading import Lock

from seqhmm.constants import logger


class ConvergenceHandler:
    """
    Tracks the total log-likelihood of an iterative trainer.

    Scores are stored per iteration (index 0 holds the score before the first update).
    Convergence is declared once the absolute change between two successive scores
    drops to ``tol``; a drop in score is reported separately so the trainer can roll
    back its last update.
    """

    def __init__(self, max_iter: int, tol: float = 1e-3, verbose: bool = False,
                 callbacks: Optional[List[Callable]] = None, label: str = "EM",
                 device: Optional[torch.device] = None):
        self.max_iter = int(max_iter)
        self.tol = float(tol)
        self.verbose = verbose
        self.label = label
        self.callbacks = callbacks or []
        self.device = device or torch.device("cpu")
        self.score = torch.full((self.max_iter+1,), float("nan"), dtype=torch.float64, device=self.device)
        self.delta = torch.full_like(self.score, float("nan"))
        self.is_converged = False
        self.rejected_at: Optional[int] = None
        self._lock = Lock()

    def push(self, new_score, iteration: int):
        val = new_score.detach().to(torch.float64) if torch.is_tensor(new_score) else \
              torch.tensor(float(new_score), dtype=torch.float64, device=self.device)
        self.score[iteration] = val
        if iteration > 0 and not torch.isnan(self.score[iteration-1]):
            self.delta[iteration] = val - self.score[iteration-1]

    def decreased(self, iteration: int) -> bool:
        d = self.delta[iteration]
        return bool(not torch.isnan(d) and d.item() < 0.0)

    def mark_rejected(self, iteration: int):
        self.rejected_at = iteration
        logger.warning(f"[{self.label}] log-likelihood decreased at iteration {iteration} "
                       f"(Δ={self.delta[iteration].item():.3e}); restoring previous parameters")

    def check_converged(self, iteration: int) -> bool:
        d = self.delta[iteration]
        conv = bool(not torch.isnan(d) and abs(d.item()) <= self.tol)
        self.is_converged = conv
        self._trigger_callbacks(iteration, conv)
        if self.verbose:
            s = float(self.score[iteration].cpu())
            dval = float(d.cpu()) if not torch.isnan(d) else float("nan")
            status = "converged" if conv else ""
            logger.info(f"[{self.label}] Iter {iteration:03d} | Score: {s:.6f} | Δ: {dval:.3e} {status}")
        else:
            logger.debug(f"[{self.label}] Iter {iteration:03d} | Score: {self.score[iteration].item():.6f}")
        return conv

    def register_callback(self, fn: Callable):
        if fn not in self.callbacks: self.callbacks.append(fn)

    def _trigger_callbacks(self, iteration: int, conv: bool):
        with self._lock:
            s = self.score[iteration].item()
            dval = self.delta[iteration]
            d = dval.item() if not torch.isnan(dval) else float("nan")
            for fn in self.callbacks:
                fn(self, iteration, s, d, conv)

    @property
    def history(self) -> List[float]:
        mask = ~torch.isnan(self.score)
        return self.score[mask].cpu().tolist()

    @property
    def n_iter(self) -> int:
        """Number of recorded updates (the initial score is not an update)."""
        return max(len(self.history) - 1, 0)

    def plot_convergence(self, show: bool = True, savepath: Optional[str] = None,
                         title: str = "Convergence Curve", log_scale: bool = False):
        plt.style.use("ggplot")
        fig, ax = plt.subplots(figsize=(9, 5))
        iters = torch.arange(self.max_iter+1, device=self.device)
        mask = ~torch.isnan(self.score)
        if mask.any(): ax.plot(iters[mask].cpu(), self.score[mask].cpu(), marker="o", lw=1.5, label=self.label)
        if self.rejected_at is not None:
            ax.axvline(self.rejected_at, color="grey", ls="--", lw=1.0, label="rejected")
        ax.set_title(title)
        ax.set_xlabel("Iteration")
        ax.set_ylabel("Log-Likelihood")
        if log_scale: ax.set_yscale("symlog")
        ax.legend(loc="best", fontsize="small")
        fig.tight_layout()
        if savepath: plt.savefig(savepath, bbox_inches="tight", dpi=200)
        if show: plt.show()
        else: plt.close(fig)
        return fig

    def export_log(self, path: str):
        data = {"label": self.label, "max_iter": self.max_iter, "tol": self.tol,
                "scores": self._tensor_to_list(self.score),
                "delta": self._tensor_to_list(self.delta),
                "converged": self.is_converged,
                "rejected_at": self.rejected_at}
        with open(path, "w") as f: json.dump(data, f, indent=2)

    @staticmethod
    def _tensor_to_list(t: torch.Tensor) -> List[Optional[float]]:
        arr = t.cpu().numpy()
        return [float(x) if np.isfinite(x) else None for x in arr]

