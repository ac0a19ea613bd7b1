"""
Online learner: one guarded error-correcting step per observed transition.

For a transition z_prev → z_target the one-step error is
e = z_target − f(z_prev) and the loss ½‖e‖².  Gradients:

    ∂A_ii = −e_i · z_prev_i                      (diagonal only)
    ∂W    = −e ⊗ φ(B z_prev − θ)
    ∂B    = −((Wᵀ e) ⊙ 1[u > 0]) ⊗ z_prev       (masked to the dendritic basis)
    ∂c    = −e

The step is normalised-LMS (lr / (1 + ‖φ‖² + ‖z‖²)), clipped element-wise,
with an L2 pull toward the initial parameters and L1 shrinkage on W.
Every update is computed on a scratch copy and only committed if all
parameters are finite and A stays inside the unit interval; otherwise the
previous parameters are kept and the rejection is counted.
train_batch() runs the same step over a whole list of transitions and
commits (or discards) the outcome once.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Sequence, Tuple

import numpy as np

from forecasting.config import ForecastConfig
from forecasting.plrnn_core import PLRNNCore, PLRNNParameters

log = logging.getLogger("online_learner")

# |A_ii| must stay below this for the update to be accepted
MAX_PERSISTENCE = 1.0

# Accepted-update losses kept for the recent-loss read-out
LOSS_WINDOW = 50


@dataclass
class UpdateResult:
    accepted: bool
    loss: float
    reason: str = ""


class OnlineLearner:

    def __init__(self, config: ForecastConfig, core: PLRNNCore):
        self.config = config
        self.core = core
        self.prior = core.params.copy()
        # Per-dimension one-step residual variance, seeded at the process-noise floor
        self.residual_var = np.full(config.latent_dim, config.process_noise ** 2)
        self.accepted = 0
        self.rejected = 0
        self.losses: Deque[float] = deque(maxlen=LOSS_WINDOW)
        self._pending_residual: Optional[np.ndarray] = None

    def process_variance(self) -> np.ndarray:
        return np.maximum(self.residual_var, self.config.process_noise ** 2)

    def _gradient_step(self, p: PLRNNParameters, z_prev: np.ndarray, z_target: np.ndarray) -> float:
        cfg = self.config
        u = p.B @ z_prev - p.theta
        phi = np.maximum(u, 0.0)
        gate = (u > 0).astype(np.float64)
        z_hat = p.A @ z_prev + p.W @ phi + p.c
        e = z_target - z_hat
        loss = 0.5 * float(e @ e)

        lr = cfg.learning_rate / (1.0 + float(phi @ phi) + float(z_prev @ z_prev))
        clip = cfg.gradient_clip
        l2 = cfg.l2_regularization

        g_A = np.diag(-e * z_prev) + l2 * (p.A - self.prior.A)
        g_A = np.diag(np.diag(g_A))
        g_W = -np.outer(e, phi) + l2 * (p.W - self.prior.W) + cfg.l1_regularization * np.sign(p.W)
        g_B = -np.outer((p.W.T @ e) * gate, z_prev) + l2 * (p.B - self.prior.B)
        g_B = g_B * p.mask
        g_c = -e + l2 * (p.c - self.prior.c)

        p.A -= lr * np.clip(g_A, -clip, clip)
        p.W -= lr * np.clip(g_W, -clip, clip)
        p.B -= lr * np.clip(g_B, -clip, clip)
        p.c -= lr * np.clip(g_c, -clip, clip)
        p.trained_samples += 1

        self._pending_residual = e * e
        return loss

    @staticmethod
    def _validate(p: PLRNNParameters) -> Optional[str]:
        if not p.is_finite():
            return "non-finite parameters"
        if np.any(np.abs(np.diag(p.A)) >= MAX_PERSISTENCE):
            return "persistence outside unit interval"
        return None

    def _commit(self, scratch: PLRNNParameters, loss: float, residual: np.ndarray) -> UpdateResult:
        reason = self._validate(scratch)
        if reason is None and not np.isfinite(loss):
            reason = "non-finite loss"
        if reason is not None:
            self.rejected += 1
            log.warning("Online update rejected (%s); keeping previous parameters", reason)
            return UpdateResult(accepted=False, loss=float("nan"), reason=reason)

        self.core.params = scratch
        decay = self.config.residual_decay
        self.residual_var = decay * self.residual_var + (1 - decay) * residual
        self.accepted += 1
        self.losses.append(loss)
        return UpdateResult(accepted=True, loss=loss)

    def update(self, z_prev: np.ndarray, z_target: np.ndarray) -> UpdateResult:
        """Attempt one update; commit into the core only if it validates."""
        scratch = self.core.params.copy()
        with np.errstate(all="ignore"):
            loss = self._gradient_step(
                scratch,
                np.asarray(z_prev, dtype=np.float64),
                np.asarray(z_target, dtype=np.float64),
            )
        result = self._commit(scratch, loss, self._pending_residual)
        if result.accepted:
            log.debug("Online update accepted: loss=%.5f samples=%d", loss, scratch.trained_samples)
        return result

    def train_batch(
        self,
        transitions: Sequence[Tuple[np.ndarray, np.ndarray]],
        epochs: int = 1,
    ) -> UpdateResult:
        """Sweep *epochs* times over *transitions* and commit the result as one update.

        The whole batch is validated once at the end, so a batch that
        diverges anywhere leaves the parameters untouched.  The reported
        loss is the mean one-step loss of the last sweep.
        """
        pairs = [
            (np.asarray(a, dtype=np.float64), np.asarray(b, dtype=np.float64))
            for a, b in transitions
        ]
        if not pairs:
            return UpdateResult(accepted=False, loss=float("nan"), reason="no transitions")

        scratch = self.core.params.copy()
        loss = float("nan")
        residual = np.zeros(self.config.latent_dim)
        with np.errstate(all="ignore"):
            for _ in range(max(1, epochs)):
                total = 0.0
                residual = np.zeros(self.config.latent_dim)
                for z_prev, z_target in pairs:
                    total += self._gradient_step(scratch, z_prev, z_target)
                    residual += self._pending_residual
                loss = total / len(pairs)

        result = self._commit(scratch, loss, residual / len(pairs))
        if result.accepted:
            log.info(
                "Batch update accepted: %d transitions x %d epochs, loss=%.5f",
                len(pairs), max(1, epochs), loss,
            )
        return result

    def load(self, params: PLRNNParameters, residual_var: Optional[Sequence[float]] = None) -> None:
        """Install *params* as both the live weights and the regularisation anchor.

        *residual_var* restores the learned process noise; it must hold one
        finite, non-negative value per dimension.
        """
        if residual_var is not None:
            rv = np.asarray(residual_var, dtype=np.float64)
            if rv.shape != (self.config.latent_dim,) or not np.all(np.isfinite(rv)) or np.any(rv < 0):
                raise ValueError(f"residual variance must be {self.config.latent_dim} finite values >= 0")
            self.residual_var = rv.copy()
        self.core.params = params.copy()
        self.prior = params.copy()

    def recent_loss(self) -> Optional[float]:
        """Mean loss over the last accepted updates, None before the first one."""
        if not self.losses:
            return None
        return float(np.mean(self.losses))
