"""
PLRNN Dynamical Core
====================
Piecewise-linear recurrent dynamics over the 5 sleep dimensions:

    z_{t+1} = A z_t + W φ(B z_t − θ) + c          φ(u) = max(u, 0)

  • A  (5×5)   diagonal autoregression (night-to-night persistence)
  • B  (16×5)  projection into hidden units; with dendritic connectivity
               each hidden unit reads exactly one sleep dimension, so B
               holds one free gain per row and θ places a ramp threshold
               on that dimension (a basis of ramps per dimension)
  • W  (5×16)  maps hidden ramps back into the state
  • c  (5)     bias, initialised so the cohort prior is a fixed point

One step is one night (dt = 24 h).  The observation model is identity;
per-dimension variance is carried alongside the mean and propagated with
the local Jacobian

    J(z) = A + W · diag(1[B z − θ > 0]) · B
    P_{t+1} = J P_t Jᵀ + Q

Reported variance along a rollout is the running maximum of diag(P), so
forecast uncertainty never shrinks with lead time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from forecasting.config import ForecastConfig
from forecasting.constants import DENDRITIC_THRESHOLD_RANGE, PRIOR_STATE

log = logging.getLogger("plrnn_core")


@dataclass
class PLRNNParameters:
    A: np.ndarray
    W: np.ndarray
    B: np.ndarray
    theta: np.ndarray
    c: np.ndarray
    mask: np.ndarray  # structural (h×n bool), never learned
    trained_samples: int = 0

    def copy(self) -> "PLRNNParameters":
        return PLRNNParameters(
            A=self.A.copy(),
            W=self.W.copy(),
            B=self.B.copy(),
            theta=self.theta.copy(),
            c=self.c.copy(),
            mask=self.mask.copy(),
            trained_samples=self.trained_samples,
        )

    def is_finite(self) -> bool:
        return all(
            np.all(np.isfinite(arr))
            for arr in (self.A, self.W, self.B, self.theta, self.c)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain-list export, JSON-serialisable."""
        return {
            "A": self.A.tolist(),
            "W": self.W.tolist(),
            "B": self.B.tolist(),
            "theta": self.theta.tolist(),
            "c": self.c.tolist(),
            "mask": self.mask.tolist(),
            "trained_samples": int(self.trained_samples),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config: ForecastConfig) -> "PLRNNParameters":
        """Rebuild exported parameters, checking them against *config*.

        Raises ValueError on a missing key, a wrong shape, non-finite
        values, a non-diagonal or non-contractive A, a mask that differs
        from the configured connectivity, or B weights outside the mask.
        """
        n, h = config.latent_dim, config.hidden_units
        shapes = {"A": (n, n), "W": (n, h), "B": (h, n), "theta": (h,), "c": (n,), "mask": (h, n)}
        arrays = {}
        for key, shape in shapes.items():
            if key not in data:
                raise ValueError(f"Parameter '{key}' is missing")
            arr = np.asarray(data[key], dtype=bool if key == "mask" else np.float64)
            if arr.shape != shape:
                raise ValueError(f"Parameter '{key}' has shape {arr.shape}, expected {shape}")
            arrays[key] = arr

        params = cls(trained_samples=int(data.get("trained_samples", 0)), **arrays)
        if not params.is_finite():
            raise ValueError("Parameters contain non-finite values")
        if np.count_nonzero(params.A - np.diag(np.diag(params.A))):
            raise ValueError("A must be diagonal")
        if np.any(np.abs(np.diag(params.A)) >= 1.0):
            raise ValueError("A has a persistence outside the unit interval")
        if not np.array_equal(params.mask, dendritic_mask(n, h, config.connectivity)):
            raise ValueError(f"mask does not match '{config.connectivity}' connectivity")
        if np.any(params.B[~params.mask] != 0):
            raise ValueError("B has weights outside the connectivity mask")
        return params


@dataclass
class Rollout:
    means: np.ndarray       # (steps, n)
    variances: np.ndarray   # (steps, n), non-decreasing along axis 0
    hidden: np.ndarray      # (steps, h)


@dataclass
class FilteredState:
    mean: np.ndarray
    variance: np.ndarray
    timestep: int
    as_of: Optional[date] = None
    history: List[np.ndarray] = field(default_factory=list)
    observed: List[np.ndarray] = field(default_factory=list)  # raw night vectors, same order


def dendritic_mask(n: int, h: int, connectivity: str) -> np.ndarray:
    if connectivity == "full":
        return np.ones((h, n), dtype=bool)
    mask = np.zeros((h, n), dtype=bool)
    for k in range(h):
        mask[k, k % n] = True
    return mask


def dendritic_thresholds(n: int, h: int) -> np.ndarray:
    """Spread the ramps belonging to each dimension evenly over the threshold range."""
    lo, hi = DENDRITIC_THRESHOLD_RANGE
    theta = np.zeros(h, dtype=np.float64)
    for d in range(n):
        units = list(range(d, h, n))
        if len(units) == 1:
            theta[units[0]] = (lo + hi) / 2
        else:
            theta[units] = np.linspace(lo, hi, len(units))
    return theta


def init_parameters(config: ForecastConfig) -> PLRNNParameters:
    """Deterministic, seeded initial parameters.

    A in [0.80, 0.90] keeps the map contractive; W is ~80% sparse with
    small weights; c is solved so that PRIOR_STATE is an exact fixed point.
    """
    n, h = config.latent_dim, config.hidden_units
    rng = np.random.default_rng(config.seed)

    mask = dendritic_mask(n, h, config.connectivity)
    theta = dendritic_thresholds(n, h)

    B = np.zeros((h, n), dtype=np.float64)
    for k in range(h):
        B[k, k % n] = 1.0
    if config.connectivity == "full":
        B += rng.normal(0.0, 0.05, size=(h, n)) * (B == 0)

    A = np.diag(0.80 + 0.10 * rng.random(n))
    W = rng.normal(0.0, 0.05, size=(n, h)) * (rng.random((n, h)) < 0.2)

    mu = np.array(PRIOR_STATE, dtype=np.float64)
    phi_mu = np.maximum(B @ mu - theta, 0.0)
    c = (np.eye(n) - A) @ mu - W @ phi_mu

    return PLRNNParameters(A=A, W=W, B=B, theta=theta, c=c, mask=mask)


class PLRNNCore:
    """Holds the current parameters and evaluates the dynamics."""

    def __init__(self, config: ForecastConfig, params: Optional[PLRNNParameters] = None):
        self.config = config
        self.params = params if params is not None else init_parameters(config)
        self.n = config.latent_dim
        self.h = config.hidden_units

    # ─── Single step ─────────────────────────────────────────

    def preactivation(self, z: np.ndarray, params: Optional[PLRNNParameters] = None) -> np.ndarray:
        p = params or self.params
        return p.B @ z - p.theta

    def hidden(self, z: np.ndarray, params: Optional[PLRNNParameters] = None) -> np.ndarray:
        return np.maximum(self.preactivation(z, params), 0.0)

    def step(
        self,
        z: np.ndarray,
        params: Optional[PLRNNParameters] = None,
        drive: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        p = params or self.params
        z_next = p.A @ z + p.W @ self.hidden(z, p) + p.c
        if drive is not None:
            z_next = z_next + drive
        return z_next

    def jacobian(self, z: np.ndarray, params: Optional[PLRNNParameters] = None) -> np.ndarray:
        p = params or self.params
        gate = (self.preactivation(z, p) > 0).astype(np.float64)
        return p.A + p.W @ (gate[:, None] * p.B)

    # ─── Multi-step ──────────────────────────────────────────

    def rollout(
        self,
        z0: Sequence[float],
        var0: Sequence[float],
        steps: int,
        process_var: Sequence[float],
        drive: Optional[np.ndarray] = None,
    ) -> Rollout:
        """Roll *steps* nights forward with linearised covariance propagation."""
        z = np.asarray(z0, dtype=np.float64).copy()
        P = np.diag(np.asarray(var0, dtype=np.float64))
        Q = np.diag(np.asarray(process_var, dtype=np.float64))

        means = np.zeros((steps, self.n))
        variances = np.zeros((steps, self.n))
        hidden = np.zeros((steps, self.h))
        floor = np.diag(P).copy()

        for t in range(steps):
            J = self.jacobian(z)
            z = self.step(z, drive=drive)
            P = J @ P @ J.T + Q
            P = 0.5 * (P + P.T)
            floor = np.maximum(floor, np.diag(P))
            means[t] = z
            variances[t] = floor
            hidden[t] = self.hidden(z)

        log.debug("Rollout %d steps: final mean=%s var=%s", steps, np.round(z, 3), np.round(floor, 4))
        return Rollout(means=means, variances=variances, hidden=hidden)

    def filter_state(
        self,
        observations: Sequence[Tuple[date, np.ndarray]],
        obs_var: Sequence[float],
        process_var: Sequence[float],
    ) -> Optional[FilteredState]:
        """Kalman-style estimate of the current latent state.

        Date gaps are bridged by predicting once per missing night before
        the measurement update.  Returns None for an empty history.
        """
        if not observations:
            return None

        R = np.diag(np.asarray(obs_var, dtype=np.float64))
        Q = np.diag(np.asarray(process_var, dtype=np.float64))
        I = np.eye(self.n)

        first_date, first_obs = observations[0]
        z = np.asarray(first_obs, dtype=np.float64).copy()
        P = R.copy()
        timestep = 0
        prev_date = first_date
        states = [z.copy()]
        observed = [z.copy()]

        for obs_date, x in observations[1:]:
            gap = max(1, (obs_date - prev_date).days)
            for _ in range(gap):
                J = self.jacobian(z)
                z = self.step(z)
                P = J @ P @ J.T + Q
            timestep += gap
            S = P + R
            K = P @ np.linalg.inv(S)
            z = z + K @ (np.asarray(x, dtype=np.float64) - z)
            P = (I - K) @ P
            P = 0.5 * (P + P.T)
            prev_date = obs_date
            states.append(z.copy())
            observed.append(np.asarray(x, dtype=np.float64).copy())

        return FilteredState(
            mean=z,
            variance=np.clip(np.diag(P), 0.0, None),
            timestep=timestep,
            as_of=prev_date,
            history=states,
            observed=observed,
        )

    # ─── Stability ───────────────────────────────────────────

    def lyapunov_exponent(self, z0: Optional[Sequence[float]] = None, steps: int = 50) -> float:
        """Largest Lyapunov exponent along a free-running orbit (Benettin).

        Negative → perturbations decay (stable dynamics).
        """
        z = np.asarray(z0 if z0 is not None else PRIOR_STATE, dtype=np.float64).copy()
        v = np.ones(self.n) / np.sqrt(self.n)
        total = 0.0
        for _ in range(steps):
            v = self.jacobian(z) @ v
            norm = float(np.linalg.norm(v))
            if norm < 1e-12 or not np.isfinite(norm):
                return float(np.log(1e-12)) if norm < 1e-12 else float("inf")
            total += np.log(norm)
            v = v / norm
            z = self.step(z)
        return float(total / steps)
