"""Model-health read-outs: participation ratio, sparsity, Lyapunov exponent."""

from __future__ import annotations

import numpy as np

from forecasting.config import ForecastConfig
from forecasting.models import ComplexityMetrics
from forecasting.online_learner import OnlineLearner
from forecasting.plrnn_core import PLRNNCore


def participation_ratio(matrix: np.ndarray) -> float:
    """(Σ|λ|)² / Σ|λ|²; n for an isotropic spectrum, 1 when one mode dominates."""
    lam = np.abs(np.linalg.eigvals(matrix))
    denom = float(np.sum(lam ** 2))
    if denom == 0.0:
        return 0.0
    return float(np.sum(lam) ** 2 / denom)


def sparsity(weights: np.ndarray, epsilon: float) -> float:
    if weights.size == 0:
        return 1.0
    return float(np.mean(np.abs(weights) < epsilon))


def complexity_metrics(core: PLRNNCore, learner: OnlineLearner, config: ForecastConfig) -> ComplexityMetrics:
    p = core.params
    loss = learner.recent_loss()
    return ComplexityMetrics(
        effective_dimensionality=round(participation_ratio(p.A), 4),
        sparsity=round(sparsity(p.W, config.sparsity_epsilon), 4),
        lyapunov_exponent=round(core.lyapunov_exponent(), 4),
        accepted_updates=learner.accepted,
        rejected_updates=learner.rejected,
        recent_loss=None if loss is None else round(loss, 6),
    )
