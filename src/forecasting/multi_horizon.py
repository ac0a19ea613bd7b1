"""
Multi-horizon predictor.

Rolls the core forward hours_ahead/dt nights from a user's filtered state,
decodes every step into a trajectory point with a 95% interval, then
derives trend, deterioration risk and a short recommendation list.

The shared parameters relax every state toward the cohort prior.  A
user who sleeps steadily at SE 70 or 99 would otherwise be forecast to
drift toward 85, so the rollout is anchored to the user's own level: a
second rollout from the mean of the last window of observed nights gives
the drift that level alone would show, and that drift is subtracted.
What remains is the forecast movement relative to the user's baseline.

Trend combines three readings, checked in this order:
  critical   final SE < CRITICAL_SE and the forecast falls (or history dropped)
  declining  forecast change < −5, final well below the recent mean,
             the fitted trailing drop ≥ se_drop_threshold, or a final SE
             below CRITICAL_SE that is not clearly improving
  improving  forecast change > +5 or final clearly above the recent mean
  stable     everything else
The fitted history drop keeps a sustained decline from being forecast away.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from forecasting.config import ForecastConfig
from forecasting.constants import (
    CRITICAL_SE,
    MAX_RECOMMENDATIONS,
    RECOMMENDATIONS,
    SE,
    SEVERITY_RISK,
    TREND_BASE_RISK,
    TREND_CHANGE_POINTS,
    Z_95,
)
from forecasting.dimension_mapper import DimensionMapper
from forecasting.early_warning import detect_early_warnings, fitted_change
from forecasting.models import (
    EarlyWarning,
    PredictedEfficiency,
    PredictedMetrics,
    Prediction,
    SEPoint,
)
from forecasting.plrnn_core import FilteredState, PLRNNCore, Rollout

log = logging.getLogger("multi_horizon")


# ─── Trend / risk ────────────────────────────────────────────

def classify_trend(
    start_se: float,
    final_se: float,
    recent_mean: float,
    history_drop: float,
    se_drop_threshold: float,
) -> str:
    change = final_se - start_se
    history_declined = history_drop >= se_drop_threshold

    if final_se < CRITICAL_SE and (change < -TREND_CHANGE_POINTS or history_declined):
        return "critical"
    if change < -TREND_CHANGE_POINTS or final_se < recent_mean - se_drop_threshold or history_declined:
        return "declining"
    if final_se < CRITICAL_SE and change <= TREND_CHANGE_POINTS:
        return "declining"
    if change > TREND_CHANGE_POINTS or final_se > recent_mean + TREND_CHANGE_POINTS:
        return "improving"
    return "stable"


def deterioration_risk(
    trend: str,
    se_change: float,
    history_drop: float,
    se_sigma: float,
    warnings: Sequence[EarlyWarning],
    se_drop_threshold: float,
) -> float:
    """Trend base + steepness of decline + forecast spread + warning severities, in [0, 1]."""
    risk = TREND_BASE_RISK[trend]
    decline = max(0.0, -se_change, history_drop)
    risk += 0.25 * min(1.0, decline / (3 * se_drop_threshold))
    risk += 0.15 * min(1.0, Z_95 * se_sigma)
    for w in warnings:
        risk += SEVERITY_RISK[w.severity]
    return float(np.clip(risk, 0.0, 1.0))


def build_recommendations(
    trend: str,
    final_metrics: Dict[str, float],
    warnings: Sequence[EarlyWarning],
    locale: str,
) -> List[str]:
    keys: List[str] = []
    if trend in ("critical", "declining"):
        keys.append("review_program")
    if final_metrics["sleep_efficiency"] < 80:
        keys.append("sleep_restriction")
    if final_metrics["sleep_onset_latency"] > 30:
        keys.extend(["relaxation", "sleepy_only"])
    if final_metrics["wake_after_sleep_onset"] > 30:
        keys.extend(["get_up", "bedroom"])

    recs = [RECOMMENDATIONS[k][locale] for k in keys]
    for w in warnings:
        if w.severity in ("high", "critical") and w.recommendation:
            recs.append(w.recommendation)

    out: List[str] = []
    for r in recs:
        if r not in out:
            out.append(r)
    if not out:
        out.append(RECOMMENDATIONS["continue"][locale])
    return out[:MAX_RECOMMENDATIONS]


# ─── Predictor ───────────────────────────────────────────────

class MultiHorizonPredictor:

    def __init__(self, config: ForecastConfig, core: PLRNNCore, mapper: DimensionMapper):
        self.config = config
        self.core = core
        self.mapper = mapper

    def _interval(self, value: float, sigma: float):
        max_se = self.config.normalization.max_se
        value = float(np.clip(value, 0.0, max_se))
        half = Z_95 * sigma * max_se
        lower = float(np.clip(value - half, 0.0, max_se))
        upper = float(np.clip(value + half, 0.0, max_se))
        return round(value, 1), round(min(lower, value), 1), round(max(upper, value), 1)

    def _anchored_means(
        self,
        state: FilteredState,
        roll: Rollout,
        steps: int,
        process_var: np.ndarray,
    ) -> np.ndarray:
        """Rollout means minus the drift the user's own recent level would show."""
        recent = state.observed[-self.config.early_warning.window_nights:] or [state.mean]
        level = np.mean(recent, axis=0)
        baseline = self.core.rollout(level, state.variance, steps, process_var)
        return roll.means - (baseline.means - level)

    def predict(
        self,
        *,
        user_id: str,
        horizon: str,
        state: FilteredState,
        frame: pd.DataFrame,
        process_var: np.ndarray,
        now: Optional[datetime] = None,
    ) -> Prediction:
        """Forecast from *state*; *frame* is the user's per-night history (raw units)."""
        cfg = self.config
        hours_ahead = cfg.horizons.hours(horizon)
        steps = cfg.steps_for(horizon)
        roll = self.core.rollout(state.mean, state.variance, steps, process_var)
        means = self._anchored_means(state, roll, steps, process_var)

        last_date = frame.index[-1].date()
        trajectory: List[SEPoint] = []
        for t in range(steps):
            se_raw = self.mapper.from_vector(means[t])["sleep_efficiency"]
            value, lower, upper = self._interval(se_raw, float(np.sqrt(roll.variances[t, SE])))
            trajectory.append(
                SEPoint(
                    date=last_date + timedelta(days=t + 1),
                    predicted=value,
                    lower95=lower,
                    upper95=upper,
                )
            )

        final = self.mapper.from_vector(means[-1])
        se_sigma = float(np.sqrt(roll.variances[-1, SE]))
        value, lower, upper = self._interval(final["sleep_efficiency"], se_sigma)
        efficiency = PredictedEfficiency(
            value=value,
            confidence=float(np.clip(1 - Z_95 * se_sigma, 0.0, 1.0)),
            lower95=lower,
            upper95=upper,
        )

        warnings = detect_early_warnings(
            frame=frame,
            config=cfg,
            forecast=final,
            horizon_days=steps,
            state_sequence=state.history,
            observed_sequence=state.observed,
        )

        recent = frame["sleep_efficiency"].tail(cfg.early_warning.window_nights)
        history_drop = -fitted_change(recent)
        start_se = self.mapper.from_vector(state.mean)["sleep_efficiency"]
        se_change = final["sleep_efficiency"] - start_se
        thr = cfg.early_warning.se_drop_threshold

        trend = classify_trend(start_se, final["sleep_efficiency"], float(recent.mean()), history_drop, thr)
        risk = deterioration_risk(trend, se_change, history_drop, se_sigma, warnings, thr)

        log.info(
            "   %s/%s: SE %.1f -> %.1f [%.1f, %.1f]  trend=%s  risk=%.2f  warnings=%d",
            user_id, horizon, start_se, value, lower, upper, trend, risk, len(warnings),
        )

        return Prediction(
            user_id=user_id,
            horizon=horizon,
            hours_ahead=hours_ahead,
            days_ahead=steps * cfg.dt // 24,
            generated_at=now or datetime.now(),
            predicted_sleep_efficiency=efficiency,
            predicted_metrics=PredictedMetrics(
                sleep_onset_latency=final["sleep_onset_latency"],
                wake_after_sleep_onset=final["wake_after_sleep_onset"],
                total_sleep_time=final["total_sleep_time"],
                sleep_quality=final["sleep_quality"],
            ),
            sleep_efficiency_trajectory=trajectory,
            trend=trend,
            deterioration_risk=risk,
            early_warnings=warnings,
            recommendations=build_recommendations(trend, final, warnings, cfg.locale),
        )
