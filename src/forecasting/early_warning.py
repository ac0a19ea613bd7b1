"""
Early-warning detector.

Works on the trailing window of actual diary nights, with the forecast as
a secondary input, independent of which horizon was requested:

  efficiency_drop   SE fell (or is forecast to fall) ≥ se_drop_threshold
  sol_increase      SOL rose (or is forecast to rise) ≥ sol_increase_threshold
  waso_increase     WASO rose (or is forecast to rise) ≥ waso_increase_threshold
  variance_spike    rolling variance ≥ variance_threshold × its baseline
  pattern_disruption  critical-slowing-down indicators on the filtered
                    per-night states (rising lag-1 autocorrelation,
                    rising variance, flickering around the mean); a
                    dimension is only checked when the diary itself
                    moved on it

Trailing change is the end-minus-start of a least-squares line over the
window, so one noisy night does not trigger a warning on its own.
The detector always returns a list; no warnings is [].
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats as sp_stats
from statsmodels.tsa.stattools import acf

from forecasting.config import ForecastConfig
from forecasting.constants import (
    CRITICAL_SE,
    DIMENSIONS,
    EWS_AUTOCORR_FLOOR,
    EWS_AMPLITUDE_FLOOR,
    EWS_AUTOCORR_RISE,
    EWS_FLICKER_MIN,
    EWS_MIN_STRENGTH,
    EWS_VARIANCE_FLOOR,
    EWS_VARIANCE_RATIO,
    SEVERITY_TIERS,
    WARNING_MESSAGES,
    WARNING_RECOMMENDATIONS,
)
from forecasting.models import EarlyWarning

log = logging.getLogger("early_warning")

MIN_NIGHTS = 3
EWS_WINDOW = 5

# Variance floors (domain units²) so near-constant baselines don't explode the ratio
VARIANCE_FLOOR = {
    "sleep_efficiency": 1.0,
    "sleep_onset_latency": 4.0,
    "wake_after_sleep_onset": 4.0,
}


def severity_for(value: float, threshold: float) -> str:
    ratio = value / threshold
    for cut, label in SEVERITY_TIERS:
        if ratio >= cut:
            return label
    return "low"


def fitted_change(series: pd.Series) -> float:
    """End-minus-start of the OLS line through *series* (0 if < 3 points)."""
    vals = series.dropna().to_numpy(dtype=np.float64)
    if len(vals) < 3:
        return 0.0
    slope, *_ = sp_stats.linregress(np.arange(len(vals)), vals)
    return float(slope * (len(vals) - 1))


def _history_confidence(n_nights: int, base: float) -> float:
    return float(min(1.0, base + (n_nights / 30) * 0.2))


def _days_to_critical(current: float, daily_change: float) -> Optional[int]:
    if current <= CRITICAL_SE:
        return 0
    if daily_change >= 0:
        return None
    return int(math.ceil((current - CRITICAL_SE) / abs(daily_change)))


def _warning(
    kind: str,
    metric: str,
    severity: str,
    strength: float,
    confidence: float,
    locale: str,
    days_to_critical: Optional[int] = None,
    recommendation_key: Optional[str] = None,
    message_key: Optional[str] = None,
    **fmt,
) -> EarlyWarning:
    msg = WARNING_MESSAGES[message_key or kind]
    rec = WARNING_RECOMMENDATIONS[recommendation_key or kind]
    return EarlyWarning(
        type=kind,
        metric=metric,
        severity=severity,
        message_ru=msg["ru"].format(metric=metric, **fmt),
        message_en=msg["en"].format(metric=metric, **fmt),
        strength=float(np.clip(strength, 0.0, 1.0)),
        confidence=float(np.clip(confidence, 0.0, 1.0)),
        estimated_days_to_critical=days_to_critical,
        recommendation=rec[locale],
    )


# ─── Threshold rules ─────────────────────────────────────────

def _threshold_warnings(
    recent: pd.DataFrame,
    forecast: Optional[Dict[str, float]],
    horizon_days: int,
    n_nights: int,
    config: ForecastConfig,
) -> List[EarlyWarning]:
    thr = config.early_warning
    locale = config.locale
    out: List[EarlyWarning] = []

    se = recent["sleep_efficiency"]
    observed_drop = -fitted_change(se)
    forecast_drop = (se.mean() - forecast["sleep_efficiency"]) if forecast else 0.0
    drop = max(observed_drop, forecast_drop)
    if drop >= thr.se_drop_threshold:
        severity = severity_for(drop, thr.se_drop_threshold)
        observed_daily = -observed_drop / max(1, len(se) - 1)
        forecast_daily = -forecast_drop / max(1, horizon_days) if forecast else 0.0
        out.append(
            _warning(
                "efficiency_drop",
                "sleep_efficiency",
                severity,
                strength=drop / (thr.se_drop_threshold * 3),
                confidence=_history_confidence(n_nights, 0.7),
                locale=locale,
                days_to_critical=_days_to_critical(float(se.iloc[-1]), min(observed_daily, forecast_daily)),
                recommendation_key=(
                    "efficiency_drop_severe" if severity in ("high", "critical") else "efficiency_drop"
                ),
                value=drop,
            )
        )

    rules = (
        ("sol_increase", "sleep_onset_latency", thr.sol_increase_threshold),
        ("waso_increase", "wake_after_sleep_onset", thr.waso_increase_threshold),
    )
    for kind, metric, threshold in rules:
        s = recent[metric]
        observed_rise = fitted_change(s)
        forecast_rise = (forecast[metric] - s.mean()) if forecast else 0.0
        rise = max(observed_rise, forecast_rise)
        if rise >= threshold:
            out.append(
                _warning(
                    kind,
                    metric,
                    severity_for(rise, threshold),
                    strength=rise / (threshold * 3),
                    confidence=_history_confidence(n_nights, 0.65),
                    locale=locale,
                    value=rise,
                )
            )
    return out


def _variance_warnings(frame: pd.DataFrame, config: ForecastConfig) -> List[EarlyWarning]:
    thr = config.early_warning
    window = thr.window_nights
    out: List[EarlyWarning] = []
    for metric, floor in VARIANCE_FLOOR.items():
        rolling = frame[metric].rolling(window, min_periods=MIN_NIGHTS).var()
        baseline = rolling.iloc[:-1].dropna()
        current = rolling.iloc[-1]
        if baseline.empty or pd.isna(current):
            continue
        base = max(float(baseline.median()), floor)
        ratio = float(current) / base
        if ratio >= thr.variance_threshold:
            out.append(
                _warning(
                    "variance_spike",
                    metric,
                    severity_for(ratio, thr.variance_threshold),
                    strength=ratio / (thr.variance_threshold * 2),
                    confidence=0.6,
                    locale=config.locale,
                )
            )
    return out


# ─── Critical slowing down ───────────────────────────────────

def _lag1_autocorrelation(x: np.ndarray) -> float:
    if len(x) < 3 or np.std(x) < 1e-10:
        return 0.0
    return float(acf(x, nlags=1, fft=False)[1])


def _flickering(x: np.ndarray) -> float:
    """Mean crossings relative to white-noise expectation, minus one."""
    if len(x) < 5 or np.std(x) < EWS_AMPLITUDE_FLOOR:
        return 0.0
    above = x >= x.mean()
    crossings = int(np.sum(above[1:] != above[:-1]))
    expected = (len(x) - 1) / 2
    return max(0.0, crossings / expected - 1.0)


def _pattern_warnings(
    sequence: Sequence[np.ndarray],
    config: ForecastConfig,
    observed: Optional[Sequence[np.ndarray]] = None,
) -> List[EarlyWarning]:
    if len(sequence) < 2 * EWS_WINDOW:
        return []
    states = np.vstack(sequence)
    # Filter convergence alone is not a signal: the raw nights must move too
    raw = np.vstack(observed) if observed is not None and len(observed) else states
    moving = np.std(raw[-2 * EWS_WINDOW:], axis=0) >= EWS_AMPLITUDE_FLOOR
    early, late = states[:EWS_WINDOW], states[-EWS_WINDOW:]
    conf = float(min(1.0, len(states) / 50))
    out: List[EarlyWarning] = []

    for dim, name in enumerate(DIMENSIONS):
        if not moving[dim]:
            continue
        candidates = []

        ac_early = _lag1_autocorrelation(early[:, dim])
        ac_late = _lag1_autocorrelation(late[:, dim])
        if ac_late > ac_early + EWS_AUTOCORR_RISE and ac_late > EWS_AUTOCORR_FLOOR:
            strength = (ac_late - ac_early) / max(1e-6, 1 - ac_early)
            days = None
            if ac_late >= 0.7:
                days = int(round(min(48.0, config.dt / (1 - ac_late)) / 24)) if ac_late < 1 else 0
            candidates.append(("autocorrelation", strength, days))

        var_early = max(float(np.var(early[:, dim], ddof=1)), EWS_VARIANCE_FLOOR)
        var_late = float(np.var(late[:, dim], ddof=1))
        if var_late > var_early * EWS_VARIANCE_RATIO:
            candidates.append(("variance", (var_late - var_early) / var_early, None))

        flicker = _flickering(late[:, dim])
        if flicker > EWS_FLICKER_MIN:
            candidates.append(("flickering", flicker, None))

        if not candidates:
            continue
        signal, strength, days = max(candidates, key=lambda c: min(1.0, c[1]))
        strength = float(min(1.0, strength))
        if strength <= EWS_MIN_STRENGTH:
            continue
        out.append(
            _warning(
                "pattern_disruption",
                name,
                "high" if strength > 0.8 else "moderate",
                strength=strength,
                confidence=conf,
                locale=config.locale,
                days_to_critical=days,
                message_key=signal,
            )
        )
    return out


def detect_early_warnings(
    *,
    frame: pd.DataFrame,
    config: ForecastConfig,
    forecast: Optional[Dict[str, float]] = None,
    horizon_days: int = 1,
    state_sequence: Sequence[np.ndarray] = (),
    observed_sequence: Optional[Sequence[np.ndarray]] = None,
) -> List[EarlyWarning]:
    """Run every rule over a per-night raw-unit frame (see entries_to_frame).

    *state_sequence* and *observed_sequence* hold one normalized vector per
    actual night; *forecast* is the horizon-end forecast in domain units.
    """
    if len(frame) < MIN_NIGHTS:
        return []

    recent = frame.tail(config.early_warning.window_nights)
    warnings = _threshold_warnings(recent, forecast, horizon_days, len(frame), config)
    warnings.extend(_variance_warnings(frame, config))
    warnings.extend(_pattern_warnings(state_sequence, config, observed_sequence))

    if warnings:
        log.info(
            "   %d early warning(s): %s",
            len(warnings),
            ", ".join(f"{w.type}/{w.severity}" for w in warnings),
        )
    return warnings
