"""Conversion between SleepMetrics and the normalized 5-dimensional state vector."""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from forecasting.config import NormalizationConfig
from forecasting.constants import DIMENSIONS, QUALITY, SE, SOL, TST, WASO
from forecasting.models import HistoryEntry, SleepMetrics


class DimensionMapper:
    """Bidirectional SleepMetrics <-> vector mapping.

    Order is DIMENSIONS: [SE, SOL, WASO, TST, quality].  Every component is
    scaled by its configured maximum and clamped to [0, 1], so out-of-range
    diary input (e.g. SOL > 120 min) saturates instead of leaking outside
    the model's operating range.  TST is stored in minutes but normalized
    in hours.
    """

    def __init__(self, normalization: NormalizationConfig):
        self.norm = normalization
        self._scale = np.array(
            [
                normalization.max_se,
                normalization.max_sol,
                normalization.max_waso,
                normalization.max_tst * 60.0,
                1.0,
            ],
            dtype=np.float64,
        )

    def to_vector(self, metrics: SleepMetrics, subjective_quality: float = 0.5) -> np.ndarray:
        raw = np.array(
            [
                metrics.sleep_efficiency,
                metrics.sleep_onset_latency,
                metrics.wake_after_sleep_onset,
                metrics.total_sleep_time,
                subjective_quality,
            ],
            dtype=np.float64,
        )
        return np.clip(raw / self._scale, 0.0, 1.0)

    def entry_vector(self, entry: HistoryEntry) -> np.ndarray:
        return self.to_vector(entry.metrics, entry.subjective_quality)

    def from_vector(self, state: Sequence[float]) -> Dict[str, float]:
        """Decode to domain units (SE %, minutes, quality 0-1)."""
        vec = np.clip(np.asarray(state, dtype=np.float64)[: len(DIMENSIONS)], 0.0, 1.0)
        raw = vec * self._scale
        return {
            "sleep_efficiency": round(float(raw[SE]), 1),
            "sleep_onset_latency": round(float(raw[SOL]), 1),
            "wake_after_sleep_onset": round(float(raw[WASO]), 1),
            "total_sleep_time": round(float(raw[TST]), 1),
            "sleep_quality": round(float(raw[QUALITY]), 3),
        }


def entries_to_frame(entries: Iterable[HistoryEntry]) -> pd.DataFrame:
    """Raw-unit DataFrame indexed by date; duplicate dates keep the last row."""
    rows: List[Dict[str, float]] = []
    for e in entries:
        rows.append(
            {
                "date": pd.Timestamp(e.date),
                "sleep_efficiency": e.metrics.sleep_efficiency,
                "sleep_onset_latency": e.metrics.sleep_onset_latency,
                "wake_after_sleep_onset": e.metrics.wake_after_sleep_onset,
                "total_sleep_time": e.metrics.total_sleep_time,
                "sleep_quality": e.subjective_quality,
            }
        )
    if not rows:
        return pd.DataFrame(columns=["date", *DIMENSIONS]).set_index("date")
    df = pd.DataFrame(rows)
    df = df.drop_duplicates(subset="date", keep="last").sort_values("date")
    return df.set_index("date")
