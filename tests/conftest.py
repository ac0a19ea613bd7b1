"""
Shared test configuration.

Adds src/ to sys.path so the flat modules (sleep_prediction_engine,
replay_diary) and the forecasting package import without installation,
and provides small diary-entry builders used across the test modules.
"""

import os
import sys
from datetime import date, timedelta

import pytest

_project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
_src_dir = os.path.join(_project_root, "src")

if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

from forecasting.config import ForecastConfig  # noqa: E402
from forecasting.models import HistoryEntry, SleepMetrics  # noqa: E402
from sleep_prediction_engine import SleepPredictionEngine  # noqa: E402

START = date(2026, 3, 1)


def make_entry(user_id="u1", day=START, se=85.0, sol=15.0, waso=25.0, tib=480.0, quality=0.6):
    """Consistent diary night: TST is derived from SE and time in bed."""
    metrics = SleepMetrics(
        time_in_bed=tib,
        total_sleep_time=tib * se / 100,
        sleep_onset_latency=sol,
        wake_after_sleep_onset=waso,
        sleep_efficiency=se,
    )
    return HistoryEntry(user_id=user_id, date=day, metrics=metrics, subjective_quality=quality)


def nightly(user_id, se_values, start=START, **kwargs):
    """One entry per consecutive night with the given SE values."""
    return [
        make_entry(user_id, start + timedelta(days=i), se=float(se), **kwargs)
        for i, se in enumerate(se_values)
    ]


@pytest.fixture
def config():
    return ForecastConfig()


@pytest.fixture
def engine():
    return SleepPredictionEngine(ForecastConfig())


@pytest.fixture
def entry_factory():
    return make_entry


@pytest.fixture
def nights_factory():
    return nightly
