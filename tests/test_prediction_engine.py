"""
End-to-end tests for SleepPredictionEngine: lifecycle, insufficient-data
handling, prediction invariants, learning bookkeeping and per-user state.
"""

import logging
import threading
from datetime import date, timedelta

import numpy as np
import pytest

from forecasting.config import ForecastConfig
from forecasting.constants import CRITICAL_SE, RECOMMENDATIONS, WARNING_RECOMMENDATIONS
from forecasting.multi_horizon import classify_trend
from sleep_prediction_engine import SleepPredictionEngine, create_sleep_prediction_engine

HORIZON_HOURS = {"short": 24, "medium": 72, "long": 168}


def _train(engine, entries):
    for e in entries:
        engine.train_online(e.user_id, e)


# ─── Lifecycle ────────────────────────────────────────────────


class TestLifecycle:

    def test_not_ready_until_first_use(self, engine):
        assert not engine.is_ready()
        engine.initialize()
        assert engine.is_ready()

    def test_initialize_is_idempotent(self, engine):
        engine.initialize()
        core = engine.core
        engine.initialize()
        assert engine.core is core

    def test_predict_before_initialize(self, engine):
        assert engine.predict("ghost", "short") is None
        assert engine.is_ready()

    def test_concurrent_initialize_creates_one_model(self, engine):
        cores = []

        def worker():
            engine.initialize()
            cores.append(engine.core)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(c is cores[0] for c in cores)

    def test_factory_reads_environment(self, monkeypatch, nights_factory):
        monkeypatch.setenv("SLEEP_FORECAST_MIN_HISTORY", "5")
        engine = create_sleep_prediction_engine()
        _train(engine, nights_factory("u1", [85] * 4))
        assert engine.predict("u1") is None


# ─── Insufficient data ────────────────────────────────────────


class TestInsufficientHistory:

    @pytest.mark.parametrize("horizon", ["short", "medium", "long"])
    def test_below_minimum_returns_none(self, engine, nights_factory, horizon):
        _train(engine, nights_factory("u1", [85, 84]))
        assert engine.predict("u1", horizon) is None

    def test_unknown_user(self, engine):
        assert engine.predict("nobody") is None
        assert engine.get_history("nobody") == []
        assert engine.get_current_state("nobody") is None

    def test_unknown_horizon_raises(self, engine, nights_factory):
        _train(engine, nights_factory("u1", [85] * 4))
        with pytest.raises(ValueError):
            engine.predict("u1", "fortnight")


# ─── Prediction invariants ────────────────────────────────────


class TestPredictionInvariants:

    @pytest.fixture
    def trained(self, engine, nights_factory):
        rng = np.random.default_rng(7)
        _train(engine, nights_factory("u1", 82 + rng.normal(0, 3, 10)))
        return engine

    @pytest.mark.parametrize("horizon", ["short", "medium", "long"])
    def test_hours_ahead(self, trained, horizon):
        p = trained.predict("u1", horizon)
        assert p.hours_ahead == HORIZON_HOURS[horizon]
        assert p.days_ahead == HORIZON_HOURS[horizon] // 24
        assert len(p.sleep_efficiency_trajectory) == p.days_ahead

    @pytest.mark.parametrize("horizon", ["short", "medium", "long"])
    def test_intervals_bracket_values(self, trained, horizon):
        p = trained.predict("u1", horizon)
        se = p.predicted_sleep_efficiency
        assert se.lower95 <= se.value <= se.upper95
        assert 0 <= se.value <= 100
        assert 0 <= se.confidence <= 1
        for point in p.sleep_efficiency_trajectory:
            assert point.lower95 <= point.predicted <= point.upper95
            assert 0 <= point.lower95 and point.upper95 <= 100

    @pytest.mark.parametrize("horizon", ["short", "medium", "long"])
    def test_metric_ranges(self, trained, horizon):
        p = trained.predict("u1", horizon)
        m = p.predicted_metrics
        assert 0 <= m.sleep_quality <= 1
        assert m.sleep_onset_latency >= 0
        assert m.wake_after_sleep_onset >= 0
        assert m.total_sleep_time >= 0
        assert 0 <= p.deterioration_risk <= 1
        assert isinstance(p.early_warnings, list)
        assert 1 <= len(p.recommendations) <= 5

    def test_trajectory_starts_after_latest_entry(self, trained):
        p = trained.predict("u1", "long")
        last = trained.get_history("u1")[-1].date
        dates = [pt.date for pt in p.sleep_efficiency_trajectory]
        assert dates[0] == last + timedelta(days=1)
        assert dates == sorted(dates)

    def test_uncertainty_never_shrinks(self, trained):
        state = trained._states["u1"]
        roll = trained.core.rollout(state.mean, state.variance, 7, trained.learner.process_variance())
        assert np.all(np.diff(roll.variances, axis=0) >= 0)

    def test_english_locale(self, nights_factory):
        engine = SleepPredictionEngine(ForecastConfig(locale="en"))
        _train(engine, nights_factory("u1", [85] * 6))
        known = {v["en"] for v in RECOMMENDATIONS.values()} | {v["en"] for v in WARNING_RECOMMENDATIONS.values()}
        p = engine.predict("u1")
        assert set(p.recommendations) <= known


# ─── Scenarios ────────────────────────────────────────────────


class TestScenarios:

    def test_declining_efficiency(self, engine, nights_factory):
        _train(engine, nights_factory("u1", np.linspace(90, 75, 8)))
        p = engine.predict("u1", "medium")
        assert p is not None
        assert p.trend in ("declining", "critical")
        assert isinstance(p.early_warnings, list)
        assert p.deterioration_risk > 0.25

    @pytest.mark.parametrize("level", [70.0, 85.0, 95.0, 99.0])
    def test_flat_history_is_judged_against_own_level(self, engine, nights_factory, level):
        _train(engine, nights_factory("u1", [level] * 14))
        for horizon in HORIZON_HOURS:
            p = engine.predict("u1", horizon)
            if level < CRITICAL_SE:
                assert p.trend in ("declining", "critical")
            else:
                assert p.trend == "stable"
            assert p.early_warnings == []
            assert p.deterioration_risk < 0.5

    def test_flat_forecast_stays_near_own_level(self, engine, nights_factory):
        _train(engine, nights_factory("u1", [70.0] * 14))
        p = engine.predict("u1", "long")
        assert p.predicted_sleep_efficiency.value < CRITICAL_SE
        assert all(pt.predicted < CRITICAL_SE for pt in p.sleep_efficiency_trajectory)

    def test_flat_diary_warnings_do_not_depend_on_horizon(self, engine, nights_factory):
        for e in nights_factory("u1", [95.0] * 14):
            engine.add_sleep_entry(e)
        for horizon in HORIZON_HOURS:
            assert engine.predict("u1", horizon).early_warnings == []

    def test_stats_two_users(self, engine, entry_factory):
        engine.add_sleep_entry(entry_factory(user_id="A"))
        engine.add_sleep_entry(entry_factory(user_id="B", day=date(2026, 3, 1)))
        engine.add_sleep_entry(entry_factory(user_id="B", day=date(2026, 3, 2)))
        assert engine.get_stats() == {"users_tracked": 2, "total_entries": 3}

    def test_empty_stats(self, engine):
        assert engine.get_stats() == {"users_tracked": 0, "total_entries": 0}


# ─── History & learning ───────────────────────────────────────


class TestHistoryAndLearning:

    def test_history_length_never_decreases(self, engine, nights_factory, entry_factory):
        lengths = []
        for i, e in enumerate(nights_factory("u1", [80, 82, 84, 83, 81])):
            if i % 2:
                engine.add_sleep_entry(e)
            else:
                engine.train_online("u1", e)
            lengths.append(len(engine.get_history("u1")))
        engine.add_sleep_entry(entry_factory(day=date(2026, 3, 1), se=70.0))
        lengths.append(len(engine.get_history("u1")))
        assert lengths == sorted(lengths)
        assert lengths[-1] == 6

    def test_one_update_per_consecutive_transition(self, engine, nights_factory):
        _train(engine, nights_factory("u1", [85, 84, 83, 82, 81]))
        m = engine.get_complexity_metrics()
        assert m.accepted_updates + m.rejected_updates == 4

    def test_no_learning_across_gaps(self, engine, entry_factory):
        for k in range(4):
            e = entry_factory(day=date(2026, 3, 1) + timedelta(days=3 * k))
            engine.train_online("u1", e)
        m = engine.get_complexity_metrics()
        assert m.accepted_updates + m.rejected_updates == 0

    def test_out_of_order_entry_learns_both_sides(self, engine, entry_factory):
        engine.train_online("u1", entry_factory(day=date(2026, 3, 1)))
        engine.train_online("u1", entry_factory(day=date(2026, 3, 3)))
        engine.train_online("u1", entry_factory(day=date(2026, 3, 2)))
        m = engine.get_complexity_metrics()
        assert m.accepted_updates + m.rejected_updates == 2

    def test_add_sleep_entry_does_not_learn(self, engine, nights_factory):
        for e in nights_factory("u1", [85, 84, 83]):
            engine.add_sleep_entry(e)
        m = engine.get_complexity_metrics()
        assert m.accepted_updates == 0 and m.rejected_updates == 0

    def test_mismatched_user_rejected(self, engine, entry_factory):
        with pytest.raises(ValueError):
            engine.train_online("someone_else", entry_factory(user_id="u1"))

    def test_efficiency_mismatch_logged_not_rejected(self, engine, entry_factory, caplog):
        e = entry_factory()
        bad = e.model_copy(update={"metrics": e.metrics.model_copy(update={"sleep_efficiency": 99.0})})
        with caplog.at_level(logging.WARNING, logger="sleep_prediction"):
            engine.add_sleep_entry(bad)
        assert "differs from TST/TIB" in caplog.text
        assert len(engine.get_history("u1")) == 1

    def test_parallel_users(self, engine, nights_factory):
        def worker(uid):
            _train(engine, nights_factory(uid, [85, 84, 86, 83, 85]))

        threads = [threading.Thread(target=worker, args=(f"user{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert engine.get_stats() == {"users_tracked": 4, "total_entries": 20}
        for i in range(4):
            assert [e.date for e in engine.get_history(f"user{i}")] == sorted(
                e.date for e in engine.get_history(f"user{i}")
            )


# ─── Current state ────────────────────────────────────────────


class TestCurrentState:

    def test_shape_and_date(self, engine, nights_factory):
        entries = nights_factory("u1", [85, 84, 83])
        _train(engine, entries)
        state = engine.get_current_state("u1")
        assert len(state.latent_state) == 5
        assert len(state.observed_state) == 5
        assert len(state.hidden_activations) == 16
        assert len(state.uncertainty) == 5
        assert all(v >= 0 for v in state.uncertainty)
        assert state.as_of == entries[-1].date
        assert state.timestep == 2

    def test_observed_state_is_latest_night(self, engine, nights_factory):
        _train(engine, nights_factory("u1", [85, 70]))
        state = engine.get_current_state("u1")
        assert state.observed_state[0] == pytest.approx(0.70)

    def test_observed_state_follows_last_write(self, engine, nights_factory, entry_factory):
        entries = nights_factory("u1", [85, 84, 83])
        _train(engine, entries)
        engine.add_sleep_entry(entry_factory(day=entries[-1].date, se=60.0))
        state = engine.get_current_state("u1")
        assert state.observed_state[0] == pytest.approx(0.60)
        assert state.as_of == entries[-1].date


# ─── Trend rules ──────────────────────────────────────────────


class TestTrendRules:
    """classify_trend(start_se, final_se, recent_mean, history_drop, se_drop_threshold)."""

    def test_flat_below_critical_is_declining(self):
        assert classify_trend(72.8, 72.4, 70.0, 0.0, 10.0) == "declining"

    def test_below_critical_and_falling_is_critical(self):
        assert classify_trend(80.0, 70.0, 80.0, 0.0, 10.0) == "critical"

    def test_recovery_below_critical_is_improving(self):
        assert classify_trend(66.0, 73.0, 68.0, 0.0, 10.0) == "improving"

    def test_flat_high_level_is_stable(self):
        assert classify_trend(96.4, 97.0, 99.0, 0.0, 10.0) == "stable"

    def test_sustained_history_drop_wins(self):
        assert classify_trend(80.0, 83.0, 84.0, 12.0, 10.0) == "declining"


# ─── Retraining & parameter transfer ──────────────────────────


class TestRetrain:

    def test_retrain_is_one_batch_update(self, engine, nights_factory):
        for e in nights_factory("u1", np.linspace(90, 75, 8)):
            engine.add_sleep_entry(e)
        before = engine.get_current_state("u1").latent_state
        result = engine.retrain("u1", epochs=3)
        assert result.accepted
        m = engine.get_complexity_metrics()
        assert m.accepted_updates == 1 and m.rejected_updates == 0
        assert m.recent_loss is not None and m.recent_loss >= 0
        assert engine.core.params.trained_samples == 3 * 7
        assert engine.get_current_state("u1").latent_state != before

    def test_retrain_without_consecutive_nights(self, engine, entry_factory):
        for k in range(4):
            engine.add_sleep_entry(entry_factory(day=date(2026, 3, 1) + timedelta(days=3 * k)))
        assert engine.retrain("u1") is None
        assert engine.retrain("nobody") is None
        assert engine.get_complexity_metrics().accepted_updates == 0

    def test_epochs_default_from_config(self, nights_factory):
        engine = SleepPredictionEngine(ForecastConfig(retrain_epochs=2))
        for e in nights_factory("u1", [85, 84, 83, 82]):
            engine.add_sleep_entry(e)
        engine.retrain("u1")
        assert engine.core.params.trained_samples == 2 * 3


class TestParameterTransfer:

    def test_export_import_reproduces_forecast(self, engine, nights_factory):
        nights = nights_factory("u1", [88, 86, 85, 83, 84, 82, 80])
        _train(engine, nights)

        other = SleepPredictionEngine(ForecastConfig(seed=7))
        other.load_parameters(engine.get_parameters())
        for e in nights:
            other.add_sleep_entry(e)

        a, b = engine.predict("u1", "long"), other.predict("u1", "long")
        assert [pt.predicted for pt in a.sleep_efficiency_trajectory] == [
            pt.predicted for pt in b.sleep_efficiency_trajectory
        ]
        assert a.trend == b.trend

    def test_load_refilters_existing_users(self, engine, nights_factory):
        _train(engine, nights_factory("u1", [85, 80, 75, 70]))
        before = engine.get_current_state("u1").latent_state
        engine.load_parameters(SleepPredictionEngine(ForecastConfig(seed=7)).get_parameters())
        assert engine.get_current_state("u1").latent_state != before

    def test_invalid_parameters_leave_model_untouched(self, engine):
        data = engine.get_parameters()
        data["W"] = [[0.0] * 3] * 5
        with pytest.raises(ValueError):
            engine.load_parameters(data)
        assert engine.get_parameters()["W"] != data["W"]

    def test_negative_process_noise_rejected(self, engine):
        data = engine.get_parameters()
        assert len(data["residual_variance"]) == 5
        data["residual_variance"] = [-1.0] * 5
        with pytest.raises(ValueError):
            engine.load_parameters(data)
