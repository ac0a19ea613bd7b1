"""
Sleep Prediction Engine
=======================
In-process forecasting of nightly sleep-diary metrics for CBT-I coaching.

Pipeline per user:
  History   append-only diary store, one user's nights kept in date order.
  Filter    Kalman-style estimate of the current 5-dim latent state,
            bridging missed nights with model predictions.
  Learn     one guarded online update per consecutive-night transition
            (train_online), or one guarded batch over all of a user's
            nights (retrain); bad updates are discarded, not raised.
  Forecast  short / medium / long horizon rollout with widening 95%
            intervals, trend, deterioration risk, early warnings and
            recommendations.

The model parameters are shared across users and created lazily on the
first call that needs them.  Calls for the same user are serialised; calls
for different users only contend on parameter commits.

Insufficient history is a normal outcome: predict() returns None.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from forecasting.causal_network import extract_causal_network, simulate_intervention
from forecasting.config import ForecastConfig
from forecasting.constants import EFFICIENCY_MISMATCH_TOLERANCE
from forecasting.diagnostics import complexity_metrics
from forecasting.dimension_mapper import DimensionMapper, entries_to_frame
from forecasting.history_store import HistoryStore
from forecasting.models import (
    CausalNetwork,
    ComplexityMetrics,
    HistoryEntry,
    InterventionSimulation,
    LatentState,
    Prediction,
)
from forecasting.multi_horizon import MultiHorizonPredictor
from forecasting.online_learner import OnlineLearner, UpdateResult
from forecasting.plrnn_core import FilteredState, PLRNNCore, PLRNNParameters

log = logging.getLogger("sleep_prediction")


class SleepPredictionEngine:
    """Owns the shared model, the per-user history and the per-user filtered states."""

    def __init__(self, config: Optional[ForecastConfig] = None):
        self.config = config or ForecastConfig()
        self.mapper = DimensionMapper(self.config.normalization)
        self.history = HistoryStore()

        self.core: Optional[PLRNNCore] = None
        self.learner: Optional[OnlineLearner] = None
        self.predictor: Optional[MultiHorizonPredictor] = None

        self._states: Dict[str, FilteredState] = {}
        self._ready = False
        self._init_lock = threading.Lock()
        self._model_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._user_locks: Dict[str, threading.Lock] = {}

    # ─── Lifecycle ───────────────────────────────────────────

    def initialize(self) -> None:
        """Create the seeded default parameters. Safe to call repeatedly."""
        if self._ready:
            return
        with self._init_lock:
            if self._ready:
                return
            self.core = PLRNNCore(self.config)
            self.learner = OnlineLearner(self.config, self.core)
            self.predictor = MultiHorizonPredictor(self.config, self.core, self.mapper)
            self._ready = True
        log.info(
            "Sleep prediction engine initialised (%d hidden units, %s connectivity, seed=%d)",
            self.config.hidden_units, self.config.connectivity, self.config.seed,
        )

    def is_ready(self) -> bool:
        return self._ready

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())

    # ─── Ingest ──────────────────────────────────────────────

    def _store(self, entry: HistoryEntry) -> None:
        mismatch = entry.metrics.efficiency_mismatch()
        if mismatch > EFFICIENCY_MISMATCH_TOLERANCE:
            log.warning(
                "Entry for %s on %s: reported SE %.1f differs from TST/TIB by %.1f points",
                entry.user_id, entry.date, entry.metrics.sleep_efficiency, mismatch,
            )
        self.history.add(entry)

    def _refresh_state(self, user_id: str) -> Optional[FilteredState]:
        nights = self.history.nights(user_id)
        observations = [(e.date, self.mapper.entry_vector(e)) for e in nights]
        obs_var = [self.config.observation_noise ** 2] * self.config.latent_dim
        with self._model_lock:
            state = self.core.filter_state(observations, obs_var, self.learner.process_variance())
        if state is not None:
            self._states[user_id] = state
        return state

    def add_sleep_entry(self, entry: HistoryEntry) -> None:
        """Record a night without touching the model parameters."""
        self.initialize()
        with self._user_lock(entry.user_id):
            self._store(entry)
            self._refresh_state(entry.user_id)

    def train_online(self, user_id: str, entry: HistoryEntry) -> None:
        """Record a night and learn from the transitions it completes."""
        if entry.user_id != user_id:
            raise ValueError(f"Entry belongs to '{entry.user_id}', not '{user_id}'")
        self.initialize()
        max_gap = self.config.max_transition_gap_days

        with self._user_lock(user_id):
            self._store(entry)
            prev_e, next_e = self.history.neighbours(entry)
            current = self.mapper.entry_vector(entry)

            transitions = []
            if prev_e is not None and (entry.date - prev_e.date).days <= max_gap:
                transitions.append((self.mapper.entry_vector(prev_e), current))
            if next_e is not None and (next_e.date - entry.date).days <= max_gap:
                transitions.append((current, self.mapper.entry_vector(next_e)))

            with self._model_lock:
                for z_prev, z_next in transitions:
                    self.learner.update(z_prev, z_next)

            if not transitions:
                log.debug("No consecutive night around %s for %s; stored without learning", entry.date, user_id)
            self._refresh_state(user_id)

    def retrain(self, user_id: str, epochs: Optional[int] = None) -> Optional[UpdateResult]:
        """Refit the shared parameters on every consecutive-night pair the user has.

        Runs as one guarded batch update; returns None when the user has no
        pair of nights within max_transition_gap_days of each other.
        """
        self.initialize()
        max_gap = self.config.max_transition_gap_days
        with self._user_lock(user_id):
            nights = self.history.nights(user_id)
            transitions = [
                (self.mapper.entry_vector(a), self.mapper.entry_vector(b))
                for a, b in zip(nights, nights[1:])
                if (b.date - a.date).days <= max_gap
            ]
            if not transitions:
                log.info("Nothing to retrain for %s: no consecutive nights", user_id)
                return None
            with self._model_lock:
                result = self.learner.train_batch(transitions, epochs or self.config.retrain_epochs)
            self._refresh_state(user_id)
        return result

    # ─── Forecast ────────────────────────────────────────────

    def predict(self, user_id: str, horizon: str = "medium") -> Optional[Prediction]:
        self.config.horizons.hours(horizon)
        self.initialize()

        n = self.history.count(user_id)
        if n < self.config.min_history_entries:
            log.info(
                "Insufficient history for %s: %d/%d entries", user_id, n, self.config.min_history_entries
            )
            return None

        with self._user_lock(user_id):
            state = self._states.get(user_id) or self._refresh_state(user_id)
            frame = entries_to_frame(self.history.nights(user_id))
            with self._model_lock:
                return self.predictor.predict(
                    user_id=user_id,
                    horizon=horizon,
                    state=state,
                    frame=frame,
                    process_var=self.learner.process_variance(),
                    now=datetime.now(),
                )

    def simulate_intervention(
        self,
        user_id: str,
        target: str,
        intervention: str = "increase",
        magnitude: float = 0.1,
        nights: Optional[int] = None,
    ) -> Optional[InterventionSimulation]:
        self.initialize()
        state = self._states.get(user_id)
        if state is None:
            return None
        with self._model_lock:
            return simulate_intervention(
                self.core,
                self.config,
                z0=state.mean,
                var0=state.variance,
                process_var=self.learner.process_variance(),
                target=target,
                intervention=intervention,
                magnitude=magnitude,
                nights=nights,
            )

    # ─── Introspection ───────────────────────────────────────

    def extract_causal_network(self) -> CausalNetwork:
        self.initialize()
        with self._model_lock:
            return extract_causal_network(self.core, self.config)

    def get_complexity_metrics(self) -> ComplexityMetrics:
        self.initialize()
        with self._model_lock:
            return complexity_metrics(self.core, self.learner, self.config)

    def get_parameters(self) -> Dict[str, Any]:
        """Export the shared parameters and learned process noise as plain lists."""
        self.initialize()
        with self._model_lock:
            data = self.core.params.to_dict()
            data["residual_variance"] = self.learner.residual_var.tolist()
        return data

    def load_parameters(self, data: Dict[str, Any]) -> None:
        """Replace the shared parameters with an exported set and refilter every user.

        Raises ValueError when *data* does not fit this engine's configuration.
        """
        params = PLRNNParameters.from_dict(data, self.config)
        self.initialize()
        with self._model_lock:
            self.learner.load(params, data.get("residual_variance"))
        users = list(self._states)
        for user_id in users:
            with self._user_lock(user_id):
                self._refresh_state(user_id)
        log.info(
            "Loaded parameters (%d trained samples); refiltered %d user(s)", params.trained_samples, len(users)
        )

    def get_history(self, user_id: str) -> List[HistoryEntry]:
        return self.history.get(user_id)

    def get_current_state(self, user_id: str) -> Optional[LatentState]:
        state = self._states.get(user_id)
        if state is None or not state.observed:
            return None
        with self._model_lock:
            hidden = self.core.hidden(state.mean)
        return LatentState(
            latent_state=[float(v) for v in state.mean],
            observed_state=[float(v) for v in state.observed[-1]],
            hidden_activations=[float(v) for v in hidden],
            uncertainty=[float(v) for v in state.variance],
            timestep=state.timestep,
            as_of=state.as_of,
        )

    def get_stats(self) -> Dict[str, int]:
        return self.history.stats()


def create_sleep_prediction_engine(config: Optional[ForecastConfig] = None) -> SleepPredictionEngine:
    """Build an engine, reading SLEEP_FORECAST_* overrides when no config is given."""
    return SleepPredictionEngine(config or ForecastConfig.from_env())
