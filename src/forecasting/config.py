"""
Forecast engine configuration.

Defaults match the deployed CBT-I coaching setup; a handful of knobs can
be overridden from the environment (.env is honoured) via
ForecastConfig.from_env().  Invalid combinations fail at construction.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

from forecasting.constants import DIMENSIONS, HORIZON_KEYS


class NormalizationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_se: float = Field(100.0, gt=0)
    max_sol: float = Field(120.0, gt=0)     # minutes
    max_waso: float = Field(180.0, gt=0)    # minutes
    max_tst: float = Field(12.0, gt=0)      # hours


class EarlyWarningConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    se_drop_threshold: float = Field(10.0, gt=0)        # SE points
    sol_increase_threshold: float = Field(15.0, gt=0)   # minutes
    waso_increase_threshold: float = Field(20.0, gt=0)  # minutes
    variance_threshold: float = Field(1.5, gt=0)        # ratio to baseline
    window_nights: int = Field(7, ge=3)


class HorizonConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    short: int = Field(24, gt=0)
    medium: int = Field(72, gt=0)
    long: int = Field(168, gt=0)

    def hours(self, key: str) -> int:
        if key not in HORIZON_KEYS:
            raise ValueError(f"Unknown horizon '{key}' (expected short, medium or long)")
        return getattr(self, key)


class ForecastConfig(BaseModel):
    """All tunables of the engine. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    latent_dim: int = 5
    hidden_units: int = 16
    connectivity: Literal["dendritic", "full"] = "dendritic"
    prediction_horizon: int = Field(7, gt=0)   # nights
    dt: int = Field(24, gt=0)                  # hours per step
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    early_warning: EarlyWarningConfig = Field(default_factory=EarlyWarningConfig)
    horizons: HorizonConfig = Field(default_factory=HorizonConfig)
    min_history_entries: int = 3

    # Online learner
    learning_rate: float = Field(0.05, gt=0, le=1)
    l2_regularization: float = Field(0.01, ge=0)
    l1_regularization: float = Field(0.001, ge=0)
    gradient_clip: float = Field(1.0, gt=0)
    residual_decay: float = Field(0.9, gt=0, lt=1)
    max_transition_gap_days: int = Field(1, ge=1)
    retrain_epochs: int = Field(5, ge=1)       # passes over a user's nights in retrain()

    # Uncertainty (standard deviations, normalized units)
    observation_noise: float = Field(0.05, gt=0)
    process_noise: float = Field(0.03, gt=0)

    # Introspection
    causal_edge_threshold: float = Field(0.05, ge=0)
    sparsity_epsilon: float = Field(0.01, gt=0)

    seed: int = 42
    locale: Literal["ru", "en"] = "ru"

    @model_validator(mode="after")
    def _check_consistency(self) -> "ForecastConfig":
        if self.min_history_entries < 1:
            raise ValueError("min_history_entries must be positive")
        if self.latent_dim != len(DIMENSIONS):
            raise ValueError(
                f"latent_dim must be {len(DIMENSIONS)} (one per sleep dimension), got {self.latent_dim}"
            )
        if self.hidden_units < self.latent_dim:
            raise ValueError("hidden_units must be at least latent_dim")
        h = self.horizons
        for key in HORIZON_KEYS:
            if h.hours(key) % self.dt:
                raise ValueError(f"horizon '{key}'={h.hours(key)}h is not a multiple of dt={self.dt}h")
        if not h.short <= h.medium <= h.long:
            raise ValueError("horizons must satisfy short <= medium <= long")
        return self

    def steps_for(self, horizon: str) -> int:
        return self.horizons.hours(horizon) // self.dt

    @classmethod
    def from_env(cls, **overrides: Any) -> "ForecastConfig":
        """Build a config from SLEEP_FORECAST_* variables, then explicit overrides."""
        load_dotenv()
        env_map = {
            "SLEEP_FORECAST_MIN_HISTORY": ("min_history_entries", int),
            "SLEEP_FORECAST_SEED": ("seed", int),
            "SLEEP_FORECAST_LEARNING_RATE": ("learning_rate", float),
            "SLEEP_FORECAST_RETRAIN_EPOCHS": ("retrain_epochs", int),
            "SLEEP_FORECAST_HIDDEN_UNITS": ("hidden_units", int),
            "SLEEP_FORECAST_CONNECTIVITY": ("connectivity", str),
            "SLEEP_FORECAST_LOCALE": ("locale", str),
        }
        values: Dict[str, Any] = {}
        for var, (field, cast) in env_map.items():
            raw = os.getenv(var, "").strip()
            if raw:
                values[field] = cast(raw)
        values.update(overrides)
        return cls(**values)


