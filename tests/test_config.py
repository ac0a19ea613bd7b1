"""Tests for ForecastConfig defaults, validation and environment overrides."""

import pytest
from pydantic import ValidationError

from forecasting.config import ForecastConfig, HorizonConfig


class TestDefaults:

    def test_core_defaults(self):
        cfg = ForecastConfig()
        assert cfg.latent_dim == 5
        assert cfg.hidden_units == 16
        assert cfg.connectivity == "dendritic"
        assert cfg.min_history_entries == 3
        assert cfg.dt == 24

    def test_threshold_defaults(self):
        ew = ForecastConfig().early_warning
        assert ew.se_drop_threshold == 10
        assert ew.sol_increase_threshold == 15
        assert ew.waso_increase_threshold == 20
        assert ew.variance_threshold == 1.5

    def test_steps_for_horizons(self):
        cfg = ForecastConfig()
        assert cfg.steps_for("short") == 1
        assert cfg.steps_for("medium") == 3
        assert cfg.steps_for("long") == 7

    def test_unknown_horizon_raises(self):
        with pytest.raises(ValueError):
            ForecastConfig().steps_for("forever")

    def test_frozen(self):
        cfg = ForecastConfig()
        with pytest.raises(ValidationError):
            cfg.seed = 7


class TestValidation:
    """Invalid combinations fail at construction."""

    def test_non_positive_min_history(self):
        with pytest.raises(ValidationError):
            ForecastConfig(min_history_entries=0)

    def test_dimension_mismatch(self):
        with pytest.raises(ValidationError):
            ForecastConfig(latent_dim=4)

    def test_too_few_hidden_units(self):
        with pytest.raises(ValidationError):
            ForecastConfig(hidden_units=3)

    def test_unknown_connectivity(self):
        with pytest.raises(ValidationError):
            ForecastConfig(connectivity="sparse")

    def test_horizon_not_multiple_of_dt(self):
        with pytest.raises(ValidationError):
            ForecastConfig(horizons=HorizonConfig(short=36))

    def test_horizon_order(self):
        with pytest.raises(ValidationError):
            ForecastConfig(horizons=HorizonConfig(short=96, medium=72, long=168))

    def test_non_positive_threshold(self):
        with pytest.raises(ValidationError):
            ForecastConfig(early_warning={"se_drop_threshold": 0})

    def test_unknown_locale(self):
        with pytest.raises(ValidationError):
            ForecastConfig(locale="de")


class TestFromEnv:

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("SLEEP_FORECAST_MIN_HISTORY", "5")
        monkeypatch.setenv("SLEEP_FORECAST_LOCALE", "en")
        cfg = ForecastConfig.from_env()
        assert cfg.min_history_entries == 5
        assert cfg.locale == "en"

    def test_explicit_override_wins(self, monkeypatch):
        monkeypatch.setenv("SLEEP_FORECAST_SEED", "11")
        cfg = ForecastConfig.from_env(seed=3)
        assert cfg.seed == 3

    def test_blank_env_ignored(self, monkeypatch):
        monkeypatch.setenv("SLEEP_FORECAST_HIDDEN_UNITS", "  ")
        assert ForecastConfig.from_env().hidden_units == 16

    def test_invalid_env_fails_fast(self, monkeypatch):
        monkeypatch.setenv("SLEEP_FORECAST_MIN_HISTORY", "0")
        with pytest.raises(ValidationError):
            ForecastConfig.from_env()
