"""Tests for the diary replay CLI."""

import json

import pandas as pd
import pytest

from replay_diary import main, row_to_entry


def _diary(n, user="u1", se=85.0):
    rows = []
    for i, day in enumerate(pd.date_range("2026-03-01", periods=n, freq="D")):
        rows.append({
            "user_id": user,
            "date": day.strftime("%Y-%m-%d"),
            "time_in_bed": 480,
            "total_sleep_time": 480 * se / 100,
            "sleep_onset_latency": 15,
            "wake_after_sleep_onset": 25,
            "sleep_efficiency": se,
            "subjective_quality": 0.6,
        })
    return pd.DataFrame(rows)


class TestRowParsing:

    def test_optional_columns_default(self):
        row = _diary(1).iloc[0].drop("subjective_quality")
        entry = row_to_entry(row)
        assert entry.subjective_quality == 0.5
        assert entry.metrics.number_of_awakenings == 0
        assert entry.date.isoformat() == "2026-03-01"


class TestMain:

    def test_prints_prediction(self, tmp_path, capsys):
        path = tmp_path / "diary.csv"
        _diary(6).to_csv(path, index=False)
        assert main([str(path), "--user", "u1", "--horizon", "short", "--locale", "en"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["prediction"]["hours_ahead"] == 24
        assert out["prediction"]["user_id"] == "u1"

    def test_insufficient_history_notice(self, tmp_path, capsys):
        path = tmp_path / "diary.csv"
        _diary(2).to_csv(path, index=False)
        assert main([str(path), "--user", "u1"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["prediction"] is None
        assert "insufficient data" in out["notice"]

    def test_malformed_rows_skipped(self, tmp_path, capsys):
        df = _diary(4)
        df.loc[1, "sleep_efficiency"] = 150  # outside 0-100
        path = tmp_path / "diary.csv"
        df.to_csv(path, index=False)
        assert main([str(path), "--user", "u1", "--network", "--metrics"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["prediction"] is not None
        assert len(out["causal_network"]["nodes"]) == 5
        assert "sparsity" in out["complexity_metrics"]

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "diary.csv"
        _diary(3).drop(columns=["sleep_efficiency"]).to_csv(path, index=False)
        assert main([str(path), "--user", "u1"]) == 2

    def test_user_is_required(self, tmp_path):
        with pytest.raises(SystemExit):
            main([str(tmp_path / "diary.csv")])
