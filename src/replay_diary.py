"""
Replay a sleep-diary CSV through the forecasting engine.

Each row is fed to train_online in file order; the forecast for one user
is then printed as JSON (or a notice when history is still too short).

Usage:
    python replay_diary.py diary.csv --user u1
    python replay_diary.py diary.csv --user u1 --horizon long --locale en
    python replay_diary.py diary.csv --user u1 --network --metrics

Expected columns: user_id, date, time_in_bed, total_sleep_time,
sleep_onset_latency, wake_after_sleep_onset, sleep_efficiency,
subjective_quality (optional number_of_awakenings).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

import pandas as pd
from pydantic import ValidationError

from forecasting.config import ForecastConfig
from forecasting.models import HistoryEntry, SleepMetrics
from sleep_prediction_engine import create_sleep_prediction_engine

log = logging.getLogger("replay_diary")

REQUIRED_COLUMNS = (
    "user_id",
    "date",
    "time_in_bed",
    "total_sleep_time",
    "sleep_onset_latency",
    "wake_after_sleep_onset",
    "sleep_efficiency",
)


def row_to_entry(row: pd.Series) -> HistoryEntry:
    awakenings = row.get("number_of_awakenings")
    quality = row.get("subjective_quality")
    metrics = SleepMetrics(
        time_in_bed=row["time_in_bed"],
        total_sleep_time=row["total_sleep_time"],
        sleep_onset_latency=row["sleep_onset_latency"],
        wake_after_sleep_onset=row["wake_after_sleep_onset"],
        sleep_efficiency=row["sleep_efficiency"],
        number_of_awakenings=0 if pd.isna(awakenings) else int(awakenings),
    )
    return HistoryEntry(
        user_id=str(row["user_id"]),
        date=pd.Timestamp(row["date"]).date(),
        metrics=metrics,
        subjective_quality=0.5 if pd.isna(quality) else float(quality),
    )


def replay(engine, df: pd.DataFrame) -> int:
    """Feed every valid row to the engine; returns the number accepted."""
    accepted = 0
    for i, row in df.iterrows():
        try:
            entry = row_to_entry(row)
        except (ValidationError, ValueError, TypeError) as e:
            log.warning("Skipping row %s: %s", i, e)
            continue
        engine.train_online(entry.user_id, entry)
        accepted += 1
    return accepted


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    parser = argparse.ArgumentParser(description="Replay a sleep diary and print the forecast")
    parser.add_argument("csv", help="Diary CSV file")
    parser.add_argument("--user", required=True, help="User id to forecast")
    parser.add_argument("--horizon", choices=("short", "medium", "long"), default="medium")
    parser.add_argument("--locale", choices=("ru", "en"), default=None)
    parser.add_argument("--network", action="store_true", help="Also print the causal network")
    parser.add_argument("--metrics", action="store_true", help="Also print complexity metrics")
    args = parser.parse_args(argv)

    df = pd.read_csv(args.csv)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        log.error("CSV is missing columns: %s", ", ".join(missing))
        return 2

    overrides = {"locale": args.locale} if args.locale else {}
    engine = create_sleep_prediction_engine(ForecastConfig.from_env(**overrides))
    n = replay(engine, df)
    log.info("Replayed %d/%d rows", n, len(df))

    prediction = engine.predict(args.user, args.horizon)
    output = {
        "prediction": prediction.model_dump(mode="json") if prediction else None,
    }
    if prediction is None:
        output["notice"] = (
            f"insufficient data: {len(engine.get_history(args.user))} entries, "
            f"need {engine.config.min_history_entries}"
        )
    if args.network:
        output["causal_network"] = engine.extract_causal_network().model_dump(mode="json")
    if args.metrics:
        output["complexity_metrics"] = engine.get_complexity_metrics().model_dump(mode="json")

    print(json.dumps(output, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
