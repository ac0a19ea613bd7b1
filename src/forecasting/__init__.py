"""
Sleep Forecasting Package
=========================
Building blocks of the per-user sleep-metric forecasting engine.
The public surface lives in sleep_prediction_engine.py.

Modules:
  constants        - dimension order, defaults, message tables
  config           - ForecastConfig + env overrides
  models           - pydantic records (entries, states, predictions)
  dimension_mapper - SleepMetrics <-> normalized 5-vector
  history_store    - append-only per-user diary log
  plrnn_core       - piecewise-linear recurrent dynamics
  online_learner   - guarded incremental parameter updates
  multi_horizon    - rollout, trend, risk, recommendations
  early_warning    - threshold / variance / slowing-down signals
  causal_network   - connectivity graph + intervention simulation
  diagnostics      - effective dimensionality, sparsity
"""
