"""Pydantic records exchanged with the forecasting engine."""

from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Severity = Literal["low", "moderate", "high", "critical"]
Trend = Literal["improving", "stable", "declining", "critical"]
WarningType = Literal[
    "efficiency_drop",
    "sol_increase",
    "waso_increase",
    "variance_spike",
    "pattern_disruption",
]


class SleepMetrics(BaseModel):
    """One night's diary measurements (minutes unless noted)."""

    model_config = ConfigDict(frozen=True)

    time_in_bed: float = Field(ge=0)
    total_sleep_time: float = Field(ge=0)
    sleep_onset_latency: float = Field(ge=0)
    wake_after_sleep_onset: float = Field(ge=0)
    sleep_efficiency: float = Field(ge=0, le=100)  # percent
    number_of_awakenings: int = Field(0, ge=0)
    bedtime: Optional[str] = None
    wake_time: Optional[str] = None

    @property
    def derived_efficiency(self) -> Optional[float]:
        if self.time_in_bed <= 0:
            return None
        return self.total_sleep_time / self.time_in_bed * 100

    def efficiency_mismatch(self) -> float:
        derived = self.derived_efficiency
        if derived is None:
            return 0.0
        return abs(self.sleep_efficiency - derived)


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    date: date
    metrics: SleepMetrics
    subjective_quality: float = Field(0.5, ge=0, le=1)

    @field_validator("date", mode="before")
    @classmethod
    def _truncate_datetime(cls, v):
        if isinstance(v, datetime):
            return v.date()
        return v


class LatentState(BaseModel):
    latent_state: List[float]
    observed_state: List[float]
    hidden_activations: List[float]
    uncertainty: List[float]  # variance per dimension
    timestep: int = 0
    as_of: Optional[date] = None


class SEPoint(BaseModel):
    date: date
    predicted: float
    lower95: float
    upper95: float


class PredictedEfficiency(BaseModel):
    value: float
    confidence: float
    lower95: float
    upper95: float


class PredictedMetrics(BaseModel):
    sleep_onset_latency: float
    wake_after_sleep_onset: float
    total_sleep_time: float
    sleep_quality: float


class EarlyWarning(BaseModel):
    type: WarningType
    metric: str
    severity: Severity
    message_ru: str
    message_en: str
    strength: float = Field(0.0, ge=0, le=1)
    confidence: float = Field(0.0, ge=0, le=1)
    estimated_days_to_critical: Optional[int] = None
    recommendation: str = ""


class Prediction(BaseModel):
    user_id: str
    horizon: Literal["short", "medium", "long"]
    hours_ahead: int
    days_ahead: int
    generated_at: datetime
    predicted_sleep_efficiency: PredictedEfficiency
    predicted_metrics: PredictedMetrics
    sleep_efficiency_trajectory: List[SEPoint]
    trend: Trend
    deterioration_risk: float = Field(ge=0, le=1)
    early_warnings: List[EarlyWarning] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class CausalEdge(BaseModel):
    source: str
    target: str
    weight: float


class CausalNetwork(BaseModel):
    nodes: List[str]
    edges: List[CausalEdge]
    self_weights: Dict[str, float]
    density: float
    central_node: str
    feedback_loops: List[List[str]] = Field(default_factory=list)


class SideEffect(BaseModel):
    dimension: str
    effect: float


class InterventionSimulation(BaseModel):
    target: str
    intervention: Literal["increase", "decrease", "stabilize"]
    magnitude: float
    effects: Dict[str, float]
    time_to_peak_hours: int
    duration_hours: int
    side_effects: List[SideEffect] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)


class ComplexityMetrics(BaseModel):
    effective_dimensionality: float
    sparsity: float
    lyapunov_exponent: float
    accepted_updates: int = 0
    rejected_updates: int = 0
    recent_loss: Optional[float] = None
