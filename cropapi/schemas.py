from __future__ import annotations

from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class _Base(BaseModel):
    """Base model with shared configuration."""

    model_config = {
        "populate_by_name": True,
        "protected_namespaces": (),
    }


class FeatureVectorIn(_Base):
    # Out-of-range values are clamped downstream, so only finiteness is checked here.
    N: float = Field(..., allow_inf_nan=False, description="Nitrogen (kg/ha)")
    P: float = Field(..., allow_inf_nan=False, description="Phosphorus (kg/ha)")
    K: float = Field(..., allow_inf_nan=False, description="Potassium (kg/ha)")
    temperature: float = Field(..., allow_inf_nan=False, description="°C")
    humidity: float = Field(..., allow_inf_nan=False, description="%")
    ph: float = Field(..., allow_inf_nan=False)
    rainfall: float = Field(..., allow_inf_nan=False, description="mm")
    soil_type: Optional[str] = Field(default=None, alias="soilType")

    model_config = {
        **_Base.model_config,
        "json_schema_extra": {
            "example": {
                "N": 80,
                "P": 45,
                "K": 40,
                "temperature": 25.0,
                "humidity": 82.0,
                "ph": 6.5,
                "rainfall": 230.0,
                "soilType": "Clay",
            }
        },
    }


class RecommendationOut(_Base):
    crop_name: str
    confidence: float = Field(..., ge=0, le=100)
    source: Literal["model", "rule", "both"]


class RecommendResponse(_Base):
    ok: bool
    request_id: Optional[str] = None
    model_ready: bool
    recommendations: List[RecommendationOut]


class TrainingReportOut(_Base):
    epochs_run: int
    final_loss: float
    final_accuracy: Optional[float] = None
    val_accuracy: Optional[float] = None
    samples: int
    num_classes: int
    duration_seconds: float


class ModelStatusResponse(_Base):
    ok: bool
    request_id: Optional[str] = None
    model_ready: bool
    training_state: Literal["idle", "training", "ready", "failed"]
    report: Optional[TrainingReportOut] = None
