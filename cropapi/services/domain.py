from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import numpy as np
from pydantic import BaseModel


@dataclass(frozen=True)
class FeatureVector:
    """One user query: raw soil/climate measurements as entered."""

    N: float
    P: float
    K: float
    temperature: float
    humidity: float
    ph: float
    rainfall: float
    soil_type: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | BaseModel) -> "FeatureVector":
        if isinstance(data, BaseModel):
            data = data.model_dump()
        return cls(
            N=float(data["N"]),
            P=float(data["P"]),
            K=float(data["K"]),
            temperature=float(data["temperature"]),
            humidity=float(data["humidity"]),
            ph=float(data["ph"]),
            rainfall=float(data["rainfall"]),
            soil_type=data.get("soil_type"),
        )


@dataclass(frozen=True)
class NormalizedVector:
    features: np.ndarray
    soil_index: int = 0


class Source(str, Enum):
    MODEL = "model"
    RULE = "rule"
    BOTH = "both"


@dataclass(frozen=True)
class Recommendation:
    crop_name: str
    confidence: float
    source: Source

    def as_dict(self) -> Dict[str, Any]:
        return {
            "crop_name": self.crop_name,
            "confidence": self.confidence,
            "source": self.source.value,
        }


def display_name(label: str) -> str:
    """Dataset labels are lower case; recommendations show them capitalised."""
    label = label.strip()
    return label[:1].upper() + label[1:].lower()
