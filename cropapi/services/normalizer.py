from __future__ import annotations

from typing import Dict, Optional, Sequence

import numpy as np

from cropapi.services.dataset import FEATURE_COLUMNS, ReferenceDataset
from cropapi.services.domain import FeatureVector, NormalizedVector

UNKNOWN_SOIL = "unknown"
UNKNOWN_SOIL_INDEX = 0


class FeatureNormalizer:
    """Min-max scaling against the reference dataset's observed bounds.

    Values outside the training domain are clamped to the nearest bound, and
    a soil type outside the dataset vocabulary maps to ``UNKNOWN_SOIL``.
    """

    def __init__(
        self,
        feature_min: Sequence[float],
        feature_max: Sequence[float],
        soil_vocabulary: Sequence[str] = (),
    ) -> None:
        lo = np.asarray(feature_min, dtype=np.float64)
        hi = np.asarray(feature_max, dtype=np.float64)
        if lo.shape != (len(FEATURE_COLUMNS),) or hi.shape != lo.shape:
            raise ValueError(f"expected {len(FEATURE_COLUMNS)} feature bounds")
        if (hi < lo).any():
            raise ValueError("feature_max must not be below feature_min")
        self._min = lo
        self._span = hi - lo
        self._soil_index: Dict[str, int] = {
            s.strip().lower(): i + 1 for i, s in enumerate(soil_vocabulary)
        }
        self.soil_vocabulary = (UNKNOWN_SOIL,) + tuple(soil_vocabulary)

    @classmethod
    def from_dataset(cls, dataset: ReferenceDataset) -> "FeatureNormalizer":
        return cls(dataset.feature_min, dataset.feature_max, dataset.soil_vocabulary)

    def scale(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        X = np.where(np.isfinite(X), X, self._min)
        safe_span = np.where(self._span > 0, self._span, 1.0)
        out = (X - self._min) / safe_span
        out = np.where(self._span > 0, out, 0.0)
        return np.clip(out, 0.0, 1.0)

    def encode_soil(self, soil_type: Optional[str]) -> int:
        if not soil_type:
            return UNKNOWN_SOIL_INDEX
        return self._soil_index.get(str(soil_type).strip().lower(), UNKNOWN_SOIL_INDEX)

    def normalize(self, raw: FeatureVector) -> NormalizedVector:
        x = np.asarray([getattr(raw, c) for c in FEATURE_COLUMNS], dtype=np.float64)
        scaled = self.scale(x[np.newaxis, :])[0]
        scaled.setflags(write=False)
        return NormalizedVector(features=scaled, soil_index=self.encode_soil(raw.soil_type))
