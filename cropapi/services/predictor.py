from __future__ import annotations

import logging
from typing import List

import numpy as np

from cropapi.services.domain import NormalizedVector, Recommendation, Source, display_name
from cropapi.services.trainer import ModelTrainer, ModelWeights

log = logging.getLogger("cropapi.predictor")


def forward(weights: ModelWeights, x: np.ndarray) -> np.ndarray:
    """Inference pass: ReLU hidden layers, softmax output, no dropout."""
    h = np.asarray(x, dtype=np.float64)
    last = len(weights) - 1
    for i, (W, b) in enumerate(weights):
        h = h @ W + b
        if i < last:
            h = np.maximum(h, 0.0)
    h = h - h.max(axis=-1, keepdims=True)
    e = np.exp(h)
    return e / e.sum(axis=-1, keepdims=True)


class ModelPredictor:
    def __init__(self, trainer: ModelTrainer) -> None:
        self._trainer = trainer

    async def predict(self, vector: NormalizedVector) -> List[Recommendation]:
        """Per-crop confidences, highest first; empty when the model is unavailable."""
        if not self._trainer.is_ready():
            await self._trainer.ensure_ready()
        if not self._trainer.is_ready():
            return []

        probs = forward(self._trainer.weights, vector.features[np.newaxis, :])[0]
        recs = [
            Recommendation(
                crop_name=display_name(label),
                confidence=round(float(p) * 100.0, 1),
                source=Source.MODEL,
            )
            for label, p in zip(self._trainer.crop_labels, probs)
        ]
        # stable: equal confidences keep label order
        recs.sort(key=lambda r: -r.confidence)
        log.debug("model top=%s", recs[0].crop_name if recs else None)
        return recs
