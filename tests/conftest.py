from __future__ import annotations

import math
import threading
from pathlib import Path
from typing import List

import numpy as np
import pytest

from cropapi.services.domain import FeatureVector
from cropapi.services.recommender import CropRecommender
from cropapi.services.trainer import FitResult, ModelTrainer, TrainingConfig, pair_weights

HEADER = "N,P,K,temperature,humidity,ph,rainfall,soil_type,label\n"

SMALL_ROWS = [
    "90,42,43,20.8,82.0,6.5,202.9,Clay,rice",
    "85,58,41,21.7,80.3,7.0,226.6,Silt,rice",
    "60,55,44,23.0,82.3,7.8,263.9,Clay,rice",
    "71,54,16,22.6,63.6,5.7,87.7,Loamy,maize",
    "61,44,17,26.1,71.5,6.9,102.2,Sandy,maize",
    "80,43,16,23.5,71.5,6.6,66.7,Loamy,maize",
    "40,72,77,17.0,16.9,7.4,88.5,Loamy,chickpea",
    "23,72,84,19.0,17.1,6.9,79.9,Chalky,chickpea",
    "39,58,85,17.8,15.4,6.0,68.5,Loamy,chickpea",
]

PADDY = FeatureVector(
    N=80, P=45, K=40, temperature=25.0, humidity=82.0, ph=6.5, rainfall=230.0, soil_type="Clay"
)
ZERO = FeatureVector(N=0, P=0, K=0, temperature=0, humidity=0, ph=0, rainfall=0, soil_type=None)


@pytest.fixture
def small_csv(tmp_path: Path) -> Path:
    p = tmp_path / "crops.csv"
    p.write_text(HEADER + "\n".join(SMALL_ROWS) + "\n", encoding="utf-8")
    return p


@pytest.fixture
def bundled_csv() -> Path:
    return Path(__file__).resolve().parent.parent / "data" / "Crop_recommendation.csv"


class FakeFit:
    """Stands in for the Keras fit: seeded weights, fixed losses, call counting."""

    def __init__(self, losses=(1.2, 0.6, 0.4), delay: float = 0.0) -> None:
        self.losses = list(losses)
        self.delay = delay
        self.calls = 0
        self._mu = threading.Lock()

    def __call__(self, X, y, num_classes, config) -> FitResult:
        with self._mu:
            self.calls += 1
        if self.delay:
            threading.Event().wait(self.delay)
        rng = np.random.default_rng(config.seed)
        sizes = [X.shape[1], *config.hidden_units, num_classes]
        arrays: List[np.ndarray] = []
        for fan_in, fan_out in zip(sizes[:-1], sizes[1:]):
            arrays.append(rng.normal(0, 1 / math.sqrt(fan_in), size=(fan_in, fan_out)))
            arrays.append(rng.normal(0, 0.1, size=(fan_out,)))
        return FitResult(weights=pair_weights(arrays), losses=list(self.losses), accuracy=0.9)


@pytest.fixture
def fake_fit() -> FakeFit:
    return FakeFit()


@pytest.fixture
def nan_fit() -> FakeFit:
    return FakeFit(losses=(1.5, float("nan")))


@pytest.fixture
def make_recommender(small_csv):
    def _make(fit_fn, path=None, **config) -> CropRecommender:
        trainer = ModelTrainer(
            dataset_path=path or small_csv,
            config=TrainingConfig(**config),
            fit_fn=fit_fn,
        )
        return CropRecommender(trainer=trainer)

    return _make
