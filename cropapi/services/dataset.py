from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import numpy as np
import pandas as pd

from cropapi.services.errors import DatasetLoadError

log = logging.getLogger("cropapi.dataset")

# Column order is part of the asset contract: min/max bounds and the label
# vocabulary are derived positionally from it.
FEATURE_COLUMNS: Tuple[str, ...] = (
    "N",
    "P",
    "K",
    "temperature",
    "humidity",
    "ph",
    "rainfall",
)
SOIL_COLUMN = "soil_type"
LABEL_COLUMN = "label"
DATASET_COLUMNS: Tuple[str, ...] = FEATURE_COLUMNS + (SOIL_COLUMN, LABEL_COLUMN)

DEFAULT_DATASET_PATH = Path(__file__).resolve().parent.parent.parent / "data" / "Crop_recommendation.csv"


def get_dataset_path() -> Path:
    p = os.getenv("DATASET_PATH")
    return Path(p).expanduser().resolve() if p else DEFAULT_DATASET_PATH


@dataclass(frozen=True)
class ReferenceDataset:
    """Labeled soil/climate samples used once to fit the classifier.

    ``features`` is an (n, 7) float matrix in ``FEATURE_COLUMNS`` order,
    ``labels`` holds the integer class of each row as an index into
    ``crop_labels``. All arrays are read-only.
    """

    path: str
    features: np.ndarray
    labels: np.ndarray
    soil_types: Tuple[str, ...]
    crop_labels: Tuple[str, ...]

    @property
    def size(self) -> int:
        return int(self.features.shape[0])

    @property
    def num_classes(self) -> int:
        return len(self.crop_labels)

    @property
    def feature_min(self) -> np.ndarray:
        return self.features.min(axis=0)

    @property
    def feature_max(self) -> np.ndarray:
        return self.features.max(axis=0)

    @property
    def soil_vocabulary(self) -> Tuple[str, ...]:
        return tuple(sorted({s for s in self.soil_types if s}))


def _read_frame(path: Path) -> pd.DataFrame:
    if not path.is_file():
        raise DatasetLoadError(str(path), "file not found")
    try:
        return pd.read_csv(path, dtype={SOIL_COLUMN: str, LABEL_COLUMN: str}, keep_default_na=False)
    except (OSError, ValueError, pd.errors.ParserError) as exc:
        raise DatasetLoadError(str(path), f"unreadable CSV ({exc})") from exc


def _check_schema(df: pd.DataFrame, path: Path) -> None:
    cols = [str(c).strip() for c in df.columns]
    if tuple(cols) != DATASET_COLUMNS:
        raise DatasetLoadError(
            str(path), f"expected columns {list(DATASET_COLUMNS)}, got {cols}"
        )
    if df.empty:
        raise DatasetLoadError(str(path), "no samples")
    df.columns = cols


def _numeric_matrix(df: pd.DataFrame, path: Path) -> np.ndarray:
    numeric = df[list(FEATURE_COLUMNS)].apply(pd.to_numeric, errors="coerce")
    bad = numeric.index[numeric.isna().any(axis=1)].tolist()
    if bad:
        raise DatasetLoadError(str(path), f"non-numeric feature values in rows {bad[:5]}")
    X = numeric.to_numpy(dtype=np.float64)
    if not np.isfinite(X).all():
        raise DatasetLoadError(str(path), "non-finite feature values")
    return X


def load_reference_dataset(path: str | os.PathLike | None = None) -> ReferenceDataset:
    """Load and validate the reference CSV.

    Raises ``DatasetLoadError`` when the file is missing, unreadable, has a
    different header, or carries non-numeric features or empty labels.
    """
    p = Path(path).expanduser().resolve() if path else get_dataset_path()
    df = _read_frame(p)
    _check_schema(df, p)

    X = _numeric_matrix(df, p)
    raw_labels = df[LABEL_COLUMN].astype(str).str.strip().str.lower()
    if (raw_labels == "").any():
        raise DatasetLoadError(str(p), "empty crop label")

    # First-appearance order keeps the label vocabulary stable between runs.
    crop_labels: List[str] = list(dict.fromkeys(raw_labels.tolist()))
    index = {c: i for i, c in enumerate(crop_labels)}
    y = np.asarray([index[c] for c in raw_labels], dtype=np.int64)
    soils = tuple(df[SOIL_COLUMN].astype(str).str.strip().tolist())

    X.setflags(write=False)
    y.setflags(write=False)
    ds = ReferenceDataset(
        path=str(p),
        features=X,
        labels=y,
        soil_types=soils,
        crop_labels=tuple(crop_labels),
    )
    log.info("[DATASET] loaded %s samples, %s crops from %s", ds.size, ds.num_classes, p)
    return ds
