from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from cropapi.services.dataset import ReferenceDataset, load_reference_dataset
from cropapi.services.errors import DatasetLoadError, TrainingError
from cropapi.services.normalizer import FeatureNormalizer

log = logging.getLogger("cropapi.trainer")

# (weight matrix, bias vector) per dense layer, input layer first
ModelWeights = Tuple[Tuple[np.ndarray, np.ndarray], ...]


class TrainingState(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    READY = "ready"
    FAILED = "failed"


_TERMINAL = (TrainingState.READY, TrainingState.FAILED)


def _env_float(name: str) -> Optional[float]:
    v = os.getenv(name, "").strip()
    return float(v) if v else None


@dataclass(frozen=True)
class TrainingConfig:
    epochs: int = 30
    batch_size: int = 32
    learning_rate: float = 0.001
    dropout: float = 0.2
    validation_split: float = 0.2
    patience: int = 5
    min_delta: float = 0.001
    seed: int = 42
    timeout: Optional[float] = None
    hidden_units: Tuple[int, ...] = (64, 32, 16)

    @classmethod
    def from_env(cls) -> "TrainingConfig":
        return cls(
            epochs=int(os.getenv("TRAIN_EPOCHS", "30")),
            batch_size=int(os.getenv("TRAIN_BATCH_SIZE", "32")),
            patience=int(os.getenv("TRAIN_PATIENCE", "5")),
            min_delta=float(os.getenv("TRAIN_MIN_DELTA", "0.001")),
            seed=int(os.getenv("TRAIN_SEED", "42")),
            timeout=_env_float("TRAIN_TIMEOUT_SECONDS"),
        )


@dataclass(frozen=True)
class FitResult:
    weights: ModelWeights
    losses: List[float]
    accuracy: Optional[float] = None
    val_accuracy: Optional[float] = None


@dataclass(frozen=True)
class TrainingReport:
    epochs_run: int
    final_loss: float
    final_accuracy: Optional[float]
    val_accuracy: Optional[float]
    samples: int
    num_classes: int
    duration_seconds: float


FitFn = Callable[[np.ndarray, np.ndarray, int, TrainingConfig], FitResult]


def pair_weights(arrays: Sequence[np.ndarray]) -> ModelWeights:
    """Group Keras' flat ``get_weights()`` list into (kernel, bias) pairs."""
    if len(arrays) % 2:
        raise TrainingError(f"expected kernel/bias pairs, got {len(arrays)} arrays")
    pairs = []
    for W, b in zip(arrays[0::2], arrays[1::2]):
        W = np.array(W, dtype=np.float64)
        b = np.array(b, dtype=np.float64)
        W.setflags(write=False)
        b.setflags(write=False)
        pairs.append((W, b))
    return tuple(pairs)


def build_network(num_features: int, num_classes: int, config: TrainingConfig):
    # TensorFlow is imported lazily; rule-only callers never pay for it.
    import tensorflow as tf

    layers: list = [tf.keras.Input(shape=(num_features,))]
    for i, units in enumerate(config.hidden_units):
        layers.append(tf.keras.layers.Dense(units, activation="relu"))
        # no dropout in front of the last hidden layer
        if i < len(config.hidden_units) - 1 and config.dropout > 0:
            layers.append(tf.keras.layers.Dropout(config.dropout))
    layers.append(tf.keras.layers.Dense(num_classes, activation="softmax"))

    model = tf.keras.Sequential(layers)
    model.compile(
        optimizer=tf.keras.optimizers.Adam(learning_rate=config.learning_rate),
        loss="categorical_crossentropy",
        metrics=["accuracy"],
    )
    return model


def fit_classifier(X: np.ndarray, y: np.ndarray, num_classes: int, config: TrainingConfig) -> FitResult:
    import tensorflow as tf

    tf.keras.utils.set_random_seed(config.seed)

    # Keras takes the validation split from the tail; the asset is grouped
    # by crop, so rows are shuffled first.
    order = np.random.default_rng(config.seed).permutation(len(X))
    X = np.asarray(X, dtype=np.float32)[order]
    Y = tf.keras.utils.to_categorical(np.asarray(y)[order], num_classes=num_classes)

    model = build_network(X.shape[1], num_classes, config)

    def _on_epoch_end(epoch: int, logs: Optional[dict]) -> None:
        logs = logs or {}
        log.info(
            "[TRAIN] epoch %d/%d - loss: %.4f, accuracy: %.4f",
            epoch + 1,
            config.epochs,
            logs.get("loss", float("nan")),
            logs.get("accuracy", float("nan")),
        )

    callbacks = [
        tf.keras.callbacks.TerminateOnNaN(),
        tf.keras.callbacks.EarlyStopping(
            monitor="loss", min_delta=config.min_delta, patience=config.patience
        ),
        tf.keras.callbacks.LambdaCallback(on_epoch_end=_on_epoch_end),
    ]
    split = config.validation_split if len(X) >= 10 else 0.0
    history = model.fit(
        X,
        Y,
        epochs=config.epochs,
        batch_size=config.batch_size,
        validation_split=split,
        shuffle=True,
        verbose=0,
        callbacks=callbacks,
    )

    h = history.history
    acc = h.get("accuracy") or [None]
    val_acc = h.get("val_accuracy") or [None]
    return FitResult(
        weights=pair_weights(model.get_weights()),
        losses=[float(v) for v in h.get("loss", [])],
        accuracy=None if acc[-1] is None else float(acc[-1]),
        val_accuracy=None if val_acc[-1] is None else float(val_acc[-1]),
    )


def _check_fit(result: FitResult, num_features: int, num_classes: int) -> None:
    if not result.losses:
        raise TrainingError("no epochs were run")
    if not all(np.isfinite(v) for v in result.losses):
        raise TrainingError(f"non-finite loss (last={result.losses[-1]})")
    if not result.weights:
        raise TrainingError("no weights produced")
    for W, b in result.weights:
        if not (np.isfinite(W).all() and np.isfinite(b).all()):
            raise TrainingError("non-finite weights")
    if result.weights[0][0].shape[0] != num_features or result.weights[-1][1].shape[0] != num_classes:
        raise TrainingError("weight shapes do not match the dataset")


class ModelTrainer:
    """Owns the reference dataset, the trained weights and the training lifecycle.

    ``ensure_ready()`` trains at most once per instance. The run is a single
    task owned by the trainer and callers wait on it through ``asyncio.shield``,
    so a cancelled caller abandons only its own wait. A failed run is final:
    the trainer stays ``failed`` and predictions defer to the rules.

    A dataset load failure is held until one ``ensure_ready()`` caller collects
    it, including when the run was started by ``warm_up()``.
    """

    def __init__(
        self,
        dataset_path: Optional[str | os.PathLike] = None,
        config: Optional[TrainingConfig] = None,
        fit_fn: FitFn = fit_classifier,
        loader: Callable[..., ReferenceDataset] = load_reference_dataset,
    ) -> None:
        self._dataset_path = Path(dataset_path) if dataset_path else None
        self.config = config or TrainingConfig()
        self._fit_fn = fit_fn
        self._loader = loader
        self._task: Optional[asyncio.Task] = None
        self._load_error: Optional[DatasetLoadError] = None
        self._state = TrainingState.IDLE
        self._runs = 0
        self._weights: Optional[ModelWeights] = None
        self._normalizer: Optional[FeatureNormalizer] = None
        self._crop_labels: Tuple[str, ...] = ()
        self._report: Optional[TrainingReport] = None

    @property
    def state(self) -> TrainingState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is TrainingState.READY

    @property
    def training_runs(self) -> int:
        return self._runs

    @property
    def weights(self) -> Optional[ModelWeights]:
        return self._weights

    @property
    def normalizer(self) -> Optional[FeatureNormalizer]:
        return self._normalizer

    @property
    def crop_labels(self) -> Tuple[str, ...]:
        return self._crop_labels

    @property
    def report(self) -> Optional[TrainingReport]:
        return self._report

    @property
    def load_error(self) -> Optional[DatasetLoadError]:
        """Dataset failure not yet reported to an ``ensure_ready()`` caller."""
        return self._load_error

    async def _wait_for_run(self) -> None:
        if self._state in _TERMINAL:
            return
        # a run cancelled along with its event loop never finished
        if self._task is None or self._task.cancelled():
            self._task = asyncio.create_task(self._train())
        await asyncio.shield(self._task)

    async def warm_up(self) -> TrainingState:
        """Train without collecting a dataset failure; the next ``ensure_ready()`` raises it."""
        await self._wait_for_run()
        return self._state

    async def ensure_ready(self) -> None:
        await self._wait_for_run()
        exc, self._load_error = self._load_error, None
        if exc is not None:
            raise exc

    def _load(self) -> ReferenceDataset:
        try:
            return self._loader(self._dataset_path)
        except DatasetLoadError:
            raise
        except Exception as exc:
            raise DatasetLoadError(str(self._dataset_path or "<default>"), str(exc)) from exc

    async def _fit(self, X: np.ndarray, y: np.ndarray, num_classes: int) -> FitResult:
        work = asyncio.to_thread(self._fit_fn, X, y, num_classes, self.config)
        if self.config.timeout is None:
            return await work
        return await asyncio.wait_for(work, timeout=self.config.timeout)

    async def _train(self) -> None:
        self._state = TrainingState.TRAINING
        self._runs += 1
        log.info("[TRAIN] run #%d started (epochs=%s)", self._runs, self.config.epochs)

        try:
            dataset = self._load()
        except DatasetLoadError as exc:
            self._state = TrainingState.FAILED
            self._load_error = exc
            log.error("[TRAIN] dataset load failed: %s", exc)
            return

        normalizer = FeatureNormalizer.from_dataset(dataset)
        X = normalizer.scale(dataset.features)
        started = time.perf_counter()
        try:
            result = await self._fit(X, dataset.labels, dataset.num_classes)
            _check_fit(result, X.shape[1], dataset.num_classes)
        except asyncio.TimeoutError:
            self._state = TrainingState.FAILED
            log.error("[TRAIN] timed out after %.1fs; model disabled", self.config.timeout)
            return
        except asyncio.CancelledError:
            log.warning("[TRAIN] run #%d cancelled before completion", self._runs)
            raise
        except TrainingError as exc:
            self._state = TrainingState.FAILED
            log.error("[TRAIN] failed: %s; model disabled", exc)
            return
        except Exception:
            self._state = TrainingState.FAILED
            log.exception("[TRAIN] failed; model disabled")
            return

        self._normalizer = normalizer
        self._weights = result.weights
        self._crop_labels = dataset.crop_labels
        self._report = TrainingReport(
            epochs_run=len(result.losses),
            final_loss=result.losses[-1],
            final_accuracy=result.accuracy,
            val_accuracy=result.val_accuracy,
            samples=dataset.size,
            num_classes=dataset.num_classes,
            duration_seconds=round(time.perf_counter() - started, 3),
        )
        self._state = TrainingState.READY
        log.info(
            "[TRAIN] ready: %d epochs, loss=%.4f, samples=%d, classes=%d",
            self._report.epochs_run,
            self._report.final_loss,
            self._report.samples,
            self._report.num_classes,
        )
