"""
Learned opportunity scorer. Wraps an MLPClassifier that predicts whether an
opportunity's submission will confirm successfully.

Returns a fixed fallback score until the first training pass completes.
Outcomes are buffered and retraining runs off the event loop in a worker
thread. Only one training pass runs at a time; extra requests are dropped.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
from dataclasses import dataclass

import numpy as np
from sklearn.metrics import log_loss
from sklearn.model_selection import train_test_split
from sklearn.neural_network import MLPClassifier
from sklearn.preprocessing import StandardScaler

from scanner.features import N_FEATURES, as_feature_array, as_feature_matrix
from scanner.models import ExecutionResult

logger = logging.getLogger(__name__)

_CLASSES = np.array([0, 1])
# Below this many samples the whole batch is used for training.
MIN_VALIDATION_BATCH = 5


@dataclass(frozen=True)
class TrainingSample:
    """A labeled feature vector for training."""

    features: np.ndarray  # shape (N_FEATURES,)
    label: int  # 1 = confirmed, 0 = failed


@dataclass
class ScoringModelConfig:
    """Configuration for the scoring model."""

    hidden_layers: tuple[int, ...] = (64, 32, 16)
    learning_rate: float = 0.001
    batch_size: int = 32
    epochs: int = 100
    validation_split: float = 0.2
    early_stopping_patience: int = 10
    l2_alpha: float = 0.0001
    buffer_size: int = 32
    untrained_score: float = 0.5
    random_state: int = 42

    @classmethod
    def from_config(cls, cfg) -> ScoringModelConfig:
        return cls(
            hidden_layers=tuple(cfg.model_hidden_layers),
            learning_rate=cfg.model_learning_rate,
            batch_size=cfg.model_batch_size,
            epochs=cfg.model_epochs,
            validation_split=cfg.model_validation_split,
            early_stopping_patience=cfg.model_early_stopping_patience,
            l2_alpha=cfg.model_l2_alpha,
            buffer_size=cfg.retrain_buffer_size,
            untrained_score=cfg.untrained_score,
        )


@dataclass(frozen=True)
class _Parameters:
    """One consistent set of trained parameters. Replaced, never mutated."""

    network: MLPClassifier
    scaler: StandardScaler


class ScoringModel:
    """
    Success-probability model with an outcome feedback buffer.

    score() reads one parameter snapshot, so a training pass finishing
    mid-read is never partially visible.
    """

    def __init__(self, config: ScoringModelConfig | None = None) -> None:
        self._config = config or ScoringModelConfig()
        self._params: _Parameters | None = None
        self._buffer: list[TrainingSample] = []
        self._training_lock = threading.Lock()
        self._train_count = 0
        self._failed_train_count = 0

    @property
    def is_trained(self) -> bool:
        return self._params is not None

    @property
    def is_training(self) -> bool:
        return self._training_lock.locked()

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def score(self, features) -> float:
        """Probability in [0, 1] that an opportunity with these features succeeds."""
        arr = as_feature_array(features).reshape(1, -1)
        params = self._params
        if params is None:
            return self._config.untrained_score
        proba = params.network.predict_proba(params.scaler.transform(arr))[0]
        pos_idx = list(params.network.classes_).index(1)
        return float(np.clip(proba[pos_idx], 0.0, 1.0))

    def train(self, samples: list[TrainingSample]) -> bool:
        """
        Run one training pass over samples. Returns True when new parameters
        were installed, False when skipped (another pass running, empty batch)
        or when training failed.
        """
        if not self._training_lock.acquire(blocking=False):
            logger.debug("Training already in progress, skipping request (%d samples)", len(samples))
            return False
        try:
            if not samples:
                return False
            X = as_feature_matrix([s.features for s in samples])
            y = np.array([s.label for s in samples], dtype=int)
            try:
                params = self._fit(X, y)
            except Exception:
                self._failed_train_count += 1
                logger.exception("Scoring model training failed on %d samples, keeping previous parameters", len(samples))
                return False
            self._params = params
            self._train_count += 1
            logger.info("Scoring model trained on %d samples (pass #%d)", len(samples), self._train_count)
            return True
        finally:
            self._training_lock.release()

    def _fit(self, X: np.ndarray, y: np.ndarray) -> _Parameters:
        cfg = self._config
        if len(X) >= MIN_VALIDATION_BATCH and cfg.validation_split > 0:
            X_train, X_val, y_train, y_val = train_test_split(
                X, y, test_size=cfg.validation_split, random_state=cfg.random_state,
            )
        else:
            X_train, X_val, y_train, y_val = X, X, y, y

        # Train on copies so score() keeps using the live parameters.
        current = self._params
        if current is None:
            network = self._new_network()
            scaler = StandardScaler()
        else:
            network = copy.deepcopy(current.network)
            scaler = copy.deepcopy(current.scaler)
        scaler.partial_fit(X_train)
        X_train_s = scaler.transform(X_train)
        X_val_s = scaler.transform(X_val)

        best_loss = float("inf")
        best_network = network
        stale_epochs = 0
        for epoch in range(cfg.epochs):
            network.partial_fit(X_train_s, y_train, classes=_CLASSES)
            val_loss = log_loss(y_val, network.predict_proba(X_val_s), labels=_CLASSES)
            logger.debug("Epoch %d: loss=%.4f val_loss=%.4f", epoch, network.loss_, val_loss)
            if val_loss < best_loss:
                best_loss = val_loss
                best_network = copy.deepcopy(network)
                stale_epochs = 0
            else:
                stale_epochs += 1
                if stale_epochs >= cfg.early_stopping_patience:
                    logger.debug("Early stopping at epoch %d (best val_loss=%.4f)", epoch, best_loss)
                    break

        return _Parameters(network=best_network, scaler=scaler)

    def _new_network(self) -> MLPClassifier:
        cfg = self._config
        return MLPClassifier(
            hidden_layer_sizes=cfg.hidden_layers,
            activation="relu",
            solver="adam",
            alpha=cfg.l2_alpha,
            batch_size=cfg.batch_size,
            learning_rate_init=cfg.learning_rate,
            random_state=cfg.random_state,
        )

    async def record_outcome(self, result: ExecutionResult) -> bool:
        """
        Buffer an execution outcome. When the buffer is full, its contents are
        handed to train() in a worker thread and the buffer starts over,
        whether or not training succeeds. Returns True if a retrain ran and
        installed new parameters.
        """
        features = as_feature_array(result.opportunity.features)
        self._buffer.append(TrainingSample(features=features, label=int(result.success)))
        if len(self._buffer) < self._config.buffer_size:
            return False

        # Swap before the await so outcomes arriving during training land in
        # a fresh buffer.
        batch, self._buffer = self._buffer, []
        return await asyncio.to_thread(self.train, batch)

    @property
    def stats(self) -> dict:
        return {
            "is_trained": self.is_trained,
            "is_training": self.is_training,
            "buffer_size": len(self._buffer),
            "train_count": self._train_count,
            "failed_train_count": self._failed_train_count,
            "n_features": N_FEATURES,
        }
