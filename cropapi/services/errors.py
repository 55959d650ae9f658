from __future__ import annotations


class RecommenderError(Exception):
    """Base class for crop recommender failures."""


class DatasetLoadError(RecommenderError):
    """The reference dataset is missing, unreadable or malformed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"reference dataset {path}: {reason}")
        self.path = path
        self.reason = reason


class TrainingError(RecommenderError):
    """Training produced a non-finite loss or unusable weights."""
