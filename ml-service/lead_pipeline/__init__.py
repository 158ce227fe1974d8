"""Lead-scoring pipeline: features, training, registry, scoring, explanations, monitoring."""

from .errors import (
    LeadScoringError,
    NotFoundError,
    PersistenceError,
    ServiceUnavailable,
    TrainingCancelled,
    TrainingError,
    TrainingInProgress,
    ValidationError,
)
from .feature_map import FEATURE_NAMES

__all__ = [
    "FEATURE_NAMES",
    "LeadScoringError",
    "NotFoundError",
    "PersistenceError",
    "ServiceUnavailable",
    "TrainingCancelled",
    "TrainingError",
    "TrainingInProgress",
    "ValidationError",
]
