"""
Error taxonomy for the lead-scoring pipeline.

    ValidationError     - malformed input; never retried
    ServiceUnavailable  - no active model; scoring cannot proceed
    NotFoundError       - unknown lead / model / job id
    PersistenceError    - store read/write failure (retry belongs to the store)
    TrainingError       - a training run aborted (NaN loss, divergence, bad data)
    TrainingInProgress  - a second training run was triggered while one is running
    TrainingCancelled   - a training run observed a cancel request between epochs
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LeadScoringError(Exception):
    """Base class for every error raised by the pipeline."""


class ValidationError(LeadScoringError):
    pass


class ServiceUnavailable(LeadScoringError):
    pass


class NotFoundError(LeadScoringError):
    pass


class PersistenceError(LeadScoringError):
    pass


class TrainingError(LeadScoringError):
    """Training aborted. The dataset validation report is attached when available."""

    def __init__(self, message: str, validation_report: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.validation_report = validation_report or {}


class TrainingInProgress(LeadScoringError):
    pass


class TrainingCancelled(LeadScoringError):
    pass
