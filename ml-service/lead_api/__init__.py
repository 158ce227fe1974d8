"""
Service layer for the lead scoring ML service.

Modules:
    service  - LeadScoringService facade wiring stores, models and monitoring
    schemas  - Pydantic request/response models for the HTTP API
"""

from .service import LeadScoringService, TrainingJob, coerce_lead_id
