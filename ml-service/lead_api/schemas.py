"""
Pydantic models for the Lead Scoring ML Service API.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator

LeadIdField = Union[int, str]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class ScoreRequest(BaseModel):
    """Score a stored lead by id, or an unsaved lead passed inline."""

    lead_id: Optional[LeadIdField] = Field(
        default=None,
        description="Id of a lead in the lead store",
        examples=[42],
    )
    lead: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Inline lead with optional 'interactions' and 'property_prefs' lists",
        examples=[{
            "lead": {
                "id": "draft-1",
                "created_at": "2024-01-10T09:00:00Z",
                "email": "jane@acme-realty.com",
                "phone": "+15550000001",
            },
            "interactions": [
                {"type": "email", "created_at": "2024-01-12T10:00:00Z"},
            ],
            "property_prefs": [
                {"price_range_min": 300000, "price_range_max": 450000, "bedrooms": 3},
            ],
        }],
    )

    @model_validator(mode="after")
    def _one_source(self) -> "ScoreRequest":
        if (self.lead_id is None) == (self.lead is None):
            raise ValueError("Provide exactly one of 'lead_id' or 'lead'")
        return self


class BatchScoreRequest(BaseModel):
    lead_ids: List[LeadIdField] = Field(
        ...,
        description="Lead ids to score against the same model (at most 50)",
        examples=[[1, 2, 3]],
    )


class ScoreResponse(BaseModel):
    """Score returned to the caller."""

    lead_id: Optional[LeadIdField] = None
    score: float = Field(..., ge=0.0, le=1.0, description="Conversion probability")
    confidence: float = Field(
        ..., ge=0.0, le=1.0,
        description="Distance of the score from the 0.5 decision boundary, scaled to [0, 1]",
    )
    model_version: str
    features_used: List[str] = Field(default_factory=list)
    scored_at: str


class BatchScoreResponse(BaseModel):
    results: List[ScoreResponse]
    count: int


# ---------------------------------------------------------------------------
# Explanations
# ---------------------------------------------------------------------------

class TopFactor(BaseModel):
    feature: str
    value: float
    impact: float = Field(..., description="Signed impact; positive pushes toward the score's side of 0.5")
    direction: str = Field(..., examples=["positive", "negative"])
    explanation: str


class SimilarLead(BaseModel):
    lead_id: LeadIdField
    score: float
    confidence: float
    distance: float
    similarity: float
    scored_at: str


class Recommendation(BaseModel):
    type: str = Field(..., examples=["action", "engagement", "assessment"])
    priority: str = Field(..., examples=["high", "medium", "low"])
    message: str
    actions: List[str] = Field(default_factory=list)


class ExplanationResponse(BaseModel):
    lead_id: Optional[LeadIdField] = None
    score: float
    confidence: float
    model_version: Optional[str] = None
    importance_table_version: str
    top_factors: List[TopFactor]
    contributions: Dict[str, Any]
    similar_leads: List[SimilarLead]
    score_distribution: Dict[str, Any]
    recommendations: List[Recommendation]
    generated_at: str


# ---------------------------------------------------------------------------
# Model info
# ---------------------------------------------------------------------------

class ModelInfo(BaseModel):
    """Metadata and quality metrics for the active model."""

    id: str
    type: str = Field(..., examples=["baseline", "advanced"])
    version: str
    status: str
    metrics: Dict[str, float]
    training_date: str
    feature_names: List[str]
    feature_count: int = Field(..., ge=0)
    training_samples: int = Field(..., ge=0)
    schema_version: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------

class TrainingRequest(BaseModel):
    """Parameters for a training job triggered via the API.

    With neither field set, the job trains on every labelled lead in the
    lead store.
    """

    leads: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Inline historical leads (same shape as ScoreRequest.lead, plus a status)",
    )
    synthetic: Optional[int] = Field(
        default=None,
        ge=10,
        le=100_000,
        description="Train on this many generated leads instead (demos and smoke tests)",
    )


class TrainingJobResponse(BaseModel):
    job_id: str
    status: str = Field(..., examples=["queued", "running", "completed", "failed", "cancelled"])
    submitted_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    validation_report: Optional[Dict[str, Any]] = None
