"""
Plain record types passed between pipeline stages and the stores.

Inputs (``LeadSnapshot``, ``Interaction``, ``PropertyPref``) are built either
by a LeadStore adapter or from inline JSON via ``from_dict``.  Outputs
(``ScoreRecord``, ``MetricRecord``, ``DriftAlert``) are append-only rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np

from .errors import ValidationError

LeadId = Union[int, str]


def to_utc(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse ISO strings and coerce naive datetimes to UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("Invalid ISO 8601 timestamp: %r" % value)
    if not isinstance(value, datetime):
        raise ValidationError("Expected a datetime, got %s" % type(value).__name__)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationError("%s must be an object, got %s" % (what, type(value).__name__))
    return value


def _mapping_list(value: Any, what: str) -> List[Mapping[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError("'%s' must be a list, got %s" % (what, type(value).__name__))
    return [_require_mapping(item, "Each entry of '%s'" % what) for item in value]


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Lead inputs
# ---------------------------------------------------------------------------

@dataclass
class LeadSnapshot:
    id: Optional[LeadId]
    created_at: datetime
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    status: Optional[str] = None
    updated_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LeadSnapshot":
        data = _require_mapping(data, "Lead")
        created_at = to_utc(data.get("created_at"))
        if created_at is None:
            raise ValidationError("Lead is missing required field 'created_at'")
        return cls(
            id=data.get("id"),
            created_at=created_at,
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            email=data.get("email"),
            phone=data.get("phone"),
            address=data.get("address"),
            status=data.get("status"),
            updated_at=to_utc(data.get("updated_at")),
            converted_at=to_utc(data.get("converted_at")),
        )


@dataclass
class Interaction:
    type: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Interaction":
        data = _require_mapping(data, "Interaction")
        created_at = to_utc(data.get("created_at"))
        if created_at is None:
            raise ValidationError("Interaction is missing required field 'created_at'")
        return cls(
            type=str(data.get("type") or "other").lower(),
            created_at=created_at,
            metadata=dict(_require_mapping(data.get("metadata") or {}, "Interaction metadata")),
        )


@dataclass
class PropertyPref:
    price_range_min: Optional[float] = None
    price_range_max: Optional[float] = None
    property_type: Optional[str] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    square_feet: Optional[float] = None
    location: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PropertyPref":
        data = _require_mapping(data, "Property preference")
        return cls(
            price_range_min=_optional_float(data.get("price_range_min")),
            price_range_max=_optional_float(data.get("price_range_max")),
            property_type=data.get("property_type"),
            bedrooms=_optional_float(data.get("bedrooms")),
            bathrooms=_optional_float(data.get("bathrooms")),
            square_feet=_optional_float(data.get("square_feet")),
            location=data.get("location"),
        )


@dataclass
class HistoricalLead:
    """One training example: the lead plus the history its features come from."""

    lead: LeadSnapshot
    interactions: List[Interaction] = field(default_factory=list)
    property_prefs: List[PropertyPref] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoricalLead":
        data = _require_mapping(data, "Lead data")
        interactions = _mapping_list(data.get("interactions"), "interactions")
        prefs = _mapping_list(data.get("property_prefs"), "property_prefs")
        return cls(
            lead=LeadSnapshot.from_dict(data["lead"] if "lead" in data else data),
            interactions=[Interaction.from_dict(i) for i in interactions],
            property_prefs=[PropertyPref.from_dict(p) for p in prefs],
        )


# ---------------------------------------------------------------------------
# Feature vector
# ---------------------------------------------------------------------------

@dataclass
class LeadFeatureVector:
    """Every declared feature, both as extracted (``raw``) and as model input."""

    raw: Dict[str, float]
    normalized: Dict[str, float]

    @property
    def names(self) -> List[str]:
        return list(self.normalized.keys())

    def to_array(self, names: Optional[List[str]] = None) -> np.ndarray:
        names = names or self.names
        return np.array([self.normalized.get(n, 0.0) for n in names], dtype=np.float64)


# ---------------------------------------------------------------------------
# Append-only rows
# ---------------------------------------------------------------------------

@dataclass
class ScoreRecord:
    lead_id: Optional[LeadId]
    model_id: str
    model_version: str
    score: float
    confidence: float
    features_used: List[str]
    features: Dict[str, float]
    scored_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "model_id": self.model_id,
            "model_version": self.model_version,
            "score": self.score,
            "confidence": self.confidence,
            "features_used": list(self.features_used),
            "features": dict(self.features),
            "scored_at": self.scored_at.isoformat(),
        }


@dataclass
class ScoreResult:
    """What a scoring call hands back to its caller."""

    lead_id: Optional[LeadId]
    score: float
    confidence: float
    model_version: str
    features_used: List[str]
    scored_at: datetime

    @classmethod
    def from_record(cls, record: ScoreRecord) -> "ScoreResult":
        return cls(
            lead_id=record.lead_id,
            score=record.score,
            confidence=record.confidence,
            model_version=record.model_version,
            features_used=list(record.features_used),
            scored_at=record.scored_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "score": self.score,
            "confidence": self.confidence,
            "model_version": self.model_version,
            "features_used": list(self.features_used),
            "scored_at": self.scored_at.isoformat(),
        }


@dataclass
class MetricRecord:
    model_id: str
    metric_name: str
    value: float
    recorded_at: datetime


@dataclass
class DriftAlert:
    model_id: str
    metric_name: str
    severity: str
    detail: str
    detected_at: datetime
    alert_type: str = "drift"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "metric_name": self.metric_name,
            "severity": self.severity,
            "detail": self.detail,
            "detected_at": self.detected_at.isoformat(),
            "alert_type": self.alert_type,
        }
