"""
Collaborator interfaces consumed by the pipeline, plus thread-safe in-memory
implementations used by tests, local runs and the synthetic-data scripts.

    LeadStore    - lead snapshots, interaction history, property preferences,
                   known outcomes
    ScoreStore   - append-only ScoreRecords
    MetricStore  - append-only MetricRecords (model metrics + usage stats)
    AlertStore   - append-only DriftAlerts (audit trail)
    AlertSink    - fire-and-forget alert notification
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import NotFoundError
from .records import (
    DriftAlert,
    HistoricalLead,
    Interaction,
    LeadId,
    LeadSnapshot,
    MetricRecord,
    PropertyPref,
    ScoreRecord,
)

logger = logging.getLogger(__name__)

CONVERTED_STATUSES = ("converted", "closed_won", "won")
LOST_STATUSES = ("lost", "unqualified", "closed_lost", "dead")


def outcome_for(lead: LeadSnapshot) -> Optional[int]:
    """Ground truth for a lead: 1 converted, 0 lost, ``None`` while still open."""
    status = (lead.status or "").strip().lower()
    if lead.converted_at is not None or status in CONVERTED_STATUSES:
        return 1
    if status in LOST_STATUSES:
        return 0
    return None


def _in_range(ts: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and ts < start:
        return False
    if end is not None and ts > end:
        return False
    return True


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class LeadStore(Protocol):
    def get_lead(self, lead_id: LeadId) -> LeadSnapshot: ...

    def get_interactions(self, lead_id: LeadId) -> List[Interaction]: ...

    def get_property_prefs(self, lead_id: LeadId) -> List[PropertyPref]: ...

    def get_outcome(self, lead_id: LeadId) -> Optional[int]: ...

    def historical_leads(self) -> List[HistoricalLead]: ...

    def count_labelled_since(self, since: datetime) -> int: ...


class ScoreStore(Protocol):
    def write(self, record: ScoreRecord) -> None: ...

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        lead_id: Optional[LeadId] = None,
        limit: Optional[int] = None,
    ) -> List[ScoreRecord]: ...


class MetricStore(Protocol):
    def write(self, record: MetricRecord) -> None: ...

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        model_id: Optional[str] = None,
        metric_name: Optional[str] = None,
    ) -> List[MetricRecord]: ...


class AlertStore(Protocol):
    def write(self, alert: DriftAlert) -> None: ...

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DriftAlert]: ...


class AlertSink(Protocol):
    def publish(self, alert: DriftAlert) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryLeadStore:
    def __init__(self, leads: Iterable[HistoricalLead] = ()) -> None:
        self._lock = threading.Lock()
        self._leads: Dict[LeadId, HistoricalLead] = {}
        for item in leads:
            self.add(item)

    def add(self, item: HistoricalLead) -> None:
        if item.lead.id is None:
            raise ValueError("Stored leads need an id")
        with self._lock:
            self._leads[item.lead.id] = item

    def _get(self, lead_id: LeadId) -> HistoricalLead:
        item = self._leads.get(lead_id)
        if item is None:
            raise NotFoundError("Lead %s not found" % lead_id)
        return item

    def get_lead(self, lead_id: LeadId) -> LeadSnapshot:
        return self._get(lead_id).lead

    def get_interactions(self, lead_id: LeadId) -> List[Interaction]:
        return list(self._get(lead_id).interactions)

    def get_property_prefs(self, lead_id: LeadId) -> List[PropertyPref]:
        return list(self._get(lead_id).property_prefs)

    def get_outcome(self, lead_id: LeadId) -> Optional[int]:
        item = self._leads.get(lead_id)
        return outcome_for(item.lead) if item is not None else None

    def historical_leads(self) -> List[HistoricalLead]:
        """Leads with a known outcome, oldest first."""
        with self._lock:
            items = list(self._leads.values())
        labelled = [i for i in items if outcome_for(i.lead) is not None]
        return sorted(labelled, key=lambda i: i.lead.created_at)

    def count_labelled_since(self, since: datetime) -> int:
        count = 0
        for item in self.historical_leads():
            changed = item.lead.converted_at or item.lead.updated_at or item.lead.created_at
            if changed >= since:
                count += 1
        return count


class InMemoryScoreStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[ScoreRecord] = []

    def write(self, record: ScoreRecord) -> None:
        with self._lock:
            self._records.append(record)

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        lead_id: Optional[LeadId] = None,
        limit: Optional[int] = None,
    ) -> List[ScoreRecord]:
        """Matching records, oldest first; *limit* keeps the most recent."""
        with self._lock:
            records = list(self._records)
        matched = [
            r for r in records
            if _in_range(r.scored_at, start, end) and (lead_id is None or r.lead_id == lead_id)
        ]
        matched.sort(key=lambda r: r.scored_at)
        if limit is not None:
            matched = matched[-limit:] if limit > 0 else []
        return matched


class InMemoryMetricStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[MetricRecord] = []

    def write(self, record: MetricRecord) -> None:
        with self._lock:
            self._records.append(record)

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        model_id: Optional[str] = None,
        metric_name: Optional[str] = None,
    ) -> List[MetricRecord]:
        with self._lock:
            records = list(self._records)
        return [
            r for r in records
            if _in_range(r.recorded_at, start, end)
            and (model_id is None or r.model_id == model_id)
            and (metric_name is None or r.metric_name == metric_name)
        ]


class InMemoryAlertStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._alerts: List[DriftAlert] = []

    def write(self, alert: DriftAlert) -> None:
        with self._lock:
            self._alerts.append(alert)

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DriftAlert]:
        with self._lock:
            alerts = list(self._alerts)
        return [a for a in alerts if _in_range(a.detected_at, start, end)]


class LoggingAlertSink:
    """Default sink: alerts go to the service log."""

    def publish(self, alert: DriftAlert) -> None:
        logger.warning(
            "ALERT [%s] %s/%s on %s: %s",
            alert.severity, alert.alert_type, alert.metric_name, alert.model_id, alert.detail,
        )
