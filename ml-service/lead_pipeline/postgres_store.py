"""
PostgreSQL adapters for the store interfaces (psycopg2).

Tables read:    leads, lead_interactions, lead_properties + properties
Tables written: lead_scores, model_performance, model_alerts

Every driver error is wrapped in ``PersistenceError``; retry policy is left
to the caller's infrastructure.  A connection is opened per operation.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import psycopg2
import psycopg2.extras

from .errors import NotFoundError, PersistenceError
from .records import (
    DriftAlert,
    HistoricalLead,
    Interaction,
    LeadId,
    LeadSnapshot,
    MetricRecord,
    PropertyPref,
    ScoreRecord,
    to_utc,
)
from .stores import CONVERTED_STATUSES, LOST_STATUSES, outcome_for

logger = logging.getLogger(__name__)

_LEAD_COLUMNS = """
    id, first_name, last_name, email, phone, address, status,
    created_at, updated_at, converted_at
"""

_PROPERTY_COLUMNS = """
    p.price_range_min, p.price_range_max, p.property_type,
    p.bedrooms, p.bathrooms, p.square_feet, p.location
"""

_LABELLED_STATUSES = tuple(CONVERTED_STATUSES) + tuple(LOST_STATUSES)


class _PostgresAdapter:
    def __init__(self, db_url: str) -> None:
        if not db_url:
            raise ValueError("DATABASE_URL is not set")
        self.db_url = db_url

    def _connect(self):
        return psycopg2.connect(self.db_url, cursor_factory=psycopg2.extras.RealDictCursor)

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            conn = self._connect()
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return [dict(row) for row in cur.fetchall()]
            finally:
                conn.close()
        except psycopg2.Error as exc:
            raise PersistenceError("Database read failed: %s" % exc) from exc

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        try:
            conn = self._connect()
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                conn.commit()
            finally:
                conn.close()
        except psycopg2.Error as exc:
            raise PersistenceError("Database write failed: %s" % exc) from exc


def _range_clause(column: str, start: Optional[datetime], end: Optional[datetime]):
    clauses, params = [], []
    if start is not None:
        clauses.append(f"{column} >= %s")
        params.append(start)
    if end is not None:
        clauses.append(f"{column} <= %s")
        params.append(end)
    return clauses, params


def _where(clauses: List[str]) -> str:
    return ("WHERE " + " AND ".join(clauses)) if clauses else ""


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------

class PostgresLeadStore(_PostgresAdapter):
    def get_lead(self, lead_id: LeadId) -> LeadSnapshot:
        rows = self._fetch(f"SELECT {_LEAD_COLUMNS} FROM leads WHERE id = %s", (lead_id,))
        if not rows:
            raise NotFoundError("Lead %s not found" % lead_id)
        return LeadSnapshot.from_dict(rows[0])

    def get_interactions(self, lead_id: LeadId) -> List[Interaction]:
        rows = self._fetch(
            """
            SELECT type, created_at, metadata
            FROM lead_interactions
            WHERE lead_id = %s
            ORDER BY created_at ASC
            """,
            (lead_id,),
        )
        return [Interaction.from_dict(row) for row in rows]

    def get_property_prefs(self, lead_id: LeadId) -> List[PropertyPref]:
        rows = self._fetch(
            f"""
            SELECT {_PROPERTY_COLUMNS}
            FROM lead_properties lp
            JOIN properties p ON lp.property_id = p.id
            WHERE lp.lead_id = %s
            """,
            (lead_id,),
        )
        return [PropertyPref.from_dict(row) for row in rows]

    def get_outcome(self, lead_id: LeadId) -> Optional[int]:
        rows = self._fetch(f"SELECT {_LEAD_COLUMNS} FROM leads WHERE id = %s", (lead_id,))
        return outcome_for(LeadSnapshot.from_dict(rows[0])) if rows else None

    def historical_leads(self) -> List[HistoricalLead]:
        return export_historical_leads(self.db_url)

    def count_labelled_since(self, since: datetime) -> int:
        rows = self._fetch(
            """
            SELECT COUNT(*) AS n FROM leads
            WHERE (converted_at IS NOT NULL OR LOWER(status) IN %s)
              AND COALESCE(converted_at, updated_at, created_at) >= %s
            """,
            (_LABELLED_STATUSES, since),
        )
        return int(rows[0]["n"]) if rows else 0


def export_historical_leads(db_url: str) -> List[HistoricalLead]:
    """Every lead with a known outcome plus its history, oldest first.

    Three bulk queries grouped in memory, rather than one query per lead.
    """
    store = _PostgresAdapter(db_url)
    logger.info("Exporting labelled leads for training ...")
    lead_rows = store._fetch(
        f"""
        SELECT {_LEAD_COLUMNS} FROM leads
        WHERE converted_at IS NOT NULL OR LOWER(status) IN %s
        ORDER BY created_at ASC
        """,
        (_LABELLED_STATUSES,),
    )
    if not lead_rows:
        return []
    ids = tuple(row["id"] for row in lead_rows)

    interactions: Dict[Any, List[Interaction]] = defaultdict(list)
    for row in store._fetch(
        """
        SELECT lead_id, type, created_at, metadata
        FROM lead_interactions
        WHERE lead_id IN %s
        ORDER BY created_at ASC
        """,
        (ids,),
    ):
        interactions[row["lead_id"]].append(Interaction.from_dict(row))

    prefs: Dict[Any, List[PropertyPref]] = defaultdict(list)
    for row in store._fetch(
        f"""
        SELECT lp.lead_id, {_PROPERTY_COLUMNS}
        FROM lead_properties lp
        JOIN properties p ON lp.property_id = p.id
        WHERE lp.lead_id IN %s
        """,
        (ids,),
    ):
        prefs[row["lead_id"]].append(PropertyPref.from_dict(row))

    leads = [
        HistoricalLead(
            lead=LeadSnapshot.from_dict(row),
            interactions=interactions.get(row["id"], []),
            property_prefs=prefs.get(row["id"], []),
        )
        for row in lead_rows
    ]
    logger.info("Exported %d labelled leads", len(leads))
    return leads


# ---------------------------------------------------------------------------
# Append-only stores
# ---------------------------------------------------------------------------

class PostgresScoreStore(_PostgresAdapter):
    def write(self, record: ScoreRecord) -> None:
        self._execute(
            """
            INSERT INTO lead_scores
                (lead_id, score, score_type, confidence, model_id, model_version,
                 features_used, features, scored_at)
            VALUES (%s, %s, 'ml', %s, %s, %s, %s, %s, %s)
            """,
            (
                record.lead_id,
                record.score,
                record.confidence,
                record.model_id,
                record.model_version,
                json.dumps(list(record.features_used)),
                json.dumps(record.features),
                record.scored_at,
            ),
        )

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        lead_id: Optional[LeadId] = None,
        limit: Optional[int] = None,
    ) -> List[ScoreRecord]:
        clauses, params = _range_clause("scored_at", start, end)
        if lead_id is not None:
            clauses.append("lead_id = %s")
            params.append(lead_id)
        sql = f"""
            SELECT lead_id, model_id, model_version, score, confidence,
                   features_used, features, scored_at
            FROM lead_scores
            {_where(clauses)}
            ORDER BY scored_at DESC
        """
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        rows = self._fetch(sql, params)
        records = [_score_from_row(row) for row in rows]
        records.reverse()
        return records


def _json_field(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _score_from_row(row: Dict[str, Any]) -> ScoreRecord:
    return ScoreRecord(
        lead_id=row["lead_id"],
        model_id=row.get("model_id") or "",
        model_version=row.get("model_version") or "",
        score=float(row["score"]),
        confidence=float(row["confidence"] or 0.0),
        features_used=list(_json_field(row.get("features_used"), [])),
        features={k: float(v) for k, v in _json_field(row.get("features"), {}).items()},
        scored_at=to_utc(row["scored_at"]),
    )


class PostgresMetricStore(_PostgresAdapter):
    def write(self, record: MetricRecord) -> None:
        self._execute(
            """
            INSERT INTO model_performance (model_id, metric_name, metric_value, recorded_at)
            VALUES (%s, %s, %s, %s)
            """,
            (record.model_id, record.metric_name, record.value, record.recorded_at),
        )

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        model_id: Optional[str] = None,
        metric_name: Optional[str] = None,
    ) -> List[MetricRecord]:
        clauses, params = _range_clause("recorded_at", start, end)
        if model_id is not None:
            clauses.append("model_id = %s")
            params.append(model_id)
        if metric_name is not None:
            clauses.append("metric_name = %s")
            params.append(metric_name)
        rows = self._fetch(
            f"""
            SELECT model_id, metric_name, metric_value, recorded_at
            FROM model_performance
            {_where(clauses)}
            ORDER BY recorded_at ASC
            """,
            params,
        )
        return [
            MetricRecord(
                model_id=row["model_id"],
                metric_name=row["metric_name"],
                value=float(row["metric_value"]),
                recorded_at=to_utc(row["recorded_at"]),
            )
            for row in rows
        ]


class PostgresAlertStore(_PostgresAdapter):
    def write(self, alert: DriftAlert) -> None:
        self._execute(
            """
            INSERT INTO model_alerts
                (model_id, metric_name, severity, detail, alert_type, detected_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                alert.model_id,
                alert.metric_name,
                alert.severity,
                alert.detail,
                alert.alert_type,
                alert.detected_at,
            ),
        )

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DriftAlert]:
        clauses, params = _range_clause("detected_at", start, end)
        rows = self._fetch(
            f"""
            SELECT model_id, metric_name, severity, detail, alert_type, detected_at
            FROM model_alerts
            {_where(clauses)}
            ORDER BY detected_at ASC
            """,
            params,
        )
        return [
            DriftAlert(
                model_id=row["model_id"],
                metric_name=row["metric_name"],
                severity=row["severity"],
                detail=row["detail"],
                detected_at=to_utc(row["detected_at"]),
                alert_type=row.get("alert_type") or "drift",
            )
            for row in rows
        ]
