"""
Training data snapshots.

A training run hands its extracted dataset to ``DataVersioner.save_snapshot``,
which writes it as parquet next to a JSON sidecar describing it.  Snapshots
are keyed by a content fingerprint, so retraining on an unchanged dataset
reuses the existing snapshot instead of writing a duplicate.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .errors import NotFoundError, PersistenceError
from .feature_map import FEATURE_NAMES

logger = logging.getLogger(__name__)

LABEL_COLUMN = "converted"
SNAPSHOT_FORMAT = 1

_SUMMARY_KEYS = ("version", "created_at", "rows", "conversion_rate", "fingerprint")


def dataset_fingerprint(df: pd.DataFrame) -> str:
    """Stable hash of the rows and column order of *df*."""
    digest = hashlib.sha256()
    digest.update(",".join(map(str, df.columns)).encode())
    digest.update(pd.util.hash_pandas_object(df, index=False).values.tobytes())
    return digest.hexdigest()[:12]


def describe_features(df: pd.DataFrame) -> Dict[str, Dict[str, float]]:
    columns = [f for f in FEATURE_NAMES if f in df.columns]
    if not columns or df.empty:
        return {}
    stats = df[columns].astype(float).describe().T.fillna(0.0)
    return {
        name: {
            "mean": round(float(row["mean"]), 4),
            "std": round(float(row["std"]), 4),
            "min": round(float(row["min"]), 4),
            "max": round(float(row["max"]), 4),
        }
        for name, row in stats.iterrows()
    }


class DataVersioner:
    def __init__(self, snapshots_dir: Path) -> None:
        self.snapshots_dir = Path(snapshots_dir)
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)

    def _data_path(self, version: str) -> Path:
        return self.snapshots_dir / f"{version}.parquet"

    def _meta_path(self, version: str) -> Path:
        return self.snapshots_dir / f"{version}_meta.json"

    def find_by_fingerprint(self, fingerprint: str) -> Optional[str]:
        for meta in self._read_all():
            if meta.get("fingerprint") == fingerprint:
                return meta.get("version")
        return None

    def save_snapshot(
        self,
        df: pd.DataFrame,
        version: Optional[str] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Persist *df* and return its version; identical data maps to one snapshot."""
        fingerprint = dataset_fingerprint(df)
        if version is None:
            existing = self.find_by_fingerprint(fingerprint)
            if existing is not None:
                logger.info("Dataset unchanged; reusing snapshot %s", existing)
                return existing
            created = datetime.now(timezone.utc)
            version = f"data_{created:%Y%m%d_%H%M%S}_{fingerprint[:8]}"

        labelled = LABEL_COLUMN in df.columns and not df.empty
        dates = df["created_at"] if "created_at" in df.columns and not df.empty else None
        metadata: Dict[str, Any] = {
            "format": SNAPSHOT_FORMAT,
            "version": version,
            "fingerprint": fingerprint,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "rows": int(len(df)),
            "features": len([f for f in FEATURE_NAMES if f in df.columns]),
            "conversion_rate": round(float(df[LABEL_COLUMN].mean()), 4) if labelled else None,
            "date_range": {
                "min": str(dates.min()) if dates is not None else None,
                "max": str(dates.max()) if dates is not None else None,
            },
            "feature_stats": describe_features(df),
        }
        metadata.update(extra_metadata or {})

        try:
            df.to_parquet(self._data_path(version), index=False)
            self._meta_path(version).write_text(json.dumps(metadata, indent=2, default=str))
        except (OSError, ValueError, ImportError) as exc:
            raise PersistenceError(f"Could not write snapshot {version}: {exc}") from exc

        logger.info(
            "Saved data snapshot %s (%d rows, conversion rate %s)",
            version, metadata["rows"], metadata["conversion_rate"],
        )
        return version

    def load_snapshot(self, version: str) -> pd.DataFrame:
        path = self._data_path(version)
        if not path.exists():
            raise NotFoundError(f"Snapshot not found: {version}")
        return pd.read_parquet(path)

    def get_metadata(self, version: str) -> Dict[str, Any]:
        path = self._meta_path(version)
        if not path.exists():
            raise NotFoundError(f"Snapshot metadata not found: {version}")
        return self._read_meta(path)

    def list_snapshots(self) -> List[Dict[str, Any]]:
        """Summaries of every snapshot, newest first."""
        return [{key: meta.get(key) for key in _SUMMARY_KEYS} for meta in self._read_all()]

    def _read_all(self) -> List[Dict[str, Any]]:
        return [
            self._read_meta(path)
            for path in sorted(self.snapshots_dir.glob("*_meta.json"), reverse=True)
        ]

    @staticmethod
    def _read_meta(path: Path) -> Dict[str, Any]:
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Could not read snapshot metadata {path.name}: {exc}") from exc
