"""
Data Validator — pre-training checks on the extracted feature matrix.

Checks:
    - Class balance (positive fraction must lie in [0.1, 0.9]; warning only)
    - Missing-value rate (fraction of NaN feature cells; flagged above 0.1)
    - Label distribution
    - Most correlated feature pairs

Nothing is dropped here: the extractor zero-fills, so a complete matrix is
expected and any NaN is reported rather than silently removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .feature_map import FEATURE_NAMES

logger = logging.getLogger(__name__)

MIN_POSITIVE_RATIO = 0.1
MAX_POSITIVE_RATIO = 0.9
MAX_MISSING_RATE = 0.1
TOP_CORRELATIONS = 5


@dataclass
class ValidationReport:
    """Summary of dataset checks, attached to training failures and artifacts."""

    rows: int = 0
    feature_count: int = 0
    positive_rate: float = 0.0
    class_balance_ok: bool = True
    missing_rate: float = 0.0
    missing_rate_ok: bool = True
    missing_by_feature: Dict[str, int] = field(default_factory=dict)
    label_distribution: Dict[str, int] = field(default_factory=dict)
    top_correlations: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": self.rows,
            "feature_count": self.feature_count,
            "positive_rate": round(self.positive_rate, 4),
            "class_balance_ok": self.class_balance_ok,
            "missing_rate": round(self.missing_rate, 4),
            "missing_rate_ok": self.missing_rate_ok,
            "missing_by_feature": self.missing_by_feature,
            "label_distribution": self.label_distribution,
            "top_correlations": self.top_correlations,
            "warnings": self.warnings,
        }


def _top_correlated_pairs(features: pd.DataFrame, limit: int) -> List[Dict[str, Any]]:
    varying = features.loc[:, features.nunique(dropna=True) > 1]
    if varying.shape[1] < 2:
        return []
    corr = varying.corr().abs()
    mask = np.triu(np.ones(corr.shape, dtype=bool), k=1)
    pairs = corr.where(mask).stack().sort_values(ascending=False).head(limit)
    return [
        {"feature_a": a, "feature_b": b, "correlation": round(float(v), 4)}
        for (a, b), v in pairs.items()
    ]


def validate_dataset(
    features: pd.DataFrame,
    labels: Sequence[int],
    feature_names: Optional[List[str]] = None,
) -> ValidationReport:
    """Run every check and return the report; never raises on bad balance."""
    feature_names = feature_names or FEATURE_NAMES
    labels = pd.Series(list(labels), dtype="float64")
    report = ValidationReport(rows=len(features), feature_count=len(feature_names))

    matrix = features.reindex(columns=feature_names)
    cells = matrix.size
    missing = matrix.isna().sum()
    report.missing_by_feature = {k: int(v) for k, v in missing.items() if v}
    report.missing_rate = float(missing.sum()) / cells if cells else 0.0
    if report.missing_rate > MAX_MISSING_RATE:
        report.missing_rate_ok = False
        report.warnings.append(
            f"Missing-value rate {report.missing_rate:.1%} exceeds {MAX_MISSING_RATE:.0%}"
        )

    if len(labels):
        report.positive_rate = float(labels.mean())
        counts = labels.value_counts()
        report.label_distribution = {
            "positive": int(counts.get(1.0, 0)),
            "negative": int(counts.get(0.0, 0)),
        }
    if not MIN_POSITIVE_RATIO <= report.positive_rate <= MAX_POSITIVE_RATIO:
        report.class_balance_ok = False
        report.warnings.append(
            f"Positive rate {report.positive_rate:.1%} outside "
            f"[{MIN_POSITIVE_RATIO:.0%}, {MAX_POSITIVE_RATIO:.0%}]"
        )

    report.top_correlations = _top_correlated_pairs(matrix, TOP_CORRELATIONS)

    logger.info(
        "Dataset validation: %d rows | positive rate %.1f%% | missing %.2f%% | %d warnings",
        report.rows,
        report.positive_rate * 100,
        report.missing_rate * 100,
        len(report.warnings),
    )
    for warning in report.warnings:
        logger.warning("Dataset validation: %s", warning)
    return report
