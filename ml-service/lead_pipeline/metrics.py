"""
Classification metrics shared by the trainer and the drift monitor.

A prediction is positive when its probability is strictly above 0.5.
Ratios with an empty denominator are reported as 0.
"""

from __future__ import annotations

from typing import Dict, Sequence

import numpy as np
from sklearn.metrics import confusion_matrix

DECISION_THRESHOLD = 0.5


def _safe_div(num: float, den: float) -> float:
    return float(num) / float(den) if den else 0.0


def confusion_counts(y_true: Sequence[int], y_prob: Sequence[float]) -> Dict[str, int]:
    """Return ``{tp, fp, tn, fn}`` for probabilities thresholded at 0.5."""
    y_true = np.asarray(y_true, dtype=int)
    y_pred = (np.asarray(y_prob, dtype=float) > DECISION_THRESHOLD).astype(int)
    if y_true.size == 0:
        return {"tp": 0, "fp": 0, "tn": 0, "fn": 0}
    tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()
    return {"tp": int(tp), "fp": int(fp), "tn": int(tn), "fn": int(fn)}


def classification_metrics(y_true: Sequence[int], y_prob: Sequence[float]) -> Dict[str, float]:
    """Accuracy, precision, recall and F1 plus the raw confusion counts."""
    counts = confusion_counts(y_true, y_prob)
    tp, fp, tn, fn = counts["tp"], counts["fp"], counts["tn"], counts["fn"]
    total = tp + fp + tn + fn

    accuracy = _safe_div(tp + tn, total)
    precision = _safe_div(tp, tp + fp)
    recall = _safe_div(tp, tp + fn)
    f1 = _safe_div(2 * precision * recall, precision + recall)

    return {
        "accuracy": round(accuracy, 6),
        "precision": round(precision, 6),
        "recall": round(recall, 6),
        "f1": round(f1, 6),
        "tp": tp,
        "fp": fp,
        "tn": tn,
        "fn": fn,
        "support": total,
    }
