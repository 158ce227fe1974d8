#!/usr/bin/env python3
"""
Generate synthetic real-estate leads (with interactions and property
preferences) as a JSON training file, and optionally train on it.

Usage::
    python scripts/generate_synthetic_data.py             # 2000 leads
    python scripts/generate_synthetic_data.py --n 10000   # custom count
    python scripts/generate_synthetic_data.py --no-train  # skip training
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from lead_pipeline.synthetic import generate_leads

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("generate_synthetic_data")


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate synthetic lead scoring data")
    parser.add_argument("--n", type=int, default=2000, help="Leads (default 2000)")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--open-fraction", type=float, default=0.0, help="Share of leads left without an outcome")
    parser.add_argument("--no-train", action="store_true", help="Skip training")
    args = parser.parse_args()

    leads = generate_leads(
        args.n, datetime.now(timezone.utc), seed=args.seed, open_fraction=args.open_fraction
    )

    data_dir = PROJECT_ROOT / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    json_path = data_dir / "training_leads.json"
    with open(json_path, "w") as fh:
        json.dump([asdict(item) for item in leads], fh, default=_json_default)
    logger.info("Saved -> %s  (%d leads)", json_path, len(leads))

    if not args.no_train:
        from lead_pipeline.config import Settings
        from lead_pipeline.model_registry import ModelRegistry
        from lead_pipeline.trainer import ModelTrainer, TrainingConfig

        settings = Settings.from_env()
        registry = ModelRegistry(settings.models_dir)
        registry.load()
        trainer = ModelTrainer(registry, config=TrainingConfig.from_settings(settings))
        labelled = [item for item in leads if item.lead.status != "new"]
        result = trainer.run(labelled)
        metrics = result.metrics
        print(f"\nModel: {result.model_id} ({result.model_type})")
        print(f"  Accuracy  : {metrics['accuracy']:.4f}")
        print(f"  Precision : {metrics['precision']:.4f}")
        print(f"  Recall    : {metrics['recall']:.4f}")
        print(f"  F1        : {metrics['f1']:.4f}")
    else:
        print(f"\nData saved -> {json_path}  ({len(leads):,} leads)")


if __name__ == "__main__":
    main()
