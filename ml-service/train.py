#!/usr/bin/env python3
"""
Training pipeline for the lead scoring models.

Can be executed standalone::

    python train.py                          # train from DB (DATABASE_URL)
    python train.py --json data/leads.json   # train from exported JSON
    python train.py --synthetic 2000         # train on generated leads

The script will:
  1. Load labelled historical leads (lead + interactions + property prefs).
  2. Extract the 25 lead features and validate the dataset.
  3. Split chronologically (last 20% of leads by creation time held out).
  4. Train a logistic-regression baseline and an MLP (64-32-16).
  5. Evaluate both on the held-out set and promote the better one.
  6. Save both models + metadata under ``versions/``.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from lead_pipeline.config import Settings
from lead_pipeline.data_versioner import DataVersioner
from lead_pipeline.errors import LeadScoringError
from lead_pipeline.model_registry import ModelRegistry
from lead_pipeline.records import HistoricalLead
from lead_pipeline.synthetic import generate_leads
from lead_pipeline.trainer import ModelTrainer, TrainingConfig

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("train")


# ---------------------------------------------------------------------------
# Data loading
# ---------------------------------------------------------------------------

def load_leads_from_json(path: str) -> List[HistoricalLead]:
    """Load a JSON list of historical leads (nested ``lead`` key or flat)."""
    json_path = Path(path)
    if not json_path.exists():
        raise FileNotFoundError(f"Training data not found: {json_path}")
    with open(json_path) as fh:
        rows = json.load(fh)
    leads = [HistoricalLead.from_dict(row) for row in rows]
    logger.info("Loaded %d leads from %s", len(leads), json_path)
    return leads


def load_leads_from_db(db_url: str) -> List[HistoricalLead]:
    from lead_pipeline.postgres_store import export_historical_leads

    return export_historical_leads(db_url)


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Train lead scoring models")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--json", type=str, default=None, help="Path to JSON training data (skip DB fetch)")
    source.add_argument("--synthetic", type=int, default=None, help="Train on N generated leads")
    parser.add_argument("--baseline-epochs", type=int, default=settings.baseline_epochs)
    parser.add_argument("--advanced-epochs", type=int, default=settings.advanced_epochs)
    parser.add_argument("--seed", type=int, default=settings.random_seed)
    parser.add_argument(
        "--snapshot",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Save the training dataset as a versioned parquet snapshot",
    )
    args = parser.parse_args()

    if args.json:
        leads = load_leads_from_json(args.json)
    elif args.synthetic:
        leads = generate_leads(args.synthetic, datetime.now(timezone.utc), seed=args.seed)
    elif settings.database_url:
        leads = load_leads_from_db(settings.database_url)
    else:
        parser.error("DATABASE_URL is not set; pass --json or --synthetic")

    config = TrainingConfig.from_settings(settings)
    config.baseline_epochs = args.baseline_epochs
    config.advanced_epochs = args.advanced_epochs
    config.random_seed = args.seed

    registry = ModelRegistry(settings.models_dir)
    registry.load()
    trainer = ModelTrainer(
        registry,
        config=config,
        versioner=DataVersioner(settings.snapshots_dir) if args.snapshot else None,
    )

    try:
        result = trainer.run(leads)
    except LeadScoringError as exc:
        logger.error("Training failed: %s", exc)
        raise SystemExit(1)

    metrics = result.metrics
    print("\n=== Training complete ===")
    print(f"  Active model  : {result.model_id} ({result.model_type})")
    print(f"  Runner-up     : {result.runner_up_id}")
    print(f"  Samples       : {len(leads)}")
    print(f"  Accuracy      : {metrics['accuracy']}")
    print(f"  Precision     : {metrics['precision']}")
    print(f"  Recall        : {metrics['recall']}")
    print(f"  F1            : {metrics['f1']}")
    if result.data_version:
        print(f"  Data snapshot : {result.data_version}")


if __name__ == "__main__":
    main()
