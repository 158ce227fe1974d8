#!/usr/bin/env python3
"""
Run one monitoring cycle against the stored score history and print the
retrain recommendation.

Needs DATABASE_URL: score history, metrics and alerts live in PostgreSQL.

Usage::

    python scripts/run_drift_check.py
    python scripts/run_drift_check.py --retrain   # retrain now if recommended
    python scripts/run_drift_check.py --verbose   # full cycle report
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("drift_check")


def main() -> None:
    parser = argparse.ArgumentParser(description="Check if the lead scoring model needs retraining")
    parser.add_argument(
        "--retrain",
        action="store_true",
        help="Retrain in-process if recommended",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print the full monitoring cycle report",
    )
    args = parser.parse_args()

    from lead_api.service import LeadScoringService
    from lead_pipeline.config import Settings
    from lead_pipeline.errors import LeadScoringError

    settings = Settings.from_env()
    if not settings.database_url:
        logger.error("DATABASE_URL is not set; there is no score history to check.")
        sys.exit(1)
    settings.monitor_enabled = False

    service = LeadScoringService(settings)
    service.start()
    try:
        active = service.registry.active
        if active is None:
            logger.error("No active model. Train a model first.")
            sys.exit(1)

        report = service.run_monitoring_cycle()
        print("\n=== Drift Check ===")
        print(f"  Current model : {active.id} ({active.type})")
        print(f"  Trained at    : {active.training_date}")
        if report is not None:
            print(f"  Cycle state   : {report['state']}")
            print(f"  Alerts        : {len(report['alerts'])}")
            for alert in report["alerts"]:
                print(f"    - [{alert['severity']}] {alert['detail']}")

        decision = service.check_retrain()
        print(f"\n  Should retrain : {'YES' if decision['should_retrain'] else 'No'}")
        print(f"  Trigger        : {decision.get('trigger') or 'none'}")
        print("  Reasons:")
        for reason in decision["reasons"]:
            print(f"    - {reason}")

        if args.verbose and report is not None:
            print("\n  Full cycle report:")
            print(json.dumps(report, indent=2, default=str))

        if args.retrain and decision["should_retrain"]:
            print("\n  Triggering retraining...")
            try:
                result = service.trainer.run(service.lead_store.historical_leads())
            except LeadScoringError as exc:
                logger.error("Retraining failed: %s", exc)
                sys.exit(1)
            print("\n=== Retrained ===")
            print(f"  New model     : {result.model_id} ({result.model_type})")
            print(f"  Accuracy      : {result.metrics['accuracy']}")
            print(f"  F1            : {result.metrics['f1']}")
    finally:
        service.close()
    print()


if __name__ == "__main__":
    main()
