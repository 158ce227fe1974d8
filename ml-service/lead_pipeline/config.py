"""
Service configuration read from the environment (and a local ``.env``).

Every knob has a development default so the service starts with no
environment at all; numeric values that fail to parse raise ``ValueError``
at startup instead of surfacing later as odd behaviour.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

_BASE_DIR = Path(__file__).resolve().parent.parent


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError("%s must be a number, got %r" % (name, raw))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError("%s must be an integer, got %r" % (name, raw))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: Optional[str] = None
    models_dir: Path = _BASE_DIR / "versions"
    snapshots_dir: Path = _BASE_DIR / "data" / "snapshots"
    log_level: str = "INFO"
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )

    # Scoring
    max_batch_size: int = 50

    # Monitoring
    drift_threshold: float = 0.10
    monitor_interval_seconds: float = 3600.0
    monitor_enabled: bool = True
    error_rate_threshold: float = 0.1
    response_time_threshold_ms: float = 5000.0

    # Training
    baseline_epochs: int = 50
    advanced_epochs: int = 100
    train_batch_size: int = 32
    learning_rate: float = 0.001
    baseline_learning_rate: float = 0.01
    random_seed: int = 42

    # Retrain advice
    retrain_interval_days: int = 7
    min_new_labelled_leads: int = 200

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        defaults = cls()
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            models_dir=Path(os.getenv("MODELS_DIR", str(defaults.models_dir))),
            snapshots_dir=Path(os.getenv("SNAPSHOTS_DIR", str(defaults.snapshots_dir))),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            cors_origins=origins.split(",") if origins else defaults.cors_origins,
            max_batch_size=_env_int("MAX_BATCH_SIZE", defaults.max_batch_size),
            drift_threshold=_env_float("DRIFT_THRESHOLD", defaults.drift_threshold),
            monitor_interval_seconds=_env_float(
                "MONITOR_INTERVAL_SECONDS", defaults.monitor_interval_seconds
            ),
            monitor_enabled=_env_bool("MONITOR_ENABLED", defaults.monitor_enabled),
            error_rate_threshold=_env_float("ERROR_RATE_THRESHOLD", defaults.error_rate_threshold),
            response_time_threshold_ms=_env_float(
                "RESPONSE_TIME_THRESHOLD_MS", defaults.response_time_threshold_ms
            ),
            baseline_epochs=_env_int("BASELINE_EPOCHS", defaults.baseline_epochs),
            advanced_epochs=_env_int("ADVANCED_EPOCHS", defaults.advanced_epochs),
            train_batch_size=_env_int("TRAIN_BATCH_SIZE", defaults.train_batch_size),
            learning_rate=_env_float("LEARNING_RATE", defaults.learning_rate),
            baseline_learning_rate=_env_float("BASELINE_LEARNING_RATE", defaults.baseline_learning_rate),
            random_seed=_env_int("RANDOM_SEED", defaults.random_seed),
            retrain_interval_days=_env_int("RETRAIN_INTERVAL_DAYS", defaults.retrain_interval_days),
            min_new_labelled_leads=_env_int(
                "MIN_NEW_LABELLED_LEADS", defaults.min_new_labelled_leads
            ),
        )
