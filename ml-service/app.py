#!/usr/bin/env python3
"""
Lead Scoring -- ML Microservice (FastAPI)

Endpoints
---------
POST  /score                       Score one lead (stored id or inline data)
POST  /score/batch                 Score up to 50 stored leads against one model
GET   /explain/{lead_id}           Explanation of the lead's latest score
GET   /health                      Model health (issues, error rate, latency)
GET   /metrics                     Metric summaries per model over a time range
POST  /train                       Queue a training job (202 + job id)
GET   /train/{job_id}              Training job status
GET   /model/info                  Metadata and metrics for the active model
GET   /model/versions              Every registered model, newest first
GET   /model/feature-importance    Static feature importance table
POST  /pipeline/check-retrain      Retrain advice, optionally queue a job
GET   /pipeline/data-snapshots     Training data snapshots

Start the server::

    uvicorn app:app --host 0.0.0.0 --port 8001 --reload
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lead_api.schemas import (
    BatchScoreRequest,
    BatchScoreResponse,
    ExplanationResponse,
    ModelInfo,
    ScoreRequest,
    ScoreResponse,
    TrainingJobResponse,
    TrainingRequest,
)
from lead_api.service import LeadScoringService
from lead_pipeline.config import Settings
from lead_pipeline.errors import (
    LeadScoringError,
    NotFoundError,
    PersistenceError,
    ServiceUnavailable,
    TrainingInProgress,
    ValidationError,
)
from lead_pipeline.records import HistoricalLead
from lead_pipeline.synthetic import generate_leads

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("ml-service")

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (TrainingInProgress, 409),
    (ServiceUnavailable, 503),
)


def _service(request: Request) -> LeadScoringService:
    return request.app.state.service


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(service: Optional[LeadScoringService] = None) -> FastAPI:
    settings = service.settings if service is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the service on startup, restore models, start monitoring."""
        if getattr(app.state, "service", None) is None:
            app.state.service = LeadScoringService(settings)
        app.state.service.start()
        yield
        app.state.service.close()
        logger.info("ML service shutting down")

    app = FastAPI(
        title="Lead Scoring - ML Service",
        description="Conversion-probability scoring, explanations and drift monitoring for real-estate leads",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(LeadScoringError)
    async def pipeline_error_handler(request: Request, exc: LeadScoringError):
        for error_type, status_code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        if isinstance(exc, PersistenceError):
            logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc)
        else:
            logger.exception("Pipeline error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # -----------------------------------------------------------------------
    # Request logging middleware
    # -----------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s -> %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
        )
        return response

    # -----------------------------------------------------------------------
    # Scoring + explanations
    # -----------------------------------------------------------------------

    @app.post("/score", response_model=ScoreResponse)
    def score_endpoint(body: ScoreRequest, request: Request):
        """Score a stored lead by id, or an inline lead."""
        target = body.lead if body.lead is not None else body.lead_id
        return _service(request).score(target)

    @app.post("/score/batch", response_model=BatchScoreResponse)
    def score_batch_endpoint(body: BatchScoreRequest, request: Request):
        """Score stored leads against one pinned model; all-or-nothing."""
        results = _service(request).score_batch(body.lead_ids)
        return {"results": results, "count": len(results)}

    @app.get("/explain/{lead_id}", response_model=ExplanationResponse)
    def explain_endpoint(lead_id: str, request: Request):
        return _service(request).explain(lead_id)

    # -----------------------------------------------------------------------
    # Monitoring
    # -----------------------------------------------------------------------

    @app.get("/health")
    def health(request: Request):
        """Model health: active model, recent traffic, error rate, latency."""
        result = _service(request).health()
        result["timestamp"] = datetime.now(timezone.utc).isoformat()
        return result

    @app.get("/metrics")
    def metrics(request: Request, start: Optional[str] = None, end: Optional[str] = None):
        """Avg/min/max/sample count per model and metric between *start* and *end* (ISO 8601)."""
        return _service(request).metrics(start, end)

    # -----------------------------------------------------------------------
    # Training
    # -----------------------------------------------------------------------

    @app.post("/train", status_code=202, response_model=TrainingJobResponse)
    def train_endpoint(request: Request, body: Optional[TrainingRequest] = None):
        """Queue a training job; poll ``GET /train/{job_id}`` for the outcome."""
        leads = None
        if body is not None and body.synthetic:
            leads = generate_leads(body.synthetic, datetime.now(timezone.utc))
        elif body is not None and body.leads is not None:
            leads = [HistoricalLead.from_dict(item) for item in body.leads]
        job = _service(request).start_training(leads)
        return job.to_dict()

    @app.get("/train/{job_id}", response_model=TrainingJobResponse)
    def train_status(job_id: str, request: Request):
        return _service(request).job_status(job_id)

    # -----------------------------------------------------------------------
    # Models
    # -----------------------------------------------------------------------

    @app.get("/model/info", response_model=ModelInfo)
    def model_info(request: Request):
        """Return metadata and quality metrics for the active model."""
        return _service(request).model_info()

    @app.get("/model/versions")
    def list_model_versions(request: Request):
        """List every registered model, newest first."""
        versions = _service(request).model_versions()
        return {"versions": versions, "count": len(versions)}

    @app.get("/model/feature-importance")
    def feature_importance(request: Request):
        return _service(request).feature_importance()

    # -----------------------------------------------------------------------
    # Pipeline endpoints
    # -----------------------------------------------------------------------

    @app.post("/pipeline/check-retrain")
    def check_retrain(request: Request, trigger_retrain: bool = False):
        """Check if the model should be retrained, optionally queue a training job."""
        return _service(request).check_retrain(trigger_retrain)

    @app.get("/pipeline/data-snapshots")
    def list_data_snapshots(request: Request):
        """List all available training data snapshots."""
        snapshots = _service(request).list_snapshots()
        return {"snapshots": snapshots, "count": len(snapshots)}

    return app


app = create_app()
