"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state, shared by the API routes and the nightly scheduler jobs.

Usage:
    from inbox_triage.web.dependencies import get_store

    @router.get("/tenants/{tenant_id}/behavior-stats")
    async def behavior_stats(tenant_id: str, store: DatabaseStore = Depends(get_store)):
        return await store.get_behavior_stats(tenant_id)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore
    from inbox_triage.engine.batch_retriage import BatchRetriageProcessor
    from inbox_triage.engine.pipeline import TriagePipeline
    from inbox_triage.learning.behavior_stats import BehaviorStatsAggregator
    from inbox_triage.learning.corrections import CorrectionLedger
    from inbox_triage.learning.rule_learner import RuleLearner


def _require(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"Service not initialized: {name}")
    return value


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return _require(request, "store")


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return _require(request, "config")


def get_pipeline(request: Request) -> TriagePipeline:
    """Get the single-item TriagePipeline from app state."""
    return _require(request, "pipeline")


def get_batch_processor(request: Request) -> BatchRetriageProcessor:
    """Get the BatchRetriageProcessor from app state."""
    return _require(request, "batch_processor")


def get_ledger(request: Request) -> CorrectionLedger:
    """Get the CorrectionLedger from app state."""
    return _require(request, "ledger")


def get_learner(request: Request) -> RuleLearner:
    """Get the RuleLearner from app state."""
    return _require(request, "learner")


def get_stats_aggregator(request: Request) -> BehaviorStatsAggregator:
    """Get the BehaviorStatsAggregator from app state."""
    return _require(request, "stats_aggregator")
