"""JSON API routes for inbox triage.

Endpoints:
- GET  /api/health
- POST /api/tenants/{tenant_id}/retriage
- POST /api/conversations/{conversation_id}/retriage
- POST /api/conversations/{conversation_id}/correction
- GET  /api/tenants/{tenant_id}/rule-candidates
- POST /api/tenants/{tenant_id}/rule-candidates/accept
- GET  /api/tenants/{tenant_id}/behavior-stats
- POST /api/tenants/{tenant_id}/behavior-stats

All routes use FastAPI dependency injection to access shared state.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from inbox_triage.classifier.taxonomy import Category
from inbox_triage.core.errors import (
    ConversationNotFound,
    DatabaseError,
    RuleCandidateNotFound,
)
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.batch_retriage import BatchRetriageProcessor
from inbox_triage.engine.pipeline import TriagePipeline
from inbox_triage.learning.behavior_stats import BehaviorStatsAggregator
from inbox_triage.learning.corrections import CorrectionLedger
from inbox_triage.learning.rule_learner import RuleLearner
from inbox_triage.web.app import API_VERSION
from inbox_triage.web.dependencies import (
    get_batch_processor,
    get_learner,
    get_ledger,
    get_pipeline,
    get_stats_aggregator,
    get_store,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class RetriageRequest(BaseModel):
    """Request body for a batch retriage of one tenant."""

    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    dry_run: bool = False
    skip_ai: bool = False
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class SingleRetriageRequest(BaseModel):
    """Request body for retriaging one conversation."""

    dry_run: bool = False
    skip_ai: bool = False
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class CorrectionRequest(BaseModel):
    """Request body for a human correction."""

    classification: Category
    corrected_by: str = "api"


class AcceptCandidateRequest(BaseModel):
    """Request body for accepting a rule candidate by pattern."""

    pattern: str = Field(min_length=2)


def _database_failure(event: str, e: DatabaseError, **context) -> HTTPException:
    logger.error(event, error=str(e), **context)
    return HTTPException(status_code=500, detail=f"Database error: {e}")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for Docker and monitoring."""
    store = getattr(request.app.state, "store", None)
    pipeline = getattr(request.app.state, "pipeline", None)
    if store is None or pipeline is None:
        return {"status": "unavailable", "classifier": False, "version": API_VERSION}

    try:
        tenants = await store.list_tenants()
    except DatabaseError as e:
        logger.warning("health_check_database_error", error=str(e))
        return {
            "status": "degraded",
            "classifier": pipeline.has_classifier,
            "tenants": [],
            "version": API_VERSION,
        }

    return {
        "status": "healthy" if pipeline.has_classifier else "rules_only",
        "classifier": pipeline.has_classifier,
        "tenants": tenants,
        "version": API_VERSION,
    }


# ---------------------------------------------------------------------------
# Retriage
# ---------------------------------------------------------------------------


@api_router.post("/tenants/{tenant_id}/retriage")
async def retriage_tenant(
    tenant_id: str,
    body: RetriageRequest,
    processor: BatchRetriageProcessor = Depends(get_batch_processor),  # noqa: B008
):
    """Retriage one page of a tenant's conversations, newest first."""
    try:
        summary = await processor.run(
            tenant_id,
            limit=body.limit,
            offset=body.offset,
            dry_run=body.dry_run,
            skip_ai=body.skip_ai,
            confidence_threshold=body.confidence_threshold,
            triggered_by="api",
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    except DatabaseError as e:
        raise _database_failure("api_retriage_failed", e, tenant_id=tenant_id) from None
    return summary.to_dict()


@api_router.post("/conversations/{conversation_id}/retriage")
async def retriage_conversation(
    conversation_id: str,
    body: SingleRetriageRequest | None = None,
    pipeline: TriagePipeline = Depends(get_pipeline),  # noqa: B008
):
    """Retriage a single conversation."""
    body = body or SingleRetriageRequest()
    try:
        result = await pipeline.retriage_conversation(
            conversation_id,
            skip_ai=body.skip_ai,
            dry_run=body.dry_run,
            confidence_threshold=body.confidence_threshold,
        )
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found") from None
    except DatabaseError as e:
        raise _database_failure(
            "api_retriage_one_failed", e, conversation_id=conversation_id
        ) from None
    return result.to_dict()


# ---------------------------------------------------------------------------
# Corrections and rule learning
# ---------------------------------------------------------------------------


@api_router.post("/conversations/{conversation_id}/correction")
async def correct_conversation(
    conversation_id: str,
    body: CorrectionRequest,
    ledger: CorrectionLedger = Depends(get_ledger),  # noqa: B008
):
    """Record a human correction for a conversation's classification."""
    try:
        result = await ledger.record_correction(
            conversation_id, body.classification, corrected_by=body.corrected_by
        )
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found") from None
    except DatabaseError as e:
        raise _database_failure(
            "api_correction_failed", e, conversation_id=conversation_id
        ) from None
    return result.to_dict()


@api_router.get("/tenants/{tenant_id}/rule-candidates")
async def list_rule_candidates(
    tenant_id: str,
    learner: RuleLearner = Depends(get_learner),  # noqa: B008
):
    """Correction candidates and stats-based suggestions for a tenant."""
    try:
        candidates = await learner.find_candidates(tenant_id)
        suggestions = await learner.suggest_from_stats(tenant_id)
    except DatabaseError as e:
        raise _database_failure("api_candidates_failed", e, tenant_id=tenant_id) from None
    return {
        "tenant_id": tenant_id,
        "candidates": [c.to_dict() for c in candidates],
        "suggestions": [s.to_dict() for s in suggestions],
    }


@api_router.post("/tenants/{tenant_id}/rule-candidates/accept")
async def accept_rule_candidate(
    tenant_id: str,
    body: AcceptCandidateRequest,
    learner: RuleLearner = Depends(get_learner),  # noqa: B008
):
    """Create the sender rule proposed for a pattern."""
    try:
        rule_id = await learner.accept_pattern(tenant_id, body.pattern)
    except RuleCandidateNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except DatabaseError as e:
        raise _database_failure("api_accept_candidate_failed", e, tenant_id=tenant_id) from None
    return {
        "tenant_id": tenant_id,
        "pattern": body.pattern,
        "rule_id": rule_id,
        "created": rule_id is not None,
    }


# ---------------------------------------------------------------------------
# Behavior stats
# ---------------------------------------------------------------------------


def _stat_to_dict(stat) -> dict:
    return {
        "sender_domain": stat.sender_domain,
        "total_messages": stat.total_messages,
        "replied_count": stat.replied_count,
        "reply_rate": stat.reply_rate,
        "avg_response_time_minutes": stat.avg_response_time_minutes,
        "vip_score": stat.vip_score,
        "suggested_bucket": stat.suggested_bucket,
        "computed_at": stat.computed_at.isoformat() if stat.computed_at else None,
    }


@api_router.get("/tenants/{tenant_id}/behavior-stats")
async def get_behavior_stats(
    tenant_id: str,
    store: DatabaseStore = Depends(get_store),  # noqa: B008
):
    """Stored sender behavior stats, highest VIP score first."""
    try:
        stats = await store.get_behavior_stats(tenant_id)
    except DatabaseError as e:
        raise _database_failure("api_behavior_stats_failed", e, tenant_id=tenant_id) from None
    return {"tenant_id": tenant_id, "stats": [_stat_to_dict(s) for s in stats]}


@api_router.post("/tenants/{tenant_id}/behavior-stats")
async def recompute_behavior_stats(
    tenant_id: str,
    aggregator: BehaviorStatsAggregator = Depends(get_stats_aggregator),  # noqa: B008
):
    """Recompute a tenant's sender behavior stats now."""
    try:
        stats = await aggregator.compute(tenant_id)
    except DatabaseError as e:
        raise _database_failure("api_compute_stats_failed", e, tenant_id=tenant_id) from None
    return {"tenant_id": tenant_id, "stats": [_stat_to_dict(s) for s in stats]}
