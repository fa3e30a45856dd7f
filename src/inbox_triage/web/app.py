"""FastAPI application for the inbox triage JSON API.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and scheduler
- The /api router (retriage, corrections, rule candidates, behavior stats)

Nightly maintenance runs via APScheduler's BackgroundScheduler in the same
process as uvicorn: sender stats are recomputed, then a rules-only retriage
pass runs for every tenant. The scheduler thread bridges to the async event
loop via run_coroutine_threadsafe.

Usage:
    from inbox_triage.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI

from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore

logger = get_logger(__name__)

# Longest a scheduled job may run before the scheduler thread gives up waiting
JOB_TIMEOUT_SECONDS = 1800

API_VERSION = "0.1.0"


def init_app_state(
    app: FastAPI,
    config: AppConfig,
    store: DatabaseStore,
    classifier=None,
) -> None:
    """Wire the engine components onto app.state."""
    from inbox_triage.engine.batch_retriage import BatchRetriageProcessor
    from inbox_triage.engine.pipeline import TriagePipeline
    from inbox_triage.learning.behavior_stats import BehaviorStatsAggregator
    from inbox_triage.learning.corrections import CorrectionLedger
    from inbox_triage.learning.rule_learner import RuleLearner

    learner = RuleLearner(store, config)
    app.state.config = config
    app.state.store = store
    app.state.classifier = classifier
    app.state.pipeline = TriagePipeline(store, config, classifier=classifier)
    app.state.batch_processor = BatchRetriageProcessor(store, config, classifier=classifier)
    app.state.learner = learner
    app.state.ledger = CorrectionLedger(store, config, learner)
    app.state.stats_aggregator = BehaviorStatsAggregator(store)


def _clear_app_state(app: FastAPI) -> None:
    for name in (
        "config",
        "store",
        "classifier",
        "pipeline",
        "batch_processor",
        "learner",
        "ledger",
        "stats_aggregator",
        "scheduler",
    ):
        setattr(app.state, name, None)


async def tenants_to_maintain(config: AppConfig, store: DatabaseStore) -> list[str]:
    """Configured tenants plus any tenant that already has conversations."""
    return sorted(set(config.tenants) | set(await store.list_tenants()))


async def run_nightly_stats(app: FastAPI) -> None:
    """Recompute sender behavior stats for every tenant."""
    from inbox_triage.core.errors import DatabaseError

    store = app.state.store
    for tenant_id in await tenants_to_maintain(app.state.config, store):
        try:
            await app.state.stats_aggregator.compute(tenant_id)
        except DatabaseError as e:
            logger.error("scheduled_stats_failed", tenant_id=tenant_id, error=str(e))


async def run_nightly_retriage(app: FastAPI) -> None:
    """Rules-only retriage of each tenant's newest conversations."""
    from inbox_triage.core.errors import DatabaseError

    config = app.state.config
    store = app.state.store
    for tenant_id in await tenants_to_maintain(config, store):
        try:
            await app.state.batch_processor.run(
                tenant_id,
                limit=config.batch.max_limit,
                skip_ai=True,
                triggered_by="scheduler",
            )
        except DatabaseError as e:
            logger.error("scheduled_retriage_failed", tenant_id=tenant_id, error=str(e))


def _refresh_config(app: FastAPI) -> None:
    """Pick up config.yaml edits before a scheduled job."""
    from inbox_triage.config import get_config, reload_config_if_changed

    if not reload_config_if_changed():
        return
    config = get_config()
    app.state.config = config
    app.state.pipeline.update_config(config)
    app.state.learner.update_config(config)
    app.state.ledger.update_config(config)
    app.state.batch_processor = type(app.state.batch_processor)(
        app.state.store, config, classifier=app.state.classifier
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize database
    3. Initialize classifier (rules-only when no API key is set)
    4. Wire pipeline, batch processor and learning components
    5. Start APScheduler

    On shutdown:
    - Stop APScheduler
    """
    from apscheduler.schedulers.background import BackgroundScheduler

    from inbox_triage.classifier.claude_classifier import create_classifier
    from inbox_triage.config import get_config
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError
    from inbox_triage.db.store import DatabaseStore

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        _clear_app_state(app)
        yield
        return

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    # 3-4. Classifier and engine components
    classifier = create_classifier(config, store)
    init_app_state(app, config, store, classifier)

    # 5. Start APScheduler
    scheduler = None
    if config.schedule.enabled:
        loop = asyncio.get_running_loop()

        def _bridge(job_name: str, job) -> None:
            """Run an async job on the server loop from the scheduler thread."""
            try:
                _refresh_config(app)
                future = asyncio.run_coroutine_threadsafe(job(app), loop)
                future.result(timeout=JOB_TIMEOUT_SECONDS)
            except Exception as e:
                logger.error("scheduled_job_failed", job=job_name, error=str(e))

        scheduler = BackgroundScheduler()
        scheduler.add_job(
            _bridge,
            "cron",
            hour=config.schedule.stats_hour,
            args=["behavior_stats", run_nightly_stats],
            id="behavior_stats",
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            _bridge,
            "cron",
            hour=config.schedule.retriage_hour,
            args=["rules_only_retriage", run_nightly_retriage],
            id="rules_only_retriage",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info(
            "scheduler_started",
            stats_hour=config.schedule.stats_hour,
            retriage_hour=config.schedule.retriage_hour,
        )

    app.state.scheduler = scheduler

    yield

    # Shutdown
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from inbox_triage.web.routes import api_router

    app = FastAPI(
        title="Inbox Triage",
        description="Triage and learning engine for inbound customer messages",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.include_router(api_router)

    return app
