"""Triage engines.

This package provides:
- The decision policy, the only place buckets are decided
- The single-item pipeline used on ingest and single retriage
- The batch retriage processor
"""

from inbox_triage.engine.batch_retriage import BatchRetriageProcessor, BatchRetriageSummary
from inbox_triage.engine.decision_policy import Thresholds, TriageDecision, decide
from inbox_triage.engine.pipeline import (
    PipelineState,
    RetriageResult,
    TriageOutcome,
    TriagePipeline,
)

__all__ = [
    # Decision policy
    "Thresholds",
    "TriageDecision",
    "decide",
    # Pipeline
    "PipelineState",
    "RetriageResult",
    "TriageOutcome",
    "TriagePipeline",
    # Batch
    "BatchRetriageProcessor",
    "BatchRetriageSummary",
]
