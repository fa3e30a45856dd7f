"""Bucket decision policy.

This is the only place that decides whether a message is safe to
auto-handle. Gatekeeper matches and classifier results (including the safe
defaults produced on classifier failure) all flow through ``decide``.

Rules, applied in order:

1. Gatekeeper source: no reply needed, or an always-automatic category
   (automated_notification, receipt_confirmation, recruitment_hr), gives
   auto_handled. Otherwise quick_win.
   Built-in pattern source: the pattern's own bucket and reply flag. A
   non-conclusive pattern decided without the classifier needs review.
2. Classifier source: confidence >= high with no reply gives auto_handled;
   confidence >= high with a reply and non-high urgency gives quick_win;
   high urgency or financial/legal/reputation risk gives act_now. Anything
   else uses the classifier's own bucket when it is compatible with the
   reply flag, else quick_win (reply) or wait (no reply). A pattern hint
   can then raise the result (to act_now, or off auto_handled) but never
   lower it.
3. Safety override, always last: confidence < low forces requires_reply,
   needs_human_review, and turns auto_handled into act_now.

Invariants: auto_handled implies requires_reply is False, and a confidence
below the low threshold always implies requires_reply is True.

Usage:
    from inbox_triage.engine.decision_policy import Thresholds, decide

    decision = decide(match, Thresholds(high=0.85, low=0.46))
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from inbox_triage.classifier.claude_classifier import ClassificationResult, safe_default_result
from inbox_triage.classifier.gatekeeper import GatekeeperMatch
from inbox_triage.classifier.patterns import PatternMatch
from inbox_triage.classifier.taxonomy import (
    AUTO_HANDLED_CATEGORIES,
    ESCALATING_RISKS,
    Bucket,
    Category,
    DecisionSource,
    RiskLevel,
    Urgency,
    requires_reply_for,
)
from inbox_triage.db.store import StoredDecision

if TYPE_CHECKING:
    from inbox_triage.config_schema import ThresholdsConfig

# Confidence reported for gatekeeper matches
GATEKEEPER_CONFIDENCE = 0.99


@dataclass(frozen=True, slots=True)
class Thresholds:
    """Confidence thresholds for one decision."""

    high: float = 0.85
    low: float = 0.46

    @classmethod
    def from_config(
        cls, config: ThresholdsConfig, high_override: float | None = None
    ) -> Thresholds:
        """Build from config, optionally replacing the high threshold for one run."""
        high = config.high if high_override is None else high_override
        return cls(high=high, low=min(config.low, high))


@dataclass(frozen=True, slots=True)
class TriageDecision:
    """Final routing decision for a message."""

    classification: Category
    bucket: Bucket
    confidence: float
    requires_reply: bool
    why_this_needs_you: str
    risk_level: RiskLevel = RiskLevel.NONE
    urgency: Urgency = Urgency.MEDIUM
    needs_human_review: bool = False
    source: DecisionSource = DecisionSource.CLASSIFIER

    def to_record(self) -> StoredDecision:
        """Convert to the storage representation."""
        return StoredDecision(
            classification=self.classification.value,
            decision_bucket=self.bucket.value,
            confidence=self.confidence,
            requires_reply=self.requires_reply,
            why_this_needs_you=self.why_this_needs_you,
            risk_level=self.risk_level.value,
            urgency=self.urgency.value,
            needs_human_review=self.needs_human_review,
            source=self.source.value,
        )


def decide(
    source: GatekeeperMatch | PatternMatch | ClassificationResult,
    thresholds: Thresholds | None = None,
    hint: PatternMatch | None = None,
) -> TriageDecision:
    """Map a gatekeeper match, pattern match or classifier result to exactly one decision.

    Args:
        source: What produced the classification
        thresholds: Confidence thresholds (defaults if None)
        hint: A non-conclusive pattern that fired before the classifier ran

    Never raises. Unexpected input produces the safe default decision.
    """
    thresholds = thresholds or Thresholds()

    if isinstance(source, GatekeeperMatch):
        decision = _decide_gatekeeper(source)
    elif isinstance(source, PatternMatch):
        decision = _decide_pattern(source)
    elif isinstance(source, ClassificationResult):
        decision = _decide_classifier(source, thresholds)
        if hint is not None:
            decision = _apply_hint(decision, hint)
    else:
        decision = _decide_classifier(
            safe_default_result(f"Unsupported decision input: {type(source).__name__}"),
            thresholds,
        )

    return _apply_safety_override(decision, thresholds)


def _decide_gatekeeper(match: GatekeeperMatch) -> TriageDecision:
    category = match.classification
    if not match.requires_reply or category in AUTO_HANDLED_CATEGORIES:
        return TriageDecision(
            classification=category,
            bucket=Bucket.AUTO_HANDLED,
            confidence=GATEKEEPER_CONFIDENCE,
            requires_reply=False,
            why_this_needs_you="Matched sender rule - no action needed",
            urgency=Urgency.LOW,
            source=DecisionSource.GATEKEEPER,
        )

    # customer_inquiry and every other reply-needed rule land in quick_win
    return TriageDecision(
        classification=category,
        bucket=Bucket.QUICK_WIN,
        confidence=GATEKEEPER_CONFIDENCE,
        requires_reply=True,
        why_this_needs_you="Matched sender rule - reply needed",
        source=DecisionSource.GATEKEEPER,
    )


def _decide_pattern(match: PatternMatch) -> TriageDecision:
    auto = match.bucket == Bucket.AUTO_HANDLED
    return TriageDecision(
        classification=match.classification,
        bucket=match.bucket,
        confidence=match.confidence,
        requires_reply=False if auto else match.requires_reply,
        why_this_needs_you=match.reason,
        urgency=Urgency.LOW if auto else Urgency.MEDIUM,
        needs_human_review=not match.conclusive,
        source=DecisionSource.PATTERN,
    )


def _apply_hint(decision: TriageDecision, hint: PatternMatch) -> TriageDecision:
    """Raise a classifier decision to what a pattern hint demands, never lower it."""
    if hint.bucket == Bucket.ACT_NOW and decision.bucket != Bucket.ACT_NOW:
        return replace(
            decision,
            bucket=Bucket.ACT_NOW,
            requires_reply=True,
            why_this_needs_you=hint.reason,
        )
    if hint.requires_reply and decision.bucket == Bucket.AUTO_HANDLED:
        return replace(
            decision,
            bucket=hint.bucket,
            requires_reply=True,
            why_this_needs_you=hint.reason,
        )
    return decision


def _decide_classifier(result: ClassificationResult, thresholds: Thresholds) -> TriageDecision:
    confidence = result.confidence
    if not isinstance(confidence, int | float) or math.isnan(confidence):
        confidence = 0.0
    confidence = min(1.0, max(0.0, float(confidence)))

    requires_reply = bool(result.requires_reply)
    escalate = result.urgency == Urgency.HIGH or result.risk_level in ESCALATING_RISKS
    confident = confidence >= thresholds.high

    if confident and not requires_reply:
        bucket = Bucket.AUTO_HANDLED
    elif confident and result.urgency != Urgency.HIGH:
        bucket = Bucket.QUICK_WIN
    elif escalate:
        bucket = Bucket.ACT_NOW
    else:
        bucket = _fallback_bucket(result.suggested_bucket, requires_reply)

    source = (
        DecisionSource.FALLBACK if result.method == "safe_default" else DecisionSource.CLASSIFIER
    )
    why = result.why_this_needs_you or _default_reason(bucket)

    return TriageDecision(
        classification=result.category,
        bucket=bucket,
        confidence=confidence,
        requires_reply=requires_reply,
        why_this_needs_you=why,
        risk_level=result.risk_level,
        urgency=result.urgency,
        needs_human_review=result.needs_human_review,
        source=source,
    )


def _fallback_bucket(suggested: Bucket | None, requires_reply: bool) -> Bucket:
    """Below the high threshold, trust the classifier's bucket only where it's consistent."""
    if suggested is not None:
        if suggested == Bucket.AUTO_HANDLED:
            # Auto-handling below the high threshold is never allowed
            return Bucket.QUICK_WIN if requires_reply else Bucket.WAIT
        return suggested
    return Bucket.QUICK_WIN if requires_reply else Bucket.WAIT


def _default_reason(bucket: Bucket) -> str:
    return {
        Bucket.AUTO_HANDLED: "No action needed",
        Bucket.QUICK_WIN: "Quick reply will resolve this",
        Bucket.ACT_NOW: "Needs attention now",
        Bucket.WAIT: "FYI - can wait",
    }[bucket]


def _apply_safety_override(decision: TriageDecision, thresholds: Thresholds) -> TriageDecision:
    if decision.confidence >= thresholds.low:
        return decision

    bucket = Bucket.ACT_NOW if decision.bucket == Bucket.AUTO_HANDLED else decision.bucket
    why = decision.why_this_needs_you
    if decision.source != DecisionSource.FALLBACK:
        why = f"Low confidence ({round(decision.confidence * 100)}%) - needs review"
    return replace(
        decision,
        bucket=bucket,
        requires_reply=True,
        needs_human_review=True,
        why_this_needs_you=why,
    )


def human_decision(category: Category) -> TriageDecision:
    """The decision recorded when a human corrects a message's category.

    Human decisions are exempt from the safety override: a person has looked.
    """
    requires_reply = requires_reply_for(category)
    return TriageDecision(
        classification=category,
        bucket=Bucket.QUICK_WIN if requires_reply else Bucket.AUTO_HANDLED,
        confidence=1.0,
        requires_reply=requires_reply,
        why_this_needs_you="Corrected by operator",
        source=DecisionSource.HUMAN,
    )
