"""Message classification components.

This package provides the first two stages of triage:
- Closed vocabularies (categories, buckets, risk, urgency, sentiment)
- Sender-rule gatekeeper for deterministic first-pass routing
- Built-in patterns for well-known automated mail and urgent language
- Claude classifier with forced tool use for everything else
- Prompt assembler with business-context directives
"""

from inbox_triage.classifier.claude_classifier import (
    ClassificationResult,
    MessageClassifier,
    safe_default_result,
)
from inbox_triage.classifier.envelope import MessageEnvelope
from inbox_triage.classifier.gatekeeper import (
    Gatekeeper,
    GatekeeperMatch,
    RuleMatchAmbiguous,
    SenderRuleMatcher,
    audit_rules,
    detect_rule_overlaps,
)
from inbox_triage.classifier.patterns import BuiltinPatternMatcher, PatternMatch
from inbox_triage.classifier.prompts import ROUTE_MESSAGE_TOOL, PromptAssembler
from inbox_triage.classifier.taxonomy import (
    Bucket,
    Category,
    Channel,
    DecisionSource,
    RiskLevel,
    Sentiment,
    Urgency,
)

__all__ = [
    # Taxonomy
    "Bucket",
    "Category",
    "Channel",
    "DecisionSource",
    "RiskLevel",
    "Sentiment",
    "Urgency",
    # Envelope
    "MessageEnvelope",
    # Gatekeeper
    "Gatekeeper",
    "GatekeeperMatch",
    "RuleMatchAmbiguous",
    "SenderRuleMatcher",
    "audit_rules",
    "detect_rule_overlaps",
    # Built-in patterns
    "BuiltinPatternMatcher",
    "PatternMatch",
    # Claude classifier
    "ClassificationResult",
    "MessageClassifier",
    "safe_default_result",
    # Prompts
    "ROUTE_MESSAGE_TOOL",
    "PromptAssembler",
]
