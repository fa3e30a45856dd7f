"""Learning loop: corrections, sender behavior stats and rule learning."""

from inbox_triage.learning.behavior_stats import BehaviorStatsAggregator
from inbox_triage.learning.corrections import CorrectionLedger, CorrectionResult
from inbox_triage.learning.rule_learner import RuleCandidate, RuleLearner

__all__ = [
    "BehaviorStatsAggregator",
    "CorrectionLedger",
    "CorrectionResult",
    "RuleCandidate",
    "RuleLearner",
]
