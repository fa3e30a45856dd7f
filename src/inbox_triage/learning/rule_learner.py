"""Sender-rule learning from corrections and reply behavior.

Two sources feed new gatekeeper rules, plus a fixed seed list:

- Correction candidates: human corrections for one sender domain to the
  same new category that reach the tenant's repetition threshold become an
  '@domain' rule candidate for that category.
- Stats suggestions: sender behavior stats with a clear reply pattern
  (almost never replied to, or almost always) plus well-known sender
  domains (payment processors, job boards, no-reply senders).
- Known senders: ``seed_known_rules`` adds rules for common payment,
  shipping, social and job-board senders a tenant doesn't have yet.

Candidates whose pattern already exists (active or disabled) are never
offered again. Creating a rule is idempotent per (tenant, pattern): a
duplicate is treated as already done.

Usage:
    from inbox_triage.learning.rule_learner import RuleLearner

    learner = RuleLearner(store, config)
    candidates = await learner.find_candidates("acme")
    await learner.accept_candidate(candidates[0])
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.gatekeeper import create_rule_for_domain, domain_pattern
from inbox_triage.classifier.patterns import KNOWN_SENDER_RULES
from inbox_triage.classifier.taxonomy import Category, parse_enum
from inbox_triage.core.errors import (
    DatabaseError,
    DuplicateRuleCandidate,
    RuleCandidateNotFound,
)
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import SenderRule

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore, RuleOrigin, SenderBehaviorStat

logger = get_logger(__name__)

# Maximum stats-based suggestions returned per call
MAX_SUGGESTIONS = 20

_RECEIPT_DOMAINS = ("stripe", "paypal", "gocardless")
_RECRUITMENT_DOMAINS = ("indeed", "linkedin", "reed", "totaljobs")
_NO_REPLY_MARKERS = ("noreply", "no-reply", "notifications")


@dataclass(frozen=True)
class RuleCandidate:
    """A proposed sender rule.

    Attributes:
        source: 'corrections' or 'stats'
        evidence: Correction count (corrections) or message count (stats)
        confidence: 1.0 for correction candidates, heuristic for stats
    """

    tenant_id: str
    sender_domain: str
    classification: Category
    requires_reply: bool
    source: str
    evidence: int
    confidence: float = 1.0
    original_classification: str | None = None
    reason: str = ""

    @property
    def pattern(self) -> str:
        return domain_pattern(self.sender_domain)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "sender_domain": self.sender_domain,
            "classification": self.classification.value,
            "requires_reply": self.requires_reply,
            "source": self.source,
            "evidence": self.evidence,
            "confidence": self.confidence,
            "original_classification": self.original_classification,
            "reason": self.reason,
        }


class RuleLearner:
    """Turns corrections and behavior stats into sender rules."""

    def __init__(self, store: DatabaseStore, config: AppConfig):
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    # ------------------------------------------------------------------
    # Correction candidates
    # ------------------------------------------------------------------

    async def find_candidates(self, tenant_id: str) -> list[RuleCandidate]:
        """Rule candidates from repeated corrections, most evidence first.

        Corrections to the same new category for a domain count together
        whatever the original category was. Only one candidate is produced
        per domain; when corrections for a domain disagree on the new
        category, the category with the most corrections wins.
        """
        threshold = self._config.for_tenant(tenant_id).learning.repetition_threshold
        groups = await self._store.get_correction_groups(tenant_id)
        existing = await self._store.get_rule_patterns(tenant_id)

        # Groups arrive most frequent first, so originals[key][0] is the commonest
        counts: dict[tuple[str, str], int] = {}
        originals: dict[tuple[str, str], list[str | None]] = {}
        for group in groups:
            if not group.sender_domain:
                continue
            key = (group.sender_domain, group.new_classification)
            counts[key] = counts.get(key, 0) + group.count
            originals.setdefault(key, []).append(group.original_classification)

        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0][0]))

        candidates: list[RuleCandidate] = []
        seen: set[str] = set()
        for (sender_domain, new_classification), count in ranked:
            if count < threshold:
                continue
            pattern = domain_pattern(sender_domain)
            if pattern in existing or pattern in seen:
                continue
            category = parse_enum(Category, new_classification)
            if category is None:
                logger.warning(
                    "rule_candidate_invalid_category",
                    tenant_id=tenant_id,
                    sender_domain=sender_domain,
                    category=new_classification,
                )
                continue
            seen.add(pattern)
            key = (sender_domain, new_classification)
            from_text = ", ".join(o or "untriaged" for o in originals[key])
            candidates.append(
                RuleCandidate(
                    tenant_id=tenant_id,
                    sender_domain=sender_domain,
                    classification=category,
                    requires_reply=category == Category.CUSTOMER_INQUIRY,
                    source="corrections",
                    evidence=count,
                    original_classification=originals[key][0],
                    reason=f"{count} corrections from {from_text} to {category.value}",
                )
            )

        logger.debug("rule_candidates_found", tenant_id=tenant_id, count=len(candidates))
        return candidates

    async def accept_candidate(
        self, candidate: RuleCandidate, created_by: RuleOrigin = "learner"
    ) -> int | None:
        """Create the rule for a candidate.

        Returns:
            The new rule ID, or None if the tenant already had this pattern

        Raises:
            DatabaseError: If the rule can't be written for another reason
        """
        rule = create_rule_for_domain(
            candidate.tenant_id,
            candidate.sender_domain,
            candidate.classification,
            candidate.requires_reply,
            created_by=created_by,
        )
        try:
            rule_id = await self._store.create_sender_rule(rule)
        except DuplicateRuleCandidate:
            logger.info(
                "rule_candidate_already_exists",
                tenant_id=candidate.tenant_id,
                pattern=candidate.pattern,
            )
            return None

        logger.info(
            "sender_rule_learned",
            tenant_id=candidate.tenant_id,
            rule_id=rule_id,
            pattern=rule.pattern,
            classification=candidate.classification.value,
            source=candidate.source,
        )
        try:
            await self._store.log_action(
                action_type="sender_rule_created",
                tenant_id=candidate.tenant_id,
                target_id=str(rule_id),
                details=candidate.to_dict(),
                triggered_by=created_by,
            )
        except DatabaseError as e:
            logger.warning("rule_audit_log_failed", rule_id=rule_id, error=str(e))
        return rule_id

    async def accept_pattern(self, tenant_id: str, pattern: str) -> int | None:
        """Accept the current candidate (from corrections or stats) for a pattern.

        Raises:
            RuleCandidateNotFound: If nothing currently proposes this pattern
        """
        wanted = domain_pattern(pattern.strip().lstrip("*"))
        for candidate in await self.find_candidates(tenant_id):
            if candidate.pattern == wanted:
                return await self.accept_candidate(candidate, created_by="learner")
        for candidate in await self.suggest_from_stats(tenant_id):
            if candidate.pattern == wanted:
                return await self.accept_candidate(candidate, created_by="stats")
        raise RuleCandidateNotFound(tenant_id, wanted)

    async def auto_apply(self, tenant_id: str) -> list[str]:
        """Create rules for every correction candidate. Returns the new patterns."""
        created: list[str] = []
        for candidate in await self.find_candidates(tenant_id):
            if await self.accept_candidate(candidate, created_by="learner") is not None:
                created.append(candidate.pattern)
        if created:
            logger.info("rule_candidates_auto_applied", tenant_id=tenant_id, patterns=created)
        return created

    # ------------------------------------------------------------------
    # Known senders
    # ------------------------------------------------------------------

    async def seed_known_rules(self, tenant_id: str) -> list[str]:
        """Create rules for well-known automated senders the tenant lacks.

        Patterns the tenant already has, active or disabled, are left alone,
        so seeding twice creates nothing the second time.

        Returns:
            The patterns that were created
        """
        existing = await self._store.get_rule_patterns(tenant_id)
        created: list[str] = []
        for pattern, category, reason in KNOWN_SENDER_RULES:
            if pattern in existing:
                continue
            rule = SenderRule(
                tenant_id=tenant_id,
                pattern=pattern,
                default_classification=category.value,
                default_requires_reply=False,
                created_by="seed",
            )
            try:
                await self._store.create_sender_rule(rule)
            except DuplicateRuleCandidate:
                continue
            logger.debug("sender_rule_seeded", tenant_id=tenant_id, pattern=pattern, reason=reason)
            created.append(pattern)

        if created:
            logger.info("sender_rules_seeded", tenant_id=tenant_id, count=len(created))
            try:
                await self._store.log_action(
                    action_type="sender_rules_seeded",
                    tenant_id=tenant_id,
                    details={"patterns": created},
                    triggered_by="seed",
                )
            except DatabaseError as e:
                logger.warning("rule_audit_log_failed", tenant_id=tenant_id, error=str(e))
        return created

    # ------------------------------------------------------------------
    # Stats suggestions
    # ------------------------------------------------------------------

    async def suggest_from_stats(
        self, tenant_id: str, min_email_count: int | None = None
    ) -> list[RuleCandidate]:
        """Rule suggestions from stored sender behavior stats."""
        if min_email_count is None:
            min_email_count = self._config.for_tenant(tenant_id).learning.min_email_count
        stats = await self._store.get_behavior_stats(tenant_id)
        existing = await self._store.get_rule_patterns(tenant_id)

        suggestions = [
            s
            for stat in stats
            if stat.total_messages >= min_email_count
            and domain_pattern(stat.sender_domain) not in existing
            and (s := suggest_rule_for_stat(stat)) is not None
        ]
        suggestions.sort(key=lambda s: (s.confidence, s.evidence), reverse=True)
        return suggestions[:MAX_SUGGESTIONS]


def suggest_rule_for_stat(stat: SenderBehaviorStat) -> RuleCandidate | None:
    """Suggest a rule for one domain's stats, or None when behavior is mixed."""
    total = stat.total_messages
    rate = stat.reply_rate
    domain = stat.sender_domain.lower()

    suggestion: tuple[Category, bool, float, str] | None = None
    if rate < 0.10 and total >= 3:
        suggestion = (
            Category.AUTOMATED_NOTIFICATION,
            False,
            min(0.95, 0.7 + 0.02 * total),
            f"Replied to {stat.replied_count} of {total} messages",
        )
    elif rate < 0.25:
        suggestion = (
            Category.INFORMATIONAL_ONLY,
            False,
            min(0.85, 0.6 + 0.015 * total),
            f"Rarely replied to ({stat.replied_count} of {total})",
        )
    elif rate > 0.80:
        suggestion = (
            Category.CUSTOMER_INQUIRY,
            True,
            min(0.95, 0.75 + (rate - 0.8) / 2),
            f"Almost always replied to ({stat.replied_count} of {total})",
        )

    # Well-known senders override the behavioral guess
    if any(marker in domain for marker in _RECEIPT_DOMAINS):
        suggestion = (Category.RECEIPT_CONFIRMATION, False, 0.95, "Payment processor")
    elif any(marker in domain for marker in _RECRUITMENT_DOMAINS):
        suggestion = (Category.RECRUITMENT_HR, False, 0.95, "Job board")
    elif any(marker in domain for marker in _NO_REPLY_MARKERS):
        suggestion = (Category.AUTOMATED_NOTIFICATION, False, 0.9, "No-reply sender")

    if suggestion is None:
        return None

    category, requires_reply, confidence, reason = suggestion
    return RuleCandidate(
        tenant_id=stat.tenant_id,
        sender_domain=domain,
        classification=category,
        requires_reply=requires_reply,
        source="stats",
        evidence=total,
        confidence=round(confidence, 3),
        reason=reason,
    )
