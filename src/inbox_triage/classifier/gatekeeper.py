"""Sender-rule gatekeeper for deterministic first-pass classification.

A matched sender rule bypasses the AI classifier entirely, which is both
cheaper and predictable. Rules live in the database per tenant and are
evaluated in insertion order; the first match wins and matching stops.
Ordering is a contract: there is no longest-match or specificity ranking,
so tenants control precedence by the order rules are created in.

A rule pattern matches when:
- it starts with '@' and the rest equals the sender domain exactly, or
- it is a non-empty substring of the sender address or the sender domain.

A leading '*' ('*@example.com') is accepted as the '@' domain form. Empty,
blank, or bare '@' patterns never match. No regex is used.

Usage:
    from inbox_triage.classifier.gatekeeper import Gatekeeper

    gatekeeper = Gatekeeper(store)
    match = await gatekeeper.check("acme", envelope)
    if match:
        # match.classification, match.requires_reply
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from inbox_triage.classifier.envelope import extract_domain, normalize_sender
from inbox_triage.classifier.taxonomy import Category, parse_enum
from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import SenderRule

if TYPE_CHECKING:
    from inbox_triage.classifier.envelope import MessageEnvelope
    from inbox_triage.db.store import DatabaseStore

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class GatekeeperMatch:
    """Result of a sender-rule match.

    Attributes:
        rule: The matched rule
        classification: Default or keyword-override classification
        requires_reply: Default or keyword-override reply flag
        keyword: The override keyword that fired, if any
        match_reason: Human-readable explanation of why the rule matched
    """

    rule: SenderRule
    classification: Category
    requires_reply: bool
    keyword: str | None
    match_reason: str


def normalize_pattern(pattern: str | None) -> str | None:
    """Lowercase a rule pattern, or return None if it can never match."""
    if not pattern:
        return None
    p = pattern.strip().lower()
    if p.startswith("*@"):
        p = p[1:]
    if not p or p == "@":
        return None
    return p


def pattern_matches(pattern: str | None, address: str, domain: str) -> bool:
    """Check one rule pattern against a normalized address and its domain."""
    p = normalize_pattern(pattern)
    if p is None:
        return False
    if p.startswith("@") and p[1:] == domain:
        return True
    return p in address or (bool(domain) and p in domain)


class SenderRuleMatcher:
    """Pure first-match evaluation of a rule list.

    Same sender, text and rule list always give the same result.
    """

    def match(
        self,
        sender: str,
        rules: list[SenderRule],
        subject: str = "",
        body: str = "",
    ) -> GatekeeperMatch | None:
        """Return the first active rule matching the sender, or None.

        Args:
            sender: Raw sender address (display names are stripped)
            rules: Rules in stored order
            subject: Subject searched for override keywords
            body: Body searched for override keywords
        """
        address = normalize_sender(sender)
        if not address:
            return None
        domain = extract_domain(address)

        for rule in rules:
            if not rule.is_active:
                continue
            if not pattern_matches(rule.pattern, address, domain):
                continue

            classification = parse_enum(Category, rule.default_classification)
            if classification is None:
                logger.warning(
                    "sender_rule_invalid_classification",
                    rule_id=rule.id,
                    pattern=rule.pattern,
                    classification=rule.default_classification,
                )
                continue

            requires_reply = rule.default_requires_reply
            keyword = _find_override_keyword(rule, subject, body)
            if keyword is not None:
                override = parse_enum(Category, rule.override_classification)
                if override is not None:
                    classification = override
                if rule.override_requires_reply is not None:
                    requires_reply = rule.override_requires_reply

            reason = f"Sender rule '{rule.pattern}' matched"
            if keyword is not None:
                reason += f" (override keyword '{keyword}')"

            logger.debug(
                "sender_rule_matched",
                rule_id=rule.id,
                pattern=rule.pattern,
                sender_domain=domain,
                keyword=keyword,
            )
            return GatekeeperMatch(
                rule=rule,
                classification=classification,
                requires_reply=requires_reply,
                keyword=keyword,
                match_reason=reason,
            )

        return None


def _find_override_keyword(rule: SenderRule, subject: str, body: str) -> str | None:
    if not rule.override_keywords:
        return None
    haystack = f"{subject}\n{body}".lower()
    for keyword in rule.override_keywords:
        k = keyword.strip().lower()
        if k and k in haystack:
            return k
    return None


class Gatekeeper:
    """Store-backed gatekeeper: loads a tenant's rules and records hits."""

    def __init__(self, store: DatabaseStore, matcher: SenderRuleMatcher | None = None):
        self._store = store
        self._matcher = matcher or SenderRuleMatcher()

    async def check(
        self,
        tenant_id: str,
        envelope: MessageEnvelope,
        rules: list[SenderRule] | None = None,
        *,
        record_hits: bool = True,
    ) -> GatekeeperMatch | None:
        """Match an envelope against the tenant's active rules.

        Args:
            tenant_id: Tenant whose rules apply
            envelope: Message being triaged
            rules: Preloaded rules (batch runs load them once per page)
            record_hits: Bump the matched rule's hit count (off for dry runs)
        """
        if rules is None:
            rules = await self._store.get_sender_rules(tenant_id, active_only=True)

        match = self._matcher.match(envelope.sender, rules, envelope.subject, envelope.body)
        if match is None:
            return None

        if record_hits and match.rule.id is not None:
            try:
                await self._store.increment_rule_hits(match.rule.id)
            except DatabaseError as e:
                # Hit counts are advisory
                logger.warning("sender_rule_hit_count_failed", rule_id=match.rule.id, error=str(e))

        return match


# ---------------------------------------------------------------------------
# Rule creation helpers and hygiene
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleMatchAmbiguous:
    """Two active rules whose patterns can match the same sender.

    The earlier rule always wins; the later one is partly or fully shadowed.
    """

    earlier_pattern: str
    later_pattern: str
    earlier_classification: str
    later_classification: str

    @property
    def conflicting(self) -> bool:
        return self.earlier_classification != self.later_classification


@dataclass(frozen=True)
class RulesAuditReport:
    """Health report for a tenant's sender rules."""

    total_rules: int
    active_rules: int
    overlaps: list[RuleMatchAmbiguous]
    stale_rules: list[str]
    malformed_rules: list[str]


def domain_pattern(domain: str) -> str:
    """The '@domain' pattern for a sender domain."""
    return "@" + domain.strip().lower().lstrip("@")


def create_rule_for_domain(
    tenant_id: str,
    domain: str,
    classification: Category,
    requires_reply: bool,
    created_by: str = "admin",
) -> SenderRule:
    """Build (but don't store) a domain rule."""
    return SenderRule(
        tenant_id=tenant_id,
        pattern=domain_pattern(domain),
        default_classification=classification.value,
        default_requires_reply=requires_reply,
        created_by=created_by,
    )


def _needle(pattern: str) -> str:
    return pattern[1:] if pattern.startswith("@") else pattern


def detect_rule_overlaps(rules: list[SenderRule]) -> list[RuleMatchAmbiguous]:
    """Find pairs of active rules where the earlier one may shadow the later one.

    Two domain patterns overlap only when identical. Otherwise patterns
    overlap when one's text contains the other's, which over-reports for
    mixed domain/substring pairs but never misses a real shadow.
    """
    active = [
        (r, p) for r in rules if r.is_active and (p := normalize_pattern(r.pattern)) is not None
    ]
    overlaps: list[RuleMatchAmbiguous] = []

    for i, (rule_a, pat_a) in enumerate(active):
        for rule_b, pat_b in active[i + 1 :]:
            both_domains = pat_a.startswith("@") and pat_b.startswith("@")
            if both_domains:
                overlapping = pat_a == pat_b
            else:
                needle_a, needle_b = _needle(pat_a), _needle(pat_b)
                overlapping = needle_a in needle_b or needle_b in needle_a
            if overlapping:
                overlaps.append(
                    RuleMatchAmbiguous(
                        earlier_pattern=rule_a.pattern,
                        later_pattern=rule_b.pattern,
                        earlier_classification=rule_a.default_classification,
                        later_classification=rule_b.default_classification,
                    )
                )

    return overlaps


def detect_stale_rules(
    rules: list[SenderRule],
    threshold_days: int = 30,
    now: datetime | None = None,
) -> list[str]:
    """Patterns of active rules older than the threshold that never matched."""
    now = now or datetime.now(UTC)
    stale: list[str] = []
    for rule in rules:
        if not rule.is_active or rule.hit_count > 0 or rule.created_at is None:
            continue
        if (now - rule.created_at).days > threshold_days:
            stale.append(rule.pattern)
    return stale


def audit_rules(rules: list[SenderRule], threshold_days: int = 30) -> RulesAuditReport:
    """Produce a hygiene report for a tenant's full rule list."""
    overlaps = detect_rule_overlaps(rules)
    for overlap in overlaps:
        logger.info(
            "rule_match_ambiguous",
            earlier=overlap.earlier_pattern,
            later=overlap.later_pattern,
            conflicting=overlap.conflicting,
        )

    malformed = [
        r.pattern
        for r in rules
        if normalize_pattern(r.pattern) is None
        or parse_enum(Category, r.default_classification) is None
    ]

    return RulesAuditReport(
        total_rules=len(rules),
        active_rules=sum(1 for r in rules if r.is_active),
        overlaps=overlaps,
        stale_rules=detect_stale_rules(rules, threshold_days),
        malformed_rules=malformed,
    )
