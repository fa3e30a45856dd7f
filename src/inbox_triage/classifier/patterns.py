"""Built-in triage patterns applied after a tenant's own sender rules.

Well-known automated senders, receipt and shipping subjects and newsletter
footers are recognized without a classifier call. Some patterns are only
hints: urgent or legal language, quick confirmation subjects and VIP
senders still go to the classifier, and the decision policy lets the hint
raise the classifier's result but never lower it.

Priority order, first match wins:
1. Urgent, complaint or legal language in the body (hint, act_now)
2. Automated sender addresses: no-reply, mailer-daemon, payment, shipping
3. Automated subjects: receipts, shipping, subscriptions, security, reports
4. Newsletter footers in the body (unsubscribe, email preferences) or a
   newsletter subject
5. Job application notices, unless the business is hiring
6. Quick confirmation subjects (hint, quick_win)
7. Sender history: VIP domains and mostly-replied domains (hint, act_now),
   or mostly-ignored domains (auto_handled)

All matching uses the ``regex`` library with a timeout on every search so
hostile message text can't stall triage. A timed-out pattern is treated as
no match.

Usage:
    from inbox_triage.classifier.patterns import BuiltinPatternMatcher

    matcher = BuiltinPatternMatcher()
    match = matcher.match(envelope, stat=domain_stat, business=settings.business)
    if match and match.conclusive:
        # no classifier call needed
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import regex

from inbox_triage.classifier.envelope import extract_domain, normalize_sender
from inbox_triage.classifier.taxonomy import Bucket, Category
from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.classifier.envelope import MessageEnvelope
    from inbox_triage.config_schema import BusinessContextConfig
    from inbox_triage.db.store import SenderBehaviorStat

logger = get_logger(__name__)

# Regex timeout in seconds, passed to every search
REGEX_TIMEOUT = 1.0

# Sender history needs at least this many messages before it biases triage
MIN_HISTORY_MESSAGES = 3
IGNORED_REPLY_RATE = 0.2
VIP_REPLY_RATE = 0.8


def _compile(*patterns: str) -> list[regex.Pattern]:
    return [regex.compile(p, regex.IGNORECASE) for p in patterns]


# =============================================================================
# Pattern tables
# =============================================================================

ACT_NOW_BODY_PATTERNS = _compile(
    r"\burgent\b",
    r"\basap\b",
    r"cancel.*\b(today|tomorrow|immediately)\b",
    r"need.*\bcancel",
    r"refund.*\brequest",
    r"\b(want|demand).*\brefund",
    r"\bcomplain(t|ing)?\b",
    r"\bdisappointed\b",
    r"\bdisgusted\b",
    r"terrible service",
    r"worst experience",
    r"\bnever\b.*\bagain\b",
    r"trading standards",
    r"\bombudsman\b",
    r"\bsolicitor\b",
    r"\blawyer\b",
    r"legal action",
    r"leave.*\breview\b",
    r"bad review",
    r"social media",
)

AUTOMATED_SENDER_PATTERNS = _compile(
    # No-reply addresses
    r"^(noreply|no-reply|donotreply|do-not-reply|mailer-daemon)@",
    # Payments and accounting
    r"^(notifications?|receipts?)@stripe\.com$",
    r"@mail\.stripe\.com$",
    r"^(noreply|notifications?)@.*gocardless\.com$",
    r"^(messaging-service|noreply)@.*xero\.com$",
    r"^notifications?@.*freeagent\.com$",
    r"@.*quickbooks\.intuit\.com$",
    r"^noreply@.*tide\.co$",
    # Shipping
    r"^pkginfo@ups\.com$",
    r"^track@.*fedex\.com$",
    # Monitoring
    r"^alerts?@.*cloudflare\.com$",
)

AUTOMATED_SUBJECT_PATTERNS = _compile(
    # Payments
    r"^receipt for",
    r"^payment (received|confirmed|successful)",
    r"^invoice #?\d+",
    r"\binvoice paid\b",
    r"^your payment",
    r"^transaction (complete|confirmed)",
    # Shipping
    r"^your order (has shipped|is on its way)",
    r"^shipping confirmation",
    r"^delivery (update|notification)",
    r"^tracking number",
    r"^out for delivery",
    r"^delivered:",
    # Subscriptions
    r"^subscription (confirmed|renewed|updated)",
    r"^welcome to",
    r"^thank you for (your order|signing up|subscribing)",
    # Calendar
    r"^calendar (invitation|reminder)",
    r"^meeting (reminder|scheduled)",
    r"^invitation:",
    # Security
    r"^security (alert|notification)",
    r"^sign-in (attempt|notification)",
    r"^password (reset|changed)",
    r"^(verify|confirm) your email",
    # Reports
    r"^(daily|weekly|monthly) (report|summary|digest)",
)

NEWSLETTER_BODY_PATTERNS = _compile(
    r"unsubscribe",
    r"view (in|this email in) (your )?browser",
    r"email preferences",
    r"(manage|update) your (email )?preferences",
    r"\bopt[ -]?out\b",
)

NEWSLETTER_SUBJECT_PATTERNS = _compile(
    r"\bnewsletter\b",
)

RECRUITMENT_SUBJECT_PATTERNS = _compile(
    r"\bjob application\b",
    r"\bapplication (for|received)\b",
    r"\bnew applicant\b",
)

RECRUITMENT_BODY_PATTERNS = _compile(
    r"\bapplied for\b",
    r"\bnew applicant\b",
)

QUICK_WIN_SUBJECT_PATTERNS = _compile(
    r"^confirm(ation)?:",
    r"^quick question",
    r"^(can you|please) confirm",
    r"^re: (quote|booking|appointment)",
)

# Sender rules offered by `inbox-triage rules seed`: (pattern, category, reason)
KNOWN_SENDER_RULES: tuple[tuple[str, Category, str], ...] = (
    ("@stripe.com", Category.RECEIPT_CONFIRMATION, "Payment notifications"),
    ("@mail.stripe.com", Category.RECEIPT_CONFIRMATION, "Stripe receipts"),
    ("@gocardless.com", Category.RECEIPT_CONFIRMATION, "Direct debit notifications"),
    ("@xero.com", Category.RECEIPT_CONFIRMATION, "Accounting notifications"),
    ("@freeagent.com", Category.RECEIPT_CONFIRMATION, "Accounting notifications"),
    ("@quickbooks.intuit.com", Category.RECEIPT_CONFIRMATION, "Accounting notifications"),
    ("@tide.co", Category.RECEIPT_CONFIRMATION, "Banking notifications"),
    ("@ups.com", Category.AUTOMATED_NOTIFICATION, "Shipping updates"),
    ("@fedex.com", Category.AUTOMATED_NOTIFICATION, "Shipping updates"),
    ("@royalmail.com", Category.AUTOMATED_NOTIFICATION, "Shipping updates"),
    ("@dpd.co.uk", Category.AUTOMATED_NOTIFICATION, "Delivery notifications"),
    ("@linkedin.com", Category.MARKETING_NEWSLETTER, "LinkedIn notifications"),
    ("@facebook.com", Category.MARKETING_NEWSLETTER, "Facebook notifications"),
    ("@twitter.com", Category.MARKETING_NEWSLETTER, "Twitter/X notifications"),
    ("@instagram.com", Category.MARKETING_NEWSLETTER, "Instagram notifications"),
    ("@indeed.com", Category.RECRUITMENT_HR, "Job board notifications"),
    ("@totaljobs.com", Category.RECRUITMENT_HR, "Job board notifications"),
    ("@reed.co.uk", Category.RECRUITMENT_HR, "Job board notifications"),
    ("@calendly.com", Category.AUTOMATED_NOTIFICATION, "Calendar notifications"),
    ("@slack.com", Category.AUTOMATED_NOTIFICATION, "Slack notifications"),
    ("@zoom.us", Category.AUTOMATED_NOTIFICATION, "Zoom notifications"),
    ("@github.com", Category.INTERNAL_SYSTEM, "GitHub notifications"),
    ("@cloudflare.com", Category.INTERNAL_SYSTEM, "Cloudflare alerts"),
    ("noreply@google.com", Category.AUTOMATED_NOTIFICATION, "Google notifications"),
)


# =============================================================================
# Matching
# =============================================================================


@dataclass(frozen=True, slots=True)
class PatternMatch:
    """A built-in pattern that fired.

    Attributes:
        rule_type: Which pattern family matched (e.g. 'automated_sender')
        classification: Category implied by the pattern
        bucket: Bucket implied by the pattern
        requires_reply: Reply flag implied by the pattern
        confidence: Fixed confidence for the pattern family
        conclusive: True when the classifier can be skipped entirely
        reason: Operator-facing explanation
        matched: The pattern text or statistic that fired
    """

    rule_type: str
    classification: Category
    bucket: Bucket
    requires_reply: bool
    confidence: float
    conclusive: bool
    reason: str
    matched: str


def _first_match(text: str, patterns: list[regex.Pattern]) -> str | None:
    """Return the first pattern found in ``text``, or None."""
    if not text:
        return None
    for pattern in patterns:
        try:
            if pattern.search(text, timeout=REGEX_TIMEOUT):
                return pattern.pattern
        except TimeoutError:
            logger.warning("builtin_pattern_timeout", pattern=pattern.pattern)
    return None


class BuiltinPatternMatcher:
    """Deterministic pattern stage between sender rules and the classifier.

    Same envelope, stat and business context always give the same result.
    """

    def match(
        self,
        envelope: MessageEnvelope,
        *,
        stat: SenderBehaviorStat | None = None,
        business: BusinessContextConfig | None = None,
    ) -> PatternMatch | None:
        address = normalize_sender(envelope.sender)
        domain = extract_domain(address) if address else ""
        subject = envelope.subject.strip()
        body = envelope.body

        if hit := _first_match(body, ACT_NOW_BODY_PATTERNS):
            return PatternMatch(
                rule_type="urgent_language",
                classification=Category.CUSTOMER_COMPLAINT,
                bucket=Bucket.ACT_NOW,
                requires_reply=True,
                confidence=0.85,
                conclusive=False,
                reason="Urgent or risky language detected",
                matched=hit,
            )

        if hit := _first_match(address, AUTOMATED_SENDER_PATTERNS):
            return PatternMatch(
                rule_type="automated_sender",
                classification=Category.AUTOMATED_NOTIFICATION,
                bucket=Bucket.AUTO_HANDLED,
                requires_reply=False,
                confidence=0.98,
                conclusive=True,
                reason="Automated notification - no action needed",
                matched=hit,
            )

        if hit := _first_match(subject, AUTOMATED_SUBJECT_PATTERNS):
            return PatternMatch(
                rule_type="automated_subject",
                classification=Category.RECEIPT_CONFIRMATION,
                bucket=Bucket.AUTO_HANDLED,
                requires_reply=False,
                confidence=0.95,
                conclusive=True,
                reason="Automated notification - no action needed",
                matched=hit,
            )

        if hit := _first_match(body, NEWSLETTER_BODY_PATTERNS) or _first_match(
            subject, NEWSLETTER_SUBJECT_PATTERNS
        ):
            return PatternMatch(
                rule_type="newsletter",
                classification=Category.MARKETING_NEWSLETTER,
                bucket=Bucket.AUTO_HANDLED,
                requires_reply=False,
                confidence=0.92,
                conclusive=True,
                reason="Newsletter or marketing - no action needed",
                matched=hit,
            )

        hiring = business is not None and business.is_hiring
        if not hiring and (
            hit := _first_match(subject, RECRUITMENT_SUBJECT_PATTERNS)
            or _first_match(body, RECRUITMENT_BODY_PATTERNS)
        ):
            return PatternMatch(
                rule_type="recruitment",
                classification=Category.RECRUITMENT_HR,
                bucket=Bucket.AUTO_HANDLED,
                requires_reply=False,
                confidence=0.9,
                conclusive=True,
                reason="Job application notification - filed for reference",
                matched=hit,
            )

        if hit := _first_match(subject, QUICK_WIN_SUBJECT_PATTERNS):
            return PatternMatch(
                rule_type="quick_confirmation",
                classification=Category.CUSTOMER_INQUIRY,
                bucket=Bucket.QUICK_WIN,
                requires_reply=True,
                confidence=0.80,
                conclusive=False,
                reason="Simple confirmation request",
                matched=hit,
            )

        if business is not None and domain and domain in business.vip_domains:
            return PatternMatch(
                rule_type="vip_domain",
                classification=Category.CUSTOMER_INQUIRY,
                bucket=Bucket.ACT_NOW,
                requires_reply=True,
                confidence=0.85,
                conclusive=False,
                reason="VIP sender domain",
                matched=domain,
            )

        return _match_history(stat)


def _match_history(stat: SenderBehaviorStat | None) -> PatternMatch | None:
    if stat is None or stat.total_messages < MIN_HISTORY_MESSAGES:
        return None

    evidence = f"replied to {stat.replied_count} of {stat.total_messages}"
    if stat.reply_rate < IGNORED_REPLY_RATE:
        return PatternMatch(
            rule_type="history_ignored",
            classification=Category.INFORMATIONAL_ONLY,
            bucket=Bucket.AUTO_HANDLED,
            requires_reply=False,
            confidence=0.85,
            conclusive=True,
            reason=f"Historically ignored sender ({evidence})",
            matched=stat.sender_domain,
        )
    if stat.reply_rate > VIP_REPLY_RATE:
        return PatternMatch(
            rule_type="history_vip",
            classification=Category.CUSTOMER_INQUIRY,
            bucket=Bucket.ACT_NOW,
            requires_reply=True,
            confidence=0.85,
            conclusive=False,
            reason=f"Important sender - high engagement history ({evidence})",
            matched=stat.sender_domain,
        )
    return None
