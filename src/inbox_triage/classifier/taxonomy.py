"""Closed vocabularies for triage decisions.

Every value the classifier returns is parsed into one of these enums at the
boundary. Anything outside them is rejected, never stored as free text.

Usage:
    from inbox_triage.classifier.taxonomy import Bucket, Category, parse_enum

    category = Category("customer_inquiry")
    urgency = parse_enum(Urgency, raw.get("urgency"), default=Urgency.MEDIUM)
"""

from enum import StrEnum
from typing import TypeVar


class Category(StrEnum):
    """Message classification categories."""

    # Customers
    CUSTOMER_INQUIRY = "customer_inquiry"
    CUSTOMER_COMPLAINT = "customer_complaint"
    CUSTOMER_FEEDBACK = "customer_feedback"
    # Sales
    LEAD_NEW = "lead_new"
    LEAD_FOLLOWUP = "lead_followup"
    QUOTE_REQUEST = "quote_request"
    # Bookings
    BOOKING_REQUEST = "booking_request"
    CANCELLATION_REQUEST = "cancellation_request"
    RESCHEDULE_REQUEST = "reschedule_request"
    # Suppliers and partners
    SUPPLIER_INVOICE = "supplier_invoice"
    SUPPLIER_URGENT = "supplier_urgent"
    PARTNER_REQUEST = "partner_request"
    # Money
    PAYMENT_CONFIRMATION = "payment_confirmation"
    PAYMENT_PROMISE = "payment_promise"
    RECEIPT_CONFIRMATION = "receipt_confirmation"
    # Noise
    AUTOMATED_NOTIFICATION = "automated_notification"
    MARKETING_NEWSLETTER = "marketing_newsletter"
    SPAM_PHISHING = "spam_phishing"
    RECRUITMENT_HR = "recruitment_hr"
    INTERNAL_SYSTEM = "internal_system"
    INFORMATIONAL_ONLY = "informational_only"
    MISDIRECTED = "misdirected"


class Bucket(StrEnum):
    """Routing outcome for a message."""

    AUTO_HANDLED = "auto_handled"
    QUICK_WIN = "quick_win"
    ACT_NOW = "act_now"
    WAIT = "wait"


class RiskLevel(StrEnum):
    FINANCIAL = "financial"
    RETENTION = "retention"
    REPUTATION = "reputation"
    LEGAL = "legal"
    NONE = "none"


class Urgency(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Sentiment(StrEnum):
    ANGRY = "angry"
    FRUSTRATED = "frustrated"
    CONCERNED = "concerned"
    NEUTRAL = "neutral"
    POSITIVE = "positive"


class Channel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    CHAT = "chat"


class DecisionSource(StrEnum):
    """Where a stored triage decision came from."""

    GATEKEEPER = "gatekeeper"
    PATTERN = "pattern"
    CLASSIFIER = "classifier"
    FALLBACK = "fallback"
    HUMAN = "human"


# Categories the gatekeeper may always auto-handle regardless of the rule's reply flag
AUTO_HANDLED_CATEGORIES: frozenset[Category] = frozenset(
    {
        Category.AUTOMATED_NOTIFICATION,
        Category.RECEIPT_CONFIRMATION,
        Category.RECRUITMENT_HR,
    }
)

# Risk levels that always escalate to act_now
ESCALATING_RISKS: frozenset[RiskLevel] = frozenset(
    {RiskLevel.FINANCIAL, RiskLevel.LEGAL, RiskLevel.REPUTATION}
)

# Fallback category when classifier output can't be trusted
SAFE_DEFAULT_CATEGORY = Category.CUSTOMER_INQUIRY

# Categories that, when set by a human, imply no reply is needed
NO_REPLY_CATEGORIES: frozenset[Category] = frozenset(
    {
        Category.AUTOMATED_NOTIFICATION,
        Category.RECEIPT_CONFIRMATION,
        Category.RECRUITMENT_HR,
        Category.PAYMENT_CONFIRMATION,
        Category.MARKETING_NEWSLETTER,
        Category.SPAM_PHISHING,
        Category.INTERNAL_SYSTEM,
        Category.INFORMATIONAL_ONLY,
        Category.MISDIRECTED,
    }
)

E = TypeVar("E", bound=StrEnum)


def parse_enum(enum_cls: type[E], value: object, default: E | None = None) -> E | None:
    """Parse a raw value into ``enum_cls``, returning ``default`` when it isn't a member.

    Matching is case-insensitive and ignores surrounding whitespace.
    """
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        return default
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        return default


def requires_reply_for(category: Category) -> bool:
    """Whether a human-assigned category implies the customer is owed a reply."""
    return category not in NO_REPLY_CATEGORIES
