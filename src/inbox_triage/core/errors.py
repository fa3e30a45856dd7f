"""Custom exception types for the inbox triage engine.

Error messages should say what failed, where it failed, why, and how to fix
it when a fix is known.

Classifier failures all share one handling path: the caller substitutes a
safe default that needs a human. Persistence failures during a batch are
reported per item and never abort the run.
"""

from typing import Any


class TriageError(Exception):
    """Base exception for all inbox triage errors."""

    pass


class ConfigValidationError(TriageError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(TriageError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class RateLimitExceeded(TriageError):
    """Raised when the classifier rate limit would require an excessive wait.

    The token bucket raises this rather than blocking for more than 20 seconds.
    """

    pass


class ClassificationError(TriageError):
    """Base for failures of the AI classifier adapter.

    Attributes:
        message_id: The message that failed classification (if known)
        attempts: Number of classification attempts made
    """

    def __init__(self, message: str, message_id: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.message_id = message_id
        self.attempts = attempts


class ClassifierUnavailable(ClassificationError):
    """Raised on transport, HTTP, or timeout failure talking to the classifier."""

    pass


class ClassifierMalformedOutput(ClassificationError):
    """Raised when the classifier response omits or mistypes required tool fields."""

    pass


class ClassifierInvalidCategory(ClassificationError):
    """Raised when the classifier returns a category outside the closed enum.

    Attributes:
        category: The rejected category string
        fallback: The coerced result (safe category, needs human review)
    """

    def __init__(
        self,
        message: str,
        category: str,
        fallback: Any = None,
        message_id: str | None = None,
        attempts: int = 0,
    ):
        super().__init__(message, message_id=message_id, attempts=attempts)
        self.category = category
        self.fallback = fallback


class DatabaseError(TriageError):
    """Raised when SQLite operations fail."""

    pass


class PersistenceWriteFailed(DatabaseError):
    """Raised when a single triage decision write fails.

    Attributes:
        conversation_id: The conversation whose write failed
    """

    def __init__(self, message: str, conversation_id: str):
        super().__init__(message)
        self.conversation_id = conversation_id


class DuplicateRuleCandidate(DatabaseError):
    """Raised when a sender rule with the same (tenant, pattern) already exists.

    Callers that create rules from learned candidates treat this as a no-op.

    Attributes:
        tenant_id: Tenant that owns the rule
        pattern: The duplicated pattern
    """

    def __init__(self, message: str, tenant_id: str, pattern: str):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.pattern = pattern


class ConversationNotFound(TriageError):
    """Raised when a conversation id does not exist in the store."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class RuleCandidateNotFound(TriageError):
    """Raised when accepting a pattern that is not a current rule candidate."""

    def __init__(self, tenant_id: str, pattern: str):
        super().__init__(f"No rule candidate for '{pattern}' in tenant '{tenant_id}'")
        self.tenant_id = tenant_id
        self.pattern = pattern
