"""Claude classifier adapter using forced tool use.

Calls Claude once per message with the route_message tool and turns the tool
input into a ClassificationResult. The response is never trusted blindly:
required fields are checked, categories are parsed into the closed enum, and
optional fields are repaired to neutral values.

Error handling strategy:
- Transient errors (429, 5xx, network): retried by the Anthropic SDK
  (max_retries from config). Once the SDK gives up, ClassifierUnavailable.
- Per-call timeout (asyncio.wait_for): ClassifierUnavailable.
- No tool call, or missing/ill-typed required fields: ClassifierMalformedOutput.
- Category outside the enum: ClassifierInvalidCategory carrying a coerced
  customer_inquiry result that needs human review.

classify_or_default() converts every failure into a result that biases toward
a human: requires_reply=True, needs_human_review=True.

Usage:
    from inbox_triage.classifier.claude_classifier import MessageClassifier

    classifier = MessageClassifier(anthropic.AsyncAnthropic(max_retries=2), config, store)
    result = await classifier.classify_or_default(envelope, business=settings.business)
"""

from __future__ import annotations

import asyncio
import math
import os
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol

import anthropic

from inbox_triage.classifier.prompts import ROUTE_MESSAGE_TOOL, TOOL_NAME, PromptAssembler
from inbox_triage.classifier.taxonomy import (
    SAFE_DEFAULT_CATEGORY,
    Bucket,
    Category,
    RiskLevel,
    Sentiment,
    Urgency,
    parse_enum,
)
from inbox_triage.core.errors import (
    ClassificationError,
    ClassifierInvalidCategory,
    ClassifierMalformedOutput,
    ClassifierUnavailable,
    DatabaseError,
)
from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.classifier.envelope import MessageEnvelope
    from inbox_triage.config_schema import AppConfig, BusinessContextConfig
    from inbox_triage.db.store import DatabaseStore

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Classification result
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """Validated classifier output for one message.

    Attributes:
        category: Closed-enum classification
        requires_reply: Whether a human response is needed
        confidence: Certainty in [0, 1]
        method: 'claude_tool_use', 'coerced_category' or 'safe_default'
        error_kind: Name of the failure that produced this result, if any
    """

    category: Category
    requires_reply: bool
    confidence: float
    sentiment: Sentiment = Sentiment.NEUTRAL
    risk_level: RiskLevel = RiskLevel.NONE
    urgency: Urgency = Urgency.MEDIUM
    entities: dict[str, str] = field(default_factory=dict)
    summary: str = ""
    reasoning: str = ""
    why_this_needs_you: str = ""
    suggested_bucket: Bucket | None = None
    cognitive_load: str | None = None
    needs_human_review: bool = False
    method: str = "claude_tool_use"
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "category": self.category.value,
            "requires_reply": self.requires_reply,
            "confidence": self.confidence,
            "sentiment": self.sentiment.value,
            "risk_level": self.risk_level.value,
            "urgency": self.urgency.value,
            "entities": dict(self.entities),
            "summary": self.summary,
            "reasoning": self.reasoning,
            "why_this_needs_you": self.why_this_needs_you,
            "suggested_bucket": self.suggested_bucket.value if self.suggested_bucket else None,
            "cognitive_load": self.cognitive_load,
            "needs_human_review": self.needs_human_review,
            "method": self.method,
            "error_kind": self.error_kind,
        }


def safe_default_result(reason: str, error_kind: str | None = None) -> ClassificationResult:
    """The result used whenever classifier output is missing or unusable."""
    return ClassificationResult(
        category=SAFE_DEFAULT_CATEGORY,
        requires_reply=True,
        confidence=0.0,
        urgency=Urgency.HIGH,
        why_this_needs_you="Could not auto-classify - needs review",
        reasoning=reason,
        suggested_bucket=Bucket.ACT_NOW,
        cognitive_load="high",
        needs_human_review=True,
        method="safe_default",
        error_kind=error_kind,
    )


class Classifier(Protocol):
    """Anything that can classify an envelope."""

    async def classify_or_default(
        self,
        envelope: MessageEnvelope,
        business: BusinessContextConfig | None = None,
    ) -> ClassificationResult: ...


# ---------------------------------------------------------------------------
# Message classifier
# ---------------------------------------------------------------------------


class MessageClassifier:
    """Classifies messages with Claude forced tool use.

    Attributes:
        _client: Async Anthropic client (SDK retries configured by the caller)
        _store: Database store for LLM request logging (optional)
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        config: AppConfig,
        store: DatabaseStore | None = None,
        task_type: str = "triage",
    ):
        self._client = anthropic_client
        self._config = config
        self._store = store
        self._task_type = task_type
        self._prompt_assembler = PromptAssembler()

    async def classify(
        self,
        envelope: MessageEnvelope,
        business: BusinessContextConfig | None = None,
    ) -> ClassificationResult:
        """Classify one message with a single API call.

        Raises:
            ClassifierUnavailable: Transport, HTTP, or timeout failure
            ClassifierMalformedOutput: Missing tool call or required fields
            ClassifierInvalidCategory: Category outside the enum (``fallback`` set)
        """
        cfg = self._config.classifier
        system_prompt = self._prompt_assembler.build_system_prompt(
            business, sender_domain=envelope.sender_domain
        )
        user_message = self._prompt_assembler.build_user_message(
            envelope, max_body_chars=cfg.max_body_chars
        )
        messages = [{"role": "user", "content": user_message}]
        message_id = envelope.message_id

        start_time = time.monotonic()
        try:
            api_response = await asyncio.wait_for(
                self._client.messages.create(
                    model=cfg.model,
                    max_tokens=cfg.max_tokens,
                    system=system_prompt,
                    messages=messages,
                    tools=[ROUTE_MESSAGE_TOOL],
                    tool_choice={"type": "tool", "name": TOOL_NAME},
                ),
                timeout=cfg.timeout_seconds,
            )
        except TimeoutError as e:
            error = f"Classifier call timed out after {cfg.timeout_seconds}s"
            logger.error("classification_timeout", message_id=message_id, timeout=cfg.timeout_seconds)
            await self._log_request(system_prompt, messages, None, None, start_time, message_id, error)
            raise ClassifierUnavailable(error, message_id=message_id, attempts=1) from e
        except anthropic.RateLimitError as e:
            error = f"Rate limited after SDK retries: {e}"
            logger.error("classification_rate_limited", message_id=message_id, error=str(e))
            await self._log_request(system_prompt, messages, None, None, start_time, message_id, error)
            raise ClassifierUnavailable(error, message_id=message_id, attempts=1) from e
        except anthropic.APIConnectionError as e:
            error = f"API connection error after SDK retries: {e}"
            logger.error("classification_connection_error", message_id=message_id, error=str(e))
            await self._log_request(system_prompt, messages, None, None, start_time, message_id, error)
            raise ClassifierUnavailable(error, message_id=message_id, attempts=1) from e
        except anthropic.APIStatusError as e:
            error = f"API status error {e.status_code}: {e.message}"
            logger.error(
                "classification_api_error",
                message_id=message_id,
                status_code=e.status_code,
                error=str(e),
            )
            await self._log_request(system_prompt, messages, None, None, start_time, message_id, error)
            raise ClassifierUnavailable(error, message_id=message_id, attempts=1) from e

        tool_call = _extract_tool_call(api_response)
        if tool_call is None:
            error = "No tool call in response (unexpected with forced tool_choice)"
            logger.warning("classification_no_tool_call", message_id=message_id)
            await self._log_request(
                system_prompt, messages, api_response, None, start_time, message_id, error
            )
            raise ClassifierMalformedOutput(error, message_id=message_id, attempts=1)

        try:
            result = parse_tool_call(tool_call)
        except ClassifierInvalidCategory as e:
            logger.warning(
                "classification_invalid_category",
                message_id=message_id,
                category=e.category,
                coerced_to=SAFE_DEFAULT_CATEGORY.value,
            )
            await self._log_request(
                system_prompt, messages, api_response, tool_call, start_time, message_id, str(e)
            )
            e.message_id = message_id
            raise
        except ClassifierMalformedOutput as e:
            logger.warning("classification_invalid_response", message_id=message_id, error=str(e))
            await self._log_request(
                system_prompt, messages, api_response, tool_call, start_time, message_id, str(e)
            )
            e.message_id = message_id
            raise

        await self._log_request(
            system_prompt, messages, api_response, tool_call, start_time, message_id
        )
        logger.debug(
            "message_classified",
            message_id=message_id,
            category=result.category.value,
            confidence=result.confidence,
        )
        return result

    async def classify_or_default(
        self,
        envelope: MessageEnvelope,
        business: BusinessContextConfig | None = None,
    ) -> ClassificationResult:
        """Classify, replacing any failure with a result that needs a human."""
        try:
            return await self.classify(envelope, business)
        except ClassifierInvalidCategory as e:
            return e.fallback or safe_default_result(str(e), type(e).__name__)
        except ClassificationError as e:
            return safe_default_result(str(e), type(e).__name__)

    async def _log_request(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        tool_call: dict[str, Any] | None,
        start_time: float,
        message_id: str | None,
        error: str | None = None,
    ) -> None:
        """Log an LLM request to the database. Never raises."""
        if self._store is None or not self._config.llm_logging.enabled:
            return

        duration_ms = int((time.monotonic() - start_time) * 1000)
        prompt_data: dict[str, Any] = {"messages": messages}
        if self._config.llm_logging.log_prompts:
            prompt_data["system"] = system_prompt
        else:
            prompt_data = {"messages": [{"role": "user", "content": "[omitted]"}]}

        response_data: dict[str, Any] | None = None
        input_tokens: int | None = None
        output_tokens: int | None = None
        if response is not None:
            response_data = {
                "id": getattr(response, "id", None),
                "model": getattr(response, "model", None),
                "stop_reason": getattr(response, "stop_reason", None),
                "content": [_content_block_to_dict(block) for block in response.content],
            }
            usage = getattr(response, "usage", None)
            input_tokens = getattr(usage, "input_tokens", None)
            output_tokens = getattr(usage, "output_tokens", None)

        try:
            await self._store.log_llm_request(
                task_type=self._task_type,
                model=self._config.classifier.model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens if isinstance(input_tokens, int) else None,
                output_tokens=output_tokens if isinstance(output_tokens, int) else None,
                duration_ms=duration_ms,
                message_id=message_id,
                error=error,
            )
        except DatabaseError as e:
            # Logging failures never block classification
            logger.warning("llm_log_failed", error=str(e), message_id=message_id)


# ---------------------------------------------------------------------------
# Tool call parsing
# ---------------------------------------------------------------------------


def _extract_tool_call(response: Any) -> dict[str, Any] | None:
    """Extract the route_message tool input from the API response."""
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) == "tool_use" and getattr(block, "name", None) == TOOL_NAME:
            data = block.input
            return data if isinstance(data, dict) else None
    return None


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _text(value: Any, limit: int = 500) -> str:
    return value.strip()[:limit] if isinstance(value, str) else ""


def parse_tool_call(data: dict[str, Any]) -> ClassificationResult:
    """Validate tool input and build a ClassificationResult.

    Required: ``decision.confidence`` (number), ``classification.category``
    (string) and ``classification.requires_reply`` (boolean). Everything else
    is repaired to a neutral value when missing or invalid.

    Raises:
        ClassifierMalformedOutput: A required field is missing or ill-typed
        ClassifierInvalidCategory: The category is not in the closed enum
    """
    decision = _section(data, "decision")
    classification = _section(data, "classification")

    missing = []
    confidence = decision.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        missing.append("decision.confidence")
    elif math.isnan(confidence):
        missing.append("decision.confidence")
    raw_category = classification.get("category")
    if not isinstance(raw_category, str) or not raw_category.strip():
        missing.append("classification.category")
    requires_reply = classification.get("requires_reply")
    if not isinstance(requires_reply, bool):
        missing.append("classification.requires_reply")
    if missing:
        raise ClassifierMalformedOutput(
            f"Missing or invalid required fields: {', '.join(missing)}"
        )

    risk = _section(data, "risk")
    priority = _section(data, "priority")
    sentiment = _section(data, "sentiment")

    entities = {
        str(k): v.strip()
        for k, v in _section(data, "entities").items()
        if isinstance(v, str) and v.strip()
    }
    cognitive_load = risk.get("cognitive_load")

    result = ClassificationResult(
        category=SAFE_DEFAULT_CATEGORY,
        requires_reply=requires_reply,
        confidence=min(1.0, max(0.0, float(confidence))),
        sentiment=parse_enum(Sentiment, sentiment.get("tone"), default=Sentiment.NEUTRAL),
        risk_level=parse_enum(RiskLevel, risk.get("level"), default=RiskLevel.NONE),
        urgency=parse_enum(Urgency, priority.get("urgency"), default=Urgency.MEDIUM),
        entities=entities,
        summary=_text(data.get("summary"), 200),
        reasoning=_text(data.get("reasoning")),
        why_this_needs_you=_text(decision.get("why_this_needs_you"), 200),
        suggested_bucket=parse_enum(Bucket, decision.get("bucket")),
        cognitive_load=cognitive_load if cognitive_load in ("high", "low") else None,
    )

    category = parse_enum(Category, raw_category)
    if category is None:
        fallback = replace(
            result,
            requires_reply=True,
            needs_human_review=True,
            method="coerced_category",
            error_kind=ClassifierInvalidCategory.__name__,
        )
        raise ClassifierInvalidCategory(
            f"Classifier returned unknown category '{raw_category}'",
            category=raw_category,
            fallback=fallback,
        )

    return replace(result, category=category)


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    """Convert an Anthropic content block to a serializable dict."""
    if block.type == "text":
        return {"type": "text", "text": block.text}
    elif block.type == "tool_use":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    return {"type": block.type}


def create_classifier(
    config: AppConfig, store: DatabaseStore | None = None
) -> MessageClassifier | None:
    """Build a classifier from the environment, or None when no API key is set.

    Without a classifier the engine still runs in rules-only mode.
    """
    if not os.environ.get("ANTHROPIC_API_KEY"):
        logger.info("classifier_disabled", reason="ANTHROPIC_API_KEY not set")
        return None
    client = anthropic.AsyncAnthropic(max_retries=config.classifier.max_retries)
    return MessageClassifier(client, config, store)
