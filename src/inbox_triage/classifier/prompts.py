"""Prompt assembler and tool definition for Claude message classification.

The system prompt is built per tenant: it depends on the tenant's business
context, not on the message. Directives are appended only when they apply,
so the VIP directive only appears for messages from a VIP domain. The user
message is assembled per message.

Usage:
    from inbox_triage.classifier.prompts import PromptAssembler, ROUTE_MESSAGE_TOOL

    assembler = PromptAssembler()
    system = assembler.build_system_prompt(business, sender_domain="acme.com")
    message = assembler.build_user_message(envelope, max_body_chars=4000)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.taxonomy import Bucket, Category, RiskLevel, Sentiment, Urgency

if TYPE_CHECKING:
    from inbox_triage.classifier.envelope import MessageEnvelope
    from inbox_triage.config_schema import BusinessContextConfig

# ---------------------------------------------------------------------------
# Tool definition
# ---------------------------------------------------------------------------

TOOL_NAME = "route_message"

ROUTE_MESSAGE_TOOL: dict[str, Any] = {
    "name": TOOL_NAME,
    "description": "Decide what action the business owner should take on this message",
    "input_schema": {
        "type": "object",
        "properties": {
            "decision": {
                "type": "object",
                "properties": {
                    "bucket": {
                        "type": "string",
                        "enum": [b.value for b in Bucket],
                        "description": (
                            "act_now (urgent), quick_win (fast to clear), "
                            "auto_handled (no human needed), wait (defer)"
                        ),
                    },
                    "why_this_needs_you": {
                        "type": "string",
                        "description": "Human-readable explanation in 10 words or less",
                    },
                    "confidence": {
                        "type": "number",
                        "minimum": 0.0,
                        "maximum": 1.0,
                        "description": "Confidence score from 0 to 1",
                    },
                },
                "required": ["bucket", "why_this_needs_you", "confidence"],
            },
            "classification": {
                "type": "object",
                "properties": {
                    "category": {
                        "type": "string",
                        "enum": [c.value for c in Category],
                    },
                    "requires_reply": {
                        "type": "boolean",
                        "description": "Whether this message requires a human response",
                    },
                },
                "required": ["category", "requires_reply"],
            },
            "risk": {
                "type": "object",
                "properties": {
                    "level": {
                        "type": "string",
                        "enum": [r.value for r in RiskLevel],
                        "description": "Type of risk if this message is ignored",
                    },
                    "cognitive_load": {
                        "type": "string",
                        "enum": ["high", "low"],
                    },
                },
                "required": ["level"],
            },
            "priority": {
                "type": "object",
                "properties": {
                    "urgency": {"type": "string", "enum": [u.value for u in Urgency]},
                    "urgency_reason": {"type": "string"},
                },
                "required": ["urgency"],
            },
            "sentiment": {
                "type": "object",
                "properties": {
                    "tone": {"type": "string", "enum": [s.value for s in Sentiment]},
                },
                "required": ["tone"],
            },
            "entities": {
                "type": "object",
                "properties": {
                    "customer_name": {"type": "string"},
                    "phone_number": {"type": "string"},
                    "address": {"type": "string"},
                    "date_mentioned": {"type": "string"},
                    "order_id": {"type": "string"},
                    "amount": {"type": "string"},
                    "service_type": {"type": "string"},
                },
            },
            "summary": {
                "type": "string",
                "description": "One-line summary, max 100 characters",
            },
            "reasoning": {
                "type": "string",
                "description": "Brief explanation of the decision",
            },
        },
        "required": ["decision", "classification", "risk", "priority", "sentiment", "reasoning"],
    },
}


class PromptAssembler:
    """Builds classification prompts with conditional directive sections."""

    def build_system_prompt(
        self,
        business: BusinessContextConfig | None = None,
        sender_domain: str = "",
    ) -> str:
        """Assemble the system prompt plus any business-context directives.

        Args:
            business: Tenant business context (None for no directives)
            sender_domain: Domain of the message sender, for the VIP directive
        """
        directives = self.build_directives(business, sender_domain)
        prompt = _SYSTEM_PROMPT
        if business and business.context.strip():
            prompt += f"\n\nABOUT THIS BUSINESS:\n{business.context.strip()}"
        if directives:
            prompt += "\n\n" + "\n\n".join(f"CONTEXT: {d}" for d in directives)
        return prompt

    def build_directives(
        self,
        business: BusinessContextConfig | None,
        sender_domain: str = "",
    ) -> list[str]:
        """The directive sentences that apply to this tenant and sender."""
        if business is None:
            return []

        directives: list[str] = []
        if business.is_hiring:
            directives.append(
                "The business is currently hiring. Job applications should go to "
                "the wait bucket unless urgent."
            )
        if business.active_payment_dispute:
            directives.append(
                "There is an active payment dispute. Payment processor messages are "
                "act_now with financial risk."
            )
        if sender_domain and sender_domain.lower() in business.vip_domains:
            directives.append(
                "This sender is from a VIP customer domain. Treat as act_now with retention risk."
            )
        return directives

    def build_user_message(self, envelope: MessageEnvelope, max_body_chars: int = 4000) -> str:
        """Assemble the per-message user content."""
        body = envelope.body or ""
        if len(body) > max_body_chars:
            body = body[:max_body_chars] + "\n[truncated]"

        parts = [
            "Route this message to the appropriate decision bucket:",
            "",
            f"CHANNEL: {envelope.channel.value}",
            f"FROM: {envelope.sender or 'Unknown'}",
            f"TO: {envelope.recipient or 'Unknown'}",
            f"SUBJECT: {envelope.subject or '(no subject)'}",
            "",
            "BODY:",
            body or "(empty)",
        ]
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are an operations manager for a service business. For every inbound \
message you decide what the business owner should DO about it, using the \
route_message tool.

DECISION BUCKETS (pick one):
- act_now: Needs immediate human attention. Upset customers, payment issues, \
cancellation threats, anything due today or tomorrow, legal or reputation risk.
- quick_win: Can be cleared in under 30 seconds. Simple confirmations, yes/no \
replies, template responses.
- auto_handled: No human action needed. Newsletters, automated notifications, \
receipts, spam.
- wait: Can be deferred. FYI updates, low priority information.

WHY THIS NEEDS YOU:
Always give a short human-readable reason, e.g. "Customer upset about late \
visit" or "Automated receipt - no action needed".

RISK (harm if ignored):
- financial: could cost money (unpaid invoice, cancelled booking, refund demand)
- retention: could lose this customer
- reputation: could damage the business's public image
- legal: formal complaint or regulatory exposure
- none: no significant risk

CONFIDENCE:
Report how sure you are. Be honest: low confidence sends the message to a \
human, which is always safe.

NOTES:
- The business RECEIVES invoices from suppliers; an invoice addressed to the \
business is supplier_invoice and may need payment.
- When in doubt, escalate. Over-escalating is safer than missing something.
- Look for emotional signals: frustration, urgency, threats, or praise.
- Consider the sender: known customer, new lead, supplier, or automated system.\
"""
