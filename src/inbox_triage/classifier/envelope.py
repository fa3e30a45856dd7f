"""Normalized message envelope passed through the triage pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from email.utils import parseaddr
from typing import TYPE_CHECKING

from inbox_triage.classifier.taxonomy import Channel, parse_enum

if TYPE_CHECKING:
    from inbox_triage.db.store import Message


def normalize_sender(raw: str | None) -> str:
    """Lowercase a sender and strip any display name ('Ann <a@b.com>' -> 'a@b.com')."""
    if not raw:
        return ""
    raw = raw.strip()
    if "<" in raw:
        _, address = parseaddr(raw)
        if address:
            raw = address
    return raw.strip().lower()


def extract_domain(address: str) -> str:
    """The part of an address after the last '@', or '' when there is none."""
    if "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip().lower()


@dataclass(frozen=True, slots=True)
class MessageEnvelope:
    """What the gatekeeper and classifier see of a message."""

    sender: str
    subject: str = ""
    body: str = ""
    recipient: str = ""
    channel: Channel = Channel.EMAIL
    message_id: str | None = None

    @property
    def sender_address(self) -> str:
        return normalize_sender(self.sender)

    @property
    def sender_domain(self) -> str:
        return extract_domain(self.sender_address)

    @classmethod
    def from_message(cls, message: Message, channel: str | None = None) -> MessageEnvelope:
        """Build an envelope from a stored message."""
        return cls(
            sender=message.sender or "",
            subject=message.subject or "",
            body=message.body or "",
            recipient=message.recipient or "",
            channel=parse_enum(Channel, channel, default=Channel.EMAIL),
            message_id=message.id,
        )
