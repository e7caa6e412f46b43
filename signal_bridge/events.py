"""
Event model and classification.

signal-cli --output json emits one envelope per line. The shapes we care about:

    receipt:   {"envelope": {"source": ..., "receiptMessage":
                   {"isDelivery": true, "isRead": false, "timestamps": [...]}}}
    reflected: {"envelope": {"source": <operator>, "syncMessage":
                   {"sentMessage": {"message": ..., "timestamp": ...,
                                    "groupInfo": {"groupId": ...}}}}}
    received:  {"envelope": {"source": ..., "dataMessage":
                   {"message": ..., "timestamp": ..., "groupInfo": {...}}}}

Everything else (typing indicators, read receipts, attachments without text)
is ignorable.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class EventKind(Enum):
    RECEIPT = "receipt"
    REFLECTED = "reflected"
    RECEIVED = "received"
    IGNORABLE = "ignorable"


def _mapping(value) -> dict:
    return value if isinstance(value, dict) else {}


def _int_or_none(value) -> Optional[int]:
    # bool is an int subclass
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


@dataclass(frozen=True)
class Recipient:
    """Where a reply goes. Transports decide how to spell a group address."""
    identifier: str
    is_group: bool = False

    @classmethod
    def group(cls, group_id: str) -> "Recipient":
        return cls(identifier=group_id, is_group=True)

    @classmethod
    def individual(cls, address: str) -> "Recipient":
        return cls(identifier=address, is_group=False)

    def __str__(self):
        if self.is_group:
            return f"group:{self.identifier[:20]}"
        return self.identifier


@dataclass
class IncomingEvent:
    """One polled unit from the transport."""
    source: Optional[str] = None
    timestamp: Optional[int] = None
    group_id: Optional[str] = None
    text: Optional[str] = None
    is_sync: bool = False                       # text came from a linked-device echo
    receipt_timestamps: tuple[int, ...] = field(default_factory=tuple)
    is_delivery: bool = False
    is_read: bool = False

    @classmethod
    def from_envelope(cls, raw: dict) -> "IncomingEvent":
        """
        Build an event from one decoded signal-cli JSON line.

        Sections with an unexpected type are treated as absent, so an
        unrecognized shape comes out ignorable instead of raising.
        """
        env = _mapping(raw.get('envelope', raw))
        source = env.get('source') or env.get('sourceNumber') or env.get('sourceUuid')
        envelope_ts = _int_or_none(env.get('timestamp'))

        receipt = _mapping(env.get('receiptMessage'))
        sent = _mapping(_mapping(env.get('syncMessage')).get('sentMessage'))
        data = _mapping(env.get('dataMessage'))

        timestamps = receipt.get('timestamps')
        if not isinstance(timestamps, list):
            timestamps = []

        event = cls(
            source=source if isinstance(source, str) else None,
            timestamp=envelope_ts,
            receipt_timestamps=tuple(ts for ts in map(_int_or_none, timestamps) if ts is not None),
            is_delivery=receipt.get('isDelivery') is True,
            is_read=receipt.get('isRead') is True,
        )

        # A sync echo wins over a data message when both carry text
        for message, is_sync in ((sent, True), (data, False)):
            text = message.get('message')
            if isinstance(text, str) and text:
                event.text = text
                event.is_sync = is_sync
                event.timestamp = _int_or_none(message.get('timestamp')) or envelope_ts
                group_id = _mapping(message.get('groupInfo')).get('groupId')
                event.group_id = group_id if isinstance(group_id, str) else None
                break

        return event

    def reply_recipient(self) -> Optional[Recipient]:
        """Recipient for a message we received: its group, else its sender."""
        if self.group_id:
            return Recipient.group(self.group_id)
        if self.source:
            return Recipient.individual(self.source)
        return None


def classify(event: IncomingEvent) -> EventKind:
    """Decide what an event is. Pure, no side effects."""
    if event.receipt_timestamps and event.is_delivery:
        return EventKind.RECEIPT
    if event.text:
        return EventKind.REFLECTED if event.is_sync else EventKind.RECEIVED
    return EventKind.IGNORABLE


def describe(event: IncomingEvent) -> str:
    """Short one-line rendering for debug logs."""
    kind = classify(event)
    if kind is EventKind.RECEIPT:
        return f"receipt from={event.source} ts={list(event.receipt_timestamps)}"
    if kind is EventKind.IGNORABLE:
        return f"ignorable from={event.source}"
    where = event.group_id[:20] if event.group_id else 'DM'
    return f"{kind.value} from={event.source} group={where} ts={event.timestamp} text={event.text[:100]}"
