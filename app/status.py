"""
Message lifecycle states and the transition table.

    pending -> sent -> delivered -> read
       |        |         |
       +--------+---------+------> failed

read and failed are terminal. A provider report is applied only when the
table allows it, so stale callbacks cannot move a message backwards.
"""

from enum import Enum
from typing import FrozenSet, Optional


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["MessageStatus"]:
        """Map a provider status string onto a status, None if unknown."""
        try:
            return cls((value or "").lower())
        except ValueError:
            return None


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"


ALLOWED_TRANSITIONS = {
    MessageStatus.PENDING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset(
        {MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED}
    ),
    MessageStatus.DELIVERED: frozenset(
        {MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED}
    ),
    MessageStatus.READ: frozenset(),
    MessageStatus.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[MessageStatus(current)]


def sources_for(target: MessageStatus) -> FrozenSet[MessageStatus]:
    """All states from which ``target`` may be reached."""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )
