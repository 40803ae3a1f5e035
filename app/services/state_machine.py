from enum import Enum
from typing import Union


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ConversationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


# Receipts may arrive out of order; a read receipt can skip "delivered"
MESSAGE_TRANSITIONS = {
    MessageStatus.SENT: [MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED],
    MessageStatus.DELIVERED: [MessageStatus.READ],
    MessageStatus.READ: [],
    MessageStatus.FAILED: [],
}

CONVERSATION_TRANSITIONS = {
    ConversationStatus.OPEN: [ConversationStatus.CLOSED],
    ConversationStatus.CLOSED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Enum, to_state: Enum):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def can_transition_message(from_status: Union[str, MessageStatus], to_status: Union[str, MessageStatus]) -> bool:
    """Check if a receipt may move a message from one status to another."""
    current = _coerce(MessageStatus, from_status)
    target = _coerce(MessageStatus, to_status)
    if current is None or target is None:
        return False
    return target in MESSAGE_TRANSITIONS[current]


def close(current: Union[str, ConversationStatus]) -> ConversationStatus:
    """Close an open conversation. Raises InvalidTransitionError otherwise."""
    state = ConversationStatus(current)
    if ConversationStatus.CLOSED not in CONVERSATION_TRANSITIONS[state]:
        raise InvalidTransitionError(state, ConversationStatus.CLOSED)
    return ConversationStatus.CLOSED
