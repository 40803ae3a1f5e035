from app.services.conversation_service import (
    close_conversation,
    find_or_create,
    get_conversation,
    mark_handoff,
    update_last_message,
)
from app.services.message_service import (
    save_message,
    update_status_by_external_id,
)
from app.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    MessageStatus,
    can_transition_message,
    close,
)
