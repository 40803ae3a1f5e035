from app.schemas.conversation import ConversationOut
from app.schemas.message import AgentMessageRequest, AgentMessageResponse, MessageOut
from app.schemas.widget import (
    WidgetConfigResponse,
    WidgetConversationResponse,
    WidgetMessageRequest,
    WidgetMessageResponse,
    WidgetMessagesResponse,
)

__all__ = [
    "AgentMessageRequest",
    "AgentMessageResponse",
    "ConversationOut",
    "MessageOut",
    "WidgetConfigResponse",
    "WidgetConversationResponse",
    "WidgetMessageRequest",
    "WidgetMessageResponse",
    "WidgetMessagesResponse",
]
