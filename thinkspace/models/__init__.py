# Database models package
from thinkspace.models.request_job import ConversationRequestJob
from thinkspace.models.conversation import Conversation, ConversationMessage, Technique
from thinkspace.models.usage_event import UsageEvent
from thinkspace.models.user_account import UserAccount

__all__ = [
    "ConversationRequestJob",
    "Conversation",
    "ConversationMessage",
    "Technique",
    "UsageEvent",
    "UserAccount",
]
