"""Import all models so SQLModel.metadata picks them up."""

from agentdesk.models.agent_session import (
    AgentSession,
    AgentSessionDetail,
    AgentSessionRead,
    AgentType,
    SessionStatus,
)
from agentdesk.models.message import ChatMessage, ChatMessageRead, MessageRole
from agentdesk.models.profile import ProfileRead, SubscriptionPlan, UserProfile
from agentdesk.models.prompt_template import PromptTemplate
from agentdesk.models.usage_log import UsageEventType, UsageLog, UsageLogRead

__all__ = [
    "AgentSession",
    "AgentSessionDetail",
    "AgentSessionRead",
    "AgentType",
    "ChatMessage",
    "ChatMessageRead",
    "MessageRole",
    "ProfileRead",
    "PromptTemplate",
    "SessionStatus",
    "SubscriptionPlan",
    "UsageEventType",
    "UsageLog",
    "UsageLogRead",
    "UserProfile",
]
