"""toolstream: streaming LLM agent engine with host tool calling.

Public API: AgentSession, ClaudeProvider, Settings, the tool registry
types, and the event types hosts subscribe to.
"""

from toolstream.api.models import CodeContext, ConversationMessage, TokenUsage, ToolCall
from toolstream.api.provider import ClaudeProvider, TurnState
from toolstream.api.session import AgentSession, ChatResult
from toolstream.config import Settings
from toolstream.events import AgentEvent, EventEmitter, EventType
from toolstream.tools import ToolDispatcher, ToolParam, ToolRegistry, ToolResult, ToolSet

__all__ = [
    "AgentSession",
    "ChatResult",
    "ClaudeProvider",
    "Settings",
    "TurnState",
    # Conversation
    "CodeContext",
    "ConversationMessage",
    "TokenUsage",
    "ToolCall",
    # Events
    "AgentEvent",
    "EventEmitter",
    "EventType",
    # Tools
    "ToolDispatcher",
    "ToolParam",
    "ToolRegistry",
    "ToolResult",
    "ToolSet",
]
