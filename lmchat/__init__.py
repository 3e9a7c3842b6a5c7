"""lmchat - local tool-augmented chat completion with streaming output."""

from lmchat.client import ChatClient
from lmchat.config import EngineDefaults
from lmchat.conversation import Conversation, ConversationState
from lmchat.errors import (
    ConcurrencyViolationError,
    ConfigurationError,
    DuplicateToolError,
    EngineFailure,
    LMChatError,
    MalformedToolArguments,
    ToolExecutionError,
    ToolNotFoundError,
    UnsupportedRoleError,
    UnsupportedStopReasonError,
)
from lmchat.schemas import (
    ChatHistory,
    ChatMessage,
    ChatOptions,
    ChatRole,
    FinishReason,
    GenerationResult,
    ResponseFormat,
    StopReason,
    Tool,
    ToolChoice,
    ToolDescriptor,
)
from lmchat.streaming import TextStream
from lmchat.tools import ToolRegistry, tool, tool_from_function

__all__ = [
    "ChatClient",
    "ChatHistory",
    "ChatMessage",
    "ChatOptions",
    "ChatRole",
    "ConcurrencyViolationError",
    "ConfigurationError",
    "Conversation",
    "ConversationState",
    "DuplicateToolError",
    "EngineDefaults",
    "EngineFailure",
    "FinishReason",
    "GenerationResult",
    "LMChatError",
    "MalformedToolArguments",
    "ResponseFormat",
    "StopReason",
    "TextStream",
    "Tool",
    "ToolChoice",
    "ToolDescriptor",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolRegistry",
    "UnsupportedRoleError",
    "UnsupportedStopReasonError",
    "tool",
    "tool_from_function",
]
