"""
ChatClient - request/response and streaming chat surface over a backend.

Each call builds a fresh Conversation from the supplied messages, so the
client itself holds no history. Tools registered on the client are
offered on every request alongside any per-request options.tools.
"""

import logging
from typing import Any, Callable, Iterable, Optional, Union

from lmchat.config import EngineDefaults
from lmchat.conversation import Conversation
from lmchat.errors import UnsupportedRoleError
from lmchat.prompt import ChatTemplate
from lmchat.schemas import (
    ChatMessage,
    ChatOptions,
    ChatRole,
    ClientMetadata,
    GenerationResult,
    Tool,
    ToolChoice,
)
from lmchat.streaming import TextStream
from lmchat.tools import ToolRegistry

logger = logging.getLogger(__name__)

MessageLike = Union[ChatMessage, dict]


def to_message(message: MessageLike) -> ChatMessage:
    """
    Accept a ChatMessage or an OpenAI-style {"role", "content"} dict.

    Raises:
        UnsupportedRoleError: Unknown role
    """
    if isinstance(message, ChatMessage):
        return message
    role = message.get("role")
    try:
        chat_role = ChatRole(role)
    except ValueError:
        raise UnsupportedRoleError(f"Unsupported chat role: {role!r}") from None
    return ChatMessage(
        role=chat_role,
        text=message.get("content") or message.get("text") or "",
        tool_call_id=message.get("tool_call_id"),
    )


class ChatClient:
    """
    Chat client over a ModelBackend.

    Example:
        client = ChatClient(backend)
        client.register_tool(get_weather)
        result = await client.complete([ChatMessage.user("Weather in Paris?")])
    """

    def __init__(
        self,
        backend,
        default_options: Optional[ChatOptions] = None,
        defaults: Optional[EngineDefaults] = None,
        template: Optional[ChatTemplate] = None,
    ):
        """
        Args:
            backend: ModelBackend implementation
            default_options: Used when a request passes no options
            defaults: Engine-wide defaults for unset option fields
            template: Prompt template (default: ChatML)
        """
        self.backend = backend
        self.default_options = default_options
        self.defaults = defaults or EngineDefaults()
        self.template = template or ChatTemplate()
        self._registry = ToolRegistry()

    @property
    def metadata(self) -> ClientMetadata:
        return ClientMetadata(model_id=self.backend.model_id)

    def register_tool(self, tool: Union[Tool, Callable[..., Any]]) -> Tool:
        """Register a tool offered on every request. Raises DuplicateToolError."""
        return self._registry.register(tool)

    def set_tool_choice(self, choice: Union[ToolChoice, str, dict]) -> None:
        """Set the default tool choice policy. Raises ConfigurationError."""
        self._registry.set_choice(choice)

    def _effective_options(self, options: Optional[ChatOptions]) -> ChatOptions:
        # request options replace the client defaults, they are not merged
        if options is not None:
            return options
        return self.default_options or ChatOptions()

    def conversation(self, messages: Iterable[MessageLike]) -> Conversation:
        """Build a Conversation seeded with messages and the client's tools."""
        registry = ToolRegistry(self._registry.tools(), choice=self._registry.choice())
        return Conversation(
            self.backend,
            [to_message(m) for m in messages],
            registry=registry,
            defaults=self.defaults,
            template=self.template,
        )

    async def complete(
        self,
        messages: Iterable[MessageLike],
        options: Optional[ChatOptions] = None,
    ) -> GenerationResult:
        """
        Generate one assistant turn.

        Raises:
            ConfigurationError: Invalid or conflicting options (before decoding)
            EngineFailure: Backend failure
        """
        conversation = self.conversation(messages)
        return await conversation.generate(self._effective_options(options))

    def stream_complete(
        self,
        messages: Iterable[MessageLike],
        options: Optional[ChatOptions] = None,
    ) -> TextStream:
        """
        Generate one assistant turn as a stream of visible text fragments.

        Option validation happens here, before the stream is returned.
        """
        conversation = self.conversation(messages)
        return conversation.stream(self._effective_options(options))
