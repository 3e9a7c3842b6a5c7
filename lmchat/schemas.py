"""
Data model for lmchat.

Pydantic models for everything that crosses the public surface
(messages, options, results) plus the decoding-constraint sum type
the conversation state machine dispatches on.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lmchat.errors import ConfigurationError, UnsupportedStopReasonError

if TYPE_CHECKING:
    from lmchat.grammar import JsonGrammar
    from lmchat.tools import ToolRegistry


EMPTY_INPUT_SCHEMA: dict = {"type": "object", "properties": {}}


# ─────────────────────────────────────────────────────────────────────
# MESSAGES
# ─────────────────────────────────────────────────────────────────────


class ChatRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallRef(BaseModel):
    """A tool call issued by the model inside an assistant message."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """
    A single message in a conversation.

    Immutable once built. Tool-role messages carry the id of the call
    they answer; assistant messages may carry the calls they issued.
    """
    model_config = ConfigDict(frozen=True)

    role: ChatRole
    text: str = ""
    tool_calls: tuple[ToolCallRef, ...] = ()
    tool_call_id: Optional[str] = None

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls(role=ChatRole.SYSTEM, text=text)

    @classmethod
    def user(cls, text: str) -> "ChatMessage":
        return cls(role=ChatRole.USER, text=text)

    @classmethod
    def assistant(cls, text: str, tool_calls: tuple[ToolCallRef, ...] = ()) -> "ChatMessage":
        return cls(role=ChatRole.ASSISTANT, text=text, tool_calls=tool_calls)

    @classmethod
    def tool(cls, text: str, tool_call_id: Optional[str] = None) -> "ChatMessage":
        return cls(role=ChatRole.TOOL, text=text, tool_call_id=tool_call_id)


class ChatHistory:
    """
    Ordered, append-only sequence of ChatMessage.

    Owned by exactly one Conversation. Messages are never removed or
    reordered.
    """

    def __init__(self, messages: Optional[list[ChatMessage]] = None):
        self._messages: list[ChatMessage] = []
        for message in messages or []:
            self.append(message)

    def append(self, message: ChatMessage) -> None:
        if not isinstance(message, ChatMessage):
            raise TypeError(f"Expected ChatMessage, got {type(message).__name__}")
        self._messages.append(message)

    def extend(self, messages: list[ChatMessage]) -> None:
        for message in messages:
            self.append(message)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> ChatMessage:
        return self._messages[index]

    def to_list(self) -> list[ChatMessage]:
        return list(self._messages)


# ─────────────────────────────────────────────────────────────────────
# TOOLS
# ─────────────────────────────────────────────────────────────────────


class ToolDescriptor(BaseModel):
    """Name, description and JSON input schema of a callable tool."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: dict(EMPTY_INPUT_SCHEMA))

    @model_validator(mode="after")
    def _name_not_empty(self) -> "ToolDescriptor":
        if not self.name or not self.name.strip():
            raise ValueError("Tool 'name' cannot be empty")
        return self


class Tool(BaseModel):
    """A descriptor bound to the callable that implements it.

    The handler receives the parsed arguments as keyword arguments and
    may be a plain function or a coroutine function.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    descriptor: ToolDescriptor
    handler: Callable[..., Any]

    @property
    def name(self) -> str:
        return self.descriptor.name


class ToolChoice(BaseModel):
    """
    Tool choice policy: auto, none, required, or specific(name).

    Unrecognised modes fail loudly instead of falling back to auto.
    """
    model_config = ConfigDict(frozen=True)

    mode: Literal["auto", "none", "required", "specific"] = "auto"
    name: Optional[str] = None

    @model_validator(mode="after")
    def _check_name(self) -> "ToolChoice":
        if self.mode == "specific" and not self.name:
            raise ValueError("specific tool choice requires a tool name")
        if self.mode != "specific" and self.name is not None:
            raise ValueError(f"tool name is only valid for specific choice, not {self.mode!r}")
        return self

    @classmethod
    def auto(cls) -> "ToolChoice":
        return cls(mode="auto")

    @classmethod
    def none(cls) -> "ToolChoice":
        return cls(mode="none")

    @classmethod
    def required(cls) -> "ToolChoice":
        return cls(mode="required")

    @classmethod
    def specific(cls, name: str) -> "ToolChoice":
        return cls(mode="specific", name=name)

    @classmethod
    def parse(cls, value: Union["ToolChoice", str, dict, None]) -> "ToolChoice":
        """
        Build a ToolChoice from a string, a {"name": ...} dict, or an instance.

        Raises:
            ConfigurationError: For unknown modes or malformed values.
        """
        if value is None:
            return cls.auto()
        if isinstance(value, ToolChoice):
            return value
        if isinstance(value, str):
            if value in ("auto", "none", "required"):
                return cls(mode=value)
            raise ConfigurationError(f"Unknown tool choice mode: {value!r}")
        if isinstance(value, dict):
            name = value.get("name")
            if name is None and isinstance(value.get("function"), dict):
                name = value["function"].get("name")
            if isinstance(name, str) and name:
                return cls.specific(name)
            raise ConfigurationError(f"Specific tool choice needs a tool name: {value!r}")
        raise ConfigurationError(f"Unsupported tool choice value: {value!r}")


# ─────────────────────────────────────────────────────────────────────
# OPTIONS
# ─────────────────────────────────────────────────────────────────────


class ResponseFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


class SamplingConfig(BaseModel):
    """Per-request sampling parameters. None means engine default."""
    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = Field(default=None, ge=0.0)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    top_k: Optional[int] = Field(default=None, ge=0)
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    seed: Optional[int] = None


class ChatOptions(BaseModel):
    """
    Recognised request options.

    Every field is optional; unset values fall back to EngineDefaults.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    temperature: Optional[float] = Field(default=None, ge=0.0)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    top_k: Optional[int] = Field(default=None, ge=0)
    max_output_tokens: Optional[int] = None
    stop_sequences: list[str] = Field(default_factory=list)
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    seed: Optional[int] = None
    tools: list[Tool] = Field(default_factory=list)
    tool_choice: Optional[ToolChoice] = None
    response_format: ResponseFormat = ResponseFormat.TEXT
    max_tool_calls: Optional[int] = None
    auto_invoke_tools: bool = True

    @field_validator("tool_choice", mode="before")
    @classmethod
    def _parse_tool_choice(cls, value: Any) -> Optional[ToolChoice]:
        if value is None:
            return None
        return ToolChoice.parse(value)

    @property
    def sampling(self) -> SamplingConfig:
        return SamplingConfig(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
            seed=self.seed,
        )


# ─────────────────────────────────────────────────────────────────────
# RESULTS
# ─────────────────────────────────────────────────────────────────────


class StopReason(str, Enum):
    END_OF_GENERATION = "end_of_generation"
    STOP_SEQUENCE_DETECTED = "stop_sequence_detected"
    MAX_TOKEN_LIMIT_REACHED = "max_token_limit_reached"
    CONTEXT_SIZE_LIMIT_EXCEEDED = "context_size_limit_exceeded"
    TOOL_INVOCATION_REQUESTED = "tool_invocation_requested"


class FinishReason(str, Enum):
    """Chat-client finish reason, coarser than StopReason."""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"


FINISH_REASONS: dict[StopReason, FinishReason] = {
    StopReason.END_OF_GENERATION: FinishReason.STOP,
    StopReason.STOP_SEQUENCE_DETECTED: FinishReason.STOP,
    StopReason.MAX_TOKEN_LIMIT_REACHED: FinishReason.LENGTH,
    StopReason.CONTEXT_SIZE_LIMIT_EXCEEDED: FinishReason.LENGTH,
    StopReason.TOOL_INVOCATION_REQUESTED: FinishReason.TOOL_CALLS,
}


def to_finish_reason(reason: Any) -> FinishReason:
    """Map a StopReason onto its FinishReason.

    Raises:
        UnsupportedStopReasonError: If the value is not a mapped StopReason.
    """
    try:
        return FINISH_REASONS[StopReason(reason)]
    except (KeyError, ValueError):
        raise UnsupportedStopReasonError(f"Unsupported stop reason: {reason!r}") from None


class UsageDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class GenerationResult(BaseModel):
    """
    Outcome of one assistant turn. Produced once, never mutated.

    completion holds every user-visible fragment of the turn, in order.
    tool_calls lists calls the model requested that were NOT executed
    (tool-call depth exhausted, or automatic invocation disabled).
    messages lists what the turn appended to the conversation history.
    """
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    completion: str
    stop_reason: StopReason
    prompt_tokens: int = 0
    generated_tokens: int = 0
    tool_calls: tuple[ToolCallRef, ...] = ()
    messages: tuple[ChatMessage, ...] = ()
    model_id: Optional[str] = None

    @property
    def finish_reason(self) -> FinishReason:
        return to_finish_reason(self.stop_reason)

    @property
    def usage(self) -> UsageDetails:
        return UsageDetails(input_tokens=self.prompt_tokens, output_tokens=self.generated_tokens)


class ClientMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    provider: str = "lmchat"
    model_id: Optional[str] = None


class SegmentKind(str, Enum):
    USER_VISIBLE = "user_visible"
    INTERNAL = "internal"


class StreamingSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    kind: SegmentKind = SegmentKind.USER_VISIBLE


# ─────────────────────────────────────────────────────────────────────
# DECODING CONSTRAINT (sum type)
# ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FreeDecoding:
    """No structural constraint and no tools."""


@dataclass(frozen=True)
class GrammarConstrained:
    """Output restricted to a formal grammar. Tools cannot be offered."""
    grammar: "JsonGrammar"


@dataclass(frozen=True)
class ToolAugmented:
    """Tools offered under the registry's choice policy. No grammar."""
    registry: "ToolRegistry"


DecodingConstraint = Union[FreeDecoding, GrammarConstrained, ToolAugmented]
