"""
Conversation state machine - one chat history and its decode loop.

States:
    idle -> decoding -> completed
                     -> tool_pending -> decoding   (tool result appended)

Each decode step:
    cancel check -> backend logits -> grammar / signal masking -> sampling
    -> token text -> signal scanning (visible / internal / call)
    -> termination checks: stop sequence, max tokens, context limit

A Conversation is not safe for concurrent use: a second generate() while
one is in flight raises ConcurrencyViolationError.
"""

import asyncio
import json
import logging
from collections import Counter
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from lmchat.config import EngineDefaults
from lmchat.errors import (
    ConcurrencyViolationError,
    ConfigurationError,
    EngineFailure,
    ToolExecutionError,
    ToolNotFoundError,
)
from lmchat.grammar import JsonGrammar
from lmchat.prompt import ChatTemplate
from lmchat.sampling import SamplingPolicy
from lmchat.schemas import (
    ChatHistory,
    ChatMessage,
    ChatOptions,
    DecodingConstraint,
    FreeDecoding,
    GenerationResult,
    GrammarConstrained,
    ResponseFormat,
    SegmentKind,
    StopReason,
    StreamingSegment,
    ToolAugmented,
    ToolCallRef,
)
from lmchat.tool_parsers import (
    TOOL_CALL_OPEN,
    ScanEvent,
    ToolSignalScanner,
    parse_signal,
    partial_marker_length,
)
from lmchat.tools import ToolRegistry, format_tool_error, parse_arguments

if TYPE_CHECKING:
    from lmchat.backends.base import ModelBackend
    from lmchat.streaming import TextStream

logger = logging.getLogger(__name__)

Emit = Callable[[StreamingSegment], Awaitable[None]]


class ConversationState(str, Enum):
    IDLE = "idle"
    DECODING = "decoding"
    TOOL_PENDING = "tool_pending"
    COMPLETED = "completed"


def build_constraint(options: ChatOptions, registry: ToolRegistry) -> DecodingConstraint:
    """
    Choose the decoding constraint for a request.

    Raises:
        ConfigurationError: JSON format requested while tools are registered,
            or a specific tool choice names an unregistered tool.
    """
    registry.validate()
    if options.response_format == ResponseFormat.JSON:
        if len(registry):
            raise ConfigurationError(
                "A response format constraint cannot be combined with tools "
                f"(registered: {', '.join(registry.names())})"
            )
        return GrammarConstrained(JsonGrammar())
    if len(registry):
        return ToolAugmented(registry)
    return FreeDecoding()


def validate_options(options: ChatOptions) -> None:
    if options.max_output_tokens is not None and options.max_output_tokens <= 0:
        raise ConfigurationError(f"max_output_tokens must be positive, got {options.max_output_tokens}")
    if options.max_tool_calls is not None and options.max_tool_calls < 0:
        raise ConfigurationError(f"max_tool_calls cannot be negative, got {options.max_tool_calls}")
    if any(not s for s in options.stop_sequences):
        raise ConfigurationError("stop_sequences cannot contain empty strings")


class Conversation:
    """
    A chat history bound to a backend.

    Owns the history exclusively; every turn appends to it. Tools
    registered here are offered on every turn, plus any per-request
    options.tools.
    """

    def __init__(
        self,
        backend: "ModelBackend",
        history: Optional[Union[ChatHistory, list[ChatMessage]]] = None,
        registry: Optional[ToolRegistry] = None,
        defaults: Optional[EngineDefaults] = None,
        template: Optional[ChatTemplate] = None,
    ):
        self.backend = backend
        if isinstance(history, ChatHistory):
            self.history = history
        else:
            self.history = ChatHistory(history)
        self.registry = registry if registry is not None else ToolRegistry()
        self.defaults = defaults or EngineDefaults()
        self.template = template or ChatTemplate()
        self.state = ConversationState.IDLE
        self._in_flight = False

    @property
    def busy(self) -> bool:
        return self._in_flight

    def _claim(self) -> None:
        if self._in_flight:
            raise ConcurrencyViolationError()
        self._in_flight = True

    def _release(self) -> None:
        self._in_flight = False
        if self.state != ConversationState.COMPLETED:
            self.state = ConversationState.IDLE

    def _request_registry(self, options: ChatOptions) -> ToolRegistry:
        if not options.tools and options.tool_choice is None:
            return self.registry
        choice = options.tool_choice or self.registry.choice()
        registry = ToolRegistry(self.registry.tools(), choice=choice)
        for t in options.tools:
            registry.register(t)
        return registry

    def prepare(self, options: Optional[ChatOptions] = None) -> "_Turn":
        """Validate options and set up one turn. Raises ConfigurationError before any decoding."""
        options = options or ChatOptions()
        validate_options(options)
        registry = self._request_registry(options)
        constraint = build_constraint(options, registry)
        return _Turn(self, options, constraint)

    async def generate(
        self,
        options: Optional[ChatOptions] = None,
        emit: Optional[Emit] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[GenerationResult]:
        """
        Run one assistant turn over the current history.

        Args:
            options: Request options (engine defaults fill unset fields)
            emit: Awaited with every StreamingSegment as it is decoded
            cancel: Cooperative cancellation flag, checked between steps

        Returns:
            GenerationResult, or None if the turn was cancelled

        Raises:
            ConcurrencyViolationError: A turn is already running
            ConfigurationError: Invalid or conflicting options
            EngineFailure: The backend failed
        """
        self._claim()
        try:
            turn = self.prepare(options)
            return await turn.run(emit, cancel)
        finally:
            self._release()

    async def submit(self, text: str, options: Optional[ChatOptions] = None) -> Optional[GenerationResult]:
        """Append a user message, then generate."""
        if self._in_flight:
            raise ConcurrencyViolationError()
        self.history.append(ChatMessage.user(text))
        return await self.generate(options)

    def stream(self, options: Optional[ChatOptions] = None) -> "TextStream":
        """
        Run one turn on a background task, yielding visible text fragments.

        Validation and the in-flight claim happen here, synchronously.
        """
        from lmchat.streaming import TextStream

        self._claim()
        try:
            turn = self.prepare(options)
        except BaseException:
            self._release()
            raise

        async def produce(emit: Emit, cancel: asyncio.Event) -> Optional[GenerationResult]:
            try:
                return await turn.run(emit, cancel)
            finally:
                self._release()

        return TextStream(produce, queue_size=self.defaults.stream_queue_size, on_abandon=self._release)


class _Cancelled(Exception):
    pass


class _Turn:
    """Mutable state of a single assistant turn."""

    def __init__(self, conversation: Conversation, options: ChatOptions, constraint: DecodingConstraint):
        self.conversation = conversation
        self.backend = conversation.backend
        self.options = options
        self.constraint = constraint
        defaults = conversation.defaults

        self.policy = SamplingPolicy(options.sampling, defaults)
        self.max_tokens = options.max_output_tokens or defaults.max_output_tokens
        self.max_tool_calls = (
            options.max_tool_calls if options.max_tool_calls is not None else defaults.max_tool_calls
        )
        self.top_n = defaults.logits_top_n

        self.registry: Optional[ToolRegistry] = None
        self.grammar: Optional[JsonGrammar] = None
        self.grammar_state = None
        self.scanner: Optional[ToolSignalScanner] = None
        if isinstance(constraint, ToolAugmented):
            self.registry = constraint.registry
            self.scanner = ToolSignalScanner()
        elif isinstance(constraint, GrammarConstrained):
            self.grammar = constraint.grammar
            self.grammar_state = self.grammar.start()

        self.context: list[int] = []
        self.prompt_tokens = 0
        self.generated_tokens = 0
        self.counts: Counter = Counter()

        self.emit: Optional[Emit] = None
        self.cancel: Optional[asyncio.Event] = None
        self.completion: list[str] = []
        self.segment: list[str] = []  # visible text since the last recorded message
        self.held = ""                # visible text held back for stop sequences
        self.messages: list[ChatMessage] = []
        self.pending_calls: list[ToolCallRef] = []
        self.calls_made = 0
        self.stop_reason: Optional[StopReason] = None

    @property
    def choice_mode(self) -> str:
        return self.registry.choice().mode if self.registry is not None else "none"

    # ─────────────────────────────────────────────────────────────────
    # BACKEND CALLS
    # ─────────────────────────────────────────────────────────────────

    async def _engine(self, awaitable: Awaitable, action: str):
        try:
            return await awaitable
        except EngineFailure:
            raise
        except Exception as e:
            raise EngineFailure(f"Backend failed to {action}: {e}") from e

    async def _inject(self, text: str) -> None:
        """Append non-sampled text to the context; counted as prompt tokens."""
        tokens = await self._engine(self.backend.tokenize(text), "tokenize")
        self.context.extend(tokens)
        self.prompt_tokens += len(tokens)

    # ─────────────────────────────────────────────────────────────────
    # OUTPUT
    # ─────────────────────────────────────────────────────────────────

    async def _send(self, text: str, kind: SegmentKind) -> None:
        if text and self.emit is not None:
            await self.emit(StreamingSegment(text=text, kind=kind))

    async def _release_visible(self, text: str) -> None:
        self.completion.append(text)
        self.segment.append(text)
        await self._send(text, SegmentKind.USER_VISIBLE)

    async def _visible(self, text: str) -> bool:
        """Emit visible text, holding back possible stop-sequence prefixes. True on a match."""
        stops = self.options.stop_sequences
        if not stops:
            await self._release_visible(text)
            return False

        self.held += text
        matches = [(self.held.find(s), s) for s in stops if s in self.held]
        if matches:
            idx = min(m[0] for m in matches)
            await self._release_visible(self.held[:idx])
            self.held = ""
            return True

        keep = max(partial_marker_length(self.held, s) for s in stops)
        split = len(self.held) - keep
        if split:
            await self._release_visible(self.held[:split])
            self.held = self.held[split:]
        return False

    async def _flush_visible(self) -> None:
        if self.held:
            text, self.held = self.held, ""
            await self._release_visible(text)

    def _take_segment(self) -> str:
        text = "".join(self.segment)
        self.segment = []
        return text

    # ─────────────────────────────────────────────────────────────────
    # CANDIDATES
    # ─────────────────────────────────────────────────────────────────

    async def _admissible(self, logits: dict[int, float]) -> dict[int, float]:
        eos = self.backend.eos_token_id
        if self.grammar is not None:
            texts = {}
            for token in logits:
                texts[token] = "" if token == eos else await self._engine(
                    self.backend.token_text(token), "decode token"
                )
            allowed = self.grammar.allowed(self.grammar_state, texts, eos)
            return {t: v for t, v in logits.items() if t in allowed}

        if self.scanner is not None and self.choice_mode == "none":
            admissible = {}
            for token, value in logits.items():
                if token != eos:
                    text = await self._engine(self.backend.token_text(token), "decode token")
                    if self.scanner.would_open_signal(text):
                        continue
                admissible[token] = value
            return admissible

        return logits

    # ─────────────────────────────────────────────────────────────────
    # TOOLS
    # ─────────────────────────────────────────────────────────────────

    async def _force_signal(self) -> None:
        """Force-feed the opening of a tool call (and the tool name for specific)."""
        prefix = TOOL_CALL_OPEN
        choice = self.registry.choice()
        if choice.mode == "specific":
            prefix += '{"name": ' + json.dumps(choice.name) + ', "arguments": '
        await self._inject(prefix)
        for event in self.scanner.feed(prefix):
            await self._send(event.text, SegmentKind.INTERNAL)
        logger.debug("Forced tool call opening for %s choice", choice.mode)

    async def _on_call(self, payload: str, after_eos: bool) -> bool:
        """Handle a completed signal. Returns True when the turn must end."""
        parsed = parse_signal(payload)
        if parsed is None:
            logger.warning("Ignoring tool call signal without a tool name: %r", payload[:200])
            return False

        self.calls_made += 1
        ref = ToolCallRef(
            id=f"call_{self.calls_made}",
            name=parsed.name,
            arguments=parse_arguments(parsed.name, parsed.arguments),
        )
        await self._flush_visible()

        if not self.options.auto_invoke_tools or self.calls_made > self.max_tool_calls:
            if self.options.auto_invoke_tools:
                logger.info("Tool call depth %d reached; returning %s to caller", self.max_tool_calls, ref.name)
            self.pending_calls.append(ref)
            return True

        conversation = self.conversation
        conversation.state = ConversationState.TOOL_PENDING
        self._record(ChatMessage.assistant(self._take_segment(), tool_calls=(ref,)))

        try:
            result = await self.registry.invoke(ref.name, ref.arguments)
        except ToolNotFoundError as e:
            logger.warning("Model called unregistered tool %s", ref.name)
            result = json.dumps({"error": str(e)})
        except ToolExecutionError as e:
            logger.warning("%s", e)
            result = format_tool_error(e)
        logger.debug("Tool %s returned %d chars", ref.name, len(result))

        tool_message = ChatMessage.tool(result, tool_call_id=ref.id)
        self._record(tool_message)
        await self._inject(self.conversation.template.tool_result_suffix([tool_message], close_turn=not after_eos))
        self.scanner = ToolSignalScanner()
        conversation.state = ConversationState.DECODING
        return False

    def _record(self, message: ChatMessage) -> None:
        self.conversation.history.append(message)
        self.messages.append(message)

    async def _route(self, events, after_eos: bool = False) -> bool:
        """Dispatch scanner events. Returns True when the turn must end."""
        for event in events:
            if event.kind == "visible":
                if await self._visible(event.text):
                    self.stop_reason = StopReason.STOP_SEQUENCE_DETECTED
                    return True
            elif event.kind == "internal":
                await self._send(event.text, SegmentKind.INTERNAL)
            elif await self._on_call(event.text, after_eos):
                self.stop_reason = StopReason.TOOL_INVOCATION_REQUESTED
                return True
        return False

    # ─────────────────────────────────────────────────────────────────
    # DECODE LOOP
    # ─────────────────────────────────────────────────────────────────

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise _Cancelled()

    async def _step(self) -> bool:
        """Decode one token. Returns True when the turn is over."""
        backend = self.backend
        if len(self.context) >= backend.context_size:
            self.stop_reason = StopReason.CONTEXT_SIZE_LIMIT_EXCEEDED
            return True
        if self.grammar_state is not None and self.grammar_state.finished:
            self.stop_reason = StopReason.END_OF_GENERATION
            return True

        logits = await self._engine(backend.next_token_logits(list(self.context), self.top_n), "score tokens")
        candidates = await self._admissible(logits)
        if not candidates:
            raise EngineFailure(f"No admissible token among {len(logits)} candidates")

        token = self.policy.sample(candidates, self.counts)
        self.counts[token] += 1
        self.context.append(token)
        self.generated_tokens += 1

        if token == backend.eos_token_id:
            events = self.scanner.flush() if self.scanner is not None else []
            calls = [e for e in events if e.kind == "call"]
            if await self._route(events, after_eos=True):
                return True
            if not calls:
                self.stop_reason = StopReason.END_OF_GENERATION
                return True
            return False

        text = await self._engine(backend.token_text(token), "decode token")
        if self.grammar_state is not None:
            self.grammar_state.feed(text)
        events = self.scanner.feed(text) if self.scanner is not None else [ScanEvent("visible", text)]
        if await self._route(events):
            return True

        if self.generated_tokens >= self.max_tokens:
            self.stop_reason = StopReason.MAX_TOKEN_LIMIT_REACHED
            return True
        if len(self.context) >= backend.context_size:
            self.stop_reason = StopReason.CONTEXT_SIZE_LIMIT_EXCEEDED
            return True
        return False

    async def run(self, emit: Optional[Emit] = None, cancel: Optional[asyncio.Event] = None) -> Optional[GenerationResult]:
        self.emit = emit
        self.cancel = cancel
        conversation = self.conversation
        conversation.state = ConversationState.DECODING

        offered = self.registry.offered() if self.registry is not None else []
        prompt = conversation.template.render(conversation.history, offered, self.options.response_format)
        self.context = await self._engine(self.backend.tokenize(prompt, add_special=True), "tokenize")
        self.prompt_tokens = len(self.context)

        try:
            self._check_cancel()
            if self.choice_mode in ("required", "specific"):
                await self._force_signal()
            while True:
                self._check_cancel()
                if await self._step():
                    break
        except _Cancelled:
            logger.info("Generation cancelled after %d tokens", self.generated_tokens)
            return None

        if self.stop_reason not in (StopReason.STOP_SEQUENCE_DETECTED, StopReason.TOOL_INVOCATION_REQUESTED):
            tail = self.scanner.flush() if self.scanner is not None else []
            for event in tail:
                if event.kind == "visible" and await self._visible(event.text):
                    self.stop_reason = StopReason.STOP_SEQUENCE_DETECTED
                    break
            await self._flush_visible()

        final_text = self._take_segment()
        if self.pending_calls:
            self._record(ChatMessage.assistant(final_text, tool_calls=tuple(self.pending_calls)))
        elif final_text or not self.messages:
            self._record(ChatMessage.assistant(final_text))

        conversation.state = ConversationState.COMPLETED
        result = GenerationResult(
            completion="".join(self.completion),
            stop_reason=self.stop_reason,
            prompt_tokens=self.prompt_tokens,
            generated_tokens=self.generated_tokens,
            tool_calls=tuple(self.pending_calls),
            messages=tuple(self.messages),
            model_id=self.backend.model_id,
        )
        logger.info(
            "Turn finished: %s (%d prompt, %d generated tokens, %d tool calls)",
            result.stop_reason.value, result.prompt_tokens, result.generated_tokens,
            self.calls_made - len(self.pending_calls),
        )
        return result
