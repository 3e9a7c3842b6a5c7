"""
Error taxonomy for lmchat.

Configuration problems fail fast, before any token is decoded.
Tool failures are recovered inside the turn and never reach the caller.
Engine failures end the turn and surface to the caller (for streams, only
after every already-produced fragment has been delivered).
"""


class LMChatError(Exception):
    """Base class for all lmchat errors."""
    pass


# ─────────────────────────────────────────────────────────────────────
# CONFIGURATION
# ─────────────────────────────────────────────────────────────────────


class ConfigurationError(LMChatError):
    """Mutually exclusive or invalid options. Raised before decoding starts."""
    pass


class DuplicateToolError(ConfigurationError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool already registered: {name!r}")


class ToolNotFoundError(ConfigurationError):
    """No tool with the requested name is registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool not registered: {name!r}")


class UnsupportedRoleError(LMChatError):
    """Chat role has no mapping in the prompt template."""
    pass


class UnsupportedStopReasonError(LMChatError):
    """Stop reason has no finish-reason mapping."""
    pass


# ─────────────────────────────────────────────────────────────────────
# RUNTIME
# ─────────────────────────────────────────────────────────────────────


class ConcurrencyViolationError(LMChatError):
    """A generation is already in progress on this conversation."""

    def __init__(self, message: str = "generation already in progress"):
        super().__init__(message)


class ToolExecutionError(LMChatError):
    """A registered tool raised during invocation.

    Recovered locally: recorded into history as a tool-role error message.
    """

    def __init__(self, tool_name: str, cause: BaseException):
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(f"Tool {tool_name!r} failed: {cause}")


class MalformedToolArguments(LMChatError):
    """Tool-call argument payload could not be parsed into an object.

    Never raised out of a turn; the call degrades to empty arguments.
    """

    def __init__(self, tool_name: str, payload: str, reason: str):
        self.tool_name = tool_name
        self.payload = payload
        self.reason = reason
        super().__init__(f"Malformed arguments for {tool_name!r}: {reason}")


class EngineFailure(LMChatError):
    """The backend failed unrecoverably while decoding."""
    pass
