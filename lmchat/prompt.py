"""
ChatML prompt rendering.

    <|im_start|>system
    You are a helpful assistant.<|im_end|>
    <|im_start|>user
    What's the weather in Paris?<|im_end|>
    <|im_start|>assistant

Offered tools go into the system block as a <tools> section, Hermes
style. After a tool call the renderer produces only a suffix (close the
assistant turn, add the tool result, reopen the assistant turn) so the
token context of a turn only ever grows.
"""

import json
from typing import Iterable, Optional

from lmchat.errors import UnsupportedRoleError
from lmchat.schemas import ChatMessage, ChatRole, ResponseFormat, ToolDescriptor
from lmchat.tool_parsers import format_tool_call

IM_START = "<|im_start|>"
IM_END = "<|im_end|>"

ROLE_TAGS: dict[ChatRole, str] = {
    ChatRole.SYSTEM: "system",
    ChatRole.USER: "user",
    ChatRole.ASSISTANT: "assistant",
    ChatRole.TOOL: "tool",
}

TOOLS_SECTION = """# Tools

You may call one or more functions to assist with the user query.

You are provided with function signatures within <tools></tools> XML tags:
<tools>
{tools}
</tools>

For each function call, return a json object with function name and arguments within <tool_call></tool_call> XML tags:
<tool_call>
{{"name": <function-name>, "arguments": <args-json-object>}}
</tool_call>"""

JSON_INSTRUCTION = "Respond only with a single valid JSON value."


def role_tag(role) -> str:
    """
    Template tag for a chat role.

    Raises:
        UnsupportedRoleError: Role has no mapping.
    """
    try:
        return ROLE_TAGS[ChatRole(role)]
    except (KeyError, ValueError):
        raise UnsupportedRoleError(f"Unsupported chat role: {role!r}") from None


def tool_schema(descriptor: ToolDescriptor) -> dict:
    """OpenAI-style function entry for the <tools> section."""
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": descriptor.description,
            "parameters": descriptor.input_schema,
        },
    }


class ChatTemplate:
    """Renders chat history into ChatML text."""

    start = IM_START
    end = IM_END

    def block(self, tag: str, content: str) -> str:
        return f"{self.start}{tag}\n{content}{self.end}\n"

    def message_content(self, message: ChatMessage) -> str:
        if message.role == ChatRole.ASSISTANT and message.tool_calls:
            calls = "\n".join(format_tool_call(c.name, c.arguments) for c in message.tool_calls)
            return f"{message.text}\n{calls}" if message.text else calls
        if message.role == ChatRole.TOOL:
            return f"<tool_response>\n{message.text}\n</tool_response>"
        return message.text

    def render_message(self, message: ChatMessage) -> str:
        return self.block(role_tag(message.role), self.message_content(message))

    def system_text(
        self,
        base: Optional[str],
        tools: list[ToolDescriptor],
        response_format: ResponseFormat,
    ) -> Optional[str]:
        parts = [base] if base else []
        if tools:
            rendered = "\n".join(json.dumps(tool_schema(t), ensure_ascii=False) for t in tools)
            parts.append(TOOLS_SECTION.format(tools=rendered))
        if response_format == ResponseFormat.JSON:
            parts.append(JSON_INSTRUCTION)
        return "\n\n".join(parts) if parts else None

    def render(
        self,
        messages: Iterable[ChatMessage],
        tools: Optional[list[ToolDescriptor]] = None,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> str:
        """
        Render a full prompt ending with an open assistant turn.

        The tool section and format instruction are merged into a leading
        system message, or become one if the history has none.
        """
        messages = list(messages)
        base = None
        if messages and messages[0].role == ChatRole.SYSTEM:
            base = messages[0].text
            messages = messages[1:]

        parts = []
        system = self.system_text(base, tools or [], response_format)
        if system is not None:
            parts.append(self.block(ROLE_TAGS[ChatRole.SYSTEM], system))
        parts.extend(self.render_message(m) for m in messages)
        parts.append(self.generation_prompt())
        return "".join(parts)

    def generation_prompt(self) -> str:
        return f"{self.start}{ROLE_TAGS[ChatRole.ASSISTANT]}\n"

    def tool_result_suffix(self, results: Iterable[ChatMessage], close_turn: bool = True) -> str:
        """
        Context suffix appended after a tool call.

        Args:
            results: Tool-role messages to render
            close_turn: Emit the end-of-turn marker first; False when the
                model already produced it as its last token
        """
        head = f"{self.end}\n" if close_turn else "\n"
        body = "".join(self.render_message(m) for m in results)
        return head + body + self.generation_prompt()
