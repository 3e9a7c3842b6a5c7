"""CLI entry point for lmchat.

Interactive streaming chat against a llama.cpp server, for quick manual
checks of a model and of the decode loop.

Entry point:
    lmchat-cli chat [--server URL] [--system TEXT] [--json] [--max-tokens N] [--temperature T]
    lmchat-cli info [--server URL] [--json]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from dotenv import load_dotenv

from lmchat.backends.llama_server import LlamaServerBackend, LlamaServerError
from lmchat.client import ChatClient
from lmchat.config import DEFAULT_SYSTEM_PROMPT, EngineDefaults
from lmchat.errors import LMChatError
from lmchat.schemas import ChatMessage, ChatOptions, ResponseFormat

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"/quit", "/exit"}


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lmchat-cli",
        description="Terminal chat against a llama.cpp server.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command")

    # chat
    chat_p = sub.add_parser("chat", help="Interactive streaming chat")
    chat_p.add_argument("--server", default=None, help="llama.cpp server URL (default: LMCHAT_SERVER_URL)")
    chat_p.add_argument("--system", default=DEFAULT_SYSTEM_PROMPT, help="System prompt")
    chat_p.add_argument("--json", action="store_true", dest="json_output", help="Constrain replies to JSON")
    chat_p.add_argument("--max-tokens", type=int, default=None, help="Max tokens per reply")
    chat_p.add_argument("--temperature", type=float, default=None, help="Sampling temperature")

    # info
    info_p = sub.add_parser("info", help="Show backend model metadata")
    info_p.add_argument("--server", default=None, help="llama.cpp server URL (default: LMCHAT_SERVER_URL)")
    info_p.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

    return parser


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def _cmd_info(server: Optional[str] = None, json_output: bool = False) -> int:
    """Print backend metadata. Returns exit code."""
    try:
        async with LlamaServerBackend(base_url=server) as backend:
            info = {
                "provider": ChatClient(backend).metadata.provider,
                "server": backend.base_url,
                "model_id": backend.model_id,
                "context_size": backend.context_size,
                "eos_token_id": backend.eos_token_id,
            }
    except (LlamaServerError, LMChatError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if json_output:
        json.dump(info, sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for key, value in info.items():
            print(f"{key}: {value}")
    return 0


async def _read_line(prompt: str) -> Optional[str]:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def _cmd_chat(
    server: Optional[str] = None,
    system: str = DEFAULT_SYSTEM_PROMPT,
    json_output: bool = False,
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
) -> int:
    """Run the interactive chat loop. Returns exit code."""
    options = ChatOptions(
        max_output_tokens=max_tokens,
        temperature=temperature,
        response_format=ResponseFormat.JSON if json_output else ResponseFormat.TEXT,
    )

    try:
        async with LlamaServerBackend(base_url=server) as backend:
            client = ChatClient(backend, defaults=EngineDefaults.from_env())
            conversation = client.conversation([ChatMessage.system(system)] if system else [])
            print(f"Chatting with {backend.model_id} (/quit to exit)", file=sys.stderr)

            while True:
                line = await _read_line("> ")
                if line is None or line.strip() in EXIT_COMMANDS:
                    break
                if not line.strip():
                    continue

                conversation.history.append(ChatMessage.user(line))
                stream = conversation.stream(options)
                try:
                    async for fragment in stream:
                        sys.stdout.write(fragment)
                        sys.stdout.flush()
                finally:
                    await stream.aclose()
                sys.stdout.write("\n")

                if stream.result is not None:
                    logger.debug(
                        "stop=%s usage=%s",
                        stream.result.stop_reason.value, stream.result.usage.model_dump(),
                    )
    except (LlamaServerError, LMChatError) as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    return 0


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    # Load env
    load_dotenv()

    # Dispatch
    try:
        if args.command == "info":
            code = asyncio.run(_cmd_info(server=args.server, json_output=args.json_output))
        elif args.command == "chat":
            code = asyncio.run(_cmd_chat(
                server=args.server,
                system=args.system,
                json_output=args.json_output,
                max_tokens=args.max_tokens,
                temperature=args.temperature,
            ))
        else:
            parser.print_help()
            code = 1
    except KeyboardInterrupt:
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
