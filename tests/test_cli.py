"""Tests for lmchat.cli module.

The llama.cpp server is mocked with respx; chat input is patched at
_read_line.
"""

import json
import os
import pytest
from io import StringIO
from unittest.mock import AsyncMock, patch

import httpx
import respx

from lmchat.cli import _build_parser, _cmd_chat, _cmd_info, main
from tests.conftest import (
    MOCK_EOS_ID,
    MOCK_MODEL_ID,
    MOCK_N_CTX,
    MOCK_PROPS_RESPONSE,
    MOCK_SERVER_URL,
)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def fast_retries():
    with patch.dict(os.environ, {
        "LMCHAT_RETRY_ATTEMPTS": "1",
        "LMCHAT_RETRY_MIN_WAIT": "0",
        "LMCHAT_RETRY_MAX_WAIT": "0",
    }):
        yield


def mock_server():
    respx.get(f"{MOCK_SERVER_URL}/props").mock(
        return_value=httpx.Response(200, json=MOCK_PROPS_RESPONSE)
    )
    respx.post(f"{MOCK_SERVER_URL}/tokenize").mock(
        return_value=httpx.Response(200, json={"tokens": [MOCK_EOS_ID]})
    )


# ─────────────────────────────────────────────────────────────────────
# PARSER
# ─────────────────────────────────────────────────────────────────────


class TestParser:

    def test_chat_arguments(self):
        args = _build_parser().parse_args(
            ["chat", "--server", MOCK_SERVER_URL, "--json", "--max-tokens", "32", "--temperature", "0"]
        )
        assert args.command == "chat"
        assert args.server == MOCK_SERVER_URL
        assert args.json_output is True
        assert args.max_tokens == 32
        assert args.temperature == 0.0

    def test_info_defaults(self):
        args = _build_parser().parse_args(["info"])
        assert args.server is None
        assert args.json_output is False

    def test_no_command_exits(self):
        with patch("sys.argv", ["lmchat-cli"]), \
             patch("sys.stdout", new_callable=StringIO):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1


# ─────────────────────────────────────────────────────────────────────
# INFO COMMAND
# ─────────────────────────────────────────────────────────────────────


class TestInfoCommand:

    @pytest.mark.asyncio
    @respx.mock
    async def test_info_json(self):
        mock_server()
        with patch("sys.stdout", new_callable=StringIO) as mock_stdout:
            code = await _cmd_info(server=MOCK_SERVER_URL, json_output=True)

        assert code == 0
        info = json.loads(mock_stdout.getvalue())
        assert info["model_id"] == MOCK_MODEL_ID
        assert info["context_size"] == MOCK_N_CTX
        assert info["eos_token_id"] == MOCK_EOS_ID
        assert info["provider"] == "lmchat"

    @pytest.mark.asyncio
    @respx.mock
    async def test_info_text(self):
        mock_server()
        with patch("sys.stdout", new_callable=StringIO) as mock_stdout:
            code = await _cmd_info(server=MOCK_SERVER_URL)

        assert code == 0
        assert f"model_id: {MOCK_MODEL_ID}" in mock_stdout.getvalue()

    @pytest.mark.asyncio
    @respx.mock
    async def test_info_server_error(self):
        respx.get(f"{MOCK_SERVER_URL}/props").mock(
            return_value=httpx.Response(500, json={"error": {"message": "model failed to load"}})
        )
        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            code = await _cmd_info(server=MOCK_SERVER_URL)

        assert code == 1
        assert "model failed to load" in mock_stderr.getvalue()


# ─────────────────────────────────────────────────────────────────────
# CHAT COMMAND
# ─────────────────────────────────────────────────────────────────────


def probs(token_id: int, text: str) -> httpx.Response:
    entry = {"id": token_id, "token": text, "bytes": [], "logprob": -0.1}
    return httpx.Response(200, json={"completion_probabilities": [dict(entry, top_logprobs=[entry])]})


class TestChatCommand:

    @pytest.mark.asyncio
    @respx.mock
    async def test_one_exchange_then_quit(self):
        mock_server()
        respx.post(f"{MOCK_SERVER_URL}/completion").mock(side_effect=[
            probs(9707, "Hello"),
            probs(0, "!"),
            probs(MOCK_EOS_ID, "<|im_end|>"),
        ])
        lines = AsyncMock(side_effect=["hi", "/quit"])

        with patch("lmchat.cli._read_line", lines), \
             patch("sys.stdout", new_callable=StringIO) as mock_stdout, \
             patch("sys.stderr", new_callable=StringIO):
            code = await _cmd_chat(server=MOCK_SERVER_URL)

        assert code == 0
        assert mock_stdout.getvalue() == "Hello!\n"

    @pytest.mark.asyncio
    @respx.mock
    async def test_end_of_input_exits_cleanly(self):
        mock_server()
        with patch("lmchat.cli._read_line", AsyncMock(return_value=None)), \
             patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            code = await _cmd_chat(server=MOCK_SERVER_URL)

        assert code == 0
        assert MOCK_MODEL_ID in mock_stderr.getvalue()
