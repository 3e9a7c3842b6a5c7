"""
LlamaServerBackend - ModelBackend over a llama.cpp HTTP server.

Endpoints used:
    GET  /props       model path and context size
    POST /tokenize    text -> token ids
    POST /detokenize  token id -> text piece
    POST /completion  one-token prediction with n_probs for candidate scores

The server keeps the model loaded and caches the prompt KV state, so
scoring the next token of a growing context only evaluates the new
tokens. Transient HTTP failures are retried with tenacity.
"""

import logging
from pathlib import PurePath
from typing import Any, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from lmchat.config import (
    get_retry_attempts,
    get_retry_max_wait,
    get_retry_min_wait,
    get_server_url,
    get_timeout_seconds,
)
from lmchat.prompt import IM_END

logger = logging.getLogger(__name__)


class LlamaServerError(Exception):
    """Human-readable error from a llama.cpp server."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def parse_server_error(response: httpx.Response) -> str:
    """Extract a readable message from a llama.cpp error response."""
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    # llama.cpp returns {"error": {"code": 400, "message": "...", "type": "..."}}
    if isinstance(data, dict):
        error = data.get("error", {})
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if isinstance(error, str) and error:
            return error
    return f"HTTP {response.status_code}: {response.text[:200]}"


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception is retryable.

    Retryable errors include:
    - Connection errors and timeouts (server restarting or overloaded)
    - 502/503 responses (model still loading, all slots busy)
    """
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, LlamaServerError):
        if exception.status_code in (502, 503):
            return True
        message = str(exception).lower()
        return "loading model" in message or "unavailable" in message
    return False


class LlamaServerBackend:
    """
    llama.cpp server implementation of ModelBackend.

    Call connect() (or use `async with`) before decoding: it reads the
    model facts from /props and resolves the end-of-turn token.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        eos_token_id: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Server URL (default: LMCHAT_SERVER_URL)
            timeout_seconds: Per-request timeout (default: LMCHAT_TIMEOUT_SECONDS)
            eos_token_id: End-of-turn token; resolved from "<|im_end|>" when omitted
            client: Pre-built httpx client (owned by the caller)
        """
        self.base_url = (base_url or get_server_url()).rstrip("/")
        timeout = timeout_seconds if timeout_seconds is not None else get_timeout_seconds()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._eos_token_id = eos_token_id
        self._model_id: Optional[str] = None
        self._context_size: Optional[int] = None
        self._pieces: dict[int, str] = {}

    async def __aenter__(self) -> "LlamaServerBackend":
        return await self.connect()

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ─────────────────────────────────────────────────────────────────
    # MODEL FACTS
    # ─────────────────────────────────────────────────────────────────

    async def connect(self) -> "LlamaServerBackend":
        """Fetch model properties and resolve the end-of-turn token."""
        props = await self._request("GET", "/props")
        settings = props.get("default_generation_settings") or {}
        n_ctx = settings.get("n_ctx") or props.get("n_ctx")
        if not n_ctx:
            raise LlamaServerError(f"Server at {self.base_url} did not report a context size")
        self._context_size = int(n_ctx)

        model_path = props.get("model_path") or settings.get("model") or "llama.cpp"
        self._model_id = PurePath(model_path).stem or model_path

        if self._eos_token_id is None:
            tokens = await self.tokenize(IM_END)
            if len(tokens) != 1:
                raise LlamaServerError(
                    f"{IM_END!r} is not a single token for this model; pass eos_token_id explicitly"
                )
            self._eos_token_id = tokens[0]

        logger.info(
            "Connected to %s: model=%s n_ctx=%d eos=%d",
            self.base_url, self._model_id, self._context_size, self._eos_token_id,
        )
        return self

    def _require_connected(self) -> None:
        if self._context_size is None:
            raise LlamaServerError("Backend not connected; call connect() first")

    @property
    def model_id(self) -> str:
        self._require_connected()
        return self._model_id

    @property
    def context_size(self) -> int:
        self._require_connected()
        return self._context_size

    @property
    def eos_token_id(self) -> int:
        self._require_connected()
        return self._eos_token_id

    # ─────────────────────────────────────────────────────────────────
    # TOKENS
    # ─────────────────────────────────────────────────────────────────

    async def tokenize(self, text: str, add_special: bool = False) -> list[int]:
        data = await self._request(
            "POST",
            "/tokenize",
            {"content": text, "add_special": add_special, "parse_special": True},
        )
        return [t if isinstance(t, int) else t["id"] for t in data.get("tokens", [])]

    async def token_text(self, token_id: int) -> str:
        if token_id not in self._pieces:
            data = await self._request("POST", "/detokenize", {"tokens": [token_id]})
            self._pieces[token_id] = data.get("content", "")
        return self._pieces[token_id]

    async def next_token_logits(self, tokens: list[int], top_n: int) -> dict[int, float]:
        """
        Top-n candidates for the next token as {token_id: logprob}.

        Raises:
            LlamaServerError: Server response lacks token ids (pre-2024 builds)
        """
        data = await self._request(
            "POST",
            "/completion",
            {
                "prompt": tokens,
                "n_predict": 1,
                "n_probs": top_n,
                "cache_prompt": True,
                "post_sampling_probs": False,
            },
        )
        steps = data.get("completion_probabilities") or []
        if not steps:
            raise LlamaServerError("Server returned no token probabilities")

        candidates = steps[0].get("top_logprobs")
        if candidates is None:
            raise LlamaServerError(
                "Server does not report token ids with probabilities; upgrade llama.cpp"
            )

        logits = {}
        for entry in candidates:
            token_id = int(entry["id"])
            logits[token_id] = float(entry["logprob"])
            if "token" in entry:
                self._pieces.setdefault(token_id, entry["token"])
        return logits

    # ─────────────────────────────────────────────────────────────────
    # TRANSPORT
    # ─────────────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict[str, Any]:
        @retry(
            stop=stop_after_attempt(get_retry_attempts()),
            wait=wait_exponential(multiplier=2, min=get_retry_min_wait(), max=get_retry_max_wait()),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def send() -> dict[str, Any]:
            response = await self._client.request(method, f"{self.base_url}{path}", json=payload)
            if response.status_code >= 400:
                raise LlamaServerError(
                    f"llama.cpp error on {path}: {parse_server_error(response)}",
                    status_code=response.status_code,
                )
            return response.json()

        return await send()
