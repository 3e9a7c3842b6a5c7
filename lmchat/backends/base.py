"""
ModelBackend Protocol - defines the contract for the inference engine.

This is the WHAT (interface), not the HOW (implementation).
See llama_server.py for a concrete implementation.
"""

from typing import Protocol


class ModelBackend(Protocol):
    """
    Token-level contract for a loaded model.

    Implementations must provide:
    - Tokenization (tokenize, token_text)
    - Next-token scoring (next_token_logits)
    - Static model facts (model_id, context_size, eos_token_id)

    The backend handle is shared: several conversations may call it
    concurrently, so implementations must not keep per-request state.
    Model loading, quantization and kernels stay behind this boundary.
    """

    @property
    def model_id(self) -> str:
        """Identifier of the loaded model."""
        ...

    @property
    def context_size(self) -> int:
        """Maximum number of tokens the model can attend to."""
        ...

    @property
    def eos_token_id(self) -> int:
        """Token that ends an assistant turn."""
        ...

    async def tokenize(self, text: str, add_special: bool = False) -> list[int]:
        """
        Convert text to token ids.

        Args:
            text: Text to tokenize; special markers are parsed as special tokens
            add_special: Prepend BOS (only for a full rendered prompt)
        """
        ...

    async def token_text(self, token_id: int) -> str:
        """Text piece for a single token."""
        ...

    async def next_token_logits(self, tokens: list[int], top_n: int) -> dict[int, float]:
        """
        Score candidates for the token following `tokens`.

        Args:
            tokens: Full context so far
            top_n: Number of highest-scoring candidates to return

        Returns:
            {token_id: logit}. Log-probabilities are acceptable, since
            sampling only uses differences between values.

        Raises:
            Exception on backend error (wrapped into EngineFailure by the caller)
        """
        ...
