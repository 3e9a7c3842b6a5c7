"""
Backends for the inference engine.

Protocol defines WHAT, implementations define HOW.
"""

from .base import ModelBackend
from .llama_server import LlamaServerBackend, LlamaServerError

__all__ = ["ModelBackend", "LlamaServerBackend", "LlamaServerError"]
