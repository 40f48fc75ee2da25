"""LLM provider clients and the LLM-backed correlation scorer."""

from llm.base import LLMClient
from llm.openrouter import OpenRouterClient
from llm.scorer import LLMScorer

__all__ = ["LLMClient", "OpenRouterClient", "LLMScorer"]
