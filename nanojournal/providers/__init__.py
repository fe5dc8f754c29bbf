"""LLM provider abstraction module."""

from nanojournal.providers.base import LLMProvider, LLMResponse
from nanojournal.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
