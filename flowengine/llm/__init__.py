"""AI provider clients used by the openai-* nodes."""

from flowengine.llm.openai import OpenAIClient, identity_for, resolve_api_key
from flowengine.llm.provider import LLMResponse

__all__ = ["LLMResponse", "OpenAIClient", "identity_for", "resolve_api_key"]
