from sari.services.llm.base import ChatMessage, LLMProvider, LLMResponse
from sari.services.llm.openai_provider import OpenAIProvider

__all__ = ["ChatMessage", "LLMProvider", "LLMResponse", "OpenAIProvider"]
