from chatrelay.services.llm.base import AIGenerationFailed, LLMProvider, LLMResponse
from chatrelay.services.llm.openai_provider import OpenAIProvider

__all__ = ["AIGenerationFailed", "LLMProvider", "LLMResponse", "OpenAIProvider"]
