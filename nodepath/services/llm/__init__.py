from nodepath.services.llm.base import LLMError, LLMProvider, LLMResponse
from nodepath.services.llm.openai_provider import OpenAICompatibleProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAICompatibleProvider"]
