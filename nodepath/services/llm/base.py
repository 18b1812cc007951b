from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class LLMError(Exception):
    """Network, HTTP or payload failure from a completion endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for chat-completion providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.67,
        top_p: float = 1.0,
        repetition_penalty: float = 1.0,
        deadline: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from LLM. Raises LLMError on failure.

        ``deadline`` is a ``time.monotonic()`` value after which no further
        request may be started.
        """
        pass
