import time
from typing import Callable, List, Optional

import httpx

from nodepath.logging_config import get_logger
from nodepath.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAICompatibleProvider(LLMProvider):
    """Chat completions over the OpenAI wire format (OpenAI, OpenRouter).

    Transport errors and 5xx responses are retried up to ``max_attempts``
    times with a linearly growing delay; 4xx responses fail immediately.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        default_model: str = "gpt-4.1",
        timeout_seconds: float = 20.0,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(max_attempts, 1)
        self.retry_delay_seconds = retry_delay_seconds
        self.sleep = sleep
        self.monotonic = monotonic

    def build_payload(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.67,
        top_p: float = 1.0,
        repetition_penalty: float = 1.0,
    ) -> dict:
        return {
            "model": model or self.default_model,
            "messages": messages,
            "temperature": temperature,
            "top_p": top_p,
            "repetition_penalty": repetition_penalty,
        }

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.67,
        top_p: float = 1.0,
        repetition_penalty: float = 1.0,
        deadline: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from the configured endpoint."""
        payload = self.build_payload(messages, model, temperature, top_p, repetition_penalty)
        logger.debug(f"Completion request: url={self.base_url}, model={payload['model']}, messages_count={len(messages)}")

        attempt = 1
        while True:
            try:
                return self._post(payload, self._request_timeout(deadline))
            except LLMError as exc:
                delay = self.retry_delay_seconds * attempt
                if not exc.retryable or attempt >= self.max_attempts:
                    raise
                if deadline is not None and self.monotonic() + delay >= deadline:
                    raise
                logger.warning(f"Completion attempt {attempt} failed, retrying in {delay}s: {exc}")
                self.sleep(delay)
                attempt += 1

    def _request_timeout(self, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.timeout_seconds
        remaining = deadline - self.monotonic()
        if remaining <= 0:
            raise LLMError("Completion time budget exhausted")
        return min(self.timeout_seconds, remaining)

    def _post(self, payload: dict, timeout: float) -> LLMResponse:
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error(f"Completion transport error: {exc}")
            raise LLMError(f"Completion request failed: {exc}", retryable=True) from exc

        logger.debug(f"Completion response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"Completion error: {response.text[:500]}")
            raise LLMError(
                f"Completion API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMError("Completion API returned invalid JSON", status_code=response.status_code) from exc

        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Completion API returned no choices", status_code=response.status_code)

        content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug(f"Completion content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", payload["model"]),
            usage=data.get("usage"),
        )
