from typing import Optional

import httpx

from chatrelay.logging_config import get_logger
from chatrelay.services.llm.base import AIGenerationFailed, ChatMessage, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"


class OpenAIProvider(LLMProvider):
    """Chat completions over plain HTTP; every failure surfaces as AIGenerationFailed."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", default_timeout: float = 30.0):
        self.api_key = api_key
        self.default_model = default_model
        self.default_timeout = default_timeout

    def generate(
        self,
        messages: list[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        if not self.api_key:
            raise AIGenerationFailed("OpenAI API key is not configured")

        model = model or self.default_model
        body = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        timeout = self.default_timeout if timeout_seconds is None else timeout_seconds

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    CHAT_COMPLETIONS_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=body,
                )
        except httpx.HTTPError as e:
            raise AIGenerationFailed(f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                "OpenAI returned an error status",
                extra={"context": {"status": response.status_code, "model": model, "body": response.text[:300]}},
            )
            raise AIGenerationFailed(
                f"OpenAI API error: {response.status_code} - {response.text[:300]}",
                status_code=response.status_code,
            )
        return self._parse(response, model)

    @staticmethod
    def _parse(response: httpx.Response, requested_model: str) -> LLMResponse:
        try:
            data = response.json()
        except ValueError as e:
            raise AIGenerationFailed("OpenAI returned invalid JSON") from e

        choices = data.get("choices") or [{}]
        reply = ((choices[0].get("message") or {}).get("content") or "").strip()
        if not reply:
            raise AIGenerationFailed("OpenAI returned an empty reply")
        return LLMResponse(content=reply, model=data.get("model") or requested_model, usage=data.get("usage") or {})
