from typing import List, Optional

import httpx

from sari.errors import LLMProviderError
from sari.logging_config import get_logger
from sari.services.llm.base import ChatMessage, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_TIMEOUT_SECONDS = 60.0


def _error_detail(response: httpx.Response) -> str:
    """OpenAI puts a readable reason under error.message; fall back to the raw body."""
    try:
        detail = (response.json().get("error") or {}).get("message")
    except ValueError:
        detail = None
    return detail or response.text[:300]


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over plain HTTP."""

    name = "openai"

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", base_url: Optional[str] = None):
        self.default_model = default_model
        self.url = base_url or CHAT_COMPLETIONS_URL
        self.headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def _post(self, payload: dict, timeout: float) -> httpx.Response:
        try:
            with httpx.Client(timeout=timeout) as client:
                return client.post(self.url, headers=self.headers, json=payload)
        except httpx.TimeoutException as e:
            raise LLMProviderError(f"OpenAI request timed out after {timeout}s", timeout=True) from e
        except httpx.HTTPError as e:
            raise LLMProviderError(f"OpenAI request failed: {e}") from e

    def generate(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 600,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else DEFAULT_TIMEOUT_SECONDS
        response = self._post(
            {"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens},
            timeout,
        )

        if response.status_code != 200:
            detail = _error_detail(response)
            logger.error(
                f"OpenAI returned {response.status_code}: {detail}",
                extra={"context": {"model": model, "status_code": response.status_code}},
            )
            raise LLMProviderError(f"OpenAI API error {response.status_code}: {detail}", status_code=response.status_code)

        try:
            data = response.json()
            choice = (data.get("choices") or [{}])[0]
            content = (choice.get("message") or {}).get("content") or ""
            if not isinstance(content, str):
                raise TypeError(f"content is {type(content).__name__}")
            return LLMResponse(
                content=content,
                model=data.get("model", model),
                finish_reason=choice.get("finish_reason"),
                usage=data.get("usage") if isinstance(data.get("usage"), dict) else None,
            )
        except (ValueError, AttributeError, TypeError, IndexError, KeyError) as e:
            raise LLMProviderError(f"OpenAI returned an unreadable response: {e}") from e
