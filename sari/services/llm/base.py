from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Literal, Optional, TypedDict


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass
class LLMResponse:
    content: str
    model: str
    finish_reason: Optional[str] = None
    usage: Optional[dict] = None

    @property
    def total_tokens(self) -> Optional[int]:
        return (self.usage or {}).get("total_tokens")

    @property
    def truncated(self) -> bool:
        """Model stopped at max_tokens; the reply may end mid-sentence."""
        return self.finish_reason == "length"


class LLMProvider(ABC):
    """Chat-completion backend used by the response generator."""

    name = "llm"

    @abstractmethod
    def generate(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 600,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Return the model's reply. Raises LLMProviderError on failure."""
