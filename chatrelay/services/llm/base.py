from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

# {"role": "system" | "user" | "assistant", "content": "..."}
ChatMessage = dict[str, str]


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: dict = field(default_factory=dict)


class AIGenerationFailed(Exception):
    """No usable reply: missing key, HTTP error, quota, timeout or an empty answer."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class LLMProvider(ABC):
    """A chat-completion backend used by the AI responder."""

    @abstractmethod
    def generate(
        self,
        messages: list[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Return the assistant reply for ``messages`` or raise AIGenerationFailed."""
