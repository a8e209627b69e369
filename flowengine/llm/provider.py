"""Provider response types shared by the AI node behaviours."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMResponse:
    """Response from a chat completion call."""

    content: str
    model: str
    usage: dict[str, Any] = field(default_factory=dict)
    finish_reason: str = ""
    raw_response: Any = None

    def to_output(self) -> dict[str, Any]:
        """Node output shape for openai-chat."""
        return {
            "content": self.content,
            "model": self.model,
            "usage": self.usage,
            "finishReason": self.finish_reason,
        }
