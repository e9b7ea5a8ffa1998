"""Abstract base for all text generation providers."""

import re
from abc import ABC, abstractmethod

from intermediator.models import ImageInput

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)


class GenerationError(Exception):
    """Raised when a provider call fails or returns unusable output."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` wrapper some models put around JSON replies."""
    cleaned = text.strip()
    match = _CODE_FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def split_system(messages: list[dict]) -> tuple[str, list[dict]]:
    """Separate system messages from the conversation for SDKs that take them apart."""
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    rest = [m for m in messages if m["role"] != "system"]
    return system, rest


class TextGenerator(ABC):
    """Abstract base for all text generation providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        temperature: float,
        images: list[ImageInput] | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Generate a reply for an ordered list of role-tagged messages.

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": str}, ...]
            temperature: Sampling temperature.
            images: Optional images attached to the user turn.
            max_tokens: Output budget; provider default when None.

        Returns:
            Reply text with any markdown code fence removed.

        Raises:
            GenerationError: On API failure, timeout, or empty response.
        """
        ...


class UnavailableGenerator(TextGenerator):
    """Stands in when no provider has an API key; every call fails.

    Sessions still advance through derivation fallbacks, and judgment waits
    for a retry once a provider is configured.
    """

    def name(self) -> str:
        return "unavailable"

    def model_string(self) -> str:
        return "none"

    async def generate(
        self,
        messages: list[dict],
        temperature: float,
        images: list[ImageInput] | None = None,
        max_tokens: int | None = None,
    ) -> str:
        raise GenerationError(self.name(), "No generation provider is configured")
