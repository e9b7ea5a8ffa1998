"""OpenAI provider using openai SDK with native async.

Also serves OpenAI-compatible local servers (LM Studio) through base_url.
"""

import asyncio
import logging
import os
import time

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from intermediator.models import ImageInput
from intermediator.providers.base import GenerationError, TextGenerator, strip_code_fences

logger = logging.getLogger(__name__)

# Local servers accept any key but the SDK insists on one.
_LOCAL_PLACEHOLDER_KEY = "not-needed"


def _with_images(messages: list[dict], images: list[ImageInput]) -> list[dict]:
    """Convert user turns to the vision content-array format."""
    converted: list[dict] = []
    for msg in messages:
        if msg["role"] != "user":
            converted.append(msg)
            continue
        content: list[dict] = [{"type": "text", "text": msg["content"]}]
        for img in images:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{img.mime_type};base64,{img.data_base64}", "detail": "auto"},
            })
        converted.append({"role": "user", "content": content})
    return converted


class OpenAIProvider(TextGenerator):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            if not config.base_url:
                raise GenerationError(config.name, f"Missing API key: {config.api_key_env}")
            api_key = _LOCAL_PLACEHOLDER_KEY
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def generate(
        self,
        messages: list[dict],
        temperature: float,
        images: list[ImageInput] | None = None,
        max_tokens: int | None = None,
    ) -> str:
        payload = _with_images(messages, images) if images else messages

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._config.model,
                    messages=payload,
                    temperature=temperature,
                    max_tokens=max_tokens or self._config.max_tokens,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise GenerationError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise GenerationError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise GenerationError(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info("OpenAI call: %.2fs, %s tokens, %d images", latency, token_count, len(images or []))

        return strip_code_fences(choice.message.content)
