"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from intermediator.models import ImageInput
from intermediator.providers.base import GenerationError, TextGenerator, split_system, strip_code_fences

logger = logging.getLogger(__name__)


def _with_images(messages: list[dict], images: list[ImageInput]) -> list[dict]:
    """Attach images as base64 blocks to every user turn."""
    converted: list[dict] = []
    for msg in messages:
        if msg["role"] != "user":
            converted.append(msg)
            continue
        content: list[dict] = [{"type": "text", "text": msg["content"]}]
        for img in images:
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": img.mime_type, "data": img.data_base64},
            })
        converted.append({"role": "user", "content": content})
    return converted


class AnthropicProvider(TextGenerator):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise GenerationError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

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
        system, conversation = split_system(messages)
        if images:
            conversation = _with_images(conversation, images)

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self._config.model,
                    max_tokens=max_tokens or self._config.max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=conversation,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise GenerationError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise GenerationError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.content:
            raise GenerationError(self._config.name, "Empty response content")

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise GenerationError(self._config.name, "No text blocks in response")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info("Anthropic call: %.2fs, %s tokens, %d images", latency, token_count, len(images or []))

        return strip_code_fences("\n".join(text_blocks))
