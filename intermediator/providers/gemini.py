"""Gemini provider using google-genai SDK with native async."""

import asyncio
import base64
import logging
import os
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from intermediator.models import ImageInput
from intermediator.providers.base import GenerationError, TextGenerator, split_system, strip_code_fences

logger = logging.getLogger(__name__)


def _to_contents(messages: list[dict], images: list[ImageInput]) -> list[genai_types.Content]:
    """Map chat messages to Gemini contents; images go on the last user turn."""
    contents = [
        genai_types.Content(
            role="model" if m["role"] == "assistant" else "user",
            parts=[genai_types.Part.from_text(text=m["content"])],
        )
        for m in messages
    ]
    if images:
        for content in reversed(contents):
            if content.role == "user":
                for img in images:
                    content.parts.append(
                        genai_types.Part.from_bytes(
                            data=base64.b64decode(img.data_base64),
                            mime_type=img.mime_type,
                        )
                    )
                break
    return contents


class GeminiProvider(TextGenerator):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise GenerationError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

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

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model,
                    contents=_to_contents(conversation, images or []),
                    config=genai_types.GenerateContentConfig(
                        system_instruction=system or None,
                        temperature=temperature,
                        max_output_tokens=max_tokens or self._config.max_tokens,
                    ),
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise GenerationError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise GenerationError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.text:
            raise GenerationError(self._config.name, "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info("Gemini call: %.2fs, %s tokens, %d images", latency, token_count, len(images or []))

        return strip_code_fences(response.text)
