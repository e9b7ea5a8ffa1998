"""Thin helpers over a TextGenerator: prompt assembly and JSON replies."""

import json
import logging

from config.config_loader import CallSettings, PromptPair
from intermediator.models import ImageInput
from intermediator.providers.base import GenerationError, TextGenerator, strip_code_fences

logger = logging.getLogger(__name__)


def build_messages(pair: PromptPair, **values: str) -> list[dict]:
    """Fill a system/user template pair and return chat messages."""
    return [
        {"role": "system", "content": pair.system.format(**values)},
        {"role": "user", "content": pair.user.format(**values)},
    ]


async def generate_text(
    generator: TextGenerator,
    messages: list[dict],
    settings: CallSettings,
    images: list[ImageInput] | None = None,
) -> str:
    """Single attempt; raises GenerationError on failure or an empty reply."""
    reply = await generator.generate(
        messages,
        temperature=settings.temperature,
        images=images or None,
        max_tokens=settings.max_tokens,
    )
    text = reply.strip()
    if not text:
        raise GenerationError(generator.name(), "Empty reply")
    return text


async def generate_json(
    generator: TextGenerator,
    messages: list[dict],
    settings: CallSettings,
    images: list[ImageInput] | None = None,
) -> dict:
    """Generate and parse a JSON object. Unparseable output is a GenerationError."""
    text = await generate_text(generator, messages, settings, images)
    try:
        parsed = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        logger.debug("Unparseable JSON reply from %s: %.200s", generator.name(), text)
        raise GenerationError(generator.name(), f"Reply is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise GenerationError(generator.name(), "Reply JSON is not an object")
    return parsed
