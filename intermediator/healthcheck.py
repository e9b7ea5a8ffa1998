"""Provider health checks.

Every mediation step except the summaries needs a JSON object back, so a
provider only passes when it answers a short JSON ping through the same
parsing path the mediator uses. A provider that replies in prose fails
here instead of silently falling back mid-session.
"""

import asyncio
import logging
import time

from config.config_loader import CallSettings
from intermediator.generation import generate_json
from intermediator.providers.base import TextGenerator

logger = logging.getLogger(__name__)

_PING_MESSAGES = [
    {"role": "system", "content": "You are a health check. Answer with JSON only."},
    {"role": "user", "content": 'Reply with the JSON object {"status": "ok"} and nothing else.'},
]
_PING_SETTINGS = CallSettings(temperature=0.0, max_tokens=32)
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, generator: TextGenerator) -> tuple[str, bool, str]:
    """Ping a single generator. Returns (name, ok, error_message)."""
    started = time.monotonic()
    try:
        reply = await asyncio.wait_for(
            generate_json(generator, _PING_MESSAGES, _PING_SETTINGS),
            timeout=_TIMEOUT_SEC,
        )
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        return name, False, str(exc) or type(exc).__name__

    if reply.get("status") != "ok":
        return name, False, f"Unexpected ping reply: {reply}"
    logger.info("Health check passed for %s (%s) in %.2fs", name, generator.model_string(), time.monotonic() - started)
    return name, True, ""


async def run_health_checks(
    generators: dict[str, TextGenerator],
) -> dict[str, tuple[bool, str]]:
    """Ping all generators in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, g) for n, g in generators.items()))
    return {name: (ok, err) for name, ok, err in results}
