"""Context accumulator: a running, confidence-scored guess at who the parties are.

After each narrative stage the whole previous inference plus the new input
goes back to the generator, which returns a replacement inference. The
accumulator never raises; on any failure the previous inference survives.
"""

import logging
import time
from typing import Callable

from config.config_loader import CallSettings, PromptPair
from intermediator.generation import build_messages, generate_json
from intermediator.models import (
    ContextStage,
    IdentityGuess,
    InitialAnswers,
    P2Response,
    ParticipantContext,
    RelationshipGuess,
    ResponseType,
)
from intermediator.providers.base import GenerationError, TextGenerator

logger = logging.getLogger(__name__)

_MAX_PROMPT_CLUES = 5


def clamp_confidence(value) -> float:
    """Coerce to float in [0, 1]; anything non-numeric becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(1.0, max(0.0, number))


def unknown_context(stage: str | None = None, now: float | None = None) -> ParticipantContext:
    return ParticipantContext(last_stage=stage, last_updated=now)


def _describe_previous(existing: ParticipantContext | None) -> str:
    if existing is None:
        return ""
    return (
        "PREVIOUS ANALYSIS TO VALIDATE/UPDATE:\n"
        f"- P1 identity: {existing.p1.identity} (confidence: {existing.p1.confidence})\n"
        f"- P2 identity: {existing.p2.identity} (confidence: {existing.p2.confidence})\n"
        f"- Relationship: {existing.relationship.type} - {existing.relationship.details} "
        f"(confidence: {existing.relationship.confidence})\n"
        f"- Previous clues: {', '.join(existing.clues)}\n"
    )


def _describe_answers(header: str, answers: InitialAnswers | P2Response) -> str:
    return (
        f"{header}:\n"
        f"- What happened: {answers.what_happened}\n"
        f"- What led to it: {answers.what_led_to_it}\n"
        f"- How it made them feel: {answers.how_it_made_them_feel}\n"
        f"- Desired outcome: {answers.desired_outcome}"
    )


def describe_stage_input(stage: ContextStage, stage_input: InitialAnswers | P2Response | str) -> str:
    """Render a stage's raw input for the analysis prompt."""
    if stage == ContextStage.P1_ANSWERS:
        return _describe_answers("P1 INITIAL ANSWERS", stage_input)
    if stage == ContextStage.P2_RESPONSE:
        if stage_input.response_type == ResponseType.DISPUTE_TEXT:
            return f"P2 RESPONSE:\n- Dispute: {stage_input.dispute_text}"
        return _describe_answers("P2 RESPONSE", stage_input)
    who = "P1" if stage == ContextStage.P1_CONTEXT else "P2"
    return f"{who} ADDITIONAL CONTEXT:\n{stage_input}"


def _parse_context(reply: dict, stage: str, now: float) -> ParticipantContext:
    def identity(raw) -> IdentityGuess:
        raw = raw if isinstance(raw, dict) else {}
        return IdentityGuess(
            identity=str(raw.get("identity") or "unknown"),
            confidence=clamp_confidence(raw.get("confidence")),
        )

    relationship_raw = reply.get("relationship")
    relationship_raw = relationship_raw if isinstance(relationship_raw, dict) else {}
    clues = reply.get("clues")
    return ParticipantContext(
        p1=identity(reply.get("p1")),
        p2=identity(reply.get("p2")),
        relationship=RelationshipGuess(
            type=str(relationship_raw.get("type") or "unknown"),
            details=str(relationship_raw.get("details") or ""),
            confidence=clamp_confidence(relationship_raw.get("confidence")),
        ),
        clues=[str(c) for c in clues] if isinstance(clues, list) else [],
        last_stage=stage,
        last_updated=now,
    )


class ContextAccumulator:
    def __init__(
        self,
        generator: TextGenerator,
        prompt: PromptPair,
        settings: CallSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.generator = generator
        self.prompt = prompt
        self.settings = settings
        self.clock = clock

    async def update(
        self,
        existing: ParticipantContext | None,
        stage_input: InitialAnswers | P2Response | str,
        stage: ContextStage,
    ) -> ParticipantContext:
        """Return the replacement inference. Never raises."""
        messages = build_messages(
            self.prompt,
            previous=_describe_previous(existing),
            stage=stage.value,
            stage_input=describe_stage_input(stage, stage_input),
        )
        try:
            reply = await generate_json(self.generator, messages, self.settings)
        except GenerationError as exc:
            logger.warning("Context analysis failed at %s, keeping previous inference: %s", stage.value, exc)
            return existing if existing is not None else unknown_context(stage.value, self.clock())

        updated = _parse_context(reply, stage.value, self.clock())
        logger.info(
            "Context after %s: p1=%s (%.2f), p2=%s (%.2f), relationship=%s (%.2f)",
            stage.value,
            updated.p1.identity, updated.p1.confidence,
            updated.p2.identity, updated.p2.confidence,
            updated.relationship.type, updated.relationship.confidence,
        )
        return updated


def format_for_prompt(context: ParticipantContext | None) -> str:
    """Internal-context block for the verdict prompt; empty when nothing is known.

    Guesses under 0.5 confidence are marked with '?'.
    """
    if context is None:
        return ""
    if context.p1.identity == "unknown" and context.p2.identity == "unknown":
        return ""

    def identity(guess: IdentityGuess, label: str) -> str:
        if not guess.identity or guess.identity == "unknown":
            return f"{label}: Unknown"
        marker = "?" if guess.confidence < 0.5 else ""
        return f"{label}: {guess.identity}{marker} ({round(guess.confidence * 100)}%)"

    rel = context.relationship
    if not rel.type or rel.type == "unknown":
        relationship = "Relationship: Unknown"
    else:
        marker = "?" if rel.confidence < 0.5 else ""
        details = f" - {rel.details}" if rel.details else ""
        relationship = f"Relationship: {rel.type}{marker}{details} ({round(rel.confidence * 100)}%)"

    return (
        "\n[INTERNAL CONTEXT - Use this to better understand the parties involved]\n"
        f"{identity(context.p1, 'P1')}\n"
        f"{identity(context.p2, 'P2')}\n"
        f"{relationship}\n"
        f"Key clues: {', '.join(context.clues[:_MAX_PROMPT_CLUES])}\n"
    )
