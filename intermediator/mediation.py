"""Derived artifacts for each stage: summaries, briefing, dispute points, fact list.

Every derivation makes one generation attempt. On failure it logs a warning
and returns a deterministic fallback in the session's language.
"""

import logging

from config.config_loader import AppConfig, PromptPair, PromptsConfig
from intermediator.facts import normalize_facts
from intermediator.generation import build_messages, generate_json, generate_text
from intermediator.models import Evidence, Fact, FactSource, Session
from intermediator.narrative import format_answers, format_context, format_response
from intermediator.providers.base import GenerationError, TextGenerator

logger = logging.getLogger(__name__)


class Mediator:
    def __init__(self, generator: TextGenerator, config: AppConfig) -> None:
        self.generator = generator
        self.config = config

    def _prompts(self, session: Session) -> PromptsConfig:
        return self.config.prompts_for(session.language)

    def _messages(self, session: Session, pair: PromptPair, evidence: Evidence | None, **values: str) -> list[dict]:
        prompts = self._prompts(session)
        image_instruction = prompts.image_instruction if evidence and evidence.images else ""
        return build_messages(
            pair,
            image_instruction=image_instruction,
            attachments=evidence.text if evidence else "",
            **values,
        )

    async def _text(self, site: str, messages: list[dict], evidence: Evidence | None, fallback: str) -> str:
        try:
            return await generate_text(
                self.generator, messages, self.config.generation[site],
                images=evidence.images if evidence else None,
            )
        except GenerationError as exc:
            logger.warning("%s generation failed, using fallback: %s", site, exc)
            return fallback

    async def summarize_initial_answers(self, session: Session, evidence: Evidence) -> str:
        """Neutral summary of participant 1's answers for participant 2."""
        prompts = self._prompts(session)
        messages = self._messages(
            session, prompts.summary, evidence,
            p1_answers=format_answers(session.p1_answers, prompts.labels),
        )
        return await self._text("summary", messages, evidence, prompts.fallbacks["summary"])

    async def briefing(self, session: Session) -> str:
        """Short invitation asking participant 2 to accept the mediation."""
        prompts = self._prompts(session)
        messages = self._messages(session, prompts.briefing, None)
        return await self._text("briefing", messages, None, prompts.fallbacks["briefing"])

    async def dispute_points(self, session: Session, evidence: Evidence) -> list[str]:
        prompts = self._prompts(session)
        messages = self._messages(
            session, prompts.dispute_points, evidence,
            p1_answers=format_answers(session.p1_answers, prompts.labels),
            p2_response=format_response(session.p2_response, prompts.labels),
        )
        fallback = [prompts.fallbacks["dispute_points"]]
        try:
            reply = await generate_json(
                self.generator, messages, self.config.generation["dispute_points"], images=evidence.images,
            )
        except GenerationError as exc:
            logger.warning("dispute_points generation failed, using fallback: %s", exc)
            return fallback
        points = reply.get("dispute_points")
        if not isinstance(points, list):
            logger.warning("dispute_points reply has no list, using fallback")
            return fallback
        points = [str(p).strip() for p in points if str(p).strip()]
        return points or fallback

    async def summarize_response(self, session: Session, evidence: Evidence) -> str:
        """Neutral summary of participant 2's view for participant 1."""
        prompts = self._prompts(session)
        messages = self._messages(
            session, prompts.response_summary, evidence,
            p1_answers=format_answers(session.p1_answers, prompts.labels),
            p2_response=format_response(session.p2_response, prompts.labels),
        )
        return await self._text("response_summary", messages, evidence, prompts.fallbacks["response_summary"])

    async def summarize_context(self, session: Session, participant_number: int, evidence: Evidence) -> str:
        """Summary of a participant's additional context; falls back to the raw text."""
        prompts = self._prompts(session)
        context = session.p1_context if participant_number == 1 else session.p2_context
        participant = prompts.labels.get(f"participant_{participant_number}", f"Participant {participant_number}")
        messages = self._messages(
            session, prompts.context_summary, evidence,
            participant=participant,
            context=context or "",
        )
        return await self._text("context_summary", messages, evidence, context or "")

    async def extract_facts(self, session: Session, evidence: Evidence) -> list[Fact]:
        """Verifiable facts stated by either side, normalized to unique ids."""
        prompts = self._prompts(session)
        labels = prompts.labels
        messages = self._messages(
            session, prompts.fact_list, evidence,
            p1_answers=format_answers(session.p1_answers, labels),
            p1_context=format_context(session.p1_context, labels),
            p2_response=format_response(session.p2_response, labels),
            p2_context=format_context(session.p2_context, labels),
            attachment_list=evidence.listing,
        )
        fallback = [Fact(id=1, statement=prompts.fallbacks["fact"], source=FactSource.BOTH)]
        try:
            reply = await generate_json(
                self.generator, messages, self.config.generation["fact_list"], images=evidence.images,
            )
        except GenerationError as exc:
            logger.warning("fact_list generation failed, using fallback: %s", exc)
            return fallback
        raw_facts = reply.get("facts")
        facts = normalize_facts(raw_facts) if isinstance(raw_facts, list) else []
        if not facts:
            logger.warning("fact_list reply contained no usable facts, using fallback")
            return fallback
        return facts
