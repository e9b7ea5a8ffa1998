"""Two-phase judgment: sanitize the narrative, then judge the sanitized record.

Phase one strips tone and emotion from everything the participants wrote.
Phase two sees only that record and the identity inference, so the verdict
cannot be swayed by how things were said.
"""

import logging

from config.config_loader import AppConfig, PromptsConfig
from intermediator.context import format_for_prompt as format_context_for_prompt
from intermediator.facts import format_verifications
from intermediator.generation import build_messages, generate_json
from intermediator.models import (
    DisputedFact,
    Evidence,
    Judgment,
    SanitizedRecord,
    Session,
    Verdict,
)
from intermediator.narrative import format_answers, format_context, format_response
from intermediator.providers.base import GenerationError, TextGenerator

logger = logging.getLogger(__name__)


class VerdictError(Exception):
    """The verdict phase produced nothing usable; the session waits for a retry."""


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if str(v).strip()]


def _disputed(value) -> list[DisputedFact]:
    if not isinstance(value, list):
        return []
    disputed: list[DisputedFact] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        disputed.append(DisputedFact(
            topic=str(item.get("topic", "")),
            p1_version=str(item.get("p1_version", "")),
            p2_version=str(item.get("p2_version", "")),
        ))
    return disputed


def fallback_record(session: Session) -> SanitizedRecord:
    """Empty record carrying each side's desired outcome verbatim."""
    p2_outcome = ""
    if session.p2_response is not None:
        p2_outcome = session.p2_response.desired_outcome or ""
    return SanitizedRecord(
        p1_desired_outcome=session.p1_answers.desired_outcome if session.p1_answers else "",
        p2_desired_outcome=p2_outcome,
    )


def format_record(record: SanitizedRecord, labels: dict[str, str]) -> str:
    """Numbered sections of the sanitized record; empty sections are omitted."""
    parts: list[str] = []

    def section(label_key: str, items: list[str]) -> None:
        if items:
            parts.append(f"\n{labels[label_key]}:")
            parts.extend(f"{i}. {item}" for i, item in enumerate(items, start=1))

    section("p1_claims", record.p1_factual_claims)
    section("p2_claims", record.p2_factual_claims)
    section("agreed_facts", record.agreed_facts)
    if record.disputed_facts:
        parts.append(f"\n{labels['disputed_facts']}:")
        for i, fact in enumerate(record.disputed_facts, start=1):
            parts.append(f"{i}. {fact.topic}")
            parts.append(f"   - P1: {fact.p1_version}")
            parts.append(f"   - P2: {fact.p2_version}")
    section("documented_evidence", record.documented_evidence)

    not_specified = labels["not_specified"]
    parts.append(f"\n{labels['p1_desired_outcome']}: {record.p1_desired_outcome or not_specified}")
    parts.append(f"{labels['p2_desired_outcome']}: {record.p2_desired_outcome or not_specified}")
    return "\n".join(parts)


class JudgmentPipeline:
    def __init__(self, generator: TextGenerator, config: AppConfig) -> None:
        self.generator = generator
        self.config = config

    def _prompts(self, session: Session) -> PromptsConfig:
        return self.config.prompts_for(session.language)

    async def sanitize(self, session: Session, evidence: Evidence) -> SanitizedRecord:
        """Tone-free factual record of the whole narrative. Falls back, never raises."""
        prompts = self._prompts(session)
        labels = prompts.labels
        messages = build_messages(
            prompts.sanitize,
            p1_answers=format_answers(session.p1_answers, labels),
            p1_context=format_context(session.p1_context, labels),
            p2_response=format_response(session.p2_response, labels),
            p2_context=format_context(session.p2_context, labels),
            verifications=format_verifications(session, labels),
            attachments=evidence.text,
        )
        try:
            reply = await generate_json(
                self.generator, messages, self.config.generation["sanitize"], images=evidence.images,
            )
        except GenerationError as exc:
            logger.warning("Sanitization failed for session %s, using empty record: %s", session.id, exc)
            return fallback_record(session)

        return SanitizedRecord(
            p1_factual_claims=_str_list(reply.get("p1_factual_claims")),
            p2_factual_claims=_str_list(reply.get("p2_factual_claims")),
            agreed_facts=_str_list(reply.get("agreed_facts")),
            disputed_facts=_disputed(reply.get("disputed_facts")),
            documented_evidence=_str_list(reply.get("documented_evidence")),
            p1_desired_outcome=str(reply.get("p1_desired_outcome") or ""),
            p2_desired_outcome=str(reply.get("p2_desired_outcome") or ""),
        )

    async def decide(self, session: Session, record: SanitizedRecord) -> Judgment:
        """Verdict from the sanitized record and identity inference only.

        No images and no raw narrative reach this call. An out-of-scale
        verdict becomes neither_right. Raises VerdictError on generation failure.
        """
        prompts = self._prompts(session)
        messages = build_messages(
            prompts.verdict,
            participant_context=format_context_for_prompt(session.participant_context),
            record=format_record(record, prompts.labels),
        )
        try:
            reply = await generate_json(self.generator, messages, self.config.generation["verdict"])
        except GenerationError as exc:
            raise VerdictError(f"Verdict generation failed for session {session.id}: {exc}") from exc

        raw_verdict = reply.get("verdict")
        try:
            verdict = Verdict(str(raw_verdict).strip().lower())
        except ValueError:
            logger.warning("Invalid verdict %r for session %s, using neither_right", raw_verdict, session.id)
            verdict = Verdict.NEITHER_RIGHT

        return Judgment(
            verdict=verdict,
            p1_correct_behaviors=_str_list(reply.get("p1_correct_behaviors")),
            p1_wrong_behaviors=_str_list(reply.get("p1_wrong_behaviors")),
            p2_correct_behaviors=_str_list(reply.get("p2_correct_behaviors")),
            p2_wrong_behaviors=_str_list(reply.get("p2_wrong_behaviors")),
            justification=str(reply.get("justification") or ""),
            sanitized_record=record,
        )

    def unable_to_assess(self, session: Session, record: SanitizedRecord | None = None) -> Judgment:
        """Neutral judgment stored when verdict failures are allowed to complete a session."""
        fallbacks = self._prompts(session).fallbacks
        marker = [fallbacks["unable_to_assess"]]
        return Judgment(
            verdict=Verdict.NEITHER_RIGHT,
            p1_correct_behaviors=list(marker),
            p1_wrong_behaviors=list(marker),
            p2_correct_behaviors=list(marker),
            p2_wrong_behaviors=list(marker),
            justification=fallbacks["judgment_failed"],
            sanitized_record=record,
            assessed=False,
        )
