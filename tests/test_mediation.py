"""Tests for intermediator/mediation.py and the narrative formatters."""

import logging

from intermediator.mediation import Mediator
from intermediator.models import (
    Evidence,
    FactSource,
    ImageInput,
    InitialAnswers,
    P2Response,
    ResponseType,
    Session,
    SessionStatus,
    VisibilityMode,
    Workflow,
)
from intermediator.narrative import format_answers, format_context, format_response
from intermediator.providers.base import GenerationError
from tests.conftest import P1_ANSWERS, P2_DISPUTE, StubGenerator

_IMAGE = ImageInput(name="p.png", participant_number=1, mime_type="image/png", data_base64="aW1n")


def _session(language: str = "en") -> Session:
    return Session(
        id="s1",
        created_at=1.0,
        status=SessionStatus.WAITING_P2_JOIN,
        visibility_mode=VisibilityMode.OPEN,
        workflow=Workflow.ADVANCED,
        language=language,
        p1_answers=InitialAnswers(**P1_ANSWERS),
        p2_response=P2Response(response_type=ResponseType.DISPUTE_TEXT, dispute_text=P2_DISPUTE["dispute_text"]),
        p1_context="Bank statement shows 1000.",
    )


def test_format_answers_uses_labels(app_config):
    text = format_answers(InitialAnswers(**P1_ANSWERS), app_config.prompts["pt"].labels)
    assert text.splitlines()[0] == f"O que aconteceu: {P1_ANSWERS['what_happened']}"
    assert len(text.splitlines()) == 4


def test_format_response_dispute_text_passes_through(app_config):
    response = P2Response(response_type=ResponseType.DISPUTE_TEXT, dispute_text="Not so.")
    assert format_response(response, app_config.prompts["en"].labels) == "Not so."


def test_format_response_answer_set_fills_gaps(app_config):
    response = P2Response(response_type=ResponseType.ANSWER_SET, what_happened="Rent", desired_outcome="Half")
    text = format_response(response, app_config.prompts["en"].labels)
    assert "What led to it: Not specified" in text
    assert "Desired outcome: Half" in text


def test_format_context(app_config):
    labels = app_config.prompts["en"].labels
    assert format_context(None, labels) == ""
    assert format_context("More", labels) == "\n\nAdditional context: More"


async def test_summary_includes_image_instruction_only_with_images(app_config):
    stub = StubGenerator()
    mediator = Mediator(stub, app_config)
    session = _session()

    assert await mediator.summarize_initial_answers(session, Evidence()) == "P1 says the roommate kept the deposit."
    await mediator.summarize_initial_answers(session, Evidence(text="\n[IMAGE ATTACHED: p.png]", images=[_IMAGE]))

    plain, with_image = stub.calls_for("summary")
    assert "CAREFULLY ANALYZE" not in plain["messages"][0]["content"]
    assert plain["images"] is None
    assert "CAREFULLY ANALYZE" in with_image["messages"][0]["content"]
    assert "[IMAGE ATTACHED: p.png]" in with_image["messages"][1]["content"]
    assert with_image["images"] == [_IMAGE]


async def test_summary_failure_uses_language_fallback(app_config, caplog):
    stub = StubGenerator({"summary": GenerationError("stub", "down")})
    with caplog.at_level(logging.WARNING, logger="intermediator.mediation"):
        summary = await Mediator(stub, app_config).summarize_initial_answers(_session("pt"), Evidence())
    assert summary == app_config.prompts["pt"].fallbacks["summary"]
    assert "summary generation failed" in caplog.text


async def test_empty_reply_uses_fallback(app_config):
    stub = StubGenerator({"briefing": "   "})
    briefing = await Mediator(stub, app_config).briefing(_session())
    assert briefing == app_config.prompts["en"].fallbacks["briefing"]


async def test_dispute_points(app_config):
    stub = StubGenerator({"dispute_points": {"dispute_points": ["Deposit", " ", "Cleaning"]}})
    points = await Mediator(stub, app_config).dispute_points(_session(), Evidence())
    assert points == ["Deposit", "Cleaning"]
    assert P2_DISPUTE["dispute_text"] in stub.calls[0]["messages"][1]["content"]


async def test_dispute_points_fallback_on_bad_shape(app_config):
    stub = StubGenerator({"dispute_points": {"dispute_points": "Deposit"}})
    points = await Mediator(stub, app_config).dispute_points(_session(), Evidence())
    assert points == [app_config.prompts["en"].fallbacks["dispute_points"]]


async def test_context_summary_falls_back_to_raw_text(app_config):
    stub = StubGenerator({"context_summary": GenerationError("stub", "down")})
    summary = await Mediator(stub, app_config).summarize_context(_session(), 1, Evidence())
    assert summary == "Bank statement shows 1000."


async def test_context_summary_names_participant(app_config):
    stub = StubGenerator()
    await Mediator(stub, app_config).summarize_context(_session(), 1, Evidence())
    assert stub.calls[0]["messages"][1]["content"].startswith("Participant 1 provided the following additional context")


async def test_extract_facts_includes_attachment_listing(app_config):
    stub = StubGenerator()
    evidence = Evidence(listing="\n\nAttachments/Evidence provided:\n- lease.pdf (pdf, from Participant 1)")
    facts = await Mediator(stub, app_config).extract_facts(_session(), evidence)
    assert [f.id for f in facts] == [1, 2, 3]
    user = stub.calls[0]["messages"][1]["content"]
    assert "lease.pdf" in user
    assert "Bank statement shows 1000." in user


async def test_extract_facts_fallback(app_config):
    stub = StubGenerator({"fact_list": {"facts": []}})
    facts = await Mediator(stub, app_config).extract_facts(_session(), Evidence())
    assert len(facts) == 1
    assert facts[0].id == 1
    assert facts[0].source == FactSource.BOTH
    assert facts[0].statement == app_config.prompts["en"].fallbacks["fact"]
