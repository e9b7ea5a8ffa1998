"""Tests for intermediator/models.py dataclasses."""

from intermediator.models import (
    TERMINAL_STATUSES,
    AcceptanceStatus,
    Evidence,
    Judgment,
    ParticipantContext,
    Session,
    SessionStatus,
    Verdict,
    VisibilityMode,
    Workflow,
)


def _session() -> Session:
    return Session(
        id="s1",
        created_at=1.0,
        status=SessionStatus.WAITING_P2_JOIN,
        visibility_mode=VisibilityMode.OPEN,
        workflow=Workflow.SIMPLE,
        language="en",
    )


def test_session_defaults():
    session = _session()
    assert session.p2_acceptance_status == AcceptanceStatus.PENDING
    assert session.participants == []
    assert session.facts is None
    assert session.fact_views == {}
    assert session.judgment is None
    assert session.current_round == 0


def test_session_default_lists_not_shared():
    a, b = _session(), _session()
    a.fact_views[1] = [1]
    assert b.fact_views == {}


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {SessionStatus.COMPLETED, SessionStatus.REJECTED}


def test_enums_compare_to_strings():
    assert SessionStatus.FACT_VERIFICATION == "fact_verification"
    assert Verdict("p2_more_right") is Verdict.P2_MORE_RIGHT


def test_verdict_scale_has_six_values():
    assert len(Verdict) == 6


def test_participant_context_starts_unknown():
    context = ParticipantContext()
    assert context.p1.identity == "unknown"
    assert context.p2.confidence == 0.0
    assert context.relationship.type == "unknown"
    assert context.clues == []


def test_judgment_assessed_by_default():
    judgment = Judgment(verdict=Verdict.BOTH_RIGHT)
    assert judgment.assessed is True
    assert judgment.sanitized_record is None


def test_evidence_empty():
    evidence = Evidence()
    assert evidence.text == ""
    assert evidence.images == []
