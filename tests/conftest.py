"""Shared pytest fixtures."""

import json
from pathlib import Path

import pytest

from config.config_loader import AppConfig, load_config
from intermediator.attachments import AttachmentRegistry
from intermediator.models import Event, Session
from intermediator.notifications import NotificationChannel, Notifier
from intermediator.orchestrator import SessionOrchestrator
from intermediator.providers.base import TextGenerator
from intermediator.store import SessionStore

P1_ANSWERS = {
    "what_happened": "My roommate kept the whole deposit when we moved out.",
    "what_led_to_it": "The landlord returned the deposit to her account only.",
    "how_it_made_them_feel": "Cheated and ignored.",
    "desired_outcome": "Get my half of the deposit, 500 dollars.",
}

P2_ANSWER_SET = {
    "response_type": "answer_set",
    "what_happened": "I kept the deposit to cover the cleaning fee.",
    "what_led_to_it": "The apartment was left dirty by my roommate.",
    "how_it_made_them_feel": "Annoyed that I did all the cleaning.",
    "desired_outcome": "Keep 200 dollars for cleaning and return the rest.",
}

P2_DISPUTE = {
    "response_type": "dispute_text",
    "dispute_text": "The cleaning fee came out of the deposit, so half is not 500.",
}

CONTEXT_REPLY = {
    "p1": {"identity": "roommate", "confidence": 0.8},
    "p2": {"identity": "roommate", "confidence": 0.75},
    "relationship": {"type": "roommates", "details": "shared apartment lease", "confidence": 0.9},
    "clues": ["moved out", "deposit", "roommate"],
}

FACTS_REPLY = {
    "facts": [
        {"id": 1, "statement": "The deposit was 1000 dollars.", "source": "p1"},
        {"id": 2, "statement": "A cleaning fee was charged.", "source": "p2"},
        {"id": 3, "statement": "The deposit was paid to one account.", "source": "both"},
    ]
}

SANITIZE_REPLY = {
    "p1_factual_claims": ["The deposit was returned to P2's account."],
    "p2_factual_claims": ["P2 paid for cleaning."],
    "agreed_facts": ["The deposit was 1000 dollars."],
    "disputed_facts": [{"topic": "Cleaning", "p1_version": "Not needed", "p2_version": "Needed"}],
    "documented_evidence": [],
    "p1_desired_outcome": "Receive 500 dollars.",
    "p2_desired_outcome": "Retain 200 dollars.",
}

VERDICT_REPLY = {
    "verdict": "p1_more_right",
    "p1_correct_behaviors": ["Asked for their share."],
    "p1_wrong_behaviors": ["Left cleaning undone."],
    "p2_correct_behaviors": ["Cleaned the apartment."],
    "p2_wrong_behaviors": ["Kept the whole deposit."],
    "justification": "The deposit belonged to both tenants.",
}

DEFAULT_REPLIES = {
    "verdict": VERDICT_REPLY,
    "sanitize": SANITIZE_REPLY,
    "fact_list": FACTS_REPLY,
    "dispute_points": {"dispute_points": ["Who owns the deposit", "Whether cleaning was needed"]},
    "context": CONTEXT_REPLY,
    "summary": "P1 says the roommate kept the deposit.",
    "briefing": "Participant 1 shared their view. Do you accept this mediation?",
    "response_summary": "P2 says the cleaning fee justified keeping part of it.",
    "context_summary": "Summary of the additional context.",
    "text": "Plain reply.",
    "ping": {"status": "ok"},
}

# Checked in order against the last user message; JSON call sites first.
_SITE_MARKERS = (
    ('"p1_correct_behaviors"', "verdict"),
    ('"p1_factual_claims"', "sanitize"),
    ('"facts"', "fact_list"),
    ('"dispute_points"', "dispute_points"),
    ('"relationship"', "context"),
    ("provided these answers", "summary"),
    ("forneceu estas respostas", "summary"),
    ("asking Participant 2 if they accept", "briefing"),
    ("PARTICIPANT 2's response", "response_summary"),
    ("provided the following additional context", "context_summary"),
    ('"status": "ok"', "ping"),
)


def site_of(messages: list[dict]) -> str:
    user = next(m["content"] for m in reversed(messages) if m["role"] == "user")
    for marker, site in _SITE_MARKERS:
        if marker in user:
            return site
    return "text"


class StubGenerator(TextGenerator):
    """Scripted generator that answers each call site with a canned reply.

    A reply may be a dict (sent as JSON), a string, an exception instance
    (raised) or a callable taking the messages. Every call is recorded.
    """

    def __init__(self, replies: dict | None = None, provider_name: str = "stub") -> None:
        self._name = provider_name
        self.replies = {**DEFAULT_REPLIES, **(replies or {})}
        self.calls: list[dict] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "stub-model"

    def sites(self) -> list[str]:
        return [c["site"] for c in self.calls]

    def calls_for(self, site: str) -> list[dict]:
        return [c for c in self.calls if c["site"] == site]

    async def generate(self, messages, temperature, images=None, max_tokens=None) -> str:
        site = site_of(messages)
        self.calls.append({
            "site": site,
            "messages": messages,
            "temperature": temperature,
            "images": images,
            "max_tokens": max_tokens,
        })
        reply = self.replies[site]
        if callable(reply):
            reply = reply(messages)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


class RecordingNotifier(Notifier):
    """Keeps every delivered event; can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.delivered: list[tuple[str, int, Event]] = []

    async def deliver(self, session_id: str, participant_number: int, event: Event) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.delivered.append((session_id, participant_number, event))

    def names_for(self, participant_number: int) -> list[str]:
        return [e.name for _, n, e in self.delivered if n == participant_number]

    def last(self, participant_number: int, name: str) -> Event:
        return [e for _, n, e in self.delivered if n == participant_number and e.name == name][-1]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


def participant_ids(session: Session) -> tuple[str, str]:
    by_number = {p.participant_number: p.id for p in session.participants}
    return by_number[1], by_number[2]


@pytest.fixture
def app_config() -> AppConfig:
    return load_config()


@pytest.fixture
def stub() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "data")


@pytest.fixture
def registry(tmp_path: Path, app_config: AppConfig) -> AttachmentRegistry:
    return AttachmentRegistry(tmp_path / "uploads", app_config.attachments)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def channel(notifier: RecordingNotifier) -> NotificationChannel:
    return NotificationChannel(notifier)


@pytest.fixture
def orchestrator(store, registry, stub, app_config, channel) -> SessionOrchestrator:
    return SessionOrchestrator(store, registry, stub, app_config, channel, clock=FakeClock())


def connect_both(orchestrator: SessionOrchestrator, session_id: str) -> None:
    for number in (1, 2):
        orchestrator.channel.membership.connect(session_id, number)
