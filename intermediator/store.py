"""JSON-file session store. One file per session, saved atomically."""

import fcntl
import json
import logging
import os
import tempfile
from dataclasses import asdict
from enum import Enum
from pathlib import Path

from intermediator.models import (
    AcceptanceStatus,
    DisputedFact,
    Fact,
    FactSource,
    FactVerification,
    IdentityGuess,
    InitialAnswers,
    Judgment,
    P2Response,
    Participant,
    ParticipantContext,
    RelationshipGuess,
    ResponseType,
    SanitizedRecord,
    Session,
    SessionStatus,
    Verdict,
    VerificationStatus,
    VisibilityMode,
    Workflow,
)

logger = logging.getLogger(__name__)


class SessionNotFoundError(Exception):
    """No session (or participant token) matches the lookup."""


class StorageError(Exception):
    """A session could not be written or read back."""


def to_plain(value):
    """Recursively turn enums into values and int keys into strings."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


def session_to_dict(session: Session) -> dict:
    return to_plain(asdict(session))


def _verifications_from(raw: dict | None) -> dict[int, FactVerification] | None:
    if raw is None:
        return None
    return {
        int(index): FactVerification(
            status=VerificationStatus(entry["status"]),
            comment=entry.get("comment", ""),
        )
        for index, entry in raw.items()
    }


def _context_from(raw: dict | None) -> ParticipantContext | None:
    if raw is None:
        return None
    return ParticipantContext(
        p1=IdentityGuess(**raw["p1"]),
        p2=IdentityGuess(**raw["p2"]),
        relationship=RelationshipGuess(**raw["relationship"]),
        clues=list(raw.get("clues", [])),
        last_stage=raw.get("last_stage"),
        last_updated=raw.get("last_updated"),
    )


def _record_from(raw: dict | None) -> SanitizedRecord | None:
    if raw is None:
        return None
    return SanitizedRecord(
        p1_factual_claims=list(raw["p1_factual_claims"]),
        p2_factual_claims=list(raw["p2_factual_claims"]),
        agreed_facts=list(raw["agreed_facts"]),
        disputed_facts=[DisputedFact(**d) for d in raw["disputed_facts"]],
        documented_evidence=list(raw["documented_evidence"]),
        p1_desired_outcome=raw["p1_desired_outcome"],
        p2_desired_outcome=raw["p2_desired_outcome"],
    )


def _judgment_from(raw: dict | None) -> Judgment | None:
    if raw is None:
        return None
    return Judgment(
        verdict=Verdict(raw["verdict"]),
        p1_correct_behaviors=list(raw["p1_correct_behaviors"]),
        p1_wrong_behaviors=list(raw["p1_wrong_behaviors"]),
        p2_correct_behaviors=list(raw["p2_correct_behaviors"]),
        p2_wrong_behaviors=list(raw["p2_wrong_behaviors"]),
        justification=raw["justification"],
        sanitized_record=_record_from(raw.get("sanitized_record")),
        assessed=raw.get("assessed", True),
    )


def session_from_dict(raw: dict) -> Session:
    p1_answers = InitialAnswers(**raw["p1_answers"]) if raw.get("p1_answers") else None
    p2_response = None
    if raw.get("p2_response"):
        response_raw = dict(raw["p2_response"])
        response_raw["response_type"] = ResponseType(response_raw["response_type"])
        p2_response = P2Response(**response_raw)

    facts = None
    if raw.get("facts") is not None:
        facts = [Fact(id=f["id"], statement=f["statement"], source=FactSource(f["source"])) for f in raw["facts"]]

    return Session(
        id=raw["id"],
        created_at=raw["created_at"],
        status=SessionStatus(raw["status"]),
        visibility_mode=VisibilityMode(raw["visibility_mode"]),
        workflow=Workflow(raw["workflow"]),
        language=raw["language"],
        title=raw.get("title"),
        initial_description=raw.get("initial_description"),
        current_round=raw.get("current_round", 0),
        p2_acceptance_status=AcceptanceStatus(raw.get("p2_acceptance_status", "pending")),
        participants=[Participant(**p) for p in raw.get("participants", [])],
        p1_answers=p1_answers,
        p2_response=p2_response,
        p1_context=raw.get("p1_context"),
        p2_context=raw.get("p2_context"),
        summary_for_p2=raw.get("summary_for_p2"),
        briefing_for_p2=raw.get("briefing_for_p2"),
        dispute_points=raw.get("dispute_points"),
        p2_summary_for_p1=raw.get("p2_summary_for_p1"),
        p1_context_summary=raw.get("p1_context_summary"),
        facts=facts,
        fact_views={int(k): list(v) for k, v in raw.get("fact_views", {}).items()},
        p1_verifications=_verifications_from(raw.get("p1_verifications")),
        p2_verifications=_verifications_from(raw.get("p2_verifications")),
        participant_context=_context_from(raw.get("participant_context")),
        judgment=_judgment_from(raw.get("judgment")),
        updated_at=raw.get("updated_at"),
    )


def write_text_atomic(path: Path, text: str) -> None:
    """Write to a temp file in the same directory, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class SessionFileLock:
    """Exclusive flock on a sidecar file, shared by every process using the data dir.

    acquire() never blocks; async callers poll it between sleeps.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle = None

    def acquire(self) -> bool:
        """Take the lock if it is free. Returns False while another holder has it."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a+")
        except OSError as exc:
            raise StorageError(f"Cannot open lock file {self.path}: {exc}") from exc
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError as exc:
            handle.close()
            raise StorageError(f"Cannot lock {self.path}: {exc}") from exc
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle, fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None


class SessionStore:
    """Sessions as <data_dir>/sessions/<id>.json."""

    def __init__(self, data_dir: Path) -> None:
        self.sessions_dir = Path(data_dir) / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir = Path(data_dir) / "locks"

    def path_for(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def lock_for(self, session_id: str) -> SessionFileLock:
        return SessionFileLock(self.locks_dir / f"{session_id}.lock")

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def load(self, session_id: str) -> Session:
        """Raises SessionNotFoundError for unknown ids, StorageError for unreadable files."""
        path = self.path_for(session_id)
        if not path.exists():
            raise SessionNotFoundError(f"Session not found: {session_id}")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return session_from_dict(raw)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"Cannot read session {session_id}: {exc}") from exc

    def save(self, session: Session) -> None:
        """Replace the whole session file; a failed write leaves the old file intact."""
        try:
            text = json.dumps(session_to_dict(session), indent=2, ensure_ascii=False)
            write_text_atomic(self.path_for(session.id), text)
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"Cannot save session {session.id}: {exc}") from exc
        logger.debug("Saved session %s (status=%s)", session.id, session.status.value)

    def list_sessions(self) -> list[Session]:
        """All readable sessions, newest first."""
        sessions: list[Session] = []
        for path in self.sessions_dir.glob("*.json"):
            try:
                sessions.append(self.load(path.stem))
            except StorageError as exc:
                logger.warning("Skipping unreadable session file %s: %s", path.name, exc)
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def find_by_token(self, token: str) -> tuple[Session, Participant]:
        for session in self.list_sessions():
            for participant in session.participants:
                if participant.token == token:
                    return session, participant
        raise SessionNotFoundError("No participant matches this token")

    def both_verifications_recorded(self, session_id: str) -> bool:
        """Read both verification slots back from disk."""
        session = self.load(session_id)
        return session.p1_verifications is not None and session.p2_verifications is not None
