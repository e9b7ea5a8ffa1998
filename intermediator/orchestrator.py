"""Session orchestrator: the two-party mediation state machine.

Every action runs load -> validate -> persist payload -> generate ->
persist status and artifacts -> notify, holding the session lock (an
asyncio.Lock in this process plus a file lock shared with other processes).
Validation happens before anything is written, so a refused action leaves
the stored session untouched.

    waiting_p2_join --p1 answers--> waiting_p2_acceptance
    waiting_p2_acceptance --p2 rejects--> rejected
    waiting_p2_acceptance --p2 accepts--> p2_answering
    p2_answering --p2 response--> waiting_p1_context
    waiting_p1_context --p1 context--> waiting_p2_context
    waiting_p2_context --p2 context (simple, dynamic)--> generating_judgment --> completed
    waiting_p2_context --p2 context (advanced)--> fact_verification
    fact_verification --both verifications--> generating_judgment --> completed
"""

import asyncio
import logging
import re
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Callable

from config.config_loader import SUPPORTED_LANGUAGES, AppConfig
from intermediator.attachments import AttachmentRegistry, format_attachment_list, format_for_prompt
from intermediator.context import ContextAccumulator
from intermediator.facts import (
    FactVerificationBarrier,
    build_fact_views,
    facts_for_participant,
    parse_verifications,
    verification_for,
    verifications_of,
)
from intermediator.judgment import JudgmentPipeline, VerdictError
from intermediator.mediation import Mediator
from intermediator.models import (
    TERMINAL_STATUSES,
    AcceptanceStatus,
    Attachment,
    ContextStage,
    Event,
    Evidence,
    InitialAnswers,
    P2Response,
    Participant,
    ResponseType,
    Session,
    SessionStatus,
    Stage,
    VisibilityMode,
    Workflow,
)
from intermediator.notifications import NotificationChannel
from intermediator.providers.base import TextGenerator
from intermediator.store import SessionStore, StorageError, to_plain

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_LOCK_POLL_SEC = 0.05
_ANSWER_FIELDS = ("what_happened", "what_led_to_it", "how_it_made_them_feel", "desired_outcome")

# stage -> (owning participant, statuses in which the stage accepts uploads)
_UPLOAD_WINDOWS: dict[Stage, tuple[int, frozenset[SessionStatus]]] = {
    Stage.P1_INITIAL: (1, frozenset({SessionStatus.WAITING_P2_JOIN})),
    Stage.P2_RESPONSE: (2, frozenset({SessionStatus.WAITING_P2_ACCEPTANCE, SessionStatus.P2_ANSWERING})),
    Stage.P1_CONTEXT: (1, frozenset({SessionStatus.WAITING_P1_CONTEXT})),
    Stage.P2_CONTEXT: (2, frozenset({SessionStatus.WAITING_P2_CONTEXT})),
}


class ValidationError(Exception):
    """Action not allowed in the current status, by this actor, or with this payload."""


def _plain(obj) -> dict:
    return to_plain(asdict(obj))


def _require_text(payload: dict, name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required field: {name}")
    return value.strip()


class SessionOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        attachments: AttachmentRegistry,
        generator: TextGenerator,
        config: AppConfig,
        channel: NotificationChannel,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.attachments = attachments
        self.config = config
        self.channel = channel
        self.clock = clock
        self.mediator = Mediator(generator, config)
        self.accumulator = ContextAccumulator(
            generator, config.context_prompt, config.generation["context_analysis"], clock=clock,
        )
        self.judgment = JudgmentPipeline(generator, config)
        self.barrier = FactVerificationBarrier(store)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._closed: set[str] = set()

    # ------------------------------------------------------------------
    # helpers

    @asynccontextmanager
    async def _locked(self, session_id: str):
        """Serialize one session across coroutines and across processes.

        The asyncio.Lock orders callers in this process; the store's file lock
        covers other processes (each CLI command is one) sharing the data dir.
        """
        lock = self._locks[session_id]
        try:
            async with lock:
                file_lock = self.store.lock_for(session_id)
                while not file_lock.acquire():
                    await asyncio.sleep(_LOCK_POLL_SEC)
                try:
                    yield
                finally:
                    file_lock.release()
        finally:
            if session_id in self._closed and not lock.locked():
                self._closed.discard(session_id)
                self._locks.pop(session_id, None)

    def _participant(self, session: Session, participant_id: str) -> Participant:
        for participant in session.participants:
            if participant.id == participant_id:
                return participant
        raise ValidationError(f"Unknown participant for session {session.id}")

    def _require(
        self,
        session: Session,
        participant_id: str,
        number: int | None,
        statuses: set[SessionStatus],
        action: str,
    ) -> Participant:
        """Check actor role and current status before anything is written."""
        participant = self._participant(session, participant_id)
        if number is not None and participant.participant_number != number:
            raise ValidationError(f"Participant {participant.participant_number} cannot {action}")
        if session.status not in statuses:
            raise ValidationError(f"Cannot {action} while session is {session.status.value}")
        return participant

    def _retry_message(self, session: Session) -> str:
        return self.config.prompts_for(session.language).fallbacks["retry"]

    async def _persist(self, session: Session, submitter: int | None = None) -> None:
        """Save the whole session. On StorageError tell the submitter to retry, then re-raise."""
        session.updated_at = self.clock()
        try:
            self.store.save(session)
        except StorageError:
            logger.exception("Saving session %s failed", session.id)
            if submitter is not None:
                await self.channel.notify(
                    session.id, submitter, Event("error", {"message": self._retry_message(session)}),
                )
            raise

    async def _evidence(self, session: Session, submitter: int | None = None) -> Evidence:
        """Attachments rendered for prompts. Unreadable metadata is reported like a failed save."""
        try:
            records = self.attachments.list_attachments(session.id)
        except StorageError:
            logger.exception("Reading attachments of session %s failed", session.id)
            event = Event("error", {"message": self._retry_message(session)})
            if submitter is None:
                await self.channel.notify_both(session.id, event)
            else:
                await self.channel.notify(session.id, submitter, event)
            raise
        labels = self.config.prompts_for(session.language).labels
        text, images = format_for_prompt(self.attachments.read_contents(records), labels)
        return Evidence(text=text, images=images, listing=format_attachment_list(records, labels))

    def _transition(self, session: Session, status: SessionStatus) -> None:
        logger.info("Session %s: %s -> %s", session.id, session.status.value, status.value)
        session.status = status
        if status in TERMINAL_STATUSES:
            self._closed.add(session.id)

    # ------------------------------------------------------------------
    # lifecycle

    async def create_session(
        self,
        visibility_mode: str = "open",
        workflow: str = "simple",
        language: str = "en",
        title: str | None = None,
        initial_description: str | None = None,
    ) -> Session:
        """Open a session with both participants. Unknown workflows become simple."""
        try:
            visibility = VisibilityMode(visibility_mode)
        except ValueError as exc:
            raise ValidationError(f"Invalid visibility mode: {visibility_mode}") from exc
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError(f"Invalid language: {language}. Must be one of {', '.join(SUPPORTED_LANGUAGES)}")
        try:
            chosen_workflow = Workflow(workflow)
        except ValueError:
            logger.warning("Unknown workflow %r, using simple", workflow)
            chosen_workflow = Workflow.SIMPLE

        now = self.clock()
        session = Session(
            id=str(uuid.uuid4()),
            created_at=now,
            status=SessionStatus.WAITING_P2_JOIN,
            visibility_mode=visibility,
            workflow=chosen_workflow,
            language=language,
            title=title,
            initial_description=initial_description,
            participants=[
                Participant(id=str(uuid.uuid4()), participant_number=1, token=uuid.uuid4().hex, is_initiator=True),
                Participant(id=str(uuid.uuid4()), participant_number=2, token=uuid.uuid4().hex, is_initiator=False),
            ],
        )
        await self._persist(session)
        logger.info(
            "Session %s created (%s, %s, %s)",
            session.id, visibility.value, chosen_workflow.value, language,
        )
        return session

    async def join(self, token: str) -> tuple[Session, Participant]:
        """Resolve a join token, mark the participant connected and announce it."""
        session, participant = self.store.find_by_token(token)
        async with self._locked(session.id):
            session = self.store.load(session.id)
            participant = self._participant(session, participant.id)
            if participant.joined_at is None and session.status not in TERMINAL_STATUSES:
                participant.joined_at = self.clock()
                await self._persist(session, participant.participant_number)

            self.channel.membership.connect(session.id, participant.participant_number)
            logger.info("Participant %d joined session %s", participant.participant_number, session.id)
            await self.channel.notify_both(session.id, Event("participant-joined", {
                "participant_number": participant.participant_number,
                "connected": self.channel.membership.connected(session.id),
            }))

            if session.status == SessionStatus.FACT_VERIFICATION:
                number = participant.participant_number
                await self.channel.notify(session.id, number, Event("fact-list-ready", {
                    "facts": [_plain(f) for f in facts_for_participant(session, number)],
                }))
                if verifications_of(session, number) is not None:
                    await self.channel.notify(session.id, number, Event("waiting-other-verification"))
        return session, participant

    async def leave(self, session_id: str, participant_number: int) -> None:
        self.channel.membership.disconnect(session_id, participant_number)
        logger.info("Participant %d left session %s", participant_number, session_id)
        await self.channel.notify_both(session_id, Event("participant-disconnected", {
            "participant_number": participant_number,
        }))

    async def update_email(self, session_id: str, participant_id: str, email: str) -> None:
        async with self._locked(session_id):
            session = self.store.load(session_id)
            participant = self._participant(session, participant_id)
            if session.status in TERMINAL_STATUSES:
                raise ValidationError(f"Session {session_id} is {session.status.value}")
            if not isinstance(email, str) or not _EMAIL_RE.match(email.strip()):
                raise ValidationError("Invalid email format")
            participant.email = email.strip()
            await self._persist(session, participant.participant_number)
            await self.channel.notify(session_id, participant.participant_number, Event("email-updated"))

    # ------------------------------------------------------------------
    # narrative stages

    async def submit_initial_answers(self, session_id: str, participant_id: str, answers: dict) -> Session:
        async with self._locked(session_id):
            session = self.store.load(session_id)
            self._require(session, participant_id, 1, {SessionStatus.WAITING_P2_JOIN}, "submit initial answers")
            parsed = InitialAnswers(
                **{name: _require_text(answers, name) for name in _ANSWER_FIELDS},
                submitted_at=self.clock(),
            )

            session.p1_answers = parsed
            await self._persist(session, 1)

            session.participant_context = await self.accumulator.update(
                session.participant_context, parsed, ContextStage.P1_ANSWERS,
            )
            evidence = await self._evidence(session, 1)
            session.summary_for_p2 = await self.mediator.summarize_initial_answers(session, evidence)
            session.briefing_for_p2 = await self.mediator.briefing(session)
            self._transition(session, SessionStatus.WAITING_P2_ACCEPTANCE)
            await self._persist(session, 1)

            p2 = next(p for p in session.participants if p.participant_number == 2)
            await self.channel.notify(session_id, 1, Event("p1-answers-submitted", {"p2_token": p2.token}))
            await self.channel.notify(session_id, 2, Event("p2-summary-ready", {
                "summary": session.summary_for_p2,
                "briefing": session.briefing_for_p2,
            }))
            return session

    async def decide(self, session_id: str, participant_id: str, decision: str) -> Session:
        """Participant 2 accepts or rejects the mediation."""
        async with self._locked(session_id):
            session = self.store.load(session_id)
            self._require(session, participant_id, 2, {SessionStatus.WAITING_P2_ACCEPTANCE}, "decide")
            if decision not in (AcceptanceStatus.ACCEPTED.value, AcceptanceStatus.REJECTED.value):
                raise ValidationError(f"Decision must be accepted or rejected, got {decision!r}")

            session.p2_acceptance_status = AcceptanceStatus(decision)
            if session.p2_acceptance_status == AcceptanceStatus.REJECTED:
                self._transition(session, SessionStatus.REJECTED)
            else:
                self._transition(session, SessionStatus.P2_ANSWERING)
            await self._persist(session, 2)

            await self.channel.notify_both(session_id, Event("p2-decision-made", {"decision": decision}))
            return session

    def _parse_response(self, session: Session, response: dict) -> P2Response:
        try:
            response_type = ResponseType(response.get("response_type", ResponseType.ANSWER_SET.value))
        except ValueError as exc:
            raise ValidationError(f"Invalid response type: {response.get('response_type')!r}") from exc
        if response_type == ResponseType.DISPUTE_TEXT:
            if session.visibility_mode != VisibilityMode.OPEN:
                raise ValidationError("Free-text responses are only allowed in open sessions")
            return P2Response(
                response_type=response_type,
                dispute_text=_require_text(response, "dispute_text"),
                submitted_at=self.clock(),
            )
        return P2Response(
            response_type=response_type,
            **{name: _require_text(response, name) for name in _ANSWER_FIELDS},
            submitted_at=self.clock(),
        )

    async def submit_response(self, session_id: str, participant_id: str, response: dict) -> Session:
        async with self._locked(session_id):
            session = self.store.load(session_id)
            self._require(session, participant_id, 2, {SessionStatus.P2_ANSWERING}, "submit a response")
            parsed = self._parse_response(session, response)

            session.p2_response = parsed
            await self._persist(session, 2)

            session.participant_context = await self.accumulator.update(
                session.participant_context, parsed, ContextStage.P2_RESPONSE,
            )
            evidence = await self._evidence(session, 2)
            session.dispute_points = await self.mediator.dispute_points(session, evidence)
            session.p2_summary_for_p1 = await self.mediator.summarize_response(session, evidence)
            self._transition(session, SessionStatus.WAITING_P1_CONTEXT)
            await self._persist(session, 2)

            await self.channel.notify(session_id, 2, Event("p2-response-submitted"))
            await self.channel.notify(session_id, 1, Event("dispute-points-ready", {
                "dispute_points": session.dispute_points,
                "p2_response": _plain(parsed) if session.visibility_mode == VisibilityMode.OPEN else None,
                "p2_summary": session.p2_summary_for_p1,
            }))
            return session

    async def submit_context(self, session_id: str, participant_id: str, context: str) -> Session:
        """Additional context from either participant, in turn.

        Participant 2 may resubmit while the session waits at
        generating_judgment; the context is overwritten and judgment retried.
        """
        async with self._locked(session_id):
            session = self.store.load(session_id)
            participant = self._participant(session, participant_id)
            number = participant.participant_number
            if number == 1:
                allowed = {SessionStatus.WAITING_P1_CONTEXT}
            else:
                allowed = {SessionStatus.WAITING_P2_CONTEXT, SessionStatus.GENERATING_JUDGMENT}
            self._require(session, participant_id, number, allowed, "submit context")
            text = _require_text({"context": context}, "context")

            if number == 1:
                session.p1_context = text
                await self._persist(session, 1)
                await self._after_p1_context(session)
            else:
                retrying = session.status == SessionStatus.GENERATING_JUDGMENT
                session.p2_context = text
                await self._persist(session, 2)
                await self._after_p2_context(session, retrying)
            return session

    async def _after_p1_context(self, session: Session) -> None:
        session.participant_context = await self.accumulator.update(
            session.participant_context, session.p1_context, ContextStage.P1_CONTEXT,
        )
        session.p1_context_summary = await self.mediator.summarize_context(
            session, 1, await self._evidence(session, 1),
        )
        self._transition(session, SessionStatus.WAITING_P2_CONTEXT)
        await self._persist(session, 1)

        await self.channel.notify(session.id, 1, Event("p1-context-submitted"))
        await self.channel.notify(session.id, 2, Event("p1-context-ready", {
            "context_summary": session.p1_context_summary,
        }))

    async def _after_p2_context(self, session: Session, retrying: bool) -> None:
        if retrying:
            # inference already includes the p2_context stage; only the judgment is re-attempted
            await self.channel.notify(session.id, 2, Event("p2-context-submitted"))
            await self._generate_judgment(session)
            return

        session.participant_context = await self.accumulator.update(
            session.participant_context, session.p2_context, ContextStage.P2_CONTEXT,
        )

        if session.workflow == Workflow.ADVANCED:
            facts = await self.mediator.extract_facts(session, await self._evidence(session, 2))
            session.facts = facts
            session.fact_views = build_fact_views(facts)
            self._transition(session, SessionStatus.FACT_VERIFICATION)
            await self._persist(session, 2)

            await self.channel.notify(session.id, 2, Event("p2-context-submitted"))
            logger.info(
                "Fact list for session %s: %d facts, %d for P1, %d for P2",
                session.id, len(facts), len(session.fact_views[1]), len(session.fact_views[2]),
            )
            for number in (1, 2):
                await self.channel.notify(session.id, number, Event("fact-list-ready", {
                    "facts": [_plain(f) for f in facts_for_participant(session, number)],
                }))
            return

        self._transition(session, SessionStatus.GENERATING_JUDGMENT)
        await self._persist(session, 2)
        await self.channel.notify(session.id, 2, Event("p2-context-submitted"))
        await self._generate_judgment(session)

    # ------------------------------------------------------------------
    # fact verification and judgment

    async def submit_fact_verification(self, session_id: str, participant_id: str, verifications) -> Session:
        """Record one participant's verification; judgment starts when both are in.

        Indexes refer to positions in the filtered list that participant saw.
        """
        async with self._locked(session_id):
            session = self.store.load(session_id)
            participant = self._require(
                session, participant_id, None,
                {SessionStatus.FACT_VERIFICATION, SessionStatus.GENERATING_JUDGMENT},
                "submit fact verification",
            )
            if session.workflow != Workflow.ADVANCED or session.facts is None:
                raise ValidationError("This session has no fact verification stage")
            number = participant.participant_number
            try:
                parsed = parse_verifications(verifications, len(session.fact_views.get(number, [])))
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc

            try:
                complete = self.barrier.record(session, number, parsed)
            except StorageError:
                await self.channel.notify(session_id, number, Event("error", {"message": self._retry_message(session)}))
                raise
            await self.channel.notify(session_id, number, Event("fact-verification-submitted"))

            if not complete:
                await self.channel.notify(session_id, number, Event("waiting-other-verification"))
                return session

            if session.status == SessionStatus.FACT_VERIFICATION:
                self._transition(session, SessionStatus.GENERATING_JUDGMENT)
                await self._persist(session, number)
            await self._generate_judgment(session)
            return session

    async def retry_judgment(self, session_id: str) -> Session:
        """Re-attempt judgment for a session left at generating_judgment."""
        async with self._locked(session_id):
            session = self.store.load(session_id)
            if session.status != SessionStatus.GENERATING_JUDGMENT:
                raise ValidationError(f"Cannot retry judgment while session is {session.status.value}")
            await self._generate_judgment(session)
            return session

    async def _generate_judgment(self, session: Session) -> None:
        """Sanitize, then decide. Caller holds the session lock."""
        record = await self.judgment.sanitize(session, await self._evidence(session))
        try:
            judgment = await self.judgment.decide(session, record)
        except VerdictError as exc:
            if not self.config.defaults.allow_unassessed_judgment:
                logger.error("%s; session stays at generating_judgment", exc)
                await self.channel.notify_both(session.id, Event("error", {"message": self._retry_message(session)}))
                return
            logger.error("%s; storing unassessed judgment", exc)
            judgment = self.judgment.unable_to_assess(session, record)

        session.judgment = judgment
        self._transition(session, SessionStatus.COMPLETED)
        await self._persist(session)
        logger.info("Judgment for session %s: %s", session.id, judgment.verdict.value)
        await self.channel.notify_both(session.id, Event("judgment-ready", {"judgment": _plain(judgment)}))

    # ------------------------------------------------------------------
    # attachments

    def _check_upload_window(self, session: Session, participant: Participant, stage: Stage) -> None:
        owner, statuses = _UPLOAD_WINDOWS[stage]
        if participant.participant_number != owner:
            raise ValidationError(f"Participant {participant.participant_number} cannot use stage {stage.value}")
        if session.status not in statuses:
            raise ValidationError(f"Stage {stage.value} is closed while session is {session.status.value}")

    async def upload_attachment(
        self,
        session_id: str,
        participant_id: str,
        stage: str,
        original_name: str,
        mime_type: str,
        data: bytes,
    ) -> Attachment:
        """Store evidence for a stage that is still open for its owner."""
        async with self._locked(session_id):
            session = self.store.load(session_id)
            participant = self._participant(session, participant_id)
            try:
                chosen_stage = Stage(stage)
            except ValueError as exc:
                raise ValidationError(f"Invalid stage: {stage}") from exc
            self._check_upload_window(session, participant, chosen_stage)
            return self.attachments.add(
                session_id, participant.participant_number, chosen_stage, original_name, mime_type, data,
            )

    async def delete_attachment(self, session_id: str, participant_id: str, attachment_id: int) -> None:
        async with self._locked(session_id):
            session = self.store.load(session_id)
            participant = self._participant(session, participant_id)
            record = self.attachments.get(session_id, attachment_id)
            if record.participant_number != participant.participant_number:
                raise ValidationError("Participants can only delete their own attachments")
            self._check_upload_window(session, participant, record.stage)
            self.attachments.delete(session_id, attachment_id)

    # ------------------------------------------------------------------
    # read-only queries

    def participant_view(self, session_id: str, participant_number: int) -> dict:
        """Everything a participant may see, rebuilt from the store alone."""
        session = self.store.load(session_id)
        other = 2 if participant_number == 1 else 1
        view: dict = {
            "session_id": session.id,
            "participant_number": participant_number,
            "status": session.status.value,
            "title": session.title,
            "initial_description": session.initial_description,
            "language": session.language,
            "workflow": session.workflow.value,
            "visibility_mode": session.visibility_mode.value,
            "p2_acceptance_status": session.p2_acceptance_status.value,
            "dispute_points": session.dispute_points,
            "attachments": [_plain(a) for a in self.attachments.list_attachments(session_id) if a.participant_number == participant_number],
            "judgment": _plain(session.judgment) if session.judgment else None,
        }
        if participant_number == 1:
            view["p2_summary"] = session.p2_summary_for_p1
            if session.visibility_mode == VisibilityMode.OPEN and session.p2_response:
                view["p2_response"] = _plain(session.p2_response)
        else:
            view["summary"] = session.summary_for_p2
            view["briefing"] = session.briefing_for_p2
            view["p1_context_summary"] = session.p1_context_summary
        if session.facts is not None:
            view["facts"] = [_plain(f) for f in facts_for_participant(session, participant_number)]
            view["verified"] = verifications_of(session, participant_number) is not None
            view["other_verified"] = verifications_of(session, other) is not None
        return view

    def judgment_report(self, session_id: str) -> dict:
        """Judgment plus the full fact table with both verifications resolved by fact id."""
        session = self.store.load(session_id)
        if session.judgment is None:
            raise ValidationError(f"Session {session_id} has no judgment yet")
        facts = []
        for fact in session.facts or []:
            entry = {**_plain(fact)}
            for number in (1, 2):
                found = verification_for(session, fact.id, number)
                entry[f"p{number}_verification"] = _plain(found) if found else None
            facts.append(entry)
        return {
            "session_id": session.id,
            "title": session.title,
            "language": session.language,
            "workflow": session.workflow.value,
            "judgment": _plain(session.judgment),
            "facts": facts,
        }
