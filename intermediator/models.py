"""Pure dataclasses and enums for mediation sessions. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum


class SessionStatus(str, Enum):
    WAITING_P2_JOIN = "waiting_p2_join"
    WAITING_P2_ACCEPTANCE = "waiting_p2_acceptance"
    P2_ANSWERING = "p2_answering"
    WAITING_P1_CONTEXT = "waiting_p1_context"
    WAITING_P2_CONTEXT = "waiting_p2_context"
    FACT_VERIFICATION = "fact_verification"
    GENERATING_JUDGMENT = "generating_judgment"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.REJECTED})


class VisibilityMode(str, Enum):
    OPEN = "open"
    BLIND = "blind"


class Workflow(str, Enum):
    SIMPLE = "simple"
    ADVANCED = "advanced"
    DYNAMIC = "dynamic"


class Stage(str, Enum):
    """Narrative-submission point an attachment belongs to."""

    P1_INITIAL = "p1_initial"
    P2_RESPONSE = "p2_response"
    P1_CONTEXT = "p1_context"
    P2_CONTEXT = "p2_context"


class ContextStage(str, Enum):
    """Stage names fed to the context accumulator."""

    P1_ANSWERS = "p1_answers"
    P2_RESPONSE = "p2_response"
    P1_CONTEXT = "p1_context"
    P2_CONTEXT = "p2_context"


class AcceptanceStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ResponseType(str, Enum):
    DISPUTE_TEXT = "dispute_text"
    ANSWER_SET = "answer_set"


class FactSource(str, Enum):
    P1 = "p1"
    P2 = "p2"
    BOTH = "both"


class VerificationStatus(str, Enum):
    AGREE = "agree"
    DISAGREE = "disagree"
    PARTIALLY = "partially"


class Verdict(str, Enum):
    P1_RIGHT = "p1_right"
    P1_MORE_RIGHT = "p1_more_right"
    BOTH_RIGHT = "both_right"
    NEITHER_RIGHT = "neither_right"
    P2_MORE_RIGHT = "p2_more_right"
    P2_RIGHT = "p2_right"


@dataclass
class Participant:
    id: str
    participant_number: int  # 1 or 2
    token: str
    is_initiator: bool
    email: str | None = None
    joined_at: float | None = None


@dataclass
class InitialAnswers:
    what_happened: str
    what_led_to_it: str
    how_it_made_them_feel: str
    desired_outcome: str
    submitted_at: float = 0.0


@dataclass
class P2Response:
    response_type: ResponseType
    dispute_text: str | None = None
    what_happened: str | None = None
    what_led_to_it: str | None = None
    how_it_made_them_feel: str | None = None
    desired_outcome: str | None = None
    submitted_at: float = 0.0


@dataclass
class Attachment:
    id: int
    session_id: str
    participant_number: int
    stage: Stage
    file_name: str         # name on disk
    original_name: str
    file_type: str         # "image", "text", "csv", "pdf", "document"
    mime_type: str
    file_size: int
    uploaded_at: float


@dataclass
class AttachmentContent:
    name: str
    file_type: str
    participant_number: int
    content: str           # text, or base64 for images
    mime_type: str | None = None
    is_image: bool = False


@dataclass
class ImageInput:
    name: str
    participant_number: int
    mime_type: str
    data_base64: str


@dataclass
class Evidence:
    """Attachment material prepared for one generation call."""

    text: str = ""                 # rendered documents plus image references
    images: list[ImageInput] = field(default_factory=list)
    listing: str = ""              # name-only list of every attachment


@dataclass
class Fact:
    id: int
    statement: str
    source: FactSource


@dataclass
class FactVerification:
    status: VerificationStatus
    comment: str = ""


@dataclass
class IdentityGuess:
    identity: str = "unknown"
    confidence: float = 0.0


@dataclass
class RelationshipGuess:
    type: str = "unknown"
    details: str = ""
    confidence: float = 0.0


@dataclass
class ParticipantContext:
    p1: IdentityGuess = field(default_factory=IdentityGuess)
    p2: IdentityGuess = field(default_factory=IdentityGuess)
    relationship: RelationshipGuess = field(default_factory=RelationshipGuess)
    clues: list[str] = field(default_factory=list)
    last_stage: str | None = None
    last_updated: float | None = None


@dataclass
class DisputedFact:
    topic: str
    p1_version: str
    p2_version: str


@dataclass
class SanitizedRecord:
    p1_factual_claims: list[str] = field(default_factory=list)
    p2_factual_claims: list[str] = field(default_factory=list)
    agreed_facts: list[str] = field(default_factory=list)
    disputed_facts: list[DisputedFact] = field(default_factory=list)
    documented_evidence: list[str] = field(default_factory=list)
    p1_desired_outcome: str = ""
    p2_desired_outcome: str = ""


@dataclass
class Judgment:
    verdict: Verdict
    p1_correct_behaviors: list[str] = field(default_factory=list)
    p1_wrong_behaviors: list[str] = field(default_factory=list)
    p2_correct_behaviors: list[str] = field(default_factory=list)
    p2_wrong_behaviors: list[str] = field(default_factory=list)
    justification: str = ""
    sanitized_record: SanitizedRecord | None = None
    assessed: bool = True  # False for the neutral "unable to assess" judgment


@dataclass
class Event:
    name: str
    payload: dict = field(default_factory=dict)


@dataclass
class Session:
    id: str
    created_at: float
    status: SessionStatus
    visibility_mode: VisibilityMode
    workflow: Workflow
    language: str
    title: str | None = None
    initial_description: str | None = None
    current_round: int = 0  # unused by the two-party protocol
    p2_acceptance_status: AcceptanceStatus = AcceptanceStatus.PENDING
    participants: list[Participant] = field(default_factory=list)

    # Narrative submitted by participants
    p1_answers: InitialAnswers | None = None
    p2_response: P2Response | None = None
    p1_context: str | None = None
    p2_context: str | None = None

    # Derived artifacts
    summary_for_p2: str | None = None
    briefing_for_p2: str | None = None
    dispute_points: list[str] | None = None
    p2_summary_for_p1: str | None = None
    p1_context_summary: str | None = None
    facts: list[Fact] | None = None
    fact_views: dict[int, list[int]] = field(default_factory=dict)  # participant -> ordered fact ids
    p1_verifications: dict[int, FactVerification] | None = None
    p2_verifications: dict[int, FactVerification] | None = None
    participant_context: ParticipantContext | None = None
    judgment: Judgment | None = None
    updated_at: float | None = None
