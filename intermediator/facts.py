"""Fact list normalization, per-participant views and the verification barrier.

Participant 1 verifies facts claimed by participant 2 (source p2 or both);
participant 2 verifies facts claimed by participant 1 (source p1 or both).
Verification indexes refer to positions in the list that participant saw,
resolved through session.fact_views.
"""

import logging

from intermediator.models import (
    Fact,
    FactSource,
    FactVerification,
    Session,
    VerificationStatus,
)
from intermediator.store import SessionStore

logger = logging.getLogger(__name__)

_VERIFIES = {
    1: (FactSource.P2, FactSource.BOTH),
    2: (FactSource.P1, FactSource.BOTH),
}


def normalize_facts(raw_facts: list) -> list[Fact]:
    """Turn a generated fact list into Facts with unique ids.

    Missing or duplicate ids are replaced with the next free sequential id;
    unknown sources become "both". Entries without a statement are dropped.
    """
    facts: list[Fact] = []
    used: set[int] = set()
    for item in raw_facts:
        if isinstance(item, str):
            item = {"statement": item}
        if not isinstance(item, dict):
            continue
        statement = str(item.get("statement") or "").strip()
        if not statement:
            continue
        try:
            fact_id = int(item.get("id"))
        except (TypeError, ValueError):
            fact_id = None
        if fact_id is None or fact_id in used:
            fact_id = max(used, default=0) + 1
        used.add(fact_id)
        try:
            source = FactSource(str(item.get("source", "")).lower())
        except ValueError:
            source = FactSource.BOTH
        facts.append(Fact(id=fact_id, statement=statement, source=source))
    return facts


def build_fact_views(facts: list[Fact]) -> dict[int, list[int]]:
    """Ordered fact ids each participant verifies. Computed once with the list."""
    return {
        number: [f.id for f in facts if f.source in sources]
        for number, sources in _VERIFIES.items()
    }


def facts_for_participant(session: Session, participant_number: int) -> list[Fact]:
    by_id = {f.id: f for f in session.facts or []}
    return [by_id[i] for i in session.fact_views.get(participant_number, []) if i in by_id]


def verifications_of(session: Session, participant_number: int) -> dict[int, FactVerification] | None:
    return session.p1_verifications if participant_number == 1 else session.p2_verifications


def verification_for(session: Session, fact_id: int, participant_number: int) -> FactVerification | None:
    """A participant's verification of a fact, looked up through their view."""
    view = session.fact_views.get(participant_number, [])
    if fact_id not in view:
        return None
    recorded = verifications_of(session, participant_number) or {}
    return recorded.get(view.index(fact_id))


def parse_verifications(raw: dict | list, view_length: int) -> dict[int, FactVerification]:
    """Validate a submitted verification map keyed by filtered-list position.

    Accepts {index: {status, comment}} or a list in view order.
    Raises ValueError on an index outside the view or an unknown status.
    """
    if isinstance(raw, list):
        raw = dict(enumerate(raw))
    if not isinstance(raw, dict):
        raise ValueError("Verifications must be a mapping of fact position to verdict")

    parsed: dict[int, FactVerification] = {}
    for key, entry in raw.items():
        try:
            index = int(key)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid fact position: {key!r}") from exc
        if not 0 <= index < view_length:
            raise ValueError(f"Fact position {index} is outside the list of {view_length} facts")
        if isinstance(entry, str):
            entry = {"status": entry}
        try:
            status = VerificationStatus(str(entry.get("status", "")).lower())
        except ValueError as exc:
            raise ValueError(f"Invalid verification status for fact {index}: {entry.get('status')!r}") from exc
        parsed[index] = FactVerification(status=status, comment=str(entry.get("comment") or ""))
    return parsed


def format_verifications(session: Session, labels: dict[str, str]) -> str:
    """Full fact list with each side's verification, for the sanitize prompt."""
    if not session.facts:
        return ""
    claimed_by = labels.get("claimed_by", "claimed by")
    verification = labels.get("verification", "verification")
    source_names = {FactSource.P1: "P1", FactSource.P2: "P2", FactSource.BOTH: labels.get("both", "both")}

    lines = [f"\n\n{labels.get('verification_header', '')}"]
    for position, fact in enumerate(session.facts, start=1):
        lines.append(f'{position}. "{fact.statement}" ({claimed_by}: {source_names[fact.source]})')
        for number in (1, 2):
            entry = verification_for(session, fact.id, number)
            if entry is None:
                continue
            comment = f' - "{entry.comment}"' if entry.comment else ""
            lines.append(f"   - P{number} {verification}: {entry.status.value}{comment}")
    lines.append(f"\n{labels.get('verification_footer', '')}")
    return "\n".join(lines)


class FactVerificationBarrier:
    """Two write slots, one per participant. Fires once both are on disk.

    Callers hold the session lock; the barrier itself does no locking.
    """

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def record(
        self,
        session: Session,
        participant_number: int,
        verifications: dict[int, FactVerification],
    ) -> bool:
        """Write this participant's slot (overwriting), persist, then re-read both.

        Returns True when both slots are populated.
        """
        if participant_number == 1:
            session.p1_verifications = verifications
        else:
            session.p2_verifications = verifications
        self.store.save(session)
        complete = self.store.both_verifications_recorded(session.id)
        logger.info(
            "Fact verification recorded for session %s participant %d (%d entries, complete=%s)",
            session.id, participant_number, len(verifications), complete,
        )
        return complete
