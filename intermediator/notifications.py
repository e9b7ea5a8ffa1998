"""Real-time notification channel.

Events are pushed only to participants currently connected. Delivery is
fire-and-forget: failures are logged and never reach the caller, so
persisted session state is never rolled back because of a notification.
A participant who reconnects rebuilds their view from the store.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict

from intermediator.models import Event

logger = logging.getLogger(__name__)


class Membership:
    """Which participants of which sessions are connected right now.

    Only used to decide whether to push; never authoritative state.
    """

    def __init__(self) -> None:
        self._connected: dict[str, set[int]] = defaultdict(set)

    def connect(self, session_id: str, participant_number: int) -> None:
        self._connected[session_id].add(participant_number)

    def disconnect(self, session_id: str, participant_number: int) -> None:
        members = self._connected.get(session_id)
        if members is None:
            return
        members.discard(participant_number)
        if not members:
            del self._connected[session_id]

    def is_connected(self, session_id: str, participant_number: int) -> bool:
        return participant_number in self._connected.get(session_id, set())

    def connected(self, session_id: str) -> list[int]:
        return sorted(self._connected.get(session_id, set()))


class Notifier(ABC):
    """Transport that actually delivers an event to one participant."""

    @abstractmethod
    async def deliver(self, session_id: str, participant_number: int, event: Event) -> None:
        ...


class NotificationChannel:
    def __init__(self, notifier: Notifier, membership: Membership | None = None) -> None:
        self.notifier = notifier
        self.membership = membership or Membership()

    async def notify(self, session_id: str, participant_number: int, event: Event) -> bool:
        """Push one event. Returns True if it was delivered."""
        if not self.membership.is_connected(session_id, participant_number):
            logger.debug(
                "Participant %d of session %s not connected, %s not pushed",
                participant_number, session_id, event.name,
            )
            return False
        try:
            await self.notifier.deliver(session_id, participant_number, event)
        except Exception as exc:
            logger.warning(
                "Delivery of %s to participant %d of session %s failed: %s",
                event.name, participant_number, session_id, exc,
            )
            return False
        return True

    async def notify_both(self, session_id: str, event: Event) -> None:
        for participant_number in (1, 2):
            await self.notify(session_id, participant_number, event)
