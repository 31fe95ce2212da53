from collections import defaultdict
from typing import Any, Optional, Protocol

import structlog

from ledger.models import EventKind

logger = structlog.get_logger(__name__)


class Session(Protocol):
    """One live, authenticated client connection."""

    id: str

    async def send_json(self, message: dict) -> None:
        ...


class RealtimeHub:
    """
    Registry of live sessions per user and fan-out of state changes to them.

    Delivery is best effort and in-memory only: a session that is not
    registered when ``publish`` runs never sees that event and has to pull
    fresh state after it (re)connects.
    """

    def __init__(self):
        self._sessions: dict[int, dict[str, Session]] = defaultdict(dict)
        self._owners: dict[str, int] = {}

    def register(self, user_id: int, session: Session) -> None:
        previous = self._owners.get(session.id)
        if previous is not None and previous != user_id:
            self.unregister(session.id)
        self._sessions[user_id][session.id] = session
        self._owners[session.id] = user_id
        logger.info("session_registered", user_id=user_id, session_id=session.id)

    def unregister(self, session_id: str) -> Optional[int]:
        user_id = self._owners.pop(session_id, None)
        if user_id is None:
            return None
        sessions = self._sessions.get(user_id, {})
        sessions.pop(session_id, None)
        if not sessions:
            self._sessions.pop(user_id, None)
        logger.info("session_unregistered", user_id=user_id, session_id=session_id)
        return user_id

    def sessions_for(self, user_id: int) -> list[Session]:
        return list(self._sessions.get(user_id, {}).values())

    def user_for(self, session_id: str) -> Optional[int]:
        return self._owners.get(session_id)

    @property
    def connected_users(self) -> list[int]:
        return list(self._sessions.keys())

    async def publish(self, user_id: int, kind: EventKind, payload: dict[str, Any]) -> int:
        """Send ``payload`` to every live session of ``user_id``; returns the delivery count."""
        message = {"type": kind.value, "data": payload}
        delivered = 0
        for session in self.sessions_for(user_id):
            try:
                await session.send_json(message)
            except Exception as e:
                # A dead transport must not stop fan-out to the user's other devices.
                logger.warning("session_send_failed", user_id=user_id, session_id=session.id, error=str(e))
                self.unregister(session.id)
                continue
            delivered += 1

        logger.debug("event_published", user_id=user_id, kind=kind.value, delivered=delivered)
        return delivered
