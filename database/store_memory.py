"""
InMemorySessionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlSessionStore
  - Safe on a single event loop (no awaits between read and write)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import SessionStore
from models.schemas import Session, SessionStatus

logger = structlog.get_logger()


class InMemorySessionStore(SessionStore):

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        logger.info("inmemory_session_store_initialized")

    async def get_by_id(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def save(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)
        logger.debug("session_saved", session_id=session.id,
                     flow_id=session.flow_id, node_id=session.current_node_id)

    async def delete(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("session_deleted", session_id=session_id)

    async def list_active(self, connection_id: str = "") -> list[Session]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.status == SessionStatus.ACTIVE
            and (not connection_id or s.connection_id == connection_id)
        ]

    @property
    def count(self) -> int:
        return len(self._sessions)
