"""
Abstract Session Store — Interface for all session storage backends.

Implementations:
  - SqlSessionStore      (chat_sessions table via SQLAlchemy)
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (one JSON file per session, single-process, durable)

Stores hand out copies: a session fetched by the engine is only visible
to other readers after `save`.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import Session, session_key


class SessionStore(ABC):
    """Interface that all session store backends must implement."""

    @abstractmethod
    async def get_by_id(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def save(self, session: Session) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def list_active(self, connection_id: str = "") -> list[Session]:
        ...

    async def get(self, contact_id: str, connection_id: str) -> Optional[Session]:
        return await self.get_by_id(session_key(connection_id, contact_id))

    async def close(self) -> None:
        pass
