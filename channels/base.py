"""
Channel ports — the narrow capabilities the dialog engine depends on.

Provides:
- ChannelError: structured error for every port failure
- MessageSender: plain text / media / button delivery
- DocumentSender, DepartmentRouter, AgentRouter: node action targets
- OptionProvider: runtime option lists for dynamic menus

Concrete adapters (WhatsApp, web chat, CRM handoff, …) live outside the
engine and implement these interfaces.
"""
from __future__ import annotations

import abc
from typing import Any, Optional

from models.schemas import Button, MediaRef, Option, Session


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all port operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  MESSAGE DELIVERY
# ══════════════════════════════════════════════════════════════

class MessageSender(abc.ABC):

    @abc.abstractmethod
    async def send_text(self, to: str, text: str, *, connection_id: str) -> Optional[str]:
        """Send a text message. Returns the channel message id if known."""
        ...

    @abc.abstractmethod
    async def send_media(self, to: str, media: MediaRef, *, connection_id: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def send_buttons(self, to: str, text: str, buttons: list[Button], *,
                           connection_id: str) -> Optional[str]:
        ...


# ══════════════════════════════════════════════════════════════
#  ACTION TARGETS
# ══════════════════════════════════════════════════════════════

class DocumentSender(abc.ABC):

    @abc.abstractmethod
    async def send(self, config: dict[str, Any], session: Session) -> None:
        """Deliver the document described by an action config (document_id / url / caption)."""
        ...


class DepartmentRouter(abc.ABC):

    @abc.abstractmethod
    async def transfer(self, config: dict[str, Any], session: Session) -> None:
        """Hand the conversation to a department queue (config: department_id, note)."""
        ...


class AgentRouter(abc.ABC):

    @abc.abstractmethod
    async def transfer(self, config: dict[str, Any], session: Session) -> None:
        """Hand the conversation to a human agent (config: agent_id or reason)."""
        ...


class OptionProvider(abc.ABC):
    """Builds per-session option lists, e.g. a contact's saved beneficiaries."""

    @abc.abstractmethod
    async def fetch(self, source: str, session: Session) -> list[Option]:
        ...
