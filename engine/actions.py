"""
Action Executor — runs a node's side-effecting actions in order.

Each action type maps to exactly one port:

  send_document        → DocumentSender.send(config, session)
  transfer_department  → DepartmentRouter.transfer(config, session)
  transfer_agent       → AgentRouter.transfer(config, session)
  send_message         → MessageSender.send_text(contact, rendered config.text)
  wait_input           → no port; the node waits for a reply
  end_conversation     → no port; the session ends

Failure policy: the first failing action stops the node. Nothing after it
runs, the session is parked at the failed node with stage `action_error`
and an apology intent is queued. An end_conversation stops the node too,
successfully.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Optional

from channels.base import AgentRouter, DepartmentRouter, DocumentSender, MessageSender
from engine.errors import ActionExecutionError
from models.schemas import (
    ActionType, NodeAction, NodeBase, OutboundIntent, Session, SessionStatus,
)
from utils.templating import render

logger = structlog.get_logger()

ERROR_STAGE = "action_error"
DEFAULT_FAILURE_MESSAGE = "Sorry, something went wrong on our side. Please try again in a moment."


@dataclass
class ActionOutcome:
    session: Session
    intents: list[OutboundIntent] = field(default_factory=list)
    executed: list[ActionType] = field(default_factory=list)
    error: Optional[ActionExecutionError] = None
    terminated: bool = False
    transferred: bool = False
    wait_for_input: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class ActionExecutor:

    def __init__(
        self,
        message_sender: Optional[MessageSender] = None,
        document_sender: Optional[DocumentSender] = None,
        department_router: Optional[DepartmentRouter] = None,
        agent_router: Optional[AgentRouter] = None,
        failure_message: str = DEFAULT_FAILURE_MESSAGE,
    ):
        self._message_sender = message_sender
        self._document_sender = document_sender
        self._department_router = department_router
        self._agent_router = agent_router
        self.failure_message = failure_message

    async def execute(self, node: NodeBase, session: Session) -> ActionOutcome:
        outcome = ActionOutcome(session=session)
        actions = node.ordered_actions

        for i, action in enumerate(actions):
            try:
                await self._run(action, session, outcome)
            except Exception as e:
                outcome.error = ActionExecutionError(action.type.value, e, session.id, node.id)
                session.stage = ERROR_STAGE
                outcome.intents.append(OutboundIntent(
                    to=session.contact_id, connection_id=session.connection_id,
                    text=self.failure_message,
                    metadata={"node_id": node.id, "failed_action": action.type.value},
                ))
                logger.error("node_action_failed",
                             session_id=session.id, node_id=node.id,
                             action=action.type.value, order=action.execution_order,
                             skipped=[a.type.value for a in actions[i + 1:]],
                             error=str(e))
                break

            outcome.executed.append(action.type)
            if outcome.terminated:
                remaining = actions[i + 1:]
                if remaining:
                    logger.warning("actions_after_end_skipped",
                                   session_id=session.id, node_id=node.id,
                                   skipped=[a.type.value for a in remaining])
                break

        logger.info("node_actions_executed",
                    session_id=session.id, node_id=node.id,
                    executed=[a.value for a in outcome.executed],
                    failed=outcome.error is not None)
        return outcome

    # ── Dispatch ──────────────────────────────────────────

    async def _run(self, action: NodeAction, session: Session, outcome: ActionOutcome) -> None:
        config = action.config

        if action.type == ActionType.SEND_MESSAGE:
            sender = self._require(self._message_sender, action)
            text = render(config.get("text", config.get("message", "")), session.template_context())
            await sender.send_text(session.contact_id, text, connection_id=session.connection_id)

        elif action.type == ActionType.SEND_DOCUMENT:
            await self._require(self._document_sender, action).send(config, session)

        elif action.type == ActionType.TRANSFER_DEPARTMENT:
            await self._require(self._department_router, action).transfer(config, session)
            self._mark_transferred(session, outcome, "department", config)

        elif action.type == ActionType.TRANSFER_AGENT:
            await self._require(self._agent_router, action).transfer(config, session)
            self._mark_transferred(session, outcome, "agent", config)

        elif action.type == ActionType.WAIT_INPUT:
            outcome.wait_for_input = True

        elif action.type == ActionType.END_CONVERSATION:
            session.status = SessionStatus.ENDED
            outcome.terminated = True
            if config.get("message"):
                outcome.intents.append(OutboundIntent(
                    to=session.contact_id, connection_id=session.connection_id,
                    text=render(config["message"], session.template_context()),
                ))

    @staticmethod
    def _require(port, action: NodeAction):
        if port is None:
            raise RuntimeError(f"no port configured for {action.type.value}")
        return port

    @staticmethod
    def _mark_transferred(session: Session, outcome: ActionOutcome, target: str, config: dict) -> None:
        session.status = SessionStatus.TRANSFERRED
        session.variables["handoff"] = {"target": target, **config}
        outcome.transferred = True
