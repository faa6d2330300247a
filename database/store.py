"""
SQL adapters — portable across PostgreSQL, MySQL, SQLite.

  SqlSessionStore    — Session snapshots in chat_sessions (JSON `data`
                       column plus indexed scalar columns for queries).
  SqlFlowRepository  — Reads chatbot_flows / chatbot_nodes /
                       chatbot_options / chatbot_node_actions and compiles
                       them into a FlowGraph.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from sqlalchemy import delete, select

from database.models import ChatSessionRow, FlowRow, NodeActionRow, NodeRow, OptionRow
from database.session import Database
from database.store_base import SessionStore
from engine.errors import FlowNotFound
from flows.compiler import FlowGraph, compile_rows, parse_flow
from flows.repository import FlowRepository
from models.schemas import Flow, Session, SessionStatus

logger = structlog.get_logger()


class SqlSessionStore(SessionStore):
    """Persistent session store backed by any SQLAlchemy-supported database."""

    def __init__(self, db: Database):
        self._db = db

    async def get_by_id(self, session_id: str) -> Optional[Session]:
        async with self._db.session() as s:
            row = await s.get(ChatSessionRow, session_id)
            return Session.model_validate(row.data) if row else None

    async def save(self, session: Session) -> None:
        async with self._db.session() as s:
            row = await s.get(ChatSessionRow, session.id)
            if row is None:
                row = ChatSessionRow(id=session.id, contact_id=session.contact_id,
                                     connection_id=session.connection_id,
                                     created_at=session.created_at)
                s.add(row)
            row.status = session.status.value
            row.flow_id = session.flow_id or None
            row.current_node_id = session.current_node_id or None
            row.stage = session.stage
            row.data = session.model_dump(mode="json")
            row.last_activity_at = session.last_activity_at

    async def delete(self, session_id: str) -> None:
        async with self._db.session() as s:
            await s.execute(delete(ChatSessionRow).where(ChatSessionRow.id == session_id))

    async def list_active(self, connection_id: str = "") -> list[Session]:
        stmt = select(ChatSessionRow).where(ChatSessionRow.status == SessionStatus.ACTIVE.value)
        if connection_id:
            stmt = stmt.where(ChatSessionRow.connection_id == connection_id)
        async with self._db.session() as s:
            rows = (await s.execute(stmt)).scalars().all()
            return [Session.model_validate(r.data) for r in rows]


class SqlFlowRepository(FlowRepository):

    def __init__(self, db: Database):
        self._db = db

    async def load_flow(self, flow_id: str) -> FlowGraph:
        async with self._db.session() as s:
            flow_row = await s.get(FlowRow, flow_id)
            if flow_row is None:
                raise FlowNotFound(connection_id="", flow_id=flow_id)
            nodes = (await s.execute(
                select(NodeRow).where(NodeRow.flow_id == flow_id).order_by(NodeRow.order_index)
            )).scalars().all()
            node_ids = [n.id for n in nodes]
            options = (await s.execute(
                select(OptionRow).where(OptionRow.node_id.in_(node_ids)).order_by(OptionRow.order_index)
            )).scalars().all() if node_ids else []
            actions = (await s.execute(
                select(NodeActionRow).where(NodeActionRow.node_id.in_(node_ids))
            )).scalars().all() if node_ids else []

        graph = compile_rows(
            self._flow_dict(flow_row),
            [self._node_dict(n) for n in nodes],
            [self._option_dict(o) for o in options],
            [self._action_dict(a) for a in actions],
        )
        logger.info("sql_flow_loaded", flow_id=flow_id, nodes=len(graph.nodes))
        return graph

    async def list_flows(self, connection_id: str) -> list[Flow]:
        async with self._db.session() as s:
            rows = (await s.execute(
                select(FlowRow).where(FlowRow.id_connection == connection_id)
            )).scalars().all()
        return [parse_flow(self._flow_dict(r)) for r in rows]

    # ── Row → dict ────────────────────────────────────────

    @staticmethod
    def _flow_dict(r: FlowRow) -> dict[str, Any]:
        return {
            "id": r.id, "id_connection": r.id_connection, "id_department": r.id_department,
            "name": r.name, "is_active": r.is_active,
            "trigger_keywords": r.trigger_keywords or [], "priority": r.priority,
            "root_node_id": r.root_node_id, "created_at": r.created_at,
        }

    @staticmethod
    def _node_dict(r: NodeRow) -> dict[str, Any]:
        return {
            "id": r.id, "parent_node_id": r.parent_node_id, "node_type": r.node_type,
            "content": r.content, "order_index": r.order_index, "is_final": r.is_final,
            "has_actions": r.has_actions, "wait_for_input": r.wait_for_input,
            "timeout_seconds": r.timeout_seconds, "config": r.config or {},
        }

    @staticmethod
    def _option_dict(r: OptionRow) -> dict[str, Any]:
        return {
            "node_id": r.node_id, "option_text": r.option_text, "option_value": r.option_value,
            "next_node_id": r.next_node_id, "order_index": r.order_index,
        }

    @staticmethod
    def _action_dict(r: NodeActionRow) -> dict[str, Any]:
        return {
            "node_id": r.node_id, "action_type": r.action_type,
            "action_config": r.action_config or {}, "execution_order": r.execution_order,
            "is_active": r.is_active,
        }
