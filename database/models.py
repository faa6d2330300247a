"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Tables mirror the chatbot schema used by the flow-authoring side:
  chatbot_flows → chatbot_nodes → chatbot_options / chatbot_node_actions
plus chat_sessions for conversation state.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB. On PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys. Flow authoring may use integers; they are
    stored as their string form.
  - Type-specific node settings (form fields, condition branches, next,
    dynamic option source, …) live in the `config` JSON column.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Flow definitions (read-only to the engine)
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "chatbot_flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    id_connection: Mapped[str] = mapped_column(String(64), index=True)
    id_department: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    trigger_keywords: Mapped[Any] = mapped_column(JSON, default=list)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    root_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class NodeRow(Base):
    __tablename__ = "chatbot_nodes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    flow_id: Mapped[str] = mapped_column(ForeignKey("chatbot_flows.id", ondelete="CASCADE"), index=True)
    parent_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    node_type: Mapped[str] = mapped_column(String(32))   # menu | prompt | form | condition | response | question
    content: Mapped[str] = mapped_column(Text, default="")
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False)
    has_actions: Mapped[bool] = mapped_column(Boolean, default=False)
    wait_for_input: Mapped[bool] = mapped_column(Boolean, default=False)
    timeout_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    config: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class OptionRow(Base):
    __tablename__ = "chatbot_options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(ForeignKey("chatbot_nodes.id", ondelete="CASCADE"), index=True)
    option_text: Mapped[str] = mapped_column(String(255))
    option_value: Mapped[str] = mapped_column(String(100))
    next_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=0)


class NodeActionRow(Base):
    __tablename__ = "chatbot_node_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(ForeignKey("chatbot_nodes.id", ondelete="CASCADE"), index=True)
    action_type: Mapped[str] = mapped_column(String(32))
    action_config: Mapped[Any] = mapped_column(JSON, default=dict)
    execution_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


# ──────────────────────────────────────────────────────────────
#  Conversation state
# ──────────────────────────────────────────────────────────────

class ChatSessionRow(Base):
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)   # "<connection_id>:<contact_id>"
    contact_id: Mapped[str] = mapped_column(String(64))
    connection_id: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(20), default="active")
    flow_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    current_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stage: Mapped[str] = mapped_column(String(64), default="initial")
    data: Mapped[Any] = mapped_column(JSON, default=dict)            # full Session snapshot
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_chat_sessions_connection_status", "connection_id", "status"),
    )
