"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex) — no database-specific sequences.
  - flow_sessions.flow_id carries no foreign key: a flow can be deleted
    while contacts are parked in it, and the engine cleans those sessions
    up itself when they next write in.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, DateTime, Index, JSON, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(16), default="draft")

    graph: Mapped[Any] = mapped_column(JSON, default=dict)
    trigger: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_flows_user_status", "user_id", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "user_id": self.user_id,
            "campaign_id": self.campaign_id, "name": self.name,
            "status": self.status, "graph": self.graph or {},
            "trigger": self.trigger,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


# ──────────────────────────────────────────────────────────────
#  Flow sessions
# ──────────────────────────────────────────────────────────────

class FlowSessionRow(Base):
    __tablename__ = "flow_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact: Mapped[str] = mapped_column(String(128), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    current_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "contact", name="uq_flow_sessions_user_contact"),
        Index("ix_flow_sessions_flow", "flow_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "user_id": self.user_id, "contact": self.contact,
            "flow_id": self.flow_id, "current_node_id": self.current_node_id,
            "variables": self.variables or {},
            "created_at": self.created_at, "updated_at": self.updated_at,
        }
