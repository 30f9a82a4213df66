"""
SqlFlowStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Flow graphs and session variables live in JSON columns; SQLite hands
them back as text on some driver versions, so reads go through _json().
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, delete, and_

from database.models import FlowRow, FlowSessionRow
from database.connection import FlowDatabase
from database.store_base import BaseFlowStore, SessionNotFoundError
from models.schemas import Flow, FlowGraph, FlowSession, FlowStatus, FlowTrigger

logger = structlog.get_logger()


def _json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    The store owns its FlowDatabase; without one it connects to
    settings.database.url.
    """

    def __init__(self, database: FlowDatabase = None):
        if database is None:
            from config.settings import get_settings
            settings = get_settings()
            database = FlowDatabase(settings.database.url, echo=settings.debug)
        self.db = database

    async def initialize(self) -> None:
        """Create missing tables."""
        await self.db.create_tables()

    async def close(self) -> None:
        await self.db.dispose()

    # ── Session operations ─────────────────────────────────

    async def get_session(self, user_id: str, contact: str) -> Optional[FlowSession]:
        async with self.db.transaction() as db:
            stmt = select(FlowSessionRow).where(and_(
                FlowSessionRow.user_id == user_id,
                FlowSessionRow.contact == contact,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def create_session(
        self, user_id: str, contact: str, flow_id: str,
        start_node_id: str, variables: dict[str, Any] = None,
    ) -> FlowSession:
        async with self.db.transaction() as db:
            # One session per (user_id, contact): drop the old row in the same transaction
            result = await db.execute(delete(FlowSessionRow).where(and_(
                FlowSessionRow.user_id == user_id,
                FlowSessionRow.contact == contact,
            )))
            if result.rowcount:
                logger.warning("session_replaced", user_id=user_id, contact=contact)

            session = FlowSession(
                user_id=user_id, contact=contact, flow_id=flow_id,
                current_node_id=start_node_id, variables=variables or {},
            )
            db.add(FlowSessionRow(
                id=session.id, user_id=user_id, contact=contact,
                flow_id=flow_id, current_node_id=start_node_id,
                variables=session.variables,
                created_at=session.created_at, updated_at=session.updated_at,
            ))
            await db.flush()
            return session

    async def update_session(
        self, session_id: str, current_node_id: str = None,
        variables: dict[str, Any] = None,
    ) -> FlowSession:
        async with self.db.transaction() as db:
            row = await db.get(FlowSessionRow, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            if current_node_id is not None:
                row.current_node_id = current_node_id
            if variables is not None:
                # Assign a fresh object so the JSON column is marked dirty
                row.variables = json.loads(json.dumps(variables, default=str))
            row.updated_at = datetime.now(timezone.utc)
            await db.flush()
            return self._row_to_session(row)

    async def delete_session(self, session_id: str) -> None:
        async with self.db.transaction() as db:
            await db.execute(delete(FlowSessionRow).where(FlowSessionRow.id == session_id))

    # ── Flow operations ────────────────────────────────────

    async def get_flow(self, flow_id: str, user_id: str) -> Optional[Flow]:
        async with self.db.transaction() as db:
            row = await db.get(FlowRow, flow_id)
            if row is None or row.user_id != user_id:
                return None
            return self._row_to_flow(row)

    async def list_active_flows(self, user_id: str) -> list[Flow]:
        async with self.db.transaction() as db:
            stmt = (
                select(FlowRow)
                .where(and_(FlowRow.user_id == user_id, FlowRow.status == FlowStatus.ACTIVE.value))
                .order_by(FlowRow.created_at.asc())
            )
            result = await db.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars()]

    async def save_flow(self, flow: Flow) -> Flow:
        graph = flow.graph.model_dump(mode="json", by_alias=True)
        trigger = flow.trigger.model_dump(mode="json", by_alias=True) if flow.trigger else None
        async with self.db.transaction() as db:
            existing = await db.get(FlowRow, flow.id)
            if existing:
                existing.user_id = flow.user_id
                existing.campaign_id = flow.campaign_id
                existing.name = flow.name
                existing.status = flow.status.value
                existing.graph = graph
                existing.trigger = trigger
                existing.updated_at = datetime.now(timezone.utc)
                await db.flush()
                return self._row_to_flow(existing)
            row = FlowRow(
                id=flow.id, user_id=flow.user_id, campaign_id=flow.campaign_id,
                name=flow.name, status=flow.status.value,
                graph=graph, trigger=trigger,
                created_at=flow.created_at, updated_at=flow.updated_at,
            )
            db.add(row)
            await db.flush()
            return flow

    async def delete_flow(self, flow_id: str, user_id: str) -> None:
        async with self.db.transaction() as db:
            await db.execute(delete(FlowRow).where(and_(
                FlowRow.id == flow_id, FlowRow.user_id == user_id,
            )))

    # ── Row converters ────────────────────────────────────

    @staticmethod
    def _row_to_session(row: FlowSessionRow) -> FlowSession:
        return FlowSession(
            id=row.id, user_id=row.user_id, contact=row.contact,
            flow_id=row.flow_id, current_node_id=row.current_node_id,
            variables=_json(row.variables, {}),
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        trigger = _json(row.trigger, None)
        return Flow(
            id=row.id, user_id=row.user_id, campaign_id=row.campaign_id,
            name=row.name or "", status=FlowStatus(row.status),
            graph=FlowGraph.model_validate(_json(row.graph, {})),
            trigger=FlowTrigger.model_validate(trigger) if trigger else None,
            created_at=row.created_at, updated_at=row.updated_at,
        )
