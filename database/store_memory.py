"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlFlowStore
  - Safe within a single event loop (no awaits inside a mutation)
  - All data lost on process restart

Best for: local development, unit tests, the flow simulator.
"""
from __future__ import annotations

import copy
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseFlowStore, SessionNotFoundError
from models.schemas import Flow, FlowSession, FlowStatus

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryFlowStore(BaseFlowStore):
    """
    Sessions and flows kept as plain dicts. Returned models are copies, so a
    caller holding a session object never sees later writes through it.
    """

    def __init__(self):
        self._sessions: dict[str, dict] = {}       # id → session dict
        self._flows: dict[str, dict] = {}          # id → flow dict

        # Indexes
        self._contact_index: dict[str, str] = {}   # "user_id:contact" → session_id
        logger.info("inmemory_store_initialized")

    @staticmethod
    def _contact_key(user_id: str, contact: str) -> str:
        return f"{user_id}:{contact}"

    # ── Sessions ──────────────────────────────────────────

    async def get_session(self, user_id: str, contact: str) -> Optional[FlowSession]:
        sid = self._contact_index.get(self._contact_key(user_id, contact))
        data = self._sessions.get(sid) if sid else None
        return FlowSession.model_validate(copy.deepcopy(data)) if data else None

    async def create_session(
        self, user_id: str, contact: str, flow_id: str,
        start_node_id: str, variables: dict[str, Any] = None,
    ) -> FlowSession:
        key = self._contact_key(user_id, contact)
        previous = self._contact_index.pop(key, None)
        if previous:
            self._sessions.pop(previous, None)
            logger.warning("session_replaced", user_id=user_id, contact=contact, session_id=previous)

        session = FlowSession(
            user_id=user_id, contact=contact, flow_id=flow_id,
            current_node_id=start_node_id, variables=copy.deepcopy(variables or {}),
        )
        self._sessions[session.id] = session.model_dump(mode="json")
        self._contact_index[key] = session.id
        return session

    async def update_session(
        self, session_id: str, current_node_id: str = None,
        variables: dict[str, Any] = None,
    ) -> FlowSession:
        data = self._sessions.get(session_id)
        if data is None:
            raise SessionNotFoundError(session_id)
        if current_node_id is not None:
            data["current_node_id"] = current_node_id
        if variables is not None:
            data["variables"] = copy.deepcopy(variables)
        data["updated_at"] = _utcnow().isoformat()
        return FlowSession.model_validate(copy.deepcopy(data))

    async def delete_session(self, session_id: str) -> None:
        data = self._sessions.pop(session_id, None)
        if data:
            key = self._contact_key(data["user_id"], data["contact"])
            if self._contact_index.get(key) == session_id:
                del self._contact_index[key]

    # ── Flows ─────────────────────────────────────────────

    async def get_flow(self, flow_id: str, user_id: str) -> Optional[Flow]:
        data = self._flows.get(flow_id)
        if not data or data["user_id"] != user_id:
            return None
        return Flow.model_validate(data)

    async def list_active_flows(self, user_id: str) -> list[Flow]:
        rows = [
            f for f in self._flows.values()
            if f["user_id"] == user_id and f["status"] == FlowStatus.ACTIVE.value
        ]
        rows.sort(key=lambda f: f.get("created_at", ""))
        return [Flow.model_validate(f) for f in rows]

    async def save_flow(self, flow: Flow) -> Flow:
        existing = self._flows.get(flow.id)
        if existing:
            flow = flow.model_copy(update={"updated_at": _utcnow()})
        self._flows[flow.id] = flow.model_dump(mode="json")
        return flow

    async def delete_flow(self, flow_id: str, user_id: str) -> None:
        data = self._flows.get(flow_id)
        if data and data["user_id"] == user_id:
            del self._flows[flow_id]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "flows": len(self._flows),
        }
