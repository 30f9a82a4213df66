"""
Abstract Flow Store — Interface for all storage backends.

Implementations:
  - SqlFlowStore       (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore  (dict-based, single-process, no persistence)
  - FileFlowStore      (JSON files on disk, single-process, durable)

Every session operation is atomic for its one row. The engine serializes
work per (user_id, contact), so no backend needs cross-call locking.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Flow, FlowSession


class SessionNotFoundError(Exception):
    """An update targeted a session that no longer exists."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get_session(self, user_id: str, contact: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def create_session(
        self, user_id: str, contact: str, flow_id: str,
        start_node_id: str, variables: dict[str, Any] = None,
    ) -> FlowSession:
        """Create the session for (user_id, contact), replacing any existing one."""
        ...

    @abstractmethod
    async def update_session(
        self, session_id: str, current_node_id: str = None,
        variables: dict[str, Any] = None,
    ) -> FlowSession:
        """Patch a session. Raises SessionNotFoundError if it is gone."""
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session; deleting a missing session is a no-op."""
        ...

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def get_flow(self, flow_id: str, user_id: str) -> Optional[Flow]:
        """Look up a flow by id, scoped to its owning user."""
        ...

    @abstractmethod
    async def list_active_flows(self, user_id: str) -> list[Flow]:
        """Active flows of a user, oldest first."""
        ...

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        ...

    @abstractmethod
    async def delete_flow(self, flow_id: str, user_id: str) -> None:
        ...
