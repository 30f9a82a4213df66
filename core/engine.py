"""
Flow Engine — walks a contact through an authored flow, one inbound
message at a time.

    process_message(user_id, contact, text)
      → load session (or start one from a trigger match)
      → resume the waiting node the contact is parked on
      → run action nodes until a waiting node suspends the walk
        or a dead end ends the conversation

Conversations are serialized per (user_id, contact); different contacts
run concurrently. All state lives in the flow store, so every call starts
from what is persisted and a restart between messages loses nothing.
Each completed action node is committed with one store write.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from config.settings import Settings, get_settings
from core.executor import NodeExecutor, ResumeStatus
from flows.graph import (
    FlowCache, FlowConfigurationError,
    find_entry_node, find_node, validate_graph,
)
from flows.triggers import TriggerResolver
from database.store_base import BaseFlowStore, SessionNotFoundError
from models.schemas import Flow, FlowSession

logger = structlog.get_logger()


class ContactLocks:
    """
    One asyncio.Lock per (user_id, contact). Entries are dropped once no
    call holds or waits on them, so the registry only grows with the
    number of conversations in flight.
    """

    def __init__(self):
        self._entries: dict[tuple[str, str], list] = {}   # key → [lock, holders]

    @asynccontextmanager
    async def hold(self, user_id: str, contact: str) -> AsyncIterator[None]:
        key = (user_id, contact)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class _SessionGone(Exception):
    """The session disappeared while the walk was in progress."""


class FlowEngine:
    """
    Dependencies are injected; nothing here reaches for a global transport.
      store      — BaseFlowStore (sessions + flows)
      transport  — send_to_contact(user_id, contact, payload), e.g. ChannelRegistry
      http / ai  — collaborators for api-call and ai-query nodes
    """

    def __init__(
        self,
        store: BaseFlowStore,
        transport,
        http=None,
        ai=None,
        settings: Settings = None,
        flow_cache: FlowCache = None,
        executor: NodeExecutor = None,
    ):
        self._settings = settings or get_settings()
        self.store = store
        self.transport = transport

        if http is None:
            from backend.http_client import HttpCallService
            http = HttpCallService(self._settings.http)
        if ai is None:
            from core.ai import create_ai_service
            ai = create_ai_service(self._settings.llm)

        self.executor = executor or NodeExecutor(transport, http, ai, self._settings.engine)
        self.triggers = TriggerResolver(store)
        self.flow_cache = flow_cache or FlowCache(ttl_seconds=self._settings.engine.flow_cache_ttl_s)
        self.locks = ContactLocks()

    @property
    def max_action_hops(self) -> int:
        return self._settings.engine.max_action_hops

    # ══════════════════════════════════════════════════════════
    #  INBOUND — one human message
    # ══════════════════════════════════════════════════════════

    async def process_message(self, user_id: str, contact: str, text: str,
                              reply_id: Optional[str] = None) -> None:
        """
        Advance the contact's conversation by one inbound message. Never raises.
        reply_id is the option id of an interactive reply (button or list row).
        """
        async with self.locks.hold(user_id, contact):
            try:
                await self._process(user_id, contact, text, reply_id)
            except Exception as e:
                logger.error("flow_processing_error", user_id=user_id,
                             contact=contact, error=str(e), exc_info=True)

    async def _process(self, user_id: str, contact: str, text: str,
                       reply_id: Optional[str] = None) -> None:
        session = await self.store.get_session(user_id, contact)

        if session is None:
            started = await self._start_session(user_id, contact, text)
            if started is None:
                return
            session, flow = started
            next_node_id = session.current_node_id
        else:
            flow = await self._load_flow(user_id, session.flow_id)
            if flow is None:
                logger.error("session_orphaned", session_id=session.id,
                             flow_id=session.flow_id, contact=contact)
                await self.store.delete_session(session.id)
                return

            node = find_node(flow.graph, session.current_node_id)
            if node is None:
                logger.error("session_node_missing", session_id=session.id,
                             flow_id=flow.id, node_id=session.current_node_id)
                await self.store.delete_session(session.id)
                return

            if node.is_waiting:
                result = await self.executor.resume(session, node, flow.graph, text, reply_id)
                if result.status == ResumeStatus.STAY:
                    return
                if result.variables is not None:
                    try:
                        session = await self.store.update_session(session.id, variables=result.variables)
                    except SessionNotFoundError:
                        logger.warning("session_removed_mid_flow", session_id=session.id, contact=contact)
                        return
                next_node_id = result.next_node_id
            else:
                # Parked on an action node: the previous walk stopped before
                # committing it. Run it again.
                next_node_id = node.id

        try:
            finished = await self._walk(session, flow, next_node_id)
        except _SessionGone:
            logger.warning("session_removed_mid_flow", session_id=session.id, contact=contact)
            return
        except FlowConfigurationError as e:
            logger.error("flow_configuration_error", flow_id=e.flow_id or flow.id,
                         node_id=e.node_id, error=str(e))
            finished = True

        if finished:
            await self.store.delete_session(session.id)
            logger.info("flow_session_ended", session_id=session.id,
                        flow_id=flow.id, contact=contact)

    async def _start_session(self, user_id: str, contact: str, text: str) -> Optional[tuple[FlowSession, Flow]]:
        flow = await self.triggers.find_trigger_flow(user_id, text)
        if flow is None:
            return None
        self.flow_cache.put(flow)

        entry = find_entry_node(flow.graph)
        if entry is None:
            logger.error("flow_entry_unresolved", flow_id=flow.id,
                         errors=validate_graph(flow.graph))
            return None

        session = await self.store.create_session(user_id, contact, flow.id, entry.id, {})
        logger.info("flow_session_created", session_id=session.id, flow_id=flow.id,
                    contact=contact, entry_node_id=entry.id)
        return session, flow

    async def _walk(self, session: FlowSession, flow: Flow, next_node_id: Optional[str]) -> bool:
        """
        Run nodes from next_node_id. Returns True on a dead end, False when
        a waiting node suspended the conversation.
        """
        hops = 0
        while next_node_id:
            current = await self.store.get_session(session.user_id, session.contact)
            if current is None or current.id != session.id:
                raise _SessionGone()
            session = current

            node = find_node(flow.graph, next_node_id)
            if node is None:
                raise FlowConfigurationError(
                    f"edge points to missing node '{next_node_id}'", flow.id, next_node_id)

            if node.is_waiting:
                await self._commit(session, current_node_id=node.id)
                logger.info("flow_suspended", session_id=session.id,
                            flow_id=flow.id, node_id=node.id, kind=node.kind.value)
                await self.executor.suspend(session, node)
                return False

            hops += 1
            if hops > self.max_action_hops:
                raise FlowConfigurationError(
                    f"more than {self.max_action_hops} action nodes in one step (cycle?)",
                    flow.id, node.id)

            outcome = await self.executor.run_action(session, node, flow.graph)
            next_node_id = outcome.next_node_id
            await self._commit(session, current_node_id=next_node_id or node.id,
                               variables=outcome.variables)
        return True

    async def _commit(self, session: FlowSession, current_node_id: str = None, variables: dict = None) -> FlowSession:
        try:
            return await self.store.update_session(
                session.id, current_node_id=current_node_id, variables=variables)
        except SessionNotFoundError as e:
            raise _SessionGone() from e

    async def _load_flow(self, user_id: str, flow_id: str) -> Optional[Flow]:
        flow = self.flow_cache.get(user_id, flow_id)
        if flow is not None:
            return flow
        flow = await self.store.get_flow(flow_id, user_id)
        if flow is None:
            return None
        return self.flow_cache.put(flow)

    # ══════════════════════════════════════════════════════════
    #  OPERATOR CONTROLS
    # ══════════════════════════════════════════════════════════

    async def reset_session(self, user_id: str, contact: str) -> bool:
        """Abandon the contact's conversation. Returns True if one existed."""
        async with self.locks.hold(user_id, contact):
            session = await self.store.get_session(user_id, contact)
            if session is None:
                return False
            await self.store.delete_session(session.id)
            logger.info("flow_session_reset", session_id=session.id,
                        flow_id=session.flow_id, contact=contact)
            return True

    def invalidate_flow(self, user_id: str, flow_id: str) -> None:
        """Drop a cached flow so the next message re-reads it from the store."""
        self.flow_cache.invalidate(user_id, flow_id)
