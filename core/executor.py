"""
Node Executor — runs one flow node at a time on behalf of the engine.

Every node kind is either an ACTION or a WAITING kind:

  action   send-text | api-call | ai-query
           run_action() does the work and picks the next edge from the
           success / failure outcome.

  waiting  button-choice | wait-for-input
           suspend() sends the prompt, resume() consumes the next inbound
           text and decides where the conversation goes.

The executor is stateless: the session and graph are passed in and an
outcome is passed out. Persisting the outcome is the engine's job. No
exception raised by a collaborator (transport, HTTP, LLM) escapes; each
is logged and becomes a failure outcome.
"""
from __future__ import annotations

import copy
import json
import structlog
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from config.settings import EngineConfig
from flows.graph import resolve_default_edge, resolve_handle_edge, resolve_outcome_edge
from models.schemas import (
    ApiCallConfig, AiQueryConfig, ButtonChoiceConfig, DeliveryResult,
    FlowGraph, FlowNode, FlowSession, NodeKind, OutboundPayload,
    SendTextConfig, WaitForInputConfig,
)
from utils.interpolation import interpolate, interpolate_value, stringify

logger = structlog.get_logger()


class ActionOutcome(BaseModel):
    """Result of running one action node."""
    node_id: str
    kind: NodeKind
    success: bool = True
    known: bool = True                             # False for unimplemented kinds
    variables: dict[str, Any] = {}                 # variable map after the node ran
    next_node_id: Optional[str] = None             # None → dead end
    error: str = ""


class ResumeStatus(str, Enum):
    ADVANCE = "advance"        # follow next_node_id
    STAY = "stay"              # keep the session parked on the same node
    END = "end"                # no way forward; the conversation is over


class ResumeResult(BaseModel):
    status: ResumeStatus
    next_node_id: Optional[str] = None
    variables: Optional[dict[str, Any]] = None     # set only when the node stored something


class NodeExecutor:
    """
    Dependencies are injected so the executor never reaches for globals:
      transport  — anything with send_to_contact(user_id, contact, payload)
      http       — HttpCallService-like, request(url, method, headers, body)
      ai         — AICompletionService-like, complete(prompt, system_message)
    """

    def __init__(self, transport, http, ai, config: EngineConfig = None):
        self.transport = transport
        self.http = http
        self.ai = ai
        self.config = config or EngineConfig()
        self._actions: dict[NodeKind, Callable[[FlowSession, FlowNode, dict], Awaitable[None]]] = {
            NodeKind.SEND_TEXT: self._exec_send_text,
            NodeKind.API_CALL: self._exec_api_call,
            NodeKind.AI_QUERY: self._exec_ai_query,
        }

    # ══════════════════════════════════════════════════════════
    #  ACTION NODES
    # ══════════════════════════════════════════════════════════

    async def run_action(self, session: FlowSession, node: FlowNode, graph: FlowGraph) -> ActionOutcome:
        """Run an action node and resolve the edge its outcome selects."""
        kind = node.kind
        variables = copy.deepcopy(session.variables)
        handler = self._actions.get(kind)

        if handler is None:
            logger.warning("node_kind_unimplemented",
                           flow_id=session.flow_id, node_id=node.id, node_type=node.type)
            return ActionOutcome(node_id=node.id, kind=kind, success=False, known=False,
                                 variables=variables, error=f"Unsupported node type: {node.type}")

        error = ""
        try:
            await handler(session, node, variables)
            success = True
        except Exception as e:
            success = False
            error = str(e)
            logger.error("node_execution_failed",
                         flow_id=session.flow_id, node_id=node.id,
                         kind=kind.value, contact=session.contact, error=error)

        edge = resolve_outcome_edge(graph, node.id, success)
        if edge is None and not success:
            logger.error("node_failed_without_error_branch",
                         flow_id=session.flow_id, node_id=node.id)

        logger.info("node_executed", flow_id=session.flow_id, node_id=node.id,
                    kind=kind.value, success=success,
                    next_node_id=edge.target if edge else None)
        return ActionOutcome(
            node_id=node.id, kind=kind, success=success, variables=variables,
            next_node_id=edge.target if edge else None, error=error,
        )

    # ── SEND_TEXT ─────────────────────────────────────

    async def _exec_send_text(self, session: FlowSession, node: FlowNode, variables: dict) -> None:
        cfg: SendTextConfig = node.config()
        text = interpolate(cfg.text, variables) if cfg.text else self.config.default_text
        result = await self._send(session, OutboundPayload(text=text))
        if not result.ok:
            raise RuntimeError(f"Message not delivered: {result.error or result.status}")

    # ── API_CALL ──────────────────────────────────────

    async def _exec_api_call(self, session: FlowSession, node: FlowNode, variables: dict) -> None:
        cfg: ApiCallConfig = node.config()
        url = interpolate(cfg.api_url, variables).strip()
        if not url:
            raise ValueError("api-call node has no URL")

        headers = self._render_structured(cfg.headers, variables, "headers")
        if headers is not None:
            if not isinstance(headers, dict):
                raise ValueError("api-call headers must be a JSON object")
            headers = {str(k): stringify(v) for k, v in headers.items()}
        body = self._render_structured(cfg.body, variables, "body")

        response = await self.http.request(url, cfg.method.value, headers=headers, body=body)
        if cfg.save_response_to:
            variables[cfg.save_response_to] = response.data
        logger.info("api_call_completed", node_id=node.id, url=url, status=response.status)

    @staticmethod
    def _render_structured(value: Any, variables: dict, field: str) -> Any:
        """
        Interpolate a headers/body value. A string is treated as JSON text:
        placeholders are filled first, then the result is parsed.
        """
        if value is None:
            return None
        if isinstance(value, str):
            rendered = interpolate(value, variables)
            if not rendered.strip():
                return None
            try:
                return json.loads(rendered)
            except json.JSONDecodeError as e:
                raise ValueError(f"api-call {field} is not valid JSON: {e}") from e
        return interpolate_value(value, variables)

    # ── AI_QUERY ──────────────────────────────────────

    async def _exec_ai_query(self, session: FlowSession, node: FlowNode, variables: dict) -> None:
        cfg: AiQueryConfig = node.config()
        prompt = interpolate(cfg.prompt, variables)
        if not prompt.strip():
            raise ValueError("ai-query node has an empty prompt")
        system = interpolate(cfg.system_message, variables) if cfg.system_message else None

        text = await self.ai.complete(prompt, system_message=system)
        if cfg.save_response_to:
            variables[cfg.save_response_to] = text

    # ══════════════════════════════════════════════════════════
    #  WAITING NODES
    # ══════════════════════════════════════════════════════════

    async def suspend(self, session: FlowSession, node: FlowNode) -> Optional[DeliveryResult]:
        """Send the prompt of a waiting node. Delivery failures are logged, not raised."""
        try:
            payload = self._prompt_for(session, node)
            if payload is None:
                return None
            result = await self._send(session, payload)
        except Exception as e:
            logger.error("prompt_send_error", flow_id=session.flow_id, node_id=node.id,
                         contact=session.contact, error=str(e))
            return None
        if not result.ok:
            logger.error("prompt_delivery_failed", flow_id=session.flow_id, node_id=node.id,
                         contact=session.contact, status=result.status, error=result.error)
        return result

    def _prompt_for(self, session: FlowSession, node: FlowNode) -> Optional[OutboundPayload]:
        variables = session.variables
        if node.kind == NodeKind.BUTTON_CHOICE:
            cfg: ButtonChoiceConfig = node.config()
            text = interpolate(cfg.text, variables) if cfg.text else self.config.default_button_prompt
            footer = interpolate(cfg.footer, variables) if cfg.footer else None
            return OutboundPayload(text=text, options=cfg.buttons, footer=footer)
        if node.kind == NodeKind.WAIT_FOR_INPUT:
            cfg: WaitForInputConfig = node.config()
            message = interpolate(cfg.message, variables) if cfg.message else ""
            return OutboundPayload(text=message) if message else None
        return None

    async def resume(self, session: FlowSession, node: FlowNode, graph: FlowGraph,
                     text: str, reply_id: Optional[str] = None) -> ResumeResult:
        """
        Apply a waiting node's resume rule to the inbound text. reply_id is
        the option id a channel reports for an interactive reply, if any.
        """
        try:
            if node.kind == NodeKind.BUTTON_CHOICE:
                return await self._resume_button(session, node, graph, text, reply_id)
            if node.kind == NodeKind.WAIT_FOR_INPUT:
                return self._resume_input(session, node, graph, text)
        except Exception as e:
            logger.error("node_resume_failed", flow_id=session.flow_id, node_id=node.id, error=str(e))
            return ResumeResult(status=ResumeStatus.END)
        logger.warning("resume_on_non_waiting_node", flow_id=session.flow_id, node_id=node.id)
        return ResumeResult(status=ResumeStatus.END)

    async def _resume_button(self, session: FlowSession, node: FlowNode,
                             graph: FlowGraph, text: str, reply_id: Optional[str] = None) -> ResumeResult:
        cfg: ButtonChoiceConfig = node.config()
        option = cfg.match(text, reply_id)
        if option is None:
            logger.warning("button_reply_unmatched", flow_id=session.flow_id,
                           node_id=node.id, contact=session.contact)
            if self.config.reprompt_on_no_match:
                await self.suspend(session, node)
            return ResumeResult(status=ResumeStatus.STAY)

        edge = resolve_handle_edge(graph, node.id, option.id)
        if edge is None:
            logger.warning("button_option_unconnected", flow_id=session.flow_id,
                           node_id=node.id, option_id=option.id)
            return ResumeResult(status=ResumeStatus.END)
        return ResumeResult(status=ResumeStatus.ADVANCE, next_node_id=edge.target)

    def _resume_input(self, session: FlowSession, node: FlowNode,
                      graph: FlowGraph, text: str) -> ResumeResult:
        cfg: WaitForInputConfig = node.config()
        variables = None
        if cfg.variable_name:
            variables = {**copy.deepcopy(session.variables), cfg.variable_name: text}
            logger.info("flow_variable_saved", flow_id=session.flow_id,
                        node_id=node.id, variable=cfg.variable_name)

        edge = resolve_default_edge(graph, node.id)
        if edge is None:
            return ResumeResult(status=ResumeStatus.END, variables=variables)
        return ResumeResult(status=ResumeStatus.ADVANCE, next_node_id=edge.target, variables=variables)

    # ── Transport ─────────────────────────────────────

    async def _send(self, session: FlowSession, payload: OutboundPayload) -> DeliveryResult:
        return await self.transport.send_to_contact(session.user_id, session.contact, payload)
