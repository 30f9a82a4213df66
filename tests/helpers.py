"""Builders shared by the test modules."""
from typing import Any, Optional

from channels.console_adapter import ConsoleAdapter
from models.schemas import Flow, FlowStatus, FlowTrigger, TriggerMatch

USER = "acct_1"
CONTACT = "+15550001111"


def node(node_id: str, type_: str, **data) -> dict[str, Any]:
    return {"id": node_id, "type": type_, "data": data}


def edge(source: str, target: str, handle: Optional[str] = None) -> dict[str, Any]:
    e = {"id": f"{source}->{target}:{handle or ''}", "source": source, "target": target}
    if handle is not None:
        e["sourceHandle"] = handle
    return e


def make_flow(nodes, edges, keywords=("start",), match=TriggerMatch.EXACT,
              flow_id: str = "flow_1", user_id: str = USER,
              status: FlowStatus = FlowStatus.ACTIVE) -> Flow:
    return Flow(
        id=flow_id, user_id=user_id, name=flow_id, status=status,
        graph={"nodes": nodes, "edges": edges},
        trigger=FlowTrigger(match=match, keywords=list(keywords)),
    )


def texts(console: ConsoleAdapter, contact: str = CONTACT) -> list[str]:
    return [p.text for p in console.messages_for(contact)]
