"""
Trigger Resolver — picks the flow that a brand-new conversation should run.

Only consulted when the contact has no session. Each active flow carries a
FlowTrigger; the resolver asks every candidate for a boolean match and takes
the first hit. Keyword triggers are tried before catch-all ("any") triggers
so a generic fallback flow never shadows a specific one.

Unmatched text is dropped silently: free text outside a flow must not
start anything.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from models.schemas import Flow, FlowTrigger, TriggerMatch

logger = structlog.get_logger()


def _normalize(text: str, case_sensitive: bool) -> str:
    text = (text or "").strip()
    return text if case_sensitive else text.casefold()


def trigger_matches(trigger: Optional[FlowTrigger], text: str) -> bool:
    """Boolean match of inbound text against a single trigger."""
    if trigger is None:
        return False
    if trigger.match == TriggerMatch.ANY:
        return True

    subject = _normalize(text, trigger.case_sensitive)
    if not subject:
        return False

    for keyword in trigger.keywords:
        if trigger.match == TriggerMatch.REGEX:
            flags = 0 if trigger.case_sensitive else re.IGNORECASE
            try:
                if re.search(keyword, (text or "").strip(), flags):
                    return True
            except re.error as e:
                logger.error("trigger_regex_invalid", pattern=keyword, error=str(e))
            continue

        needle = _normalize(keyword, trigger.case_sensitive)
        if not needle:
            continue
        if trigger.match == TriggerMatch.EXACT and subject == needle:
            return True
        if trigger.match == TriggerMatch.CONTAINS and needle in subject:
            return True
        if trigger.match == TriggerMatch.STARTS_WITH and subject.startswith(needle):
            return True
    return False


def first_matching_flow(flows: list[Flow], text: str) -> Optional[Flow]:
    """Keyword triggers first (in the given order), then catch-all triggers."""
    runnable = [f for f in flows if f.is_active and not f.graph.is_empty and f.trigger]
    specific = [f for f in runnable if f.trigger.match != TriggerMatch.ANY]
    fallback = [f for f in runnable if f.trigger.match == TriggerMatch.ANY]
    for flow in specific + fallback:
        if trigger_matches(flow.trigger, text):
            return flow
    return None


class TriggerResolver:
    """Looks up a user's active flows in the store and picks the first match."""

    def __init__(self, store):
        self.store = store

    async def find_trigger_flow(self, user_id: str, text: str) -> Optional[Flow]:
        flows = await self.store.list_active_flows(user_id)
        flow = first_matching_flow(flows, text)
        if flow is None:
            logger.debug("no_trigger_match", user_id=user_id, candidates=len(flows))
            return None
        logger.info("trigger_matched", user_id=user_id, flow_id=flow.id, flow_name=flow.name)
        return flow
