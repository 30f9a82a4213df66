"""
Inbound Router — turns raw channel webhooks into engine calls.

    raw payload (per user account)
      → ChannelRegistry.parse_inbound   (dedup, sanitize, strip envelope)
      → FlowEngine.process_message(user_id, contact, text, reply_id)
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import ChannelRegistry
from core.engine import FlowEngine
from models.schemas import InboundMessage

logger = structlog.get_logger()


class InboundRouter:

    def __init__(self, registry: ChannelRegistry, engine: FlowEngine):
        self.registry = registry
        self.engine = engine

    async def handle(self, user_id: str, raw_payload: dict[str, Any]) -> Optional[InboundMessage]:
        """Parse one webhook payload and feed it to the engine. Returns the parsed message, if any."""
        message = await self.registry.parse_inbound(user_id, raw_payload)
        if message is None:
            logger.debug("inbound_ignored", user_id=user_id)
            return None
        if not message.text:
            logger.debug("inbound_without_text", user_id=user_id, contact=message.contact)
            return message

        logger.info("inbound_routed", user_id=user_id, contact=message.contact)
        reply_id = message.metadata.get("reply_id") or None
        await self.engine.process_message(message.user_id, message.contact, message.text, reply_id)
        return message
