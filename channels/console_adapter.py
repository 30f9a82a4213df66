"""
Console Channel Adapter — records outbound payloads in memory and
optionally echoes them to a writer (stdout for the flow simulator).

Used for local development and as the transport in tests.
"""
from __future__ import annotations

import uuid
from typing import Any, Callable, Optional

from models.schemas import ChannelType, OutboundPayload
from channels.base import ChannelAdapter


class ConsoleAdapter(ChannelAdapter):

    channel_type = ChannelType.CONSOLE

    def __init__(self, writer: Optional[Callable[[str], Any]] = None):
        super().__init__()
        self._writer = writer
        self.sent: list[tuple[str, OutboundPayload]] = []
        self._fail_next: int = 0

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._initialized = True

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` sends report a delivery failure."""
        self._fail_next = count

    def messages_for(self, contact: str) -> list[OutboundPayload]:
        return [p for c, p in self.sent if c == contact]

    async def _do_send(self, contact: str, payload: OutboundPayload) -> dict[str, Any]:
        if self._fail_next > 0:
            self._fail_next -= 1
            return {"status": "failed", "error": "simulated delivery failure"}

        self.sent.append((contact, payload))
        if self._writer is not None:
            self._writer(self.render(payload))
        return {"status": "sent", "message_id": uuid.uuid4().hex[:16]}

    @staticmethod
    def render(payload: OutboundPayload) -> str:
        lines = [payload.text]
        for opt in payload.options:
            lines.append(f"  [{opt.text}]")
        if payload.footer:
            lines.append(f"  {payload.footer}")
        return "\n".join(lines)

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        if "from" not in raw_payload:
            return None
        return {
            "sender_address": raw_payload["from"],
            "content": raw_payload.get("text", ""),
            "metadata": {"channel": "console", "channel_message_id": raw_payload.get("id", "")},
        }
