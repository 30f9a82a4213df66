"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Outbound: free-form text; option payloads as interactive reply buttons
  (up to 3 options) or an interactive list (4–10 options); more options
  are rejected as a failed send
- Inbound: text, interactive (button_reply, list_reply); the reply title
  becomes the message text and the option id travels as metadata reply_id

Without an access token the adapter runs in mock mode and only logs sends.
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

import httpx

from models.schemas import ChannelType, OutboundPayload
from channels.base import ChannelAdapter, ChannelError, TokenBucketRateLimiter

logger = structlog.get_logger()

GRAPH_API_BASE = "https://graph.facebook.com"
MAX_REPLY_BUTTONS = 3
MAX_LIST_ROWS = 10
BUTTON_TITLE_LIMIT = 20
ROW_TITLE_LIMIT = 24
FOOTER_LIMIT = 60


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter."""

    channel_type = ChannelType.WHATSAPP

    def __init__(self, transport: httpx.AsyncBaseTransport = None):
        super().__init__()
        self._phone_number_id: str = ""
        self._access_token: str = ""
        self._verify_token: str = ""
        self._api_version: str = "v18.0"
        self._list_button_label: str = "Options"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._phone_number_id = config.get("phone_number_id", "")
        self._access_token = config.get("access_token", "")
        self._verify_token = config.get("verify_token", "")
        self._api_version = config.get("api_version", self._api_version)
        self._list_button_label = config.get("list_button_label", self._list_button_label)
        rate = config.get("rate_per_second", 80)
        if rate > 0:
            self._rate_limiter = TokenBucketRateLimiter(rate=rate, burst=config.get("burst", 100))
        self._initialized = True
        logger.info("whatsapp_adapter_initialized", mock=self.is_mock,
                    phone_number_id=self._phone_number_id)

    @property
    def is_mock(self) -> bool:
        return not (self._access_token and self._phone_number_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{GRAPH_API_BASE}/{self._api_version}",
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=httpx.Timeout(30.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes and JID suffixes."""
        return re.sub(r"[^\d]", "", phone.split("@", 1)[0])

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return challenge
        return None

    # ── Send ──────────────────────────────────────────────────

    def build_message(self, phone: str, payload: OutboundPayload) -> dict[str, Any]:
        """Cloud API request body for a payload."""
        message: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
        }
        if not payload.has_options:
            message["type"] = "text"
            message["text"] = {"body": payload.text, "preview_url": False}
            return message

        interactive: dict[str, Any] = {"body": {"text": payload.text}}
        if payload.footer:
            interactive["footer"] = {"text": payload.footer[:FOOTER_LIMIT]}

        if len(payload.options) <= MAX_REPLY_BUTTONS:
            interactive["type"] = "button"
            interactive["action"] = {
                "buttons": [
                    {"type": "reply", "reply": {"id": opt.id, "title": opt.text[:BUTTON_TITLE_LIMIT]}}
                    for opt in payload.options
                ],
            }
        else:
            if len(payload.options) > MAX_LIST_ROWS:
                raise ValueError(f"{len(payload.options)} options; WhatsApp lists allow at most {MAX_LIST_ROWS}")
            interactive["type"] = "list"
            interactive["action"] = {
                "button": self._list_button_label[:BUTTON_TITLE_LIMIT],
                "sections": [{
                    "title": self._list_button_label[:ROW_TITLE_LIMIT],
                    "rows": [
                        {"id": opt.id, "title": opt.text[:ROW_TITLE_LIMIT]}
                        for opt in payload.options
                    ],
                }],
            }
        message["type"] = "interactive"
        message["interactive"] = interactive
        return message

    async def _do_send(self, contact: str, payload: OutboundPayload) -> dict[str, Any]:
        phone = self.normalize_phone(contact)
        if not phone:
            return {"status": "failed", "error": "No WhatsApp number"}

        try:
            message = self.build_message(phone, payload)
        except ValueError as e:
            logger.error("whatsapp_payload_rejected", to=phone, error=str(e))
            return {"status": "failed", "error": str(e)}
        if self.is_mock:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_message_mock_sent", to=phone, type=message["type"], msg_id=msg_id)
            return {"status": "mock_sent", "message_id": msg_id}

        client = await self._get_client()
        try:
            response = await client.post(f"/{self._phone_number_id}/messages", json=message)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # Nothing reached the API yet
            raise ChannelError(f"WhatsApp connect failed: {e}", "whatsapp", retryable=True) from e

        if response.status_code == 429:
            raise ChannelError("WhatsApp API rate limited (429)", "whatsapp", retryable=True)
        if response.status_code >= 500:
            # Delivery unknown: not retried
            raise ChannelError(f"WhatsApp API returned {response.status_code}", "whatsapp")
        if not response.is_success:
            error = response.text[:500]
            logger.error("whatsapp_send_rejected", to=phone, status=response.status_code, error=error)
            return {"status": "failed", "error": error}

        body = response.json()
        msg_id = (body.get("messages") or [{}])[0].get("id", "")
        logger.info("whatsapp_message_sent", to=phone, type=message["type"], msg_id=msg_id)
        return {"status": "sent", "message_id": msg_id}

    # ── Inbound parsing ───────────────────────────────────────

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Parse WhatsApp Cloud API webhook payload."""
        try:
            entry = raw_payload.get("entry", [{}])[0]
            changes = entry.get("changes", [{}])[0]
            value = changes.get("value", {})
        except (IndexError, KeyError, AttributeError):
            return None

        # Status updates (delivered/read) are not messages
        if "statuses" in value and "messages" not in value:
            return None

        messages = value.get("messages", [])
        if not messages:
            return None

        msg = messages[0]
        sender = msg.get("from", "")
        msg_type = msg.get("type", "text")

        contacts = value.get("contacts", [])
        sender_name = contacts[0].get("profile", {}).get("name", "") if contacts else ""

        content = ""
        extra_metadata: dict[str, Any] = {"message_type": msg_type}

        if msg_type == "text":
            content = msg.get("text", {}).get("body", "")

        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            itype = interactive.get("type", "")
            reply = interactive.get(itype, {}) if itype in ("button_reply", "list_reply") else {}
            content = reply.get("title", "")
            extra_metadata["message_type"] = itype or "interactive"
            extra_metadata["reply_id"] = reply.get("id", "")

        elif msg_type == "button":
            # Quick-reply button on a template message
            content = msg.get("button", {}).get("text", "")
            extra_metadata["reply_id"] = msg.get("button", {}).get("payload", "")

        else:
            content = f"[{msg_type}]"

        return {
            "sender_address": sender,
            "content": content,
            "metadata": {
                "channel": "whatsapp",
                "channel_message_id": msg.get("id", ""),
                "sender_name": sender_name,
                **extra_metadata,
            },
        }

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
