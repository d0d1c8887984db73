"""
Instagram Channel Sender — Instagram Messaging via the Graph API.

Provides:
- Text send to an Instagram-scoped user id (IGSID)
- Graph API error mapping (recipient unknown → permanent, throttling → transient)
- Webhook verification (hub.challenge handshake)
- Webhook parsing for `messaging` entries, skipping echoes of our own sends
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import (
    ChannelSender, RateLimitedError, RecipientNotFoundError,
    TransportTransientError,
)
from models.schemas import ChannelType, InboundEvent

logger = structlog.get_logger()

GRAPH_BASE_URL = "https://graph.facebook.com"
GRAPH_API_VERSION = "v21.0"

# (code, subcode) pairs meaning the recipient no longer exists or cannot be reached.
# None matches any subcode.
_RECIPIENT_UNKNOWN = {
    (100, 2018001),     # No matching user found
    (551, None),        # This person isn't available right now
}
_THROTTLE_CODES = {4, 17, 32, 613}


def map_graph_error(status_code: int, body: dict[str, Any], channel: str = "instagram") -> Exception:
    """Translate a Graph API error response into a channel error."""
    error = body.get("error", {}) if isinstance(body, dict) else {}
    code = error.get("code")
    subcode = error.get("error_subcode")
    message = error.get("message") or f"HTTP {status_code}"

    if (code, subcode) in _RECIPIENT_UNKNOWN or (code, None) in _RECIPIENT_UNKNOWN:
        return RecipientNotFoundError(message, channel)
    if status_code == 429 or code in _THROTTLE_CODES:
        return RateLimitedError(channel)
    return TransportTransientError(message, channel, code=f"GRAPH_{code or status_code}")


class InstagramSender(ChannelSender):
    """
    Sends replies through one Instagram professional account.

    Credentials: ``ig_user_id``, ``access_token``, optional ``verify_token``
    for the webhook handshake and ``api_version``.
    """

    channel_type = ChannelType.INSTAGRAM

    def __init__(self, account_id: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(account_id)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ig_user_id: str = ""
        self._access_token: str = ""
        self._verify_token: str = ""
        self._api_version: str = GRAPH_API_VERSION

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._ig_user_id = str(config.get("ig_user_id", ""))
        self._access_token = config.get("access_token", "")
        self._verify_token = config.get("verify_token", "")
        self._api_version = config.get("api_version", GRAPH_API_VERSION)
        self._initialized = True

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{GRAPH_BASE_URL}/{self._api_version}",
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return challenge
        return None

    # ── Send ──────────────────────────────────────────────────

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(path, json=payload, params={"access_token": self._access_token})

    async def _do_send(self, recipient_ref: str, text: str, metadata: dict[str, Any]) -> str:
        payload = {
            "recipient": {"id": recipient_ref},
            "message": {"text": text},
        }
        try:
            response = await self._post(f"/{self._ig_user_id}/messages", payload)
        except httpx.TransportError as e:
            raise TransportTransientError(str(e) or type(e).__name__, "instagram", code="NETWORK") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or "error" in body:
            raise map_graph_error(response.status_code, body)

        message_id = body.get("message_id", "")
        logger.info("instagram_message_sent",
                    account_id=self.account_id, recipient=recipient_ref, message_id=message_id)
        return message_id

    # ── Inbound parsing ───────────────────────────────────────

    def _parse_inbound(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Parse an Instagram webhook body (object=instagram, entry[].messaging[])."""
        events: list[InboundEvent] = []
        for entry in payload.get("entry", []) or []:
            for item in entry.get("messaging", []) or []:
                event = self._parse_messaging_item(item)
                if event is not None:
                    events.append(event)
        return events

    def _parse_messaging_item(self, item: dict[str, Any]) -> Optional[InboundEvent]:
        message = item.get("message")
        if not message:
            return None                       # reads, reactions, postbacks
        if message.get("is_echo") or message.get("is_deleted"):
            return None

        sender_id = str(item.get("sender", {}).get("id", ""))
        if not sender_id or (self._ig_user_id and sender_id == self._ig_user_id):
            return None

        mid = message.get("mid", "")
        if not mid:
            return None

        text = message.get("text", "")
        if not text:
            attachments = message.get("attachments") or []
            if attachments:
                text = f"[{attachments[0].get('type', 'attachment')}]"
        if not text:
            return None

        received_at = datetime.now(timezone.utc)
        ts = item.get("timestamp")
        if isinstance(ts, (int, float)):
            received_at = datetime.fromtimestamp(ts / 1000, tz=timezone.utc)

        return InboundEvent(
            channel=ChannelType.INSTAGRAM,
            channel_account_id=self.account_id,
            external_id=mid,
            sender_address=sender_id,
            text=text,
            received_at=received_at,
        )

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
