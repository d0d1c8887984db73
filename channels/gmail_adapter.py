"""
Gmail Channel Sender — replies in Gmail threads via the Gmail REST API.

Provides:
- users.messages.send with an RFC 2822 body, threaded when the
  conversation carries a Gmail thread id
- Error mapping (invalid recipient → permanent, everything else transient)
- Inbound parsing with reply-quote stripping and HTML-to-plain fallback
- Echo skipping for mail sent from the account's own address
"""
from __future__ import annotations

import base64
import re
import structlog
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, parsedate_to_datetime
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import (
    ChannelSender, RateLimitedError, RecipientNotFoundError,
    TransportTransientError,
)
from models.schemas import ChannelType, InboundEvent

logger = structlog.get_logger()

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1"

_INVALID_RECIPIENT = re.compile(
    r"invalid to header|invalid recipient|recipient address rejected|address not found",
    re.IGNORECASE,
)


def map_gmail_error(status_code: int, body: dict[str, Any], channel: str = "gmail") -> Exception:
    """Translate a Gmail API error response into a channel error."""
    error = body.get("error", {}) if isinstance(body, dict) else {}
    message = error.get("message") or f"HTTP {status_code}"

    if status_code in (400, 404) and _INVALID_RECIPIENT.search(message):
        return RecipientNotFoundError(message, channel)
    if status_code == 429:
        return RateLimitedError(channel)
    return TransportTransientError(message, channel, code=f"GMAIL_{status_code}")


class GmailSender(ChannelSender):
    """
    Sends replies through one Gmail mailbox.

    Credentials: ``email`` (the mailbox address), ``access_token`` and an
    optional ``from_name``. Token refresh is handled outside this process.
    """

    channel_type = ChannelType.GMAIL

    def __init__(self, account_id: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(account_id)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._from_email: str = ""
        self._from_name: str = ""
        self._access_token: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._from_email = config.get("email", "").lower()
        self._from_name = config.get("from_name", "")
        self._access_token = config.get("access_token", "")
        self._initialized = True

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=GMAIL_BASE_URL,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    # ── Send ──────────────────────────────────────────────────

    def build_raw_message(self, recipient: str, text: str, metadata: dict[str, Any]) -> str:
        """RFC 2822 message, base64url encoded as the API expects."""
        msg = EmailMessage()
        msg["From"] = formataddr((self._from_name, self._from_email)) if self._from_name else self._from_email
        msg["To"] = recipient
        subject = metadata.get("subject") or "Your message"
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"
        msg["Subject"] = subject
        rfc_message_id = metadata.get("rfc_message_id")
        if rfc_message_id:
            msg["In-Reply-To"] = rfc_message_id
            msg["References"] = rfc_message_id
        msg.set_content(text)
        return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(path, json=payload)

    async def _do_send(self, recipient_ref: str, text: str, metadata: dict[str, Any]) -> str:
        payload: dict[str, Any] = {"raw": self.build_raw_message(recipient_ref, text, metadata)}
        if metadata.get("thread_id"):
            payload["threadId"] = metadata["thread_id"]

        try:
            response = await self._post("/users/me/messages/send", payload)
        except httpx.TransportError as e:
            raise TransportTransientError(str(e) or type(e).__name__, "gmail", code="NETWORK") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            raise map_gmail_error(response.status_code, body)

        message_id = body.get("id", "")
        logger.info("gmail_message_sent",
                    account_id=self.account_id, to=recipient_ref,
                    message_id=message_id, thread_id=body.get("threadId", ""))
        return message_id

    # ── Inbound parsing ───────────────────────────────────────

    def _parse_inbound(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """
        Parse a relayed Gmail notification: either one message object or
        ``{"messages": [...]}`` with ``id, threadId, from, subject, text|html``.
        """
        raw_messages = payload.get("messages")
        if raw_messages is None:
            raw_messages = [payload]
        events = []
        for raw in raw_messages:
            event = self._parse_message(raw)
            if event is not None:
                events.append(event)
        return events

    def _parse_message(self, raw: dict[str, Any]) -> Optional[InboundEvent]:
        from_header = raw.get("from", "")
        email_addr = self._extract_email(from_header)
        if not email_addr:
            return None
        if self._from_email and email_addr == self._from_email:
            return None                       # our own reply showing up in the thread

        message_id = raw.get("id", "")
        if not message_id:
            return None

        # Get text body; fall back to HTML→plain
        text = raw.get("text", "")
        if not text:
            html = raw.get("html", "")
            if html:
                text = self._html_to_plain(html)

        text = self._strip_quoted_reply(text or "")
        if not text:
            return None

        received_at = datetime.now(timezone.utc)
        if raw.get("date"):
            try:
                received_at = parsedate_to_datetime(raw["date"]).astimezone(timezone.utc)
            except (TypeError, ValueError):
                pass

        return InboundEvent(
            channel=ChannelType.GMAIL,
            channel_account_id=self.account_id,
            external_id=message_id,
            sender_address=email_addr,
            sender_name=self._extract_name(from_header),
            text=text,
            received_at=received_at,
            metadata={
                "thread_id": raw.get("threadId", ""),
                "subject": raw.get("subject", ""),
                "rfc_message_id": raw.get("message_id", ""),
            },
        )

    # ── HTML to plain text ────────────────────────────────────

    def _html_to_plain(self, html: str) -> str:
        """Best-effort HTML → plain text without external dependencies."""
        # Remove style/script blocks
        text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html, flags=re.DOTALL | re.IGNORECASE)
        # Block elements → newlines
        text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
        text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
        # Strip remaining tags
        text = re.sub(r"<[^>]+>", "", text)
        # Decode entities
        text = text.replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")
        text = text.replace("&nbsp;", " ").replace("&quot;", '"')
        # Collapse whitespace
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()

    # ── Reply stripping ───────────────────────────────────────

    def _strip_quoted_reply(self, text: str) -> str:
        """Remove quoted replies from email text."""
        result = []
        for line in text.split("\n"):
            stripped = line.strip()
            if re.match(r"^On .+wrote:$", stripped):
                break
            if re.match(r"^-{3,}\s*Original Message\s*-{3,}", stripped, re.IGNORECASE):
                break
            if re.match(r"^>{1,2}\s", line):
                continue
            if re.match(r"^From:\s", stripped):
                break
            result.append(line)
        return "\n".join(result).strip()

    # ── Address extraction ────────────────────────────────────

    def _extract_email(self, from_header: str) -> str:
        """Extract email from 'Name <email>' or bare email."""
        match = re.search(r"<([^>]+)>", from_header)
        if match:
            return match.group(1).strip().lower()
        if "@" in from_header:
            return from_header.strip().lower()
        return ""

    def _extract_name(self, from_header: str) -> str:
        match = re.match(r"^(.+?)\s*<", from_header)
        if match:
            return match.group(1).strip().strip('"')
        return ""

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
