"""
Gmail channel over the Gmail REST API (users/me).

Message bodies come back as a MIME part tree with base64url-encoded data.
The parser walks the tree for text/plain and text/html parts; when only
HTML exists it is flattened to text.

Replies are sent as raw RFC 2822 messages with In-Reply-To/References set
and the original threadId, which is what makes Gmail thread them.
"""

import base64
import logging
import time
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional

import httpx

from autopilot.agent.schemas import MessagePage, NormalizedMessage, ReplyRequest, SendResult
from autopilot.config import settings
from autopilot.errors import ChannelError
from autopilot.ingest.normalize import html_to_text, parse_address, parse_recipient_header
from autopilot.logging.audit import audit

logger = logging.getLogger(__name__)


def _b64decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode("utf-8", errors="replace")


def _extract_bodies(part: dict, found: dict) -> None:
    mime = part.get("mimeType", "")
    data = (part.get("body") or {}).get("data")
    if data and mime == "text/plain" and "text" not in found:
        found["text"] = _b64decode(data)
    elif data and mime == "text/html" and "html" not in found:
        found["html"] = _b64decode(data)
    for child in part.get("parts") or []:
        _extract_bodies(child, found)


class GmailChannel:
    """Gmail implementation of ChannelClient."""

    provider = "gmail"

    def __init__(self, base_url: Optional[str] = None, http: Optional[httpx.Client] = None):
        self._base = base_url or settings.gmail_base_url
        self._http = http or httpx.Client(timeout=30.0)

    def close(self):
        self._http.close()

    @staticmethod
    def _headers(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def _call(self, method: str, path: str, token: str, **kwargs) -> dict:
        try:
            resp = self._http.request(
                method, f"{self._base}/users/me/{path}", headers=self._headers(token), **kwargs
            )
            resp.raise_for_status()
            return resp.json() if resp.content else {}
        except httpx.HTTPStatusError as e:
            logger.error(
                "gmail.api.error",
                extra={
                    "action": "gmail.api.error",
                    "path": path.split("/")[0],
                    "status_code": e.response.status_code,
                    "response_body": e.response.text[:500],
                },
            )
            raise ChannelError(
                f"Gmail API error: {e.response.status_code}", status_code=e.response.status_code
            )
        except httpx.HTTPError as e:
            logger.error("gmail.api.error", extra={"action": "gmail.api.error", "error": str(e)})
            raise ChannelError(f"Gmail API error: {e}")

    # =========================================================================
    # READ
    # =========================================================================

    def list_messages(
        self,
        token: str,
        max_results: int = 50,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
    ) -> MessagePage:
        """
        List message ids, newest first.

        Args:
            query: Gmail search syntax (e.g. "in:inbox newer_than:1d").
        """
        start = time.monotonic()
        params: dict = {"maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        if query:
            params["q"] = query

        data = self._call("GET", "messages", token, params=params)
        refs = [m["id"] for m in data.get("messages") or [] if m.get("id")]

        audit.info(
            "gmail.messages.listed",
            count=len(refs),
            has_more=bool(data.get("nextPageToken")),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return MessagePage(refs=refs, next_page_token=data.get("nextPageToken"))

    def get_message(self, token: str, message_id: str) -> dict:
        return self._call("GET", f"messages/{message_id}", token, params={"format": "full"})

    @staticmethod
    def parse_message(raw: dict) -> NormalizedMessage:
        payload = raw.get("payload") or {}
        headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers") or []}

        found: dict = {}
        _extract_bodies(payload, found)
        body_html = found.get("html")
        body = found.get("text") or (html_to_text(body_html) if body_html else "") or raw.get("snippet", "")

        sender_email, sender_name = parse_address(headers.get("from"))

        # Carry the RFC 2822 Message-ID and References for reply threading
        raw_data = dict(raw)
        if headers.get("message-id"):
            raw_data["messageId"] = headers["message-id"]
        if headers.get("references"):
            raw_data["references"] = headers["references"]

        timestamp = None
        if raw.get("internalDate"):
            try:
                timestamp = datetime.fromtimestamp(int(raw["internalDate"]) / 1000, tz=timezone.utc)
            except (TypeError, ValueError):
                timestamp = None

        return NormalizedMessage(
            provider_message_id=str(raw.get("id") or ""),
            provider_thread_id=raw.get("threadId"),
            subject=headers.get("subject", ""),
            body=body.strip(),
            body_html=body_html,
            snippet=raw.get("snippet", ""),
            sender_email=sender_email,
            sender_name=sender_name,
            recipients=(
                parse_recipient_header(headers.get("to"), "to")
                + parse_recipient_header(headers.get("cc"), "cc")
                + parse_recipient_header(headers.get("bcc"), "bcc")
            ),
            timestamp=timestamp,
            labels=list(raw.get("labelIds") or []),
            raw_data=raw_data,
        )

    # =========================================================================
    # WRITE
    # =========================================================================

    @staticmethod
    def build_raw_reply(request: ReplyRequest, from_address: str = "") -> str:
        """RFC 2822 reply, base64url-encoded as the Gmail send endpoint expects."""
        mime = EmailMessage()
        if from_address:
            mime["From"] = from_address
        mime["To"] = ", ".join(request.to)
        mime["Subject"] = request.subject
        if request.in_reply_to:
            mime["In-Reply-To"] = request.in_reply_to
        if request.references:
            mime["References"] = request.references
        mime.set_content(request.body)
        return base64.urlsafe_b64encode(mime.as_bytes()).decode().rstrip("=")

    def send_reply(self, token: str, request: ReplyRequest, from_address: str = "") -> SendResult:
        body = {"raw": self.build_raw_reply(request, from_address)}
        if request.thread_id:
            body["threadId"] = request.thread_id
        try:
            result = self._call("POST", "messages/send", token, json=body)
        except ChannelError as e:
            return SendResult(success=False, error=str(e))

        audit.info("gmail.reply.sent", connection_id=request.connection_id)
        return SendResult(success=True, message_id=result.get("id"))

    def apply_label(self, token: str, message_id: str, label: str) -> None:
        """Add a user label (created on first use) to the message."""
        label_id = self._ensure_label(token, label)
        self._call(
            "POST",
            f"messages/{message_id}/modify",
            token,
            json={"addLabelIds": [label_id]},
        )

    def _ensure_label(self, token: str, name: str) -> str:
        labels = self._call("GET", "labels", token).get("labels") or []
        for label in labels:
            if label.get("name") == name:
                return label["id"]

        created = self._call(
            "POST",
            "labels",
            token,
            json={"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"},
        )
        return created["id"]
