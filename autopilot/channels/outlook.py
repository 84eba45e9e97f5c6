"""
Outlook channel over the Microsoft Graph API.

Reads the inbox through /me/mailFolders/inbox/messages, replies through the
createReply + send pair (so Graph threads the reply into the original
conversation) and labels messages with Outlook categories.

Graph pages with @odata.nextLink. That full URL is used as the page token.

Usage:
    outlook = OutlookChannel()
    page = outlook.list_messages(token, max_results=50)
    raw = outlook.get_message(token, page.refs[0])
    message = outlook.parse_message(raw)
"""

import logging
import time
from datetime import datetime
from typing import Optional

import httpx

from autopilot.agent.schemas import MessagePage, NormalizedMessage, Recipient, ReplyRequest, SendResult
from autopilot.config import settings
from autopilot.errors import ChannelError
from autopilot.ingest.normalize import html_to_text
from autopilot.logging.audit import audit

logger = logging.getLogger(__name__)

MESSAGE_SELECT_FIELDS = (
    "id,conversationId,internetMessageId,subject,body,bodyPreview,from,sender,"
    "toRecipients,ccRecipients,bccRecipients,receivedDateTime,categories,isRead"
)


class OutlookChannel:
    """Microsoft Graph implementation of ChannelClient."""

    provider = "outlook"

    def __init__(self, base_url: Optional[str] = None, http: Optional[httpx.Client] = None):
        self._base = base_url or settings.graph_base_url
        self._http = http or httpx.Client(timeout=30.0)

    def close(self):
        """Close the HTTP client. Call when done."""
        self._http.close()

    @staticmethod
    def _headers(token: str) -> dict:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

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
        List inbox message ids, newest first.

        Args:
            query: Optional OData $filter expression.
        """
        start = time.monotonic()
        try:
            if page_token:
                resp = self._http.get(page_token, headers=self._headers(token))
            else:
                params = {
                    "$top": max_results,
                    "$select": "id",
                    "$orderby": "receivedDateTime desc",
                }
                if query:
                    params["$filter"] = query
                resp = self._http.get(
                    f"{self._base}/me/mailFolders/inbox/messages",
                    params=params,
                    headers=self._headers(token),
                )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "outlook.list.error",
                extra={
                    "action": "outlook.list.error",
                    "status_code": e.response.status_code,
                    "response_body": e.response.text[:500],
                },
            )
            raise ChannelError(
                f"Outlook list failed: {e.response.status_code}",
                status_code=e.response.status_code,
            )
        except httpx.HTTPError as e:
            logger.error("outlook.list.error", extra={"action": "outlook.list.error", "error": str(e)})
            raise ChannelError(f"Outlook list failed: {e}")

        refs = [m["id"] for m in data.get("value", []) if m.get("id")][:max_results]
        audit.info(
            "outlook.messages.listed",
            count=len(refs),
            has_more=bool(data.get("@odata.nextLink")),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return MessagePage(refs=refs, next_page_token=data.get("@odata.nextLink"))

    def get_message(self, token: str, message_id: str) -> dict:
        try:
            resp = self._http.get(
                f"{self._base}/me/messages/{message_id}",
                params={"$select": MESSAGE_SELECT_FIELDS},
                headers=self._headers(token),
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise ChannelError(
                f"Outlook get message failed: {e.response.status_code}",
                status_code=e.response.status_code,
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"Outlook get message failed: {e}")

    @staticmethod
    def parse_message(raw: dict) -> NormalizedMessage:
        """
        Normalize a Graph message payload.

        HTML bodies are flattened to plain text; the HTML is kept alongside.
        """
        def recipients(field: str, kind: str) -> list[Recipient]:
            result = []
            for entry in raw.get(field) or []:
                addr = (entry or {}).get("emailAddress") or {}
                if addr.get("address"):
                    result.append(
                        Recipient(
                            email=addr["address"],
                            name=addr.get("name") or addr["address"],
                            type=kind,
                        )
                    )
            return result

        body_obj = raw.get("body") or {}
        content = str(body_obj.get("content") or "")
        is_html = str(body_obj.get("contentType") or "").lower() == "html"
        body = html_to_text(content) if is_html else content.strip()

        sender = (raw.get("from") or raw.get("sender") or {}).get("emailAddress") or {}

        timestamp = None
        received = raw.get("receivedDateTime")
        if received:
            try:
                timestamp = datetime.fromisoformat(received.replace("Z", "+00:00"))
            except ValueError:
                timestamp = None

        return NormalizedMessage(
            provider_message_id=str(raw.get("id") or ""),
            provider_thread_id=raw.get("conversationId"),
            subject=str(raw.get("subject") or "(no subject)"),
            body=body,
            body_html=content if is_html else None,
            snippet=str(raw.get("bodyPreview") or body[:200]),
            sender_email=str(sender.get("address") or ""),
            sender_name=str(sender.get("name") or ""),
            recipients=(
                recipients("toRecipients", "to")
                + recipients("ccRecipients", "cc")
                + recipients("bccRecipients", "bcc")
            ),
            timestamp=timestamp,
            labels=list(raw.get("categories") or []),
            raw_data=raw,
        )

    # =========================================================================
    # WRITE
    # =========================================================================

    def send_reply(self, token: str, request: ReplyRequest, from_address: str = "") -> SendResult:
        """
        Reply to the original message.

        createReply produces a draft already threaded into the conversation
        (Graph sets In-Reply-To/References itself); the draft is then sent.
        """
        try:
            resp = self._http.post(
                f"{self._base}/me/messages/{request.original_message_id}/createReply",
                json={"comment": request.body},
                headers=self._headers(token),
            )
            resp.raise_for_status()
            draft_id = resp.json().get("id")
            if not draft_id:
                return SendResult(success=False, error="Outlook createReply returned no draft id")

            send = self._http.post(
                f"{self._base}/me/messages/{draft_id}/send",
                headers=self._headers(token),
            )
            send.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "outlook.send.failed",
                extra={
                    "action": "outlook.send.failed",
                    "status_code": e.response.status_code,
                    "connection_id": request.connection_id,
                },
            )
            return SendResult(
                success=False,
                error=f"Outlook API error: {e.response.status_code} {e.response.text[:200]}",
            )
        except httpx.HTTPError as e:
            logger.error(
                "outlook.send.failed",
                extra={"action": "outlook.send.failed", "error": str(e)},
            )
            return SendResult(success=False, error=f"Outlook API error: {e}")

        audit.info("outlook.reply.sent", connection_id=request.connection_id)
        return SendResult(success=True, message_id=draft_id)

    def apply_label(self, token: str, message_id: str, label: str) -> None:
        """Add `label` to the message's Outlook categories."""
        try:
            resp = self._http.get(
                f"{self._base}/me/messages/{message_id}",
                params={"$select": "categories"},
                headers=self._headers(token),
            )
            resp.raise_for_status()
            categories = list(resp.json().get("categories") or [])
            if label in categories:
                return
            patch = self._http.patch(
                f"{self._base}/me/messages/{message_id}",
                json={"categories": categories + [label]},
                headers=self._headers(token),
            )
            patch.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelError(f"Outlook apply label failed: {e}")
