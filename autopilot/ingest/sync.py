"""
Message ingestion: provider mailbox -> canonical messages table.

One sync call processes one page of one connection, sequentially:

1. List a page of message ids from the channel (bounded by max_messages).
2. Look up which of those ids are already stored, in a single query, so
   known messages cost no provider call.
3. For each new id: fetch, normalize, skip our own sent mail, insert.
   A failed fetch or insert counts as an error and the batch carries on.
4. Resolve the sender contact for each inserted message (best effort).
5. Record the page token and sync time on the connection, even when some
   items failed.

The (connection, provider message id) unique constraint is the final
dedup guard: if a concurrent sync inserted the same message first, the
IntegrityError is treated as "already synced".

Different connections may be synced concurrently; nothing here is shared
between connections.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from autopilot.agent.schemas import NormalizedMessage, SyncResult
from autopilot.channels.base import ChannelRegistry
from autopilot.channels.tokens import TokenProvider
from autopilot.config import settings
from autopilot.db.models import ChannelConnection, Message, utcnow
from autopilot.errors import NotFound
from autopilot.ingest.contacts import ContactResolver
from autopilot.logging.audit import audit

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def is_own_message(parsed: NormalizedMessage, account_address: Optional[str]) -> bool:
    """True for mail we sent ourselves: SENT-labelled, or from the connected account."""
    if any(label.upper() == "SENT" for label in parsed.labels):
        return True
    account = (account_address or "").strip().lower()
    return bool(account) and parsed.sender_email.strip().lower() == account


class MessageIngestor:
    """Pulls messages from channel connections into the store."""

    def __init__(
        self,
        sessions: sessionmaker,
        channels: ChannelRegistry,
        tokens: TokenProvider,
        contacts: ContactResolver,
        default_max_messages: Optional[int] = None,
    ):
        self._sessions = sessions
        self._channels = channels
        self._tokens = tokens
        self._contacts = contacts
        self._default_max = default_max_messages or settings.sync_max_messages

    def sync(
        self,
        connection_id: str,
        workspace_id: str,
        max_messages: Optional[int] = None,
        query: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> SyncResult:
        """
        Sync one page of messages for a connection.

        Raises:
            NotFound: Connection missing, in another workspace, or not active.
            CapabilityError: Token or listing failed (nothing was ingested).
        """
        start = time.monotonic()

        with self._sessions() as db:
            connection = db.get(ChannelConnection, connection_id)
            if (
                connection is None
                or connection.workspace_id != workspace_id
                or connection.status != "active"
            ):
                raise NotFound("connection", connection_id)
            provider = connection.provider
            account_address = connection.provider_account_id

        channel = self._channels.get(provider)
        token = self._tokens.get_access_token(connection_id)
        limit = max_messages or self._default_max

        page = channel.list_messages(token, max_results=limit, page_token=page_token, query=query)
        refs = page.refs[:limit]

        result = SyncResult(
            connection_id=connection_id,
            workspace_id=workspace_id,
            has_more=bool(page.next_page_token),
            next_page_token=page.next_page_token,
        )

        existing = self._existing_ids(connection_id, refs)

        for ref in refs:
            if ref in existing:
                result.synced_count += 1
                continue

            try:
                parsed = channel.parse_message(channel.get_message(token, ref))
            except Exception as e:
                result.error_count += 1
                logger.warning(
                    "ingest.fetch.failed",
                    extra={
                        "action": "ingest.fetch.failed",
                        "connection_id": connection_id,
                        "provider_message_id": ref,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                continue

            if is_own_message(parsed, account_address):
                result.skipped_count += 1
                continue

            try:
                message_id = self._insert(connection_id, workspace_id, parsed)
            except IntegrityError:
                # Inserted by a concurrent sync between our lookup and insert
                result.synced_count += 1
                continue
            except Exception as e:
                result.error_count += 1
                logger.error(
                    "ingest.insert.failed",
                    extra={
                        "action": "ingest.insert.failed",
                        "connection_id": connection_id,
                        "provider_message_id": ref,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                continue

            result.synced_count += 1
            result.new_count += 1
            result.new_message_ids.append(message_id)
            self._link_contact(workspace_id, provider, message_id, parsed)

        self._record_sync(connection_id, page.next_page_token)

        audit.info(
            "ingest.sync.completed",
            connection_id=connection_id,
            workspace_id=workspace_id,
            provider=provider,
            refs=len(refs),
            synced=result.synced_count,
            new=result.new_count,
            skipped=result.skipped_count,
            errors=result.error_count,
            has_more=result.has_more,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return result

    def sync_all_active(
        self,
        workspace_id: Optional[str] = None,
        max_messages: Optional[int] = None,
    ) -> list[SyncResult]:
        """
        Sync every active connection (optionally within one workspace).

        A failing connection is logged and reported with error_count=1; the
        remaining connections are still synced.
        """
        stmt = select(ChannelConnection.id, ChannelConnection.workspace_id).where(
            ChannelConnection.status == "active"
        )
        if workspace_id:
            stmt = stmt.where(ChannelConnection.workspace_id == workspace_id)
        with self._sessions() as db:
            targets = list(db.execute(stmt))

        results = []
        for connection_id, ws_id in targets:
            try:
                results.append(self.sync(connection_id, ws_id, max_messages=max_messages))
            except Exception as e:
                logger.error(
                    "ingest.sync.failed",
                    extra={
                        "action": "ingest.sync.failed",
                        "connection_id": connection_id,
                        "workspace_id": ws_id,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                )
                results.append(SyncResult(connection_id=connection_id, workspace_id=ws_id, error_count=1))
        return results

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    def _existing_ids(self, connection_id: str, refs: list[str]) -> set[str]:
        if not refs:
            return set()
        with self._sessions() as db:
            return set(
                db.scalars(
                    select(Message.provider_message_id)
                    .where(Message.channel_connection_id == connection_id)
                    .where(Message.provider_message_id.in_(refs))
                )
            )

    def _insert(self, connection_id: str, workspace_id: str, parsed: NormalizedMessage) -> str:
        message = Message(
            workspace_id=workspace_id,
            channel_connection_id=connection_id,
            provider_message_id=parsed.provider_message_id,
            provider_thread_id=parsed.provider_thread_id,
            subject=parsed.subject,
            body=parsed.body,
            body_html=parsed.body_html,
            snippet=parsed.snippet,
            sender_email=parsed.sender_email,
            sender_name=parsed.sender_name,
            recipients=[r.model_dump() for r in parsed.recipients],
            timestamp=_naive_utc(parsed.timestamp) or utcnow(),
            labels=parsed.labels,
            raw_data=parsed.raw_data,
        )
        with self._sessions.begin() as db:
            db.add(message)
            db.flush()
            return message.id

    def _link_contact(
        self, workspace_id: str, provider: str, message_id: str, parsed: NormalizedMessage
    ) -> None:
        if not parsed.sender_email:
            return
        try:
            contact_id = self._contacts.resolve(
                workspace_id,
                provider,
                parsed.sender_email,
                parsed.sender_name,
                seen_at=_naive_utc(parsed.timestamp),
            )
            with self._sessions.begin() as db:
                db.execute(
                    update(Message).where(Message.id == message_id).values(contact_id=contact_id)
                )
        except Exception as e:
            logger.warning(
                "ingest.contact.failed",
                extra={
                    "action": "ingest.contact.failed",
                    "message_id": message_id,
                    "error_type": type(e).__name__,
                },
            )

    def _record_sync(self, connection_id: str, cursor: Optional[str]) -> None:
        now = utcnow()
        with self._sessions.begin() as db:
            db.execute(
                update(ChannelConnection)
                .where(ChannelConnection.id == connection_id)
                .values(sync_cursor=cursor, last_sync_at=now, updated_at=now)
            )
