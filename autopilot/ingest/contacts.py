"""
Contact resolution: sender identity -> durable contact row.

Identity is (workspace, channel, lowercased address). Resolving the same
identity twice returns the same contact and bumps its counters; a display
name is only filled in when the contact has none yet.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from autopilot.db.models import Contact, utcnow

logger = logging.getLogger(__name__)


class ContactResolver:

    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def resolve(
        self,
        workspace_id: str,
        channel: str,
        address: str,
        display_name: Optional[str] = None,
        seen_at: Optional[datetime] = None,
    ) -> str:
        """
        Upsert the contact and return its id.

        Raises:
            ValueError: Empty address.
        """
        address = (address or "").strip().lower()
        if not address:
            raise ValueError("Cannot resolve a contact without an address")
        seen_at = seen_at or utcnow()

        try:
            with self._sessions.begin() as db:
                return self._upsert(db, workspace_id, channel, address, display_name, seen_at)
        except IntegrityError:
            # Lost an insert race with another sync; the row exists now.
            with self._sessions.begin() as db:
                return self._upsert(db, workspace_id, channel, address, display_name, seen_at)

    @staticmethod
    def _upsert(
        db: Session,
        workspace_id: str,
        channel: str,
        address: str,
        display_name: Optional[str],
        seen_at: datetime,
    ) -> str:
        contact = db.scalars(
            select(Contact)
            .where(Contact.workspace_id == workspace_id)
            .where(Contact.channel == channel)
            .where(Contact.address == address)
        ).first()

        if contact is None:
            contact = Contact(
                workspace_id=workspace_id,
                channel=channel,
                address=address,
                display_name=display_name or None,
                message_count=1,
                first_seen_at=seen_at,
                last_contacted_at=seen_at,
            )
            db.add(contact)
            db.flush()
            logger.debug(
                "contacts.created",
                extra={"action": "contacts.created", "contact_id": contact.id},
            )
            return contact.id

        if display_name and not contact.display_name:
            contact.display_name = display_name
        contact.message_count = (contact.message_count or 0) + 1
        if contact.last_contacted_at is None or seen_at > contact.last_contacted_at:
            contact.last_contacted_at = seen_at
        return contact.id
