from typing import Any, Optional
from datetime import datetime
import logging
import re

from ..schemas.pydantic_schemas import Channel, Contact, utcnow

logger = logging.getLogger(__name__)

LEAD_SOURCES = {
    Channel.CALL: "cold-call",
    Channel.SMS: "sms-inbound",
}

# Key prefix for callers with no digits in their caller ID (withheld, "Anonymous")
WITHHELD_PREFIX = "withheld:"


def normalize_phone(raw: Optional[str]) -> str:
    """Strip formatting and keep the trailing 10 digits so country codes don't split contacts."""
    digits = re.sub(r"\D", "", raw or "")
    return digits[-10:]


class ContactResolver:
    def __init__(self, db: Any) -> None:
        self.db = db

    def resolve(self, business_id: str, raw_phone: str, channel: Channel) -> Contact:
        """Return the business's contact for this number, creating a placeholder lead if needed."""
        normalized = normalize_phone(raw_phone)
        if not normalized:
            return self._withheld(business_id, raw_phone, channel)
        contact = self.db.find_contact(business_id, normalized)
        if contact:
            return contact
        placeholder = Contact(
            business_id=business_id,
            phone=raw_phone or "",
            phone_normalized=normalized,
            lead_source=LEAD_SOURCES[channel],
        )
        contact, created = self.db.create_contact_if_absent(placeholder)
        if created:
            logger.info(f"Created placeholder contact {contact.id} for business {business_id} ({channel.value})")
        return contact

    def _withheld(self, business_id: str, raw_phone: Optional[str], channel: Channel) -> Contact:
        """Withheld numbers cannot be matched, so each one gets its own placeholder."""
        placeholder = Contact(business_id=business_id, phone=raw_phone or "", phone_normalized="", lead_source=LEAD_SOURCES[channel])
        placeholder.phone_normalized = f"{WITHHELD_PREFIX}{placeholder.id}"
        contact, _ = self.db.create_contact_if_absent(placeholder)
        logger.info(f"Created placeholder contact {contact.id} for withheld caller ID {raw_phone!r} at business {business_id}")
        return contact

    def record_interaction(self, contact_id: str, channel: Channel, when: Optional[datetime] = None) -> Optional[Contact]:
        # Callers guarantee this runs once per completed interaction, not once per webhook turn
        return self.db.record_contact_activity(contact_id, channel, when or utcnow())

    def record_sentiment(self, contact_id: str, sentiment: Optional[str]) -> None:
        if sentiment:
            self.db.update_contact_sentiment(contact_id, sentiment)
