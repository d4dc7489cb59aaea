"""Write-through access to the call/message store.

Writes never raise into a webhook handler: a caller-facing timeout is worse
than a late ledger row. Failed writes are logged and kept in
`missed_writes` so they can be reconciled.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..schemas.pydantic_schemas import (
    Appointment,
    Business,
    CallSession,
    Contact,
    DomainEvent,
    EventType,
    SmsMessage,
    utcnow,
)
from .broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)


class LedgerWriteError(Exception):
    """A store write failed and was flagged for reconciliation."""


@dataclass
class MissedWrite:
    operation: str
    key: str
    error: str
    payload: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)


class Ledger:
    def __init__(self, db: Any, broadcaster: EventBroadcaster, max_missed: int = 1000) -> None:
        self.db = db
        self.broadcaster = broadcaster
        self.missed_writes: Deque[MissedWrite] = deque(maxlen=max_missed)

    def _write(self, operation: str, key: str, fn: Callable[..., Any], *args: Any, payload: Optional[Dict[str, Any]] = None) -> Any:
        try:
            return fn(*args)
        except Exception as e:
            error = LedgerWriteError(f"{operation} failed for {key}: {e!r}")
            self.missed_writes.append(MissedWrite(operation=operation, key=key, error=str(error), payload=payload or {}))
            logger.error(f"{error}; flagged for reconciliation")
            return None

    # Reads raise: a handler that cannot read state falls back to its terminal markup

    def get_business(self, business_id: str) -> Optional[Business]:
        return self.db.get_business(business_id)

    def get_business_by_number(self, number: str) -> Optional[Business]:
        return self.db.get_business_by_number(number)

    def get_contact(self, contact_id: Optional[str]) -> Optional[Contact]:
        if not contact_id:
            return None
        try:
            return self.db.get_contact(contact_id)
        except Exception as e:
            logger.warning(f"Contact lookup failed for {contact_id}: {e!r}")
            return None

    # Calls

    def insert_call(self, call: CallSession) -> Tuple[CallSession, bool]:
        result = self._write("insert_call", call.call_sid, self.db.insert_call_if_absent, call, payload=call.model_dump(mode="json"))
        return result if result else (call, True)

    def get_call(self, call_sid: str) -> Optional[CallSession]:
        return self.db.get_call(call_sid)

    def update_call(self, call_sid: str, fields: Dict[str, Any], only_if_status: Optional[Any] = None) -> Optional[CallSession]:
        return self._write("update_call", call_sid, self.db.update_call, call_sid, fields, only_if_status, payload=dict(fields))

    def append_transcript(self, call_sid: str, fragment: str) -> Optional[CallSession]:
        return self._write("append_transcript", call_sid, self.db.append_transcript, call_sid, fragment, payload={"fragment": fragment})

    # SMS

    def insert_sms(self, message: SmsMessage) -> Tuple[SmsMessage, bool]:
        result = self._write("insert_sms", message.message_sid, self.db.insert_sms_if_absent, message, payload=message.model_dump(mode="json"))
        return result if result else (message, True)

    def get_sms(self, message_sid: str) -> Optional[SmsMessage]:
        return self.db.get_sms(message_sid)

    def update_sms(self, message_sid: str, fields: Dict[str, Any], only_if_status: Optional[Any] = None) -> Optional[SmsMessage]:
        return self._write("update_sms", message_sid, self.db.update_sms, message_sid, fields, only_if_status, payload=dict(fields))

    def list_thread(self, thread_id: str) -> List[SmsMessage]:
        try:
            return self.db.list_thread(thread_id)
        except Exception as e:
            logger.warning(f"Thread lookup failed for {thread_id}: {e!r}")
            return []

    # Appointments, receipts, contacts

    def create_appointment(self, appointment: Appointment) -> Optional[Appointment]:
        return self._write("create_appointment", appointment.id, self.db.create_appointment, appointment, payload=appointment.model_dump(mode="json"))

    def get_receipt(self, key: str) -> Optional[str]:
        try:
            return self.db.get_receipt(key)
        except Exception as e:
            logger.warning(f"Receipt lookup failed for {key}: {e!r}")
            return None

    def save_receipt(self, key: str, body: str) -> None:
        self._write("save_receipt", key, self.db.save_receipt, key, body)

    def record(self, operation: str, key: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run an arbitrary store mutation under the same log-and-flag policy."""
        return self._write(operation, key, fn, *args)

    # Events

    def publish(self, event_type: EventType, business_id: str, payload: Dict[str, Any]) -> None:
        try:
            self.broadcaster.publish(DomainEvent(type=event_type, business_id=business_id, payload=payload))
        except Exception as e:
            logger.warning(f"Broadcast of {event_type.value} failed: {e!r}")

    def missed_write_summary(self) -> List[Dict[str, str]]:
        return [{"operation": m.operation, "key": m.key, "at": m.at.isoformat()} for m in self.missed_writes]
