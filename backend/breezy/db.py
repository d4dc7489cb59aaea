from typing import Any, Collection, Dict, List, Optional, Tuple
from datetime import datetime
import json
import logging
import pathlib
import re

from pydantic_core import to_jsonable_python

# Lightweight adapter over Supabase client. Falls back to an in-memory store when SUPABASE_URL is missing.
from supabase import create_client, Client

from .config import Settings, get_settings
from .schemas.pydantic_schemas import (
    Appointment,
    Business,
    CallSession,
    Channel,
    Contact,
    SmsMessage,
    utcnow,
)

logger = logging.getLogger(__name__)


def digits_suffix(number: Optional[str], size: int = 10) -> str:
    return re.sub(r"\D", "", number or "")[-size:]


def _values(statuses: Optional[Collection[Any]]) -> Optional[List[str]]:
    if statuses is None:
        return None
    return [getattr(s, "value", s) for s in statuses]


class InMemoryDB:
    mode = "memory"

    def __init__(self) -> None:
        self.businesses: Dict[str, Business] = {}
        self.contacts: Dict[str, Contact] = {}
        self.calls: Dict[str, CallSession] = {}
        self.sms: Dict[str, SmsMessage] = {}
        self.appointments: Dict[str, Appointment] = {}
        self.receipts: Dict[str, str] = {}

    # Businesses
    def add_business(self, business: Business) -> Business:
        self.businesses[business.id] = business.model_copy(deep=True)
        return business

    def get_business(self, business_id: str) -> Optional[Business]:
        found = self.businesses.get(business_id)
        return found.model_copy(deep=True) if found else None

    def get_business_by_number(self, number: str) -> Optional[Business]:
        wanted = digits_suffix(number)
        for business in self.businesses.values():
            if wanted and digits_suffix(business.phone_number) == wanted:
                return business.model_copy(deep=True)
        return None

    # Contacts
    def find_contact(self, business_id: str, phone_normalized: str) -> Optional[Contact]:
        for contact in self.contacts.values():
            if contact.business_id == business_id and contact.phone_normalized == phone_normalized:
                return contact.model_copy(deep=True)
        return None

    def create_contact_if_absent(self, contact: Contact) -> Tuple[Contact, bool]:
        existing = self.find_contact(contact.business_id, contact.phone_normalized)
        if existing:
            return existing, False
        self.contacts[contact.id] = contact.model_copy(deep=True)
        return contact, True

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        found = self.contacts.get(contact_id)
        return found.model_copy(deep=True) if found else None

    def record_contact_activity(self, contact_id: str, channel: Channel, when: datetime) -> Optional[Contact]:
        contact = self.contacts.get(contact_id)
        if not contact:
            return None
        if channel == Channel.CALL:
            contact.total_calls += 1
            contact.last_call_date = when
        else:
            contact.total_sms += 1
            contact.last_sms_date = when
        contact.last_contacted_at = when
        return contact.model_copy(deep=True)

    def update_contact_sentiment(self, contact_id: str, sentiment: str) -> None:
        contact = self.contacts.get(contact_id)
        if contact:
            contact.sentiment = sentiment

    # Calls
    def insert_call_if_absent(self, call: CallSession) -> Tuple[CallSession, bool]:
        existing = self.calls.get(call.call_sid)
        if existing:
            return existing.model_copy(deep=True), False
        self.calls[call.call_sid] = call.model_copy(deep=True)
        return call, True

    def get_call(self, call_sid: str) -> Optional[CallSession]:
        found = self.calls.get(call_sid)
        return found.model_copy(deep=True) if found else None

    def update_call(self, call_sid: str, fields: Dict[str, Any], only_if_status: Optional[Collection[Any]] = None) -> Optional[CallSession]:
        call = self.calls.get(call_sid)
        if not call:
            return None
        allowed = _values(only_if_status)
        if allowed is not None and call.status.value not in allowed:
            return None
        updated = CallSession.model_validate({**call.model_dump(), **fields, "updated_at": utcnow()})
        self.calls[call_sid] = updated
        return updated.model_copy(deep=True)

    def append_transcript(self, call_sid: str, fragment: str) -> Optional[CallSession]:
        call = self.calls.get(call_sid)
        if not call:
            return None
        call.transcript = f"{call.transcript} {fragment}" if call.transcript else fragment
        call.updated_at = utcnow()
        return call.model_copy(deep=True)

    # SMS
    def insert_sms_if_absent(self, message: SmsMessage) -> Tuple[SmsMessage, bool]:
        existing = self.sms.get(message.message_sid)
        if existing:
            return existing.model_copy(deep=True), False
        self.sms[message.message_sid] = message.model_copy(deep=True)
        return message, True

    def get_sms(self, message_sid: str) -> Optional[SmsMessage]:
        found = self.sms.get(message_sid)
        return found.model_copy(deep=True) if found else None

    def update_sms(self, message_sid: str, fields: Dict[str, Any], only_if_status: Optional[Collection[Any]] = None) -> Optional[SmsMessage]:
        message = self.sms.get(message_sid)
        if not message:
            return None
        allowed = _values(only_if_status)
        if allowed is not None and message.status.value not in allowed:
            return None
        updated = SmsMessage.model_validate({**message.model_dump(), **fields})
        self.sms[message_sid] = updated
        return updated.model_copy(deep=True)

    def list_thread(self, thread_id: str) -> List[SmsMessage]:
        items = [m for m in self.sms.values() if m.thread_id == thread_id]
        return sorted(items, key=lambda m: m.created_at)

    # Appointments
    def create_appointment(self, appointment: Appointment) -> Appointment:
        self.appointments[appointment.id] = appointment.model_copy(deep=True)
        return appointment

    # Webhook receipts
    def get_receipt(self, key: str) -> Optional[str]:
        return self.receipts.get(key)

    def save_receipt(self, key: str, body: str) -> None:
        self.receipts.setdefault(key, body)


class SupabaseDB:
    mode = "supabase"

    def __init__(self, client: Client) -> None:
        self.client = client

    @staticmethod
    def _row(model) -> Dict[str, Any]:
        return model.model_dump(mode="json")

    def _first(self, res) -> Optional[Dict[str, Any]]:
        return (res.data or [None])[0]

    # Businesses
    def add_business(self, business: Business) -> Business:
        self.client.table("businesses").upsert(self._row(business)).execute()
        return business

    def get_business(self, business_id: str) -> Optional[Business]:
        res = self.client.table("businesses").select("*").eq("id", business_id).limit(1).execute()
        row = self._first(res)
        return Business.model_validate(row) if row else None

    def get_business_by_number(self, number: str) -> Optional[Business]:
        wanted = digits_suffix(number)
        if not wanted:
            return None
        res = self.client.table("businesses").select("*").like("phone_number", f"%{wanted}").limit(1).execute()
        row = self._first(res)
        return Business.model_validate(row) if row else None

    # Contacts
    def find_contact(self, business_id: str, phone_normalized: str) -> Optional[Contact]:
        res = (
            self.client.table("contacts").select("*")
            .eq("business_id", business_id)
            .eq("phone_normalized", phone_normalized)
            .limit(1).execute()
        )
        row = self._first(res)
        return Contact.model_validate(row) if row else None

    def create_contact_if_absent(self, contact: Contact) -> Tuple[Contact, bool]:
        # Unique (business_id, phone_normalized) makes concurrent first contacts collapse to one row
        res = (
            self.client.table("contacts")
            .upsert(self._row(contact), on_conflict="business_id,phone_normalized", ignore_duplicates=True)
            .execute()
        )
        if res.data:
            return Contact.model_validate(res.data[0]), True
        existing = self.find_contact(contact.business_id, contact.phone_normalized)
        return (existing or contact), False

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        res = self.client.table("contacts").select("*").eq("id", contact_id).limit(1).execute()
        row = self._first(res)
        return Contact.model_validate(row) if row else None

    def record_contact_activity(self, contact_id: str, channel: Channel, when: datetime) -> Optional[Contact]:
        res = self.client.rpc("increment_contact_activity", {
            "p_contact_id": contact_id,
            "p_channel": channel.value,
            "p_when": when.isoformat(),
        }).execute()
        row = self._first(res)
        return Contact.model_validate(row) if row else None

    def update_contact_sentiment(self, contact_id: str, sentiment: str) -> None:
        self.client.table("contacts").update({"sentiment": sentiment}).eq("id", contact_id).execute()

    # Calls
    def insert_call_if_absent(self, call: CallSession) -> Tuple[CallSession, bool]:
        res = (
            self.client.table("calls")
            .upsert(self._row(call), on_conflict="call_sid", ignore_duplicates=True)
            .execute()
        )
        if res.data:
            return CallSession.model_validate(res.data[0]), True
        existing = self.get_call(call.call_sid)
        return (existing or call), False

    def get_call(self, call_sid: str) -> Optional[CallSession]:
        res = self.client.table("calls").select("*").eq("call_sid", call_sid).limit(1).execute()
        row = self._first(res)
        return CallSession.model_validate(row) if row else None

    def update_call(self, call_sid: str, fields: Dict[str, Any], only_if_status: Optional[Collection[Any]] = None) -> Optional[CallSession]:
        payload = to_jsonable_python(fields)
        payload["updated_at"] = utcnow().isoformat()
        query = self.client.table("calls").update(payload).eq("call_sid", call_sid)
        allowed = _values(only_if_status)
        if allowed is not None:
            # Conditional update keyed by call_sid: a late status cannot overwrite a newer stamp
            query = query.in_("status", allowed)
        res = query.execute()
        row = self._first(res)
        return CallSession.model_validate(row) if row else None

    def append_transcript(self, call_sid: str, fragment: str) -> Optional[CallSession]:
        res = self.client.rpc("append_call_transcript", {"p_call_sid": call_sid, "p_fragment": fragment}).execute()
        row = self._first(res)
        return CallSession.model_validate(row) if row else None

    # SMS
    def insert_sms_if_absent(self, message: SmsMessage) -> Tuple[SmsMessage, bool]:
        res = (
            self.client.table("sms_messages")
            .upsert(self._row(message), on_conflict="message_sid", ignore_duplicates=True)
            .execute()
        )
        if res.data:
            return SmsMessage.model_validate(res.data[0]), True
        existing = self.get_sms(message.message_sid)
        return (existing or message), False

    def get_sms(self, message_sid: str) -> Optional[SmsMessage]:
        res = self.client.table("sms_messages").select("*").eq("message_sid", message_sid).limit(1).execute()
        row = self._first(res)
        return SmsMessage.model_validate(row) if row else None

    def update_sms(self, message_sid: str, fields: Dict[str, Any], only_if_status: Optional[Collection[Any]] = None) -> Optional[SmsMessage]:
        payload = to_jsonable_python(fields)
        query = self.client.table("sms_messages").update(payload).eq("message_sid", message_sid)
        allowed = _values(only_if_status)
        if allowed is not None:
            query = query.in_("status", allowed)
        res = query.execute()
        row = self._first(res)
        return SmsMessage.model_validate(row) if row else None

    def list_thread(self, thread_id: str) -> List[SmsMessage]:
        res = self.client.table("sms_messages").select("*").eq("thread_id", thread_id).order("created_at", desc=False).execute()
        return [SmsMessage.model_validate(r) for r in (res.data or [])]

    # Appointments
    def create_appointment(self, appointment: Appointment) -> Appointment:
        self.client.table("appointments").insert(self._row(appointment)).execute()
        return appointment

    # Webhook receipts
    def get_receipt(self, key: str) -> Optional[str]:
        res = self.client.table("webhook_receipts").select("body").eq("key", key).limit(1).execute()
        row = self._first(res)
        return row["body"] if row else None

    def save_receipt(self, key: str, body: str) -> None:
        self.client.table("webhook_receipts").upsert({"key": key, "body": body}, on_conflict="key", ignore_duplicates=True).execute()


def load_business_seed(db: Any, path: str) -> int:
    seed_path = pathlib.Path(path)
    if not seed_path.exists():
        logger.warning(f"Business seed file not found: {seed_path}")
        return 0
    rows = json.loads(seed_path.read_text())
    for row in rows:
        db.add_business(Business.model_validate(row))
    logger.info(f"Seeded {len(rows)} business account(s) from {seed_path}")
    return len(rows)


_client: Optional[Client] = None
_db_instance: Optional[Any] = None


def get_db(settings: Optional[Settings] = None):
    global _client, _db_instance
    settings = settings or get_settings()

    if settings.supabase_enabled:
        if _client is None:
            _client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            _db_instance = SupabaseDB(_client)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        _db_instance = InMemoryDB()
        if settings.business_seed_file:
            load_business_seed(_db_instance, settings.business_seed_file)
    return _db_instance
