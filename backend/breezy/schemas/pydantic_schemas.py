from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ------------------------------------------------------------------ #
# Business account
# ------------------------------------------------------------------ #

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class DayHours(BaseModel):
    open: str = "09:00"
    close: str = "17:00"
    is_open: bool = False


class AISettings(BaseModel):
    greeting: str = "Hello! Thank you for calling. How can I help you today?"
    voicemail: str = (
        "I'm sorry, but I'm not available right now. Please leave a message "
        "and I'll get back to you as soon as possible."
    )
    personality: str = "professional"
    transfer_keyword: str = "transfer"
    appointment_booking: bool = True
    sms_auto_response: bool = True
    voice: str = "alice"
    language: str = "en-US"


class Business(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    phone_number: str
    forwarding_number: Optional[str] = None
    time_zone: str = "UTC"
    business_hours: Dict[str, DayHours] = Field(default_factory=dict)
    ai_settings: AISettings = Field(default_factory=AISettings)


# ------------------------------------------------------------------ #
# Contacts
# ------------------------------------------------------------------ #

class Channel(str, Enum):
    CALL = "call"
    SMS = "sms"


class Contact(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    phone: str
    phone_normalized: str
    first_name: str = "Unknown"
    last_name: str = "Caller"
    email: Optional[str] = None
    category: str = "lead"
    relationship_status: str = "cold"
    lead_source: str = "cold-call"
    is_active: bool = True
    total_calls: int = 0
    total_sms: int = 0
    last_call_date: Optional[datetime] = None
    last_sms_date: Optional[datetime] = None
    last_contacted_at: Optional[datetime] = None
    sentiment: str = "neutral"
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ------------------------------------------------------------------ #
# Calls
# ------------------------------------------------------------------ #

class CallStatus(str, Enum):
    QUEUED = "queued"
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"


TERMINAL_CALL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.BUSY,
    CallStatus.FAILED,
    CallStatus.NO_ANSWER,
    CallStatus.CANCELED,
})

ACTIVE_CALL_STATUSES = frozenset(set(CallStatus) - TERMINAL_CALL_STATUSES)

CALL_STATUS_RANK = {
    CallStatus.QUEUED: 0,
    CallStatus.RINGING: 1,
    CallStatus.ANSWERED: 2,
    CallStatus.COMPLETED: 3,
    CallStatus.BUSY: 3,
    CallStatus.FAILED: 3,
    CallStatus.NO_ANSWER: 3,
    CallStatus.CANCELED: 3,
}

# Provider status names that do not map one-to-one onto CallStatus
PROVIDER_CALL_STATUS_ALIASES = {
    "initiated": CallStatus.QUEUED,
    "in-progress": CallStatus.ANSWERED,
}


def parse_call_status(raw: Optional[str]) -> Optional[CallStatus]:
    value = (raw or "").strip().lower()
    if value in PROVIDER_CALL_STATUS_ALIASES:
        return PROVIDER_CALL_STATUS_ALIASES[value]
    try:
        return CallStatus(value)
    except ValueError:
        return None


def is_terminal(status: CallStatus) -> bool:
    return status in TERMINAL_CALL_STATUSES


def statuses_below(status: CallStatus) -> List[CallStatus]:
    """Statuses a call may currently hold for a move to `status` to be forward."""
    rank = CALL_STATUS_RANK[status]
    return [s for s in ACTIVE_CALL_STATUSES if CALL_STATUS_RANK[s] < rank]


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class HandledBy(str, Enum):
    AI = "ai"
    HUMAN = "human"
    VOICEMAIL = "voicemail"


class FlowState(str, Enum):
    RINGING = "ringing"
    ANSWERED = "answered"
    IN_CONVERSATION = "in_conversation"
    APPOINTMENT = "appointment"
    TRANSFERRING = "transferring"
    RECORDING_VOICEMAIL = "recording_voicemail"
    ENDING = "ending"
    COMPLETED = "completed"


class AISummary(BaseModel):
    summary: Optional[str] = None
    intent: Optional[str] = None
    sentiment: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    follow_up_required: bool = False


class CallSession(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    call_sid: str
    from_number: str
    to_number: str
    direction: Direction = Direction.INBOUND
    status: CallStatus = CallStatus.QUEUED
    flow_state: FlowState = FlowState.RINGING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    transcript: str = ""
    contact_id: Optional[str] = None
    handled_by: HandledBy = HandledBy.AI
    transferred_to: Optional[str] = None
    transfer_reason: Optional[str] = None
    recording_url: Optional[str] = None
    recording_duration: Optional[int] = None
    ai_summary: Optional[AISummary] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ------------------------------------------------------------------ #
# SMS
# ------------------------------------------------------------------ #

class SmsStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"
    FAILED = "failed"
    RECEIVED = "received"


SMS_STATUS_RANK = {
    SmsStatus.QUEUED: 0,
    SmsStatus.SENDING: 1,
    SmsStatus.SENT: 2,
    SmsStatus.DELIVERED: 3,
    SmsStatus.UNDELIVERED: 3,
    SmsStatus.FAILED: 3,
    SmsStatus.RECEIVED: 3,
}


class SmsAnalysis(BaseModel):
    intent: Optional[str] = None
    sentiment: Optional[str] = None
    urgency: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    requires_response: bool = False
    suggested_response: Optional[str] = None
    confidence: Optional[float] = None
    auto_response_sent: bool = False


class SmsMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    message_sid: str
    from_number: str
    to_number: str
    body: str
    direction: Direction
    status: SmsStatus = SmsStatus.QUEUED
    thread_id: str
    contact_id: Optional[str] = None
    ai_processed: bool = False
    ai_analysis: Optional[SmsAnalysis] = None
    is_auto_response: bool = False
    in_reply_to: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ------------------------------------------------------------------ #
# Appointments
# ------------------------------------------------------------------ #

class Appointment(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    contact_id: Optional[str] = None
    call_sid: Optional[str] = None
    title: str = "Phone appointment"
    start_time: datetime
    end_time: datetime
    status: str = "scheduled"
    source: str = "ai-call"
    created_at: datetime = Field(default_factory=utcnow)


# ------------------------------------------------------------------ #
# Orchestrator decision
# ------------------------------------------------------------------ #

class DecisionAction(str, Enum):
    TRANSFER = "transfer"
    APPOINTMENT = "appointment"
    INFORMATION = "information"
    VOICEMAIL = "voicemail"
    END = "end"


class ExtractedInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    intent: Optional[str] = None
    urgency: str = "medium"
    sentiment: str = "neutral"


class OrchestratorDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: DecisionAction = DecisionAction.INFORMATION
    message: str = ""
    should_respond: bool = Field(default=True, alias="shouldRespond")
    extracted_info: ExtractedInfo = Field(default_factory=ExtractedInfo, alias="extractedInfo")
    appointment_time: Optional[datetime] = Field(default=None, alias="appointmentTime")
    appointment_time_text: Optional[str] = None
    is_fallback: bool = False


# ------------------------------------------------------------------ #
# Events and read models
# ------------------------------------------------------------------ #

class EventType(str, Enum):
    INCOMING_CALL = "incoming-call"
    CALL_UPDATED = "call-updated"
    VOICEMAIL_RECEIVED = "voicemail-received"
    SMS_RECEIVED = "sms-received"
    APPOINTMENT_BOOKED = "appointment-booked"


class DomainEvent(BaseModel):
    type: EventType
    business_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class CallRead(BaseModel):
    call_sid: str
    business_id: str
    from_number: str
    to_number: str
    direction: Direction
    status: CallStatus
    flow_state: FlowState
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration: Optional[int]
    transcript: str
    contact_id: Optional[str]
    handled_by: HandledBy
    transferred_to: Optional[str]
    recording_url: Optional[str]
    recording_duration: Optional[int]
    ai_summary: Optional[AISummary] = None
