"""Pure state transitions for one phone call.

Each function maps (persisted call state, new event) to a `Transition`: the
next flow state, the markup steps to return to the provider, and the field
updates to write back. Nothing here touches the store, the network or the
clock, so every transition is testable without a live provider.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from ..schemas.pydantic_schemas import (
    CALL_STATUS_RANK,
    WEEKDAYS,
    Business,
    CallSession,
    CallStatus,
    DecisionAction,
    EventType,
    FlowState,
    HandledBy,
    OrchestratorDecision,
    is_terminal,
)

VOICE_BASE = "/api/twilio/voice"
SPEECH_URL = f"{VOICE_BASE}/speech"
APPOINTMENT_URL = f"{VOICE_BASE}/appointment"
VOICEMAIL_URL = f"{VOICE_BASE}/voicemail"
RECORDING_URL = f"{VOICE_BASE}/recording"

FALLBACK_MESSAGE = "I'm sorry, I'm having trouble understanding right now. Let me connect you with someone who can help."
UNAVAILABLE_MESSAGE = "I'm sorry, we're having trouble right now. Please leave a message after the tone."
NOT_CONFIGURED_MESSAGE = "Sorry, this number is not configured."
GATHER_PROMPT = "Please tell me how I can help you today."
FOLLOW_UP_PROMPT = "Is there anything else I can help you with?"
CLOSING_MESSAGE = "Thank you for calling. Have a great day!"
TRANSFER_MESSAGE = "Let me transfer you to someone who can help."
NO_ONE_AVAILABLE_MESSAGE = "Sorry, no one is available to take your call right now."
CLOSED_PREFIX = "Thank you for calling. We're currently closed."
APPOINTMENT_PROMPT = "I can help you schedule an appointment. What day would work best for you?"
APPOINTMENT_GATHER_PROMPT = "Please tell me your preferred day and time."
APPOINTMENT_FAILED_MESSAGE = "I'm sorry, I couldn't understand the appointment details."
VOICEMAIL_THANKS = "Thank you for your message. We'll get back to you soon. Goodbye!"

APPOINTMENT_LENGTH = timedelta(minutes=60)


@dataclass(frozen=True)
class Say:
    text: str


@dataclass(frozen=True)
class Gather:
    action: str
    prompt: str
    input: str = "speech"
    timeout: int = 5


@dataclass(frozen=True)
class Dial:
    number: str


@dataclass(frozen=True)
class Record:
    action: str
    max_length: int = 300


@dataclass(frozen=True)
class Redirect:
    url: str


@dataclass(frozen=True)
class Hangup:
    pass


Step = Union[Say, Gather, Dial, Record, Redirect, Hangup]


@dataclass
class Transition:
    state: FlowState
    steps: List[Step] = field(default_factory=list)
    updates: Dict[str, Any] = field(default_factory=dict)
    event: Optional[EventType] = None
    discarded: bool = False
    # Set when a terminal status was newly stamped; contact counters move exactly then
    completes_interaction: bool = False
    appointment_start: Optional[datetime] = None


def discard(call: CallSession) -> Transition:
    return Transition(state=call.flow_state, discarded=True)


def is_within_business_hours(business: Business, now: datetime) -> bool:
    local = now.astimezone(ZoneInfo(business.time_zone))
    hours = business.business_hours.get(WEEKDAYS[local.weekday()])
    if not hours or not hours.is_open:
        return False
    current = local.strftime("%H:%M")
    if hours.close < hours.open:
        # Overnight window, e.g. 22:00-02:00
        return current >= hours.open or current <= hours.close
    return hours.open <= current <= hours.close


def describe_time(when: datetime, business: Business) -> str:
    local = when.astimezone(ZoneInfo(business.time_zone))
    clock = local.strftime("%I:%M %p").lstrip("0")
    return f"{local.strftime('%A, %B')} {local.day} at {clock}"


def localize(when: datetime, business: Business) -> datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=ZoneInfo(business.time_zone))
    return when


# ------------------------------------------------------------------ #
# Entry and fallbacks
# ------------------------------------------------------------------ #

def not_configured() -> Transition:
    return Transition(state=FlowState.ENDING, steps=[Say(NOT_CONFIGURED_MESSAGE), Hangup()])


def on_incoming_call(business: Business, now: datetime) -> Transition:
    updates: Dict[str, Any] = {"status": CallStatus.ANSWERED}
    if is_within_business_hours(business, now):
        updates["flow_state"] = FlowState.IN_CONVERSATION
        return Transition(
            state=FlowState.IN_CONVERSATION,
            steps=[
                Say(business.ai_settings.greeting),
                Gather(action=SPEECH_URL, prompt=GATHER_PROMPT),
                # No speech before the gather times out
                Redirect(VOICEMAIL_URL),
            ],
            updates=updates,
            event=EventType.INCOMING_CALL,
        )
    updates["flow_state"] = FlowState.RECORDING_VOICEMAIL
    updates["handled_by"] = HandledBy.VOICEMAIL
    return Transition(
        state=FlowState.RECORDING_VOICEMAIL,
        steps=[Say(f"{CLOSED_PREFIX} {business.ai_settings.voicemail}"), Record(RECORDING_URL)],
        updates=updates,
        event=EventType.INCOMING_CALL,
    )


def fallback_transfer_or_voicemail(business: Optional[Business], message: str = FALLBACK_MESSAGE, reason: str = "fallback") -> Transition:
    """The terminal fallback: apologise, then dial the forwarding number or take a message."""
    if business is None:
        return Transition(state=FlowState.RECORDING_VOICEMAIL, steps=[Say(UNAVAILABLE_MESSAGE), Record(RECORDING_URL)])
    if business.forwarding_number:
        return Transition(
            state=FlowState.TRANSFERRING,
            steps=[Say(message), Dial(business.forwarding_number)],
            updates={
                "flow_state": FlowState.TRANSFERRING,
                "transferred_to": business.forwarding_number,
                "transfer_reason": reason,
            },
            event=EventType.CALL_UPDATED,
        )
    return Transition(
        state=FlowState.RECORDING_VOICEMAIL,
        steps=[Say(message), Redirect(VOICEMAIL_URL)],
        updates={"flow_state": FlowState.RECORDING_VOICEMAIL},
        event=EventType.CALL_UPDATED,
    )


def on_orchestrator_failure(call: CallSession, business: Business) -> Transition:
    if is_terminal(call.status):
        return discard(call)
    # handled_by stays "ai": the machine gave up, no human has picked up yet
    return fallback_transfer_or_voicemail(business, FALLBACK_MESSAGE, reason="orchestrator_unavailable")


# ------------------------------------------------------------------ #
# Conversation loop
# ------------------------------------------------------------------ #

def _transfer(business: Business, reason: str) -> Transition:
    if business.forwarding_number:
        return Transition(
            state=FlowState.TRANSFERRING,
            steps=[Say(TRANSFER_MESSAGE), Dial(business.forwarding_number)],
            updates={
                "flow_state": FlowState.TRANSFERRING,
                "handled_by": HandledBy.HUMAN,
                "transferred_to": business.forwarding_number,
                "transfer_reason": reason,
            },
            event=EventType.CALL_UPDATED,
        )
    return Transition(
        state=FlowState.RECORDING_VOICEMAIL,
        steps=[Say(TRANSFER_MESSAGE), Say(NO_ONE_AVAILABLE_MESSAGE), Redirect(VOICEMAIL_URL)],
        updates={"flow_state": FlowState.RECORDING_VOICEMAIL},
        event=EventType.CALL_UPDATED,
    )


def on_decision(call: CallSession, business: Business, decision: OrchestratorDecision) -> Transition:
    """Choose the next markup for a conversation turn, or discard a decision that arrived too late."""
    if is_terminal(call.status):
        return discard(call)

    action = decision.action
    if action == DecisionAction.APPOINTMENT and not business.ai_settings.appointment_booking:
        action = DecisionAction.TRANSFER

    if action == DecisionAction.TRANSFER:
        return _transfer(business, reason=decision.extracted_info.intent or "caller_request")

    if action == DecisionAction.APPOINTMENT:
        return Transition(
            state=FlowState.APPOINTMENT,
            steps=[Say(decision.message), Redirect(APPOINTMENT_URL)],
            updates={"flow_state": FlowState.APPOINTMENT},
            event=EventType.CALL_UPDATED,
        )

    if action == DecisionAction.INFORMATION:
        return Transition(
            state=FlowState.IN_CONVERSATION,
            steps=[
                Say(decision.message),
                Gather(action=SPEECH_URL, prompt=FOLLOW_UP_PROMPT),
                # Reached only when the gather hears nothing
                Say(CLOSING_MESSAGE),
                Hangup(),
            ],
            updates={"flow_state": FlowState.IN_CONVERSATION},
            event=EventType.CALL_UPDATED,
        )

    return Transition(
        state=FlowState.ENDING,
        steps=[Say(decision.message), Hangup()],
        updates={"flow_state": FlowState.ENDING},
        event=EventType.CALL_UPDATED,
    )


def on_silence(call: CallSession) -> Transition:
    """A speech callback arrived without recognised words."""
    if is_terminal(call.status):
        return discard(call)
    return Transition(
        state=FlowState.IN_CONVERSATION,
        steps=[Gather(action=SPEECH_URL, prompt=FOLLOW_UP_PROMPT), Say(CLOSING_MESSAGE), Hangup()],
    )


# ------------------------------------------------------------------ #
# Appointment sub-flow
# ------------------------------------------------------------------ #

def on_appointment_prompt(call: CallSession) -> Transition:
    if is_terminal(call.status):
        return discard(call)
    return Transition(
        state=FlowState.APPOINTMENT,
        steps=[
            Say(APPOINTMENT_PROMPT),
            Gather(action=APPOINTMENT_URL, prompt=APPOINTMENT_GATHER_PROMPT, input="speech dtmf"),
            Redirect(VOICEMAIL_URL),
        ],
        updates={"flow_state": FlowState.APPOINTMENT},
    )


def on_appointment_decision(call: CallSession, business: Business, decision: OrchestratorDecision) -> Transition:
    if is_terminal(call.status):
        return discard(call)
    if decision.appointment_time is None or decision.is_fallback:
        transition = _transfer(business, reason="appointment_unparsed")
        transition.steps.insert(0, Say(APPOINTMENT_FAILED_MESSAGE))
        return transition
    start = localize(decision.appointment_time, business)
    confirmation = (
        f"Perfect! I've scheduled your appointment for {describe_time(start, business)}. "
        "You'll receive a confirmation text message shortly."
    )
    return Transition(
        state=FlowState.ENDING,
        steps=[Say(confirmation), Say(CLOSING_MESSAGE), Hangup()],
        updates={"flow_state": FlowState.ENDING},
        event=EventType.APPOINTMENT_BOOKED,
        appointment_start=start,
    )


# ------------------------------------------------------------------ #
# Voicemail, recording and provider status
# ------------------------------------------------------------------ #

def on_voicemail_requested(call: Optional[CallSession], business: Optional[Business]) -> Transition:
    if business is None:
        return fallback_transfer_or_voicemail(None)
    if call is not None and is_terminal(call.status):
        return discard(call)
    return Transition(
        state=FlowState.RECORDING_VOICEMAIL,
        steps=[Say(business.ai_settings.voicemail), Record(RECORDING_URL)],
        updates={"flow_state": FlowState.RECORDING_VOICEMAIL},
    )


def on_recording(call: CallSession, recording_url: str, recording_duration: Optional[int]) -> Transition:
    steps: List[Step] = [Say(VOICEMAIL_THANKS), Hangup()]
    if call.recording_url == recording_url:
        # Provider retry of a recording we already stored
        return Transition(state=FlowState.COMPLETED, steps=steps, discarded=True)
    return Transition(
        state=FlowState.COMPLETED,
        steps=steps,
        updates={
            "recording_url": recording_url,
            "recording_duration": recording_duration,
            "handled_by": HandledBy.VOICEMAIL,
            "flow_state": FlowState.COMPLETED,
        },
        event=EventType.VOICEMAIL_RECEIVED,
    )


def on_status(call: CallSession, status: CallStatus, duration: Optional[int], now: datetime) -> Transition:
    """Apply a provider status callback; statuses only ever move forward."""
    if is_terminal(call.status) or CALL_STATUS_RANK[status] <= CALL_STATUS_RANK[call.status]:
        return discard(call)
    if not is_terminal(status):
        return Transition(state=call.flow_state, updates={"status": status}, event=EventType.CALL_UPDATED)
    if duration is None:
        started = call.start_time or call.created_at
        duration = max(0, int((now - started).total_seconds()))
    return Transition(
        state=FlowState.COMPLETED,
        updates={
            "status": status,
            "end_time": now,
            "duration": duration,
            "flow_state": FlowState.COMPLETED,
        },
        event=EventType.CALL_UPDATED,
        completes_interaction=True,
    )
