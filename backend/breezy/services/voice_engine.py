"""Drives the call state machine from provider webhooks.

Every handler follows the same shape: take the per-call lock, reload the call
from the ledger, compute a pure transition, write it back and publish it,
then render the transition's steps as TwiML. The language-model round-trip
happens outside the lock; the call is re-read afterwards so that a hang-up
that landed in between wins over the late decision.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ..schemas.pydantic_schemas import (
    ACTIVE_CALL_STATUSES,
    Appointment,
    Business,
    CallSession,
    CallStatus,
    Channel,
    Direction,
    FlowState,
    OrchestratorDecision,
    is_terminal,
    parse_call_status,
    statuses_below,
    utcnow,
)
from . import call_flow
from .analysis import call_analysis
from .call_locks import KeyedLocks
from .contact_resolver import ContactResolver
from .ledger import Ledger
from .openai_client import APPOINTMENT_REQUEST_PREFIX
from .orchestrator import ConversationState, Orchestrator, OrchestratorUnavailable
from .twiml import render_voice

logger = logging.getLogger(__name__)


def call_payload(call: CallSession) -> Dict[str, Any]:
    return call.model_dump(
        mode="json",
        include={
            "call_sid", "from_number", "to_number", "status", "flow_state",
            "handled_by", "contact_id", "transferred_to", "recording_url", "duration",
        },
    )


class VoiceEngine:
    def __init__(
        self,
        ledger: Ledger,
        resolver: ContactResolver,
        orchestrator: Orchestrator,
        telephony: Any,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.telephony = telephony
        self.locks = locks or KeyedLocks()
        self._clock = clock
        self._inflight: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------ #
    # Plumbing
    # ------------------------------------------------------------------ #

    async def run(self, endpoint: str, call_sid: str, idempotency_token: Optional[str], handler: Callable[[], Awaitable[str]]) -> str:
        """Run one webhook handler with receipt replay and the terminal fallback.

        A retry carrying the same idempotency token while the first delivery is
        still running waits for that delivery and returns its body.
        """
        if not idempotency_token:
            return await self._execute(endpoint, call_sid, handler)

        key = f"{endpoint}:{call_sid}:{idempotency_token}"
        replay = self.ledger.get_receipt(key)
        if replay is not None:
            logger.info(f"Replaying stored response for retried {endpoint} webhook on call {call_sid}")
            return replay

        pending = self._inflight.get(key)
        if pending is not None:
            logger.info(f"Retried {endpoint} webhook on call {call_sid} is waiting for the delivery in progress")
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                logger.warning(f"First {endpoint} delivery on call {call_sid} was cancelled; handling the retry")

        pending = asyncio.get_running_loop().create_future()
        self._inflight[key] = pending
        try:
            body = await self._execute(endpoint, call_sid, handler)
            self.ledger.save_receipt(key, body)
            pending.set_result(body)
            return body
        finally:
            self._inflight.pop(key, None)
            if not pending.done():
                pending.cancel()

    async def _execute(self, endpoint: str, call_sid: str, handler: Callable[[], Awaitable[str]]) -> str:
        try:
            return await handler()
        except Exception:
            logger.exception(f"Unhandled error in {endpoint} webhook for call {call_sid}; using terminal fallback")
            return self.terminal_fallback(call_sid)

    def terminal_fallback(self, call_sid: str) -> str:
        business = None
        try:
            call = self.ledger.get_call(call_sid)
            business = self.ledger.get_business(call.business_id) if call else None
        except Exception as e:
            logger.error(f"Could not load call {call_sid} for fallback: {e!r}")
        transition = call_flow.fallback_transfer_or_voicemail(business, reason="unexpected_error")
        return render_voice(transition.steps, business.ai_settings if business else None)

    def _apply(self, call: CallSession, transition: call_flow.Transition, only_if_status=None, extra: Optional[Dict[str, Any]] = None) -> CallSession:
        if transition.discarded:
            logger.warning(f"Discarded transition for call {call.call_sid} in status {call.status.value}")
            return call
        updated = call
        if transition.updates:
            updated = self.ledger.update_call(call.call_sid, transition.updates, only_if_status)
            if updated is None:
                logger.warning(f"Transition {call.flow_state.value} -> {transition.state.value} for call {call.call_sid} was not persisted; not publishing")
                return call
        logger.info(f"Call {call.call_sid}: {call.flow_state.value} -> {transition.state.value}")
        if transition.event:
            self.ledger.publish(transition.event, call.business_id, {**call_payload(updated), **(extra or {})})
        return updated

    async def _decide(self, text: str, business: Business, call: CallSession, transcript: str) -> Optional[OrchestratorDecision]:
        state = ConversationState(channel=Channel.CALL, transcript=transcript, contact=self.ledger.get_contact(call.contact_id))
        try:
            return await self.orchestrator.decide(text, business, state)
        except OrchestratorUnavailable:
            return None

    def _record_analysis(self, call: CallSession, decision: OrchestratorDecision, text: str) -> None:
        # Kept even when the call has already ended
        self.ledger.update_call(call.call_sid, {"ai_summary": call_analysis(decision, text, call.ai_summary)})
        if call.contact_id:
            self.ledger.record(
                "update_contact_sentiment", call.contact_id,
                self.resolver.record_sentiment, call.contact_id, decision.extracted_info.sentiment,
            )

    def _render(self, transition: call_flow.Transition, business: Optional[Business]) -> str:
        return render_voice(transition.steps, business.ai_settings if business else None)

    # ------------------------------------------------------------------ #
    # Webhooks
    # ------------------------------------------------------------------ #

    async def incoming_call(self, business: Optional[Business], call_sid: str, from_number: str, to_number: str, direction: Optional[str] = None) -> str:
        if business is None:
            logger.warning(f"Call {call_sid} to unconfigured number {to_number}")
            return self._render(call_flow.not_configured(), None)

        now = self._clock()
        async with self.locks.hold(call_sid):
            contact = self.ledger.record("resolve_contact", from_number, self.resolver.resolve, business.id, from_number, Channel.CALL)
            call = CallSession(
                business_id=business.id,
                call_sid=call_sid,
                from_number=from_number,
                to_number=to_number,
                direction=Direction.OUTBOUND if (direction or "").startswith("outbound") else Direction.INBOUND,
                status=CallStatus.RINGING,
                flow_state=FlowState.RINGING,
                start_time=now,
                contact_id=contact.id if contact else None,
            )
            call, created = self.ledger.insert_call(call)
            transition = call_flow.on_incoming_call(business, call.start_time or now)
            if created:
                logger.info(f"Incoming call {call_sid} for business {business.id} from {from_number}")
                self._apply(call, transition, only_if_status=ACTIVE_CALL_STATUSES)
            else:
                logger.info(f"Duplicate delivery of incoming call {call_sid}; re-rendering greeting")
        return self._render(transition, business)

    async def speech(self, call_sid: str, speech_text: Optional[str]) -> str:
        text = (speech_text or "").strip()
        async with self.locks.hold(call_sid):
            call = self.ledger.get_call(call_sid)
            if call is None:
                logger.warning(f"Speech for unknown call {call_sid}")
                return self._render(call_flow.fallback_transfer_or_voicemail(None), None)
            business = self.ledger.get_business(call.business_id)
            if not text:
                return self._render(call_flow.on_silence(call), business)
            if is_terminal(call.status):
                return self._render(call_flow.discard(call), business)
            prior_transcript = call.transcript
            self.ledger.append_transcript(call_sid, text)
            logger.info(f"Speech on call {call_sid}: '{text[:50]}{'...' if len(text) > 50 else ''}'")

        decision = await self._decide(text, business, call, prior_transcript)

        async with self.locks.hold(call_sid):
            call = self.ledger.get_call(call_sid) or call
            if decision is None:
                transition = call_flow.on_orchestrator_failure(call, business)
            else:
                self._record_analysis(call, decision, text)
                transition = call_flow.on_decision(call, business, decision)
            self._apply(call, transition, only_if_status=ACTIVE_CALL_STATUSES)
        return self._render(transition, business)

    async def appointment(self, call_sid: str, speech_text: Optional[str], digits: Optional[str] = None) -> str:
        text = (speech_text or digits or "").strip()
        async with self.locks.hold(call_sid):
            call = self.ledger.get_call(call_sid)
            if call is None:
                logger.warning(f"Appointment input for unknown call {call_sid}")
                return self._render(call_flow.fallback_transfer_or_voicemail(None), None)
            business = self.ledger.get_business(call.business_id)
            if not text:
                transition = call_flow.on_appointment_prompt(call)
                self._apply(call, transition, only_if_status=ACTIVE_CALL_STATUSES)
                return self._render(transition, business)
            if is_terminal(call.status):
                return self._render(call_flow.discard(call), business)
            prior_transcript = call.transcript
            self.ledger.append_transcript(call_sid, text)

        decision = await self._decide(f"{APPOINTMENT_REQUEST_PREFIX} {text}", business, call, prior_transcript)

        async with self.locks.hold(call_sid):
            call = self.ledger.get_call(call_sid) or call
            if decision is None:
                transition = call_flow.on_orchestrator_failure(call, business)
            else:
                transition = call_flow.on_appointment_decision(call, business, decision)
            appointment = None
            if transition.appointment_start and not transition.discarded:
                appointment = Appointment(
                    business_id=business.id,
                    contact_id=call.contact_id,
                    call_sid=call_sid,
                    start_time=transition.appointment_start,
                    end_time=transition.appointment_start + call_flow.APPOINTMENT_LENGTH,
                )
                self.ledger.create_appointment(appointment)
            extra = {"appointment_id": appointment.id, "start_time": appointment.start_time.isoformat()} if appointment else None
            call = self._apply(call, transition, only_if_status=ACTIVE_CALL_STATUSES, extra=extra)

        if appointment:
            await self._send_confirmation(business, call, appointment)
        return self._render(transition, business)

    async def _send_confirmation(self, business: Business, call: CallSession, appointment: Appointment) -> None:
        when = call_flow.describe_time(appointment.start_time, business)
        body = f"Your appointment with {business.name} is confirmed for {when}. Reply to this message if you need to reschedule."
        try:
            await self.telephony.send_sms(call.from_number, business.phone_number, body)
        except Exception as e:
            logger.warning(f"Confirmation SMS for appointment {appointment.id} not sent: {str(e)}")

    async def voicemail(self, call_sid: str) -> str:
        async with self.locks.hold(call_sid):
            call = self.ledger.get_call(call_sid)
            business = self.ledger.get_business(call.business_id) if call else None
            transition = call_flow.on_voicemail_requested(call, business)
            if call is not None:
                self._apply(call, transition, only_if_status=ACTIVE_CALL_STATUSES)
        return self._render(transition, business)

    async def recording(self, call_sid: str, recording_url: str, recording_duration: Optional[int]) -> str:
        async with self.locks.hold(call_sid):
            call = self.ledger.get_call(call_sid)
            if call is None:
                logger.warning(f"Recording for unknown call {call_sid}")
                return render_voice([call_flow.Say(call_flow.VOICEMAIL_THANKS), call_flow.Hangup()])
            business = self.ledger.get_business(call.business_id)
            transition = call_flow.on_recording(call, recording_url, recording_duration)
            self._apply(call, transition)
        return self._render(transition, business)

    async def status(self, call_sid: str, raw_status: Optional[str], duration: Optional[int] = None) -> Optional[CallSession]:
        """Apply a status callback. Returns the call only when this delivery changed it."""
        status = parse_call_status(raw_status)
        if status is None:
            logger.warning(f"Ignoring unknown call status {raw_status!r} for {call_sid}")
            return None
        now = self._clock()
        async with self.locks.hold(call_sid):
            call = self.ledger.get_call(call_sid)
            if call is None:
                logger.info(f"Status {status.value} for untracked call {call_sid}")
                return None
            transition = call_flow.on_status(call, status, duration, now)
            if transition.discarded:
                logger.info(f"Ignoring {status.value} for call {call_sid}: already {call.status.value}")
                return None
            # Conditional on the prior status so a concurrent instance cannot stamp twice
            updated = self.ledger.update_call(call_sid, transition.updates, statuses_below(status))
            if updated is None:
                return None
            if transition.completes_interaction and call.contact_id:
                self.ledger.record("record_contact_activity", call.contact_id, self.resolver.record_interaction, call.contact_id, Channel.CALL, now)
            logger.info(f"Call {call_sid} status {call.status.value} -> {status.value}")
            self.ledger.publish(transition.event, call.business_id, call_payload(updated))
        return updated
