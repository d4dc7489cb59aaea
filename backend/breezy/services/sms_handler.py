import logging
from datetime import datetime
from typing import Callable, Optional

from ..schemas.pydantic_schemas import (
    SMS_STATUS_RANK,
    Business,
    Channel,
    Direction,
    EventType,
    SmsMessage,
    SmsStatus,
    utcnow,
)
from .analysis import sms_analysis
from .contact_resolver import ContactResolver, normalize_phone
from .ledger import Ledger
from .orchestrator import ConversationState, Orchestrator, OrchestratorUnavailable

logger = logging.getLogger(__name__)

THREAD_CONTEXT_MESSAGES = 6


def thread_id_for(business_id: str, remote_number: str) -> str:
    return f"{business_id}:{normalize_phone(remote_number)}"


def auto_reply_sid(inbound_sid: str) -> str:
    return f"auto-{inbound_sid}"


class SmsHandler:
    def __init__(self, ledger: Ledger, resolver: ContactResolver, orchestrator: Orchestrator, clock: Callable[[], datetime] = utcnow) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.orchestrator = orchestrator
        self._clock = clock

    async def handle_inbound(self, business: Business, message_sid: str, from_number: str, to_number: str, body: str) -> Optional[str]:
        """Persist an inbound text and return the auto-reply body, if one should be sent."""
        now = self._clock()
        contact = self.ledger.record("resolve_contact", from_number, self.resolver.resolve, business.id, from_number, Channel.SMS)
        thread_id = thread_id_for(business.id, from_number)

        inbound = SmsMessage(
            business_id=business.id,
            message_sid=message_sid,
            from_number=from_number,
            to_number=to_number,
            body=body,
            direction=Direction.INBOUND,
            status=SmsStatus.RECEIVED,
            thread_id=thread_id,
            contact_id=contact.id if contact else None,
            created_at=now,
        )
        inbound, created = self.ledger.insert_sms(inbound)
        if not created:
            logger.info(f"Duplicate delivery of SMS {message_sid}; replaying stored outcome")
            reply = self.ledger.get_sms(auto_reply_sid(message_sid))
            return reply.body if reply else None

        if contact:
            self.ledger.record("record_contact_activity", contact.id, self.resolver.record_interaction, contact.id, Channel.SMS, now)
        self.ledger.publish(EventType.SMS_RECEIVED, business.id, {
            "message_sid": message_sid,
            "from": from_number,
            "body": body,
            "thread_id": thread_id,
            "contact_id": contact.id if contact else None,
        })

        if not business.ai_settings.sms_auto_response:
            logger.info(f"Auto-response disabled for business {business.id}; SMS {message_sid} stored only")
            return None

        history = [m.body for m in self.ledger.list_thread(thread_id) if m.message_sid != message_sid]
        state = ConversationState(
            channel=Channel.SMS,
            transcript=" ".join(history[-THREAD_CONTEXT_MESSAGES:]),
            contact=contact,
        )
        try:
            decision = await self.orchestrator.decide(body, business, state)
        except OrchestratorUnavailable:
            logger.error(f"No auto-response for SMS {message_sid}: language model unavailable")
            return None

        send_reply = decision.should_respond and bool(decision.message)
        self.ledger.update_sms(message_sid, {
            "ai_processed": True,
            "ai_analysis": sms_analysis(decision, body, auto_response_sent=send_reply),
        })
        if contact:
            self.ledger.record("update_contact_sentiment", contact.id, self.resolver.record_sentiment, contact.id, decision.extracted_info.sentiment)
        if not send_reply:
            return None

        reply = SmsMessage(
            business_id=business.id,
            message_sid=auto_reply_sid(message_sid),
            from_number=to_number,
            to_number=from_number,
            body=decision.message,
            direction=Direction.OUTBOUND,
            status=SmsStatus.SENT,
            thread_id=thread_id,
            contact_id=contact.id if contact else None,
            is_auto_response=True,
            in_reply_to=message_sid,
            created_at=self._clock(),
        )
        self.ledger.insert_sms(reply)
        logger.info(f"Auto-response queued for SMS {message_sid}")
        return decision.message

    def handle_status(self, message_sid: str, raw_status: Optional[str]) -> Optional[SmsMessage]:
        """Apply a delivery status callback; statuses only move forward."""
        try:
            status = SmsStatus((raw_status or "").strip().lower())
        except ValueError:
            logger.warning(f"Ignoring unknown SMS status {raw_status!r} for {message_sid}")
            return None
        message = self.ledger.get_sms(message_sid)
        if message is None:
            logger.info(f"Status {status.value} for untracked SMS {message_sid}")
            return None
        allowed = [s for s, rank in SMS_STATUS_RANK.items() if rank < SMS_STATUS_RANK[status]]
        updated = self.ledger.update_sms(message_sid, {"status": status}, only_if_status=allowed)
        if updated is None:
            logger.info(f"Stale status {status.value} for SMS {message_sid} (currently {message.status.value})")
        return updated
