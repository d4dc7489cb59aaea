"""Turns one piece of caller/texter input into a structured next-step decision.

Transport failures are retried with linear backoff, and every retry after
the first degrades the input to a category-level description (see
`DegradedInputFallback`). Exhausted retries raise `OrchestratorUnavailable`;
unparseable replies become a safe default decision instead of an error.
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from ..schemas.pydantic_schemas import (
    Business,
    Channel,
    Contact,
    DecisionAction,
    ExtractedInfo,
    OrchestratorDecision,
    utcnow,
)
from .openai_client import LATEST_INPUT_MARKER, TRANSFER_KEYWORD_RULE
from .sanitizer import sanitize_inbound, sanitize_outbound

logger = logging.getLogger(__name__)

SAFE_DEFAULT_MESSAGE = "Thank you for contacting us. How can I help you today?"
GENERIC_INQUIRY = "Customer inquiry about business services"
SMS_MAX_LENGTH = 320

_URGENCY = {"low", "medium", "high"}
_SENTIMENT = {"positive", "neutral", "negative"}
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class OrchestratorUnavailable(Exception):
    """The language-model service failed on every attempt."""


@dataclass
class ConversationState:
    channel: Channel
    transcript: str = ""
    contact: Optional[Contact] = None


@dataclass
class PromptTurn:
    user_prompt: str
    temperature: float
    max_tokens: int
    degraded: bool = False


class DegradedInputFallback:
    """Retry policy for content-filter rejections and flaky replies.

    The first attempt sends the caller's sanitized words with full context.
    Every later attempt sends only a generic inquiry, which is far less likely
    to be rejected, so the caller still gets a usable business reply.
    """

    def __init__(self, generic_input: str = GENERIC_INQUIRY) -> None:
        self.generic_input = generic_input

    def turn_for_attempt(self, attempt: int, full_prompt: str) -> PromptTurn:
        if attempt <= 1:
            return PromptTurn(user_prompt=full_prompt, temperature=0.7, max_tokens=500)
        return PromptTurn(
            user_prompt=f"{LATEST_INPUT_MARKER} {self.generic_input}",
            temperature=0.3,
            max_tokens=300,
            degraded=True,
        )


def safe_default_decision() -> OrchestratorDecision:
    return OrchestratorDecision(
        action=DecisionAction.INFORMATION,
        message=SAFE_DEFAULT_MESSAGE,
        should_respond=True,
        extracted_info=ExtractedInfo(intent="general_inquiry", urgency="medium", sentiment="neutral"),
        is_fallback=True,
    )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_decision(raw: Optional[str]) -> OrchestratorDecision:
    """Parse a model reply; anything malformed collapses to the safe default."""
    try:
        data = json.loads(_CODE_FENCE.sub("", (raw or "").strip()))
    except (TypeError, ValueError) as e:
        logger.warning(f"Unparseable model reply, using safe default: {e}")
        return safe_default_decision()
    if not isinstance(data, dict):
        logger.warning("Model reply was not a JSON object, using safe default")
        return safe_default_decision()

    try:
        action = DecisionAction(str(data.get("action", "")).strip().lower())
    except ValueError:
        action = DecisionAction.INFORMATION

    info = data.get("extractedInfo") if isinstance(data.get("extractedInfo"), dict) else {}
    urgency = str(info.get("urgency") or "").lower()
    sentiment = str(info.get("sentiment") or "").lower()
    should_respond = data.get("shouldRespond", True)
    appointment_text = _text(data.get("appointmentTime"))

    return OrchestratorDecision(
        action=action,
        message=_text(data.get("message")) or SAFE_DEFAULT_MESSAGE,
        should_respond=should_respond if isinstance(should_respond, bool) else True,
        extracted_info=ExtractedInfo(
            name=_text(info.get("name")),
            phone=_text(info.get("phone")),
            email=_text(info.get("email")),
            intent=_text(info.get("intent")),
            urgency=urgency if urgency in _URGENCY else "medium",
            sentiment=sentiment if sentiment in _SENTIMENT else "neutral",
        ),
        appointment_time=_parse_time(appointment_text),
        appointment_time_text=appointment_text,
    )


def build_system_prompt(business: Business, channel: Channel, now: datetime) -> str:
    local_now = now.astimezone(ZoneInfo(business.time_zone))
    hours = {day: h.model_dump() for day, h in business.business_hours.items()}
    channel_rule = (
        "- This is a text message conversation: keep responses brief and natural, under 300 characters"
        if channel == Channel.SMS
        else "- This is a live phone call: reply in one or two short spoken sentences"
    )
    return (
        f"You are a professional AI receptionist for {business.name}.\n\n"
        f"Your personality: {business.ai_settings.personality or 'helpful and professional'}\n"
        f"Current time: {local_now.strftime('%A %Y-%m-%d %H:%M')} ({business.time_zone})\n"
        f"Business hours: {json.dumps(hours)}\n\n"
        "Available actions:\n"
        "- \"transfer\" - Transfer to human agent\n"
        "- \"appointment\" - Schedule an appointment\n"
        "- \"information\" - Provide information and continue conversation\n"
        "- \"voicemail\" - Direct to voicemail\n"
        "- \"end\" - End the conversation politely\n\n"
        "Key instructions:\n"
        "- Always be helpful and professional\n"
        f"- {TRANSFER_KEYWORD_RULE.format(keyword=business.ai_settings.transfer_keyword)}\n"
        "- If someone wants to schedule an appointment, set action to \"appointment\"\n"
        "- When the message starts with \"Schedule appointment:\", set appointmentTime to the requested "
        "time as an ISO 8601 date-time, or null if it cannot be determined\n"
        f"{channel_rule}\n"
        "- Extract key information (name, phone, email, intent) and judge sentiment and urgency\n"
        "- Provide appropriate business responses only\n\n"
        "Respond in JSON format:\n"
        "{\n  \"action\": \"transfer|appointment|information|voicemail|end\",\n"
        "  \"message\": \"Your professional response to the customer\",\n"
        "  \"shouldRespond\": true,\n"
        "  \"extractedInfo\": {\n    \"name\": null, \"phone\": null, \"email\": null,\n"
        "    \"intent\": \"what they want\",\n    \"urgency\": \"low|medium|high\",\n"
        "    \"sentiment\": \"positive|neutral|negative\"\n  },\n"
        "  \"appointmentTime\": null\n}"
    )


def build_user_prompt(text: str, state: ConversationState) -> str:
    context: Dict[str, Any] = {"channel": state.channel.value}
    if state.contact:
        context["customerInfo"] = {
            "name": state.contact.full_name,
            "phone": state.contact.phone,
            "relationshipStatus": state.contact.relationship_status,
        }
    parts = [f"Context: {json.dumps(context)}"]
    history = sanitize_inbound(state.transcript)
    if history:
        parts.append(f"Conversation so far: {history}")
    parts.append(f"{LATEST_INPUT_MARKER} {text}")
    return "\n".join(parts)


class Orchestrator:
    def __init__(
        self,
        llm: Any,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout_seconds: float = 8.0,
        fallback: Optional[DegradedInputFallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.llm = llm
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self.fallback = fallback or DegradedInputFallback()
        self._sleep = sleep
        self._clock = clock

    async def decide(self, text: str, business: Business, state: ConversationState) -> OrchestratorDecision:
        sanitized = sanitize_inbound(text)
        system_prompt = build_system_prompt(business, state.channel, self._clock())
        full_prompt = build_user_prompt(sanitized, state)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception_type(Exception),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
        )
        raw = None
        try:
            async for attempt in retrying:
                with attempt:
                    turn = self.fallback.turn_for_attempt(attempt.retry_state.attempt_number, full_prompt)
                    if turn.degraded:
                        logger.info(f"Retrying {business.id} with degraded input (attempt {attempt.retry_state.attempt_number})")
                    raw = await asyncio.wait_for(
                        self.llm.complete_json(system_prompt, turn.user_prompt, temperature=turn.temperature, max_tokens=turn.max_tokens),
                        timeout=self.timeout_seconds,
                    )
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error(f"Language model unavailable for business {business.id} after {self.max_attempts} attempts: {last!r}")
            raise OrchestratorUnavailable(str(last)) from last

        decision = parse_decision(raw)
        max_length = SMS_MAX_LENGTH if state.channel == Channel.SMS else None
        decision.message = sanitize_outbound(decision.message, max_length=max_length) or SAFE_DEFAULT_MESSAGE
        logger.info(f"Decision for business {business.id}: action={decision.action.value} intent={decision.extracted_info.intent}")
        return decision
