import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from breezy.config import Settings
from breezy.db import InMemoryDB
from breezy.main import create_app
from breezy.schemas.pydantic_schemas import WEEKDAYS, AISettings, Business, DayHours
from breezy.services.broadcaster import EventBroadcaster

# Monday 2025-01-06 15:00 UTC
FIXED_NOW = datetime(2025, 1, 6, 15, 0, tzinfo=timezone.utc)

BUSINESS_NUMBER = "+15550001111"
FORWARDING_NUMBER = "+15559998888"
CALLER_NUMBER = "+1 (555) 123-4567"


def decision(action: str = "information", message: str = "Happy to help.", **extra: Any) -> str:
    reply: Dict[str, Any] = {
        "action": action,
        "message": message,
        "shouldRespond": extra.pop("shouldRespond", True),
        "extractedInfo": extra.pop("extractedInfo", {"intent": "general_inquiry", "urgency": "medium", "sentiment": "neutral"}),
    }
    reply.update(extra)
    return json.dumps(reply)


class FakeLLM:
    """Scripted language-model client. Replies are consumed in order; callables are invoked, exceptions raised."""

    provider = "fake"

    def __init__(self, replies: Optional[List[Any]] = None, fail_with: Optional[Exception] = None) -> None:
        self.replies = list(replies or [])
        self.fail_with = fail_with
        self.calls: List[Dict[str, Any]] = []
        self.summaries: List[str] = []
        self.summary: Dict[str, Any] = {
            "summary": "Caller asked about opening hours.",
            "intent": "hours",
            "sentiment": "positive",
            "keywords": ["hours"],
            "actionItems": [],
            "followUpRequired": False,
        }

    async def complete_json(self, system_prompt: str, user_prompt: str, temperature: float = 0.7, max_tokens: int = 500) -> str:
        self.calls.append({
            "system": system_prompt,
            "user": user_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.fail_with is not None:
            raise self.fail_with
        if not self.replies:
            return decision()
        reply = self.replies.pop(0)
        if callable(reply):
            reply = reply()
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def summarize_transcript(self, transcript_text: str) -> Dict[str, Any]:
        self.summaries.append(transcript_text)
        return dict(self.summary)


class FakeTelephony:
    simulated = True

    def __init__(self, valid_signatures: bool = True) -> None:
        self.sent: List[Dict[str, str]] = []
        self.valid_signatures = valid_signatures

    async def send_sms(self, to_number: str, from_number: str, body: str) -> Dict[str, Any]:
        self.sent.append({"to": to_number, "from": from_number, "body": body})
        return {"sid": f"SM{len(self.sent)}", "status": "queued"}

    def webhook_url(self, request_url: str, path: str, query: str = "") -> str:
        return request_url

    def validate_request(self, url: str, params: Any, signature: str) -> bool:
        return self.valid_signatures


def make_business(open_hours: bool = True, forwarding_number: Optional[str] = FORWARDING_NUMBER, **ai: Any) -> Business:
    hours = {day: DayHours(open="00:00", close="23:59", is_open=open_hours) for day in WEEKDAYS}
    return Business(
        id="biz-1",
        name="Acme Plumbing",
        phone_number=BUSINESS_NUMBER,
        forwarding_number=forwarding_number,
        business_hours=hours,
        ai_settings=AISettings(**ai),
    )


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def telephony():
    return FakeTelephony()


@pytest.fixture
def db():
    return InMemoryDB()


@pytest.fixture
def business(db):
    return db.add_business(make_business())


@pytest.fixture
def broadcaster():
    return EventBroadcaster(queue_size=10)


@pytest.fixture
def settings():
    return Settings(llm_backoff_seconds=0.0, llm_timeout_seconds=2.0)


@pytest.fixture
def app(db, fake_llm, telephony, broadcaster, settings):
    return create_app(db=db, llm=fake_llm, telephony=telephony, broadcaster=broadcaster, clock=lambda: FIXED_NOW, settings=settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def voice_form(call_sid: str = "CA100", **fields: str) -> Dict[str, str]:
    form = {"CallSid": call_sid, "From": CALLER_NUMBER, "To": BUSINESS_NUMBER, "Direction": "inbound"}
    form.update(fields)
    return form
