from fastapi import HTTPException, Request, Response
import logging

from ..services.ledger import Ledger
from ..services.sms_handler import SmsHandler
from ..services.transcript_processor import CallSummarizer
from ..services.voice_engine import VoiceEngine

# Set up logger
logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "I-Twilio-Idempotency-Token"
SIGNATURE_HEADER = "X-Twilio-Signature"


def get_voice_engine(request: Request) -> VoiceEngine:
    return request.app.state.voice_engine


def get_sms_handler(request: Request) -> SmsHandler:
    return request.app.state.sms_handler


def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger


def get_summarizer(request: Request) -> CallSummarizer:
    return request.app.state.summarizer


async def verify_twilio_signature(request: Request) -> None:
    telephony = request.app.state.telephony
    form = await request.form()
    url = telephony.webhook_url(str(request.url), request.url.path, request.url.query)
    if not telephony.validate_request(url, form, request.headers.get(SIGNATURE_HEADER, "")):
        logger.warning(f"Webhook signature verification failed for {request.url.path}")
        raise HTTPException(status_code=401, detail="Invalid signature")


def twiml_response(body: str) -> Response:
    return Response(content=body, media_type="application/xml")
