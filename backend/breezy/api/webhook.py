from fastapi import APIRouter, BackgroundTasks, Depends, Form, HTTPException, Request
from typing import Optional
import logging

from ..schemas.pydantic_schemas import is_terminal
from ..services.transcript_processor import CallSummarizer
from ..services.voice_engine import VoiceEngine
from .deps import (
    IDEMPOTENCY_HEADER,
    get_ledger,
    get_summarizer,
    get_voice_engine,
    twiml_response,
    verify_twilio_signature,
)

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_twilio_signature)])


def _require(value: Optional[str], name: str) -> str:
    if not value:
        logger.error(f"Webhook missing required field: {name}")
        raise HTTPException(status_code=400, detail=f"Missing {name}")
    return value


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except ValueError:
        return None


@router.post("/voice")
async def incoming_call(
    request: Request,
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    from_number: str = Form("", alias="From"),
    to_number: str = Form("", alias="To"),
    direction: Optional[str] = Form(None, alias="Direction"),
    engine: VoiceEngine = Depends(get_voice_engine),
    ledger=Depends(get_ledger),
):
    call_sid = _require(call_sid, "CallSid")
    logger.info(f"Received incoming call webhook for {call_sid}")

    async def handle() -> str:
        business = ledger.get_business_by_number(to_number)
        return await engine.incoming_call(business, call_sid, from_number, to_number, direction)

    body = await engine.run("voice", call_sid, request.headers.get(IDEMPOTENCY_HEADER), handle)
    return twiml_response(body)


@router.post("/voice/speech")
async def process_speech(
    request: Request,
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    speech_result: Optional[str] = Form(None, alias="SpeechResult"),
    engine: VoiceEngine = Depends(get_voice_engine),
):
    call_sid = _require(call_sid, "CallSid")
    body = await engine.run(
        "voice/speech", call_sid, request.headers.get(IDEMPOTENCY_HEADER),
        lambda: engine.speech(call_sid, speech_result),
    )
    return twiml_response(body)


@router.post("/voice/appointment")
async def appointment_booking(
    request: Request,
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    speech_result: Optional[str] = Form(None, alias="SpeechResult"),
    digits: Optional[str] = Form(None, alias="Digits"),
    engine: VoiceEngine = Depends(get_voice_engine),
):
    call_sid = _require(call_sid, "CallSid")
    body = await engine.run(
        "voice/appointment", call_sid, request.headers.get(IDEMPOTENCY_HEADER),
        lambda: engine.appointment(call_sid, speech_result, digits),
    )
    return twiml_response(body)


@router.post("/voice/voicemail")
async def voicemail(
    request: Request,
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    engine: VoiceEngine = Depends(get_voice_engine),
):
    call_sid = _require(call_sid, "CallSid")
    body = await engine.run(
        "voice/voicemail", call_sid, request.headers.get(IDEMPOTENCY_HEADER),
        lambda: engine.voicemail(call_sid),
    )
    return twiml_response(body)


@router.post("/voice/recording")
async def recording_finished(
    request: Request,
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    recording_url: Optional[str] = Form(None, alias="RecordingUrl"),
    recording_duration: Optional[str] = Form(None, alias="RecordingDuration"),
    engine: VoiceEngine = Depends(get_voice_engine),
):
    call_sid = _require(call_sid, "CallSid")
    recording_url = _require(recording_url, "RecordingUrl")
    logger.info(f"Recording finished for call {call_sid}")
    body = await engine.run(
        "voice/recording", call_sid, request.headers.get(IDEMPOTENCY_HEADER),
        lambda: engine.recording(call_sid, recording_url, _int_or_none(recording_duration)),
    )
    return twiml_response(body)


@router.post("/voice/status")
async def call_status(
    background_tasks: BackgroundTasks,
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    status: Optional[str] = Form(None, alias="CallStatus"),
    call_duration: Optional[str] = Form(None, alias="CallDuration"),
    engine: VoiceEngine = Depends(get_voice_engine),
    summarizer: CallSummarizer = Depends(get_summarizer),
):
    call_sid = _require(call_sid, "CallSid")
    logger.info(f"Call status update for {call_sid}: {status}")
    call = await engine.status(call_sid, status, _int_or_none(call_duration))
    if call is not None and is_terminal(call.status) and call.transcript:
        background_tasks.add_task(summarizer.summarize, call_sid)
    return {"ok": True, "updated": call is not None}
