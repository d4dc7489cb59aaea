from fastapi import APIRouter, Depends, Form, HTTPException
from typing import Optional
import logging

from ..services.ledger import Ledger
from ..services.sms_handler import SmsHandler
from ..services.twiml import render_message
from .deps import get_ledger, get_sms_handler, twiml_response, verify_twilio_signature

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_twilio_signature)])


@router.post("/sms/inbound")
async def inbound_sms(
    message_sid: Optional[str] = Form(None, alias="MessageSid"),
    from_number: str = Form("", alias="From"),
    to_number: str = Form("", alias="To"),
    body: str = Form("", alias="Body"),
    handler: SmsHandler = Depends(get_sms_handler),
    ledger: Ledger = Depends(get_ledger),
):
    if not message_sid:
        logger.error("SMS webhook missing MessageSid")
        raise HTTPException(status_code=400, detail="Missing MessageSid")
    logger.info(f"Received SMS {message_sid} from {from_number}")

    business = ledger.get_business_by_number(to_number)
    if business is None:
        logger.warning(f"SMS {message_sid} to unconfigured number {to_number}")
        raise HTTPException(status_code=404, detail="Business not found")

    reply = await handler.handle_inbound(business, message_sid, from_number, to_number, body)
    return twiml_response(render_message(reply))


@router.post("/sms/status")
async def sms_status(
    message_sid: Optional[str] = Form(None, alias="MessageSid"),
    status: Optional[str] = Form(None, alias="MessageStatus"),
    handler: SmsHandler = Depends(get_sms_handler),
):
    if not message_sid:
        raise HTTPException(status_code=400, detail="Missing MessageSid")
    logger.info(f"SMS status update for {message_sid}: {status}")
    updated = handler.handle_status(message_sid, status)
    return {"ok": True, "updated": updated is not None}
