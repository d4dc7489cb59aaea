from fastapi import APIRouter, Depends, HTTPException
import logging

from ..schemas.pydantic_schemas import CallRead
from ..services.ledger import Ledger
from ..services.transcript_processor import CallSummarizer
from .deps import get_ledger, get_summarizer

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{call_sid}", response_model=CallRead)
async def get_call(call_sid: str, ledger: Ledger = Depends(get_ledger)):
    call = ledger.get_call(call_sid)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    return call.model_dump()


@router.post("/{call_sid}/summary")
async def summarize_call(call_sid: str, ledger: Ledger = Depends(get_ledger), summarizer: CallSummarizer = Depends(get_summarizer)):
    if not ledger.get_call(call_sid):
        raise HTTPException(status_code=404, detail="Call not found")
    summary = await summarizer.summarize(call_sid)
    return {"processed": summary is not None, "ai_summary": summary.model_dump() if summary else None}
