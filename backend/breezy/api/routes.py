from fastapi import APIRouter
from .calls import router as calls_router
from .events import router as events_router
from .sms import router as sms_router
from .webhook import router as webhook_router

api_router = APIRouter()
api_router.include_router(webhook_router, prefix="/twilio", tags=["twilio-voice"])
api_router.include_router(sms_router, prefix="/twilio", tags=["twilio-sms"])
api_router.include_router(calls_router, prefix="/calls", tags=["calls"])
api_router.include_router(events_router, prefix="/events", tags=["events"])
