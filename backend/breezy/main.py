from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import Any, Callable, Optional
import logging

from .api.routes import api_router
from .config import Settings, get_settings
from .db import get_db
from .schemas.pydantic_schemas import utcnow
from .services.broadcaster import EventBroadcaster
from .services.call_locks import KeyedLocks
from .services.contact_resolver import ContactResolver
from .services.ledger import Ledger
from .services.openai_client import OpenAIClient
from .services.orchestrator import Orchestrator
from .services.sms_handler import SmsHandler
from .services.transcript_processor import CallSummarizer
from .services.twilio_client import TwilioClient
from .services.voice_engine import VoiceEngine

logger = logging.getLogger(__name__)


def create_app(
    db: Any = None,
    llm: Any = None,
    telephony: Any = None,
    broadcaster: Optional[EventBroadcaster] = None,
    clock: Optional[Callable[[], datetime]] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    clock = clock or utcnow
    db = db if db is not None else get_db(settings)
    llm = llm or OpenAIClient(settings)
    telephony = telephony or TwilioClient(settings)
    broadcaster = broadcaster or EventBroadcaster(queue_size=settings.broadcast_queue_size)

    ledger = Ledger(db, broadcaster)
    resolver = ContactResolver(db)
    orchestrator = Orchestrator(
        llm,
        max_attempts=settings.llm_max_attempts,
        backoff_seconds=settings.llm_backoff_seconds,
        timeout_seconds=settings.llm_timeout_seconds,
        clock=clock,
    )

    app = FastAPI(title="Breezy AI Receptionist")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.telephony = telephony
    app.state.broadcaster = broadcaster
    app.state.ledger = ledger
    app.state.voice_engine = VoiceEngine(ledger, resolver, orchestrator, telephony, locks=KeyedLocks(), clock=clock)
    app.state.sms_handler = SmsHandler(ledger, resolver, orchestrator, clock=clock)
    app.state.summarizer = CallSummarizer(ledger, llm, resolver)

    app.include_router(api_router, prefix="/api")

    def health() -> dict:
        return {
            "status": "ok",
            "store": getattr(db, "mode", "custom"),
            "ai": getattr(llm, "provider", "custom"),
            "telephony": "simulated" if getattr(telephony, "simulated", False) else "live",
            "missed_writes": len(ledger.missed_writes),
        }

    @app.get("/")
    async def root():
        return health()

    @app.get("/api/health")
    async def api_health():
        return {**health(), "recent_missed_writes": ledger.missed_write_summary()[-20:]}

    return app


_settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, _settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)

app = create_app(settings=_settings)
