from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging

from ..services.broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)
router = APIRouter()


# Live dashboard feed: one JSON message per domain event of the business
@router.websocket("/{business_id}")
async def business_events(websocket: WebSocket, business_id: str):
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    queue = broadcaster.subscribe(business_id)
    logger.info(f"Dashboard listener connected for business {business_id}")
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.info(f"Dashboard listener disconnected for business {business_id}")
    finally:
        broadcaster.unsubscribe(business_id, queue)
