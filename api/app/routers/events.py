import json

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from engine.app.events import Subscription

from ..auth import get_service, require_auth

router = APIRouter(prefix="/api", tags=["events"], dependencies=[Depends(require_auth)])

KEEPALIVE_SECONDS = 15.0


def event_stream(subscription: Subscription, keepalive: float = KEEPALIVE_SECONDS):
    """Server-sent events for one subscriber; ends when the subscription closes."""
    try:
        while True:
            event = subscription.get(timeout=keepalive)
            if event is None:
                if subscription.closed:
                    return
                yield ": keepalive\n\n"
                continue
            yield f"event: {event.kind}\ndata: {json.dumps(event.model_dump(mode='json'))}\n\n"
    finally:
        subscription.close()


@router.get("/events")
def stream_events(replay: bool = True, service=Depends(get_service)):
    subscription = service.subscribe(replay=replay)
    return StreamingResponse(
        event_stream(subscription),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
