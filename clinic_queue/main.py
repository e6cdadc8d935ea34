"""FastAPI application for the clinic token queue.

The app exposes endpoints for patient booking and status lookup, the
doctor's dashboard actions (call, serve, skip, cancel, delays, sessions and
leaves), and a live queue feed.  Configuration comes from environment
variables, see ``config.py``.  Redis is optional and used for live updates
and notification requests.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__, config
from .errors import ClinicError
from .redis_client import get_redis
from .schemas import (
    BookingRequest,
    CancelRequest,
    DelayRequest,
    EmergencyLeaveRequest,
    LeaveRequest,
    NotifyRequest,
    SessionStartRequest,
)
from .services import ClinicService, create_service

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clinic Token Queue",
    description="Walk-in token booking, doctor dashboard actions and live queue status",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[ClinicService] = None


def get_service() -> ClinicService:
    global _service
    if _service is None:
        _service = create_service()
    return _service


@app.on_event("startup")
def on_startup() -> None:
    logger.info("Starting Clinic Token Queue")
    logger.info("Redis: %s", "configured" if config.REDIS_URL else "not configured")
    get_service()


@app.exception_handler(ClinicError)
async def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, **exc.detail()})


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "healthy", "redis": bool(get_redis()), "version": __version__}


# ===== PATIENT ENDPOINTS =====


@app.post("/api/tokens/book", status_code=201)
def book_token(body: BookingRequest, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, "message": "Token booked successfully", **svc.book(body)}


@app.get("/api/tokens/status")
def token_status(search: str, date: Optional[date] = None, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, **svc.lookup_status(search, date)}


@app.put("/api/tokens/{token_id}/cancel")
def cancel_token(token_id: int, body: Optional[CancelRequest] = None, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.cancel(token_id, reason=body.reason if body else None)
    return {"success": True, "message": "Token cancelled successfully", "token": token.model_dump(mode="json")}


@app.get("/api/tokens/today")
def tokens_today(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    tokens = svc.tokens_for_day()
    return {"success": True, "count": len(tokens), "tokens": tokens}


@app.get("/api/availability")
def availability(date: date, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return svc.availability(date)


@app.get("/api/queue/live")
def queue_live(date: Optional[date] = None, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, **svc.queue_snapshot(date)}


async def polled_events(svc: ClinicService, interval: float = 5.0):
    """Queue snapshots every ``interval`` seconds, read on a worker thread."""
    while True:
        snapshot = await asyncio.to_thread(svc.queue_snapshot)
        yield f"data: {json.dumps({'type': 'queue_update', 'data': snapshot})}\n\n"
        await asyncio.sleep(interval)


@app.get("/api/queue/events")
async def queue_events(svc: ClinicService = Depends(get_service)) -> StreamingResponse:
    """Server-sent events feed of queue updates.

    Relays the Redis ``clinic:updates`` channel when Redis is configured,
    otherwise polls the queue snapshot every five seconds.
    """
    redis_client = get_redis()

    async def event_stream():
        if not redis_client:
            async for frame in polled_events(svc):
                yield frame
            return
        pubsub = redis_client.pubsub()
        pubsub.subscribe(config.UPDATES_CHANNEL)
        try:
            while True:
                message = await asyncio.to_thread(pubsub.get_message, ignore_subscribe_messages=True, timeout=5.0)
                if message and message["type"] == "message":
                    yield f"data: {message['data']}\n\n"
                else:
                    yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
        finally:
            pubsub.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ===== DOCTOR DASHBOARD =====


@app.get("/api/queue")
def queue(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, **svc.queue()}


@app.post("/api/queue/call-next")
def call_next(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.call_next()
    return {"success": True, "message": f"Called Token #{token.token_number}", "token": token.model_dump(mode="json")}


@app.post("/api/queue/serve-current")
def serve_current(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.serve_current()
    return {"success": True, "message": f"Token #{token.token_number} marked as served", "token": token.model_dump(mode="json")}


@app.post("/api/queue/skip-current")
def skip_current(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.skip_current()
    return {"success": True, "message": f"Token #{token.token_number} skipped", "token": token.model_dump(mode="json")}


@app.post("/api/queue/{token_id}/call")
def call_token(token_id: int, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.call_specific(token_id)
    return {"success": True, "message": f"Called Token #{token.token_number}", "token": token.model_dump(mode="json")}


@app.post("/api/queue/{token_id}/serve")
def serve_token(token_id: int, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.serve(token_id)
    return {"success": True, "message": f"Token #{token.token_number} served", "token": token.model_dump(mode="json")}


@app.post("/api/queue/{token_id}/skip")
def skip_token(token_id: int, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.skip(token_id)
    return {"success": True, "message": f"Token #{token.token_number} skipped", "token": token.model_dump(mode="json")}


@app.post("/api/queue/{token_id}/cancel")
def operator_cancel(token_id: int, body: Optional[CancelRequest] = None, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    token = svc.cancel(token_id, reason=body.reason if body else None, force=True)
    return {"success": True, "message": f"Token #{token.token_number} cancelled", "token": token.model_dump(mode="json")}


@app.get("/api/dashboard/stats")
def dashboard_stats(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, **svc.daily_stats()}


@app.post("/api/notifications/{token_id}/{kind}")
def send_notification(
    token_id: int, kind: str, body: Optional[NotifyRequest] = None, svc: ClinicService = Depends(get_service)
) -> Dict[str, Any]:
    body = body or NotifyRequest()
    notification = svc.notify(token_id, kind, reason=body.reason, delayMinutes=body.delay_minutes)
    if notification is None:
        return {"success": True, "message": "Patient has no notification channels", "notification": None}
    return {"success": True, "message": "Notification sent successfully", "notification": notification}


@app.get("/api/notifications/history")
def notification_history(limit: int = 50, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    history = svc.notification_history(limit)
    return {"success": True, "count": len(history), "history": history}


# ===== SESSIONS AND LEAVES =====


@app.get("/api/session")
def current_session(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, "session": svc.current_session()}


@app.post("/api/session/start")
def start_session(body: Optional[SessionStartRequest] = None, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    body = body or SessionStartRequest()
    return {"success": True, "session": svc.start_session(body.type)}


@app.post("/api/session/pause")
def pause_session(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, "session": svc.pause_session()}


@app.post("/api/session/end")
def end_session(svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, "session": svc.end_session()}


@app.post("/api/session/delay")
def add_delay(body: DelayRequest, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, "session": svc.add_delay(body.delay_minutes)}


@app.post("/api/leaves")
def schedule_leave(body: LeaveRequest, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, "leave": svc.schedule_leave(body.leave_date, body.reason, body.notes)}


@app.post("/api/leaves/emergency")
def emergency_leave(body: EmergencyLeaveRequest, svc: ClinicService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, **svc.emergency_leave(body.reason)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
