"""FastAPI application for the ticket queue.

Reception issues tickets, attendants bind to counters and drive tickets
through their lifecycle, and public displays follow each service point over
Server-Sent Events.  Identity comes from the upstream gateway (see
``auth.py``); configuration from environment variables (see ``config.py``).
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

import config
from auth import Identity, check_stream_token, get_identity
from broadcaster import format_heartbeat, format_sse
from errors import NotFound, QueueEmpty, QueueError
from models import Ticket, TicketStatus
from schemas import (
    ActiveRequest,
    CallNextRequest,
    CreateCounterRequest,
    CreateTicketRequest,
    ManualCallRequest,
    ReasonRequest,
    SettingsRequest,
)
from services import QueueServices, build_services, get_board, queue_stats

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> QueueServices:
    return request.app.state.services


def _require_access(identity: Identity, service_point_id: str) -> None:
    if not identity.can_access(service_point_id):
        raise HTTPException(status_code=403, detail="Not assigned to this service point")


def _ticket_for(services: QueueServices, identity: Identity, ticket_id: str) -> Ticket:
    ticket = services.dispatcher.get(ticket_id)
    _require_access(identity, ticket.service_point_id)
    return ticket


@router.get("/health")
def health(services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "database": services.engine.dialect.name,
        "redis": bool(config.REDIS_URL),
        "announcer": services.announcer is not None,
    }


# ----- reception -----

@router.post("/service-points/{service_point_id}/tickets")
def create_ticket(service_point_id: str, body: CreateTicketRequest,
                  identity: Identity = Depends(get_identity),
                  services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _require_access(identity, service_point_id)
    ticket = services.dispatcher.create(
        service_point_id, body.ticket_class,
        client_name=body.client_name, client_document=body.client_document,
    )
    return ticket.to_dict()


@router.get("/service-points/{service_point_id}/tickets")
def list_tickets(service_point_id: str,
                 status: List[TicketStatus] = Query(default=[TicketStatus.waiting]),
                 identity: Identity = Depends(get_identity),
                 services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _require_access(identity, service_point_id)
    tickets = services.store.list_by_status(service_point_id, status, services.dispatcher.today())
    return {"tickets": [t.to_dict() for t in tickets]}


@router.get("/tickets/{ticket_id}")
def get_ticket(ticket_id: str, identity: Identity = Depends(get_identity),
               services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    ticket = _ticket_for(services, identity, ticket_id)
    return services.dispatcher.describe(ticket)


# ----- attendant console -----

@router.post("/service-points/{service_point_id}/call-next")
def call_next(service_point_id: str, body: CallNextRequest,
              identity: Identity = Depends(get_identity),
              services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _require_access(identity, service_point_id)
    ticket = services.dispatcher.call_next(service_point_id, body.counter_id, identity.subject_id)
    if ticket is None:
        raise QueueEmpty(f"no waiting tickets at {service_point_id}")
    return {"ticket": services.dispatcher.describe(ticket)}


@router.post("/service-points/{service_point_id}/manual-call")
def manual_call(service_point_id: str, body: ManualCallRequest,
                identity: Identity = Depends(get_identity),
                services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _require_access(identity, service_point_id)
    ticket = services.dispatcher.call_manual(
        service_point_id, body.ticket_class, body.number, body.counter_id, identity.subject_id,
    )
    return {"ticket": services.dispatcher.describe(ticket)}


@router.post("/tickets/{ticket_id}/{action}")
def ticket_action(ticket_id: str, action: str, body: Optional[ReasonRequest] = None,
                  identity: Identity = Depends(get_identity),
                  services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    """Perform a lifecycle action: repeat, start, complete, skip or cancel."""
    _ticket_for(services, identity, ticket_id)
    dispatcher = services.dispatcher
    if action in ("skip", "cancel"):
        if body is None:
            raise HTTPException(status_code=422, detail="A reason is required")
        handler = dispatcher.skip if action == "skip" else dispatcher.cancel
        ticket = handler(ticket_id, body.reason)
    else:
        action_map = {
            "repeat": dispatcher.repeat,
            "start": dispatcher.start_service,
            "complete": dispatcher.complete,
        }
        handler = action_map.get(action)
        if handler is None:
            raise HTTPException(status_code=400, detail="Invalid action")
        ticket = handler(ticket_id)
    return {"ticket": dispatcher.describe(ticket)}


# ----- counters -----

@router.get("/service-points/{service_point_id}/counters")
def list_counters(service_point_id: str, identity: Identity = Depends(get_identity),
                  services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _require_access(identity, service_point_id)
    return {"counters": [c.to_dict() for c in services.counters.for_service_point(service_point_id)]}


@router.post("/service-points/{service_point_id}/counters")
def add_counter(service_point_id: str, body: CreateCounterRequest,
                identity: Identity = Depends(get_identity),
                services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Administrators only")
    return services.counters.add(service_point_id, body.number, body.name).to_dict()


def _counter_for(services: QueueServices, identity: Identity, counter_id: str):
    counter = services.counters.get(counter_id)
    if counter is None:
        raise NotFound(f"counter {counter_id}")
    _require_access(identity, counter.service_point_id)
    return counter


@router.put("/counters/{counter_id}/active")
def set_counter_active(counter_id: str, body: ActiveRequest,
                       identity: Identity = Depends(get_identity),
                       services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Administrators only")
    return services.counters.set_active(counter_id, body.active).to_dict()


@router.post("/counters/{counter_id}/bind")
def bind_counter(counter_id: str, identity: Identity = Depends(get_identity),
                 services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _counter_for(services, identity, counter_id)
    return services.counters.bind(counter_id, identity.subject_id).to_dict()


@router.post("/counters/{counter_id}/release")
def release_counter(counter_id: str, identity: Identity = Depends(get_identity),
                    services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _counter_for(services, identity, counter_id)
    return services.counters.release(counter_id, identity).to_dict()


# ----- settings -----

@router.get("/service-points/{service_point_id}/settings")
def read_settings(service_point_id: str, identity: Identity = Depends(get_identity),
                  services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _require_access(identity, service_point_id)
    return services.settings.get(service_point_id).model_dump()


@router.put("/service-points/{service_point_id}/settings")
def write_settings(service_point_id: str, body: SettingsRequest,
                   identity: Identity = Depends(get_identity),
                   services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Administrators only")
    return services.settings.save(service_point_id, **body.model_dump()).model_dump()


# ----- public panel -----

@router.get("/service-points/{service_point_id}/board")
def board(service_point_id: str, services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    return get_board(services, service_point_id)


@router.get("/service-points/{service_point_id}/stats")
def stats(service_point_id: str, identity: Identity = Depends(get_identity),
          services: QueueServices = Depends(get_services)) -> Dict[str, Any]:
    _require_access(identity, service_point_id)
    return queue_stats(services, service_point_id)


@router.get("/service-points/{service_point_id}/events")
async def service_point_events(service_point_id: str, request: Request,
                               token: Optional[str] = None,
                               authorization: Optional[str] = Header(default=None)):
    """Server-Sent Events stream of every change at a service point."""
    if token is None and authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if not check_stream_token(token):
        raise HTTPException(status_code=401, detail="Invalid token")

    services: QueueServices = request.app.state.services
    subscription = services.broadcaster.subscribe(service_point_id)

    async def event_stream():
        try:
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await subscription.get(timeout=config.HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield format_heartbeat()
                    continue
                yield format_sse(event)
        finally:
            subscription.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if isinstance(exc, QueueEmpty):
        return JSONResponse(status_code=200, content={"ticket": None, "detail": exc.message})
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


def create_app(services: Optional[QueueServices] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config.configure_logging()
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        app.state.services.start_announcer(asyncio.get_running_loop())
        logger.info("Queue started (database: %s, redis: %s)",
                    app.state.services.engine.dialect.name,
                    "configured" if config.REDIS_URL else "not configured")
        try:
            yield
        finally:
            app.state.services.stop_announcer()

    app = FastAPI(title="Service Ticket Queue", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(QueueError, queue_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
