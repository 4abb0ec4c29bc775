"""Wiring and read-side helpers for the queue.

``QueueServices`` builds every component against one engine so the HTTP
layer (and tests) get a consistent set.  The board and statistics helpers
turn today's tickets into the dicts served to the attendant console and the
public panel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine

import config
from announcer import CallAnnouncer, LoggingRenderer, RedisRenderer, Renderer
from broadcaster import EventBroadcaster, RedisRelay
from counters import CounterRegistry
from db import get_engine, init_db
from dispatcher import Dispatcher
from models import TicketClass, TicketStatus, utcnow
from sequencer import Sequencer
from store import SettingsStore, TicketStore


def get_relay(channel_prefix: str, redis_url: Optional[str] = None) -> Optional[RedisRelay]:
    """Redis relay if a Redis URL is configured."""
    url = redis_url if redis_url is not None else config.REDIS_URL
    if not url:
        return None
    return RedisRelay(url, channel_prefix=channel_prefix)


@dataclass
class QueueServices:
    engine: Engine
    sequencer: Sequencer
    store: TicketStore
    settings: SettingsStore
    counters: CounterRegistry
    broadcaster: EventBroadcaster
    dispatcher: Dispatcher
    announcer: Optional[CallAnnouncer] = None

    def start_announcer(self, loop: Any, renderer: Optional[Renderer] = None) -> CallAnnouncer:
        """Attach a call announcer running on ``loop`` to the dispatcher."""
        if renderer is None:
            relay = get_relay("display")
            renderer = RedisRenderer(relay) if relay else LoggingRenderer()
        self.announcer = CallAnnouncer(
            renderer,
            loop,
            template_for=lambda sp: self.settings.get(sp).voice_template,
        )
        self.dispatcher.listeners.append(self.announcer.notify)
        return self.announcer

    def stop_announcer(self) -> None:
        if self.announcer is None:
            return
        self.announcer.cancel_all()
        if self.announcer.notify in self.dispatcher.listeners:
            self.dispatcher.listeners.remove(self.announcer.notify)
        self.announcer = None


def build_services(engine: Optional[Engine] = None, clock=utcnow,
                   timezone: str = config.QUEUE_TIMEZONE,
                   broadcaster: Optional[EventBroadcaster] = None) -> QueueServices:
    engine = engine or get_engine()
    init_db(engine)
    broadcaster = broadcaster or EventBroadcaster(relay=get_relay("queue"))
    sequencer = Sequencer(engine)
    store = TicketStore(engine)
    settings = SettingsStore(engine)
    counters = CounterRegistry(engine, publish=broadcaster.publish)
    dispatcher = Dispatcher(
        sequencer, store, counters, settings,
        publish=broadcaster.publish, clock=clock, timezone=timezone,
    )
    return QueueServices(
        engine=engine,
        sequencer=sequencer,
        store=store,
        settings=settings,
        counters=counters,
        broadcaster=broadcaster,
        dispatcher=dispatcher,
    )


def get_board(services: QueueServices, service_point_id: str, history: int = 5) -> Dict[str, Any]:
    """Today's tickets grouped by status plus the current and recent calls."""
    day = services.dispatcher.today()
    board: Dict[str, List[Dict[str, Any]]] = {s.value: [] for s in TicketStatus}
    for ticket in services.store.list_by_status(service_point_id, list(TicketStatus), day):
        board[ticket.status.value].append(ticket.to_dict())

    calls = [services.dispatcher.describe(t)
             for t in services.store.recent_calls(service_point_id, day, limit=history + 1)]
    return {
        "service_point_id": service_point_id,
        "day": day.isoformat(),
        "tickets": board,
        "current_call": calls[0] if calls else None,
        "last_calls": calls[1:],
        "counters": [c.to_dict() for c in services.counters.for_service_point(service_point_id)],
    }


def _avg_minutes(spans: List[float]) -> float:
    return round(sum(spans) / len(spans) / 60, 1) if spans else 0.0


def queue_stats(services: QueueServices, service_point_id: str) -> Dict[str, Any]:
    """Counts and average waiting/service times for today."""
    day = services.dispatcher.today()
    tickets = services.store.list_for_day(service_point_id, day)

    status_counts = {s.value: 0 for s in TicketStatus}
    waiting_by_class = {c.value: 0 for c in TicketClass}
    waits: List[float] = []
    service_times: List[float] = []
    for ticket in tickets:
        status_counts[ticket.status.value] += 1
        if ticket.status == TicketStatus.waiting:
            waiting_by_class[ticket.ticket_class.value] += 1
        if ticket.called_at:
            waits.append((ticket.called_at - ticket.created_at).total_seconds())
        if ticket.service_started_at and ticket.completed_at:
            service_times.append((ticket.completed_at - ticket.service_started_at).total_seconds())

    return {
        "service_point_id": service_point_id,
        "day": day.isoformat(),
        "total_tickets": len(tickets),
        "status_counts": status_counts,
        "waiting_by_class": waiting_by_class,
        "last_issued": {
            c.value: services.sequencer.last_issued(service_point_id, c, day) for c in TicketClass
        },
        "avg_wait_minutes": _avg_minutes(waits),
        "avg_service_minutes": _avg_minutes(service_times),
        "last_updated": utcnow().isoformat(),
    }
