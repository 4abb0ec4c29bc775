"""Ticket lifecycle.

    waiting -> called -> in_service -> completed
    called | in_service -> skipped      (reason required)
    waiting | called    -> cancelled    (reason required)

Each transition is a single conditional update that only matches while the
ticket is still in an allowed source state, so a failed transition leaves
the ticket exactly as it was.  Every successful transition publishes one
event carrying the fresh ticket, its counter and attendant, and the reason
when there is one.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import config
from counters import CounterRegistry
from errors import CounterOccupied, InvalidTransition, NotFound
from models import (
    Counter,
    EventType,
    Ticket,
    TicketClass,
    TicketStatus,
    format_display_code,
    local_day,
    utcnow,
)
from schemas import QueueEvent
from sequencer import Sequencer
from store import SettingsStore, TicketStore

logger = logging.getLogger(__name__)

Publish = Callable[[str, QueueEvent], Any]
Listener = Callable[[QueueEvent], Any]


class Dispatcher:
    def __init__(self, sequencer: Sequencer, store: TicketStore, counters: CounterRegistry,
                 settings: SettingsStore, publish: Optional[Publish] = None,
                 listeners: Sequence[Listener] = (),
                 clock: Callable[[], datetime] = utcnow,
                 timezone: str = config.QUEUE_TIMEZONE) -> None:
        self.sequencer = sequencer
        self.store = store
        self.counters = counters
        self.settings = settings
        self.publish = publish
        self.listeners = list(listeners)
        self.clock = clock
        self.timezone = timezone

    def today(self, now: Optional[datetime] = None) -> date:
        return local_day(now or self.clock(), self.timezone)

    # ----- events -----

    def _emit(self, event_type: EventType, ticket: Ticket, reason: Optional[str] = None,
              counter: Optional[Counter] = None) -> QueueEvent:
        if counter is None and ticket.counter_id:
            counter = self.counters.get(ticket.counter_id)
        event = QueueEvent(
            type=event_type,
            service_point=ticket.service_point_id,
            payload={
                "ticket": ticket.to_dict(),
                "status": ticket.status.value,
                "counter": counter.to_dict() if counter else None,
                "attendant_id": ticket.attendant_id,
                "reason": reason,
            },
        )
        if self.publish is not None:
            self.publish(ticket.service_point_id, event)
        for listener in self.listeners:
            listener(event)
        return event

    def _reload(self, ticket_id: str) -> Ticket:
        ticket = self.store.by_id(ticket_id)
        if ticket is None:
            raise NotFound(f"ticket {ticket_id}")
        return ticket

    def _transition(self, ticket_id: str, allowed: Sequence[TicketStatus], target: str,
                    **values: Any) -> Ticket:
        now = self.clock()
        if not self.store.update_if(ticket_id, allowed, updated_at=now, **values):
            current = self._reload(ticket_id)
            raise InvalidTransition(
                f"{current.display_code} is {current.status.value}; cannot {target}"
            )
        return self._reload(ticket_id)

    # ----- intake -----

    def create(self, service_point_id: str, ticket_class: TicketClass,
               client_name: Optional[str] = None, client_document: Optional[str] = None) -> Ticket:
        """Issue a new waiting ticket.

        Numbering and insertion are separate atomic steps; if the insert
        fails the number is simply lost (gaps are allowed) and the error
        propagates so the caller can retry.
        """
        now = self.clock()
        day = self.today(now)
        settings = self.settings.get(service_point_id)
        number = self.sequencer.issue(service_point_id, ticket_class, day,
                                      start=settings.start_for(ticket_class))
        ticket = self.store.enqueue(Ticket(
            service_point_id=service_point_id,
            ticket_class=ticket_class,
            service_day=day,
            number=number,
            display_code=format_display_code(ticket_class, number),
            status=TicketStatus.waiting,
            priority=settings.priority_for(ticket_class),
            client_name=client_name,
            client_document=client_document,
            created_at=now,
            updated_at=now,
        ))
        logger.info("Ticket %s created at %s", ticket.display_code, service_point_id)
        self._emit(EventType.CREATED, ticket)
        return ticket

    # ----- attendant console -----

    def _counter_for_call(self, service_point_id: str, counter_id: str, attendant_id: str) -> Counter:
        counter = self.counters.get(counter_id)
        if counter is None or counter.service_point_id != service_point_id:
            raise NotFound(f"counter {counter_id} at {service_point_id}")
        if not counter.active:
            raise InvalidTransition(f"counter {counter.number} is inactive")
        if counter.attendant_id is None:
            raise InvalidTransition(f"counter {counter.number} has no attendant")
        if counter.attendant_id != attendant_id:
            raise CounterOccupied(f"counter {counter.number} is held by another attendant")
        active = self.store.active_for_counter(counter_id)
        if active is not None:
            raise CounterOccupied(f"counter {counter.number} is already serving {active.display_code}")
        return counter

    def call_next(self, service_point_id: str, counter_id: str, attendant_id: str) -> Optional[Ticket]:
        """Claim the best waiting ticket for ``counter_id``; None when the queue is empty."""
        counter = self._counter_for_call(service_point_id, counter_id, attendant_id)
        day = self.today()
        while True:
            candidate = self.store.peek_next(service_point_id, day)
            if candidate is None:
                return None
            now = self.clock()
            claimed = self.store.claim(
                candidate.id, counter_id,
                status=TicketStatus.called,
                attendant_id=attendant_id,
                called_at=now,
                updated_at=now,
            )
            if claimed:
                break
            active = self.store.active_for_counter(counter_id)
            if active is not None:
                raise CounterOccupied(
                    f"counter {counter.number} is already serving {active.display_code}"
                )
            logger.debug("Lost race for %s; trying the next ticket", candidate.display_code)

        ticket = self._reload(candidate.id)
        logger.info("Ticket %s called to counter %s by %s", ticket.display_code, counter.number, attendant_id)
        self._emit(EventType.CALLED, ticket, counter=counter)
        return ticket

    def call_manual(self, service_point_id: str, ticket_class: TicketClass, number: int,
                    counter_id: str, attendant_id: str) -> Ticket:
        """Call a paper ticket by number when the service point runs in manual mode.

        The ticket is stored already called at the counter; it is never
        visible in the waiting queue.
        """
        settings = self.settings.get(service_point_id)
        if not settings.manual_mode_enabled:
            raise InvalidTransition("manual mode is disabled")
        if number < settings.manual_mode_min_number:
            raise InvalidTransition(f"minimum manual number is {settings.manual_mode_min_number}")
        counter = self._counter_for_call(service_point_id, counter_id, attendant_id)

        now = self.clock()
        day = self.today(now)
        display_code = format_display_code(ticket_class, number)
        if self.store.find_number(service_point_id, ticket_class, day, number) is not None:
            raise InvalidTransition(f"{display_code} was already issued today")

        ticket = self.store.enqueue_called(Ticket(
            service_point_id=service_point_id,
            ticket_class=ticket_class,
            service_day=day,
            number=number,
            display_code=display_code,
            status=TicketStatus.called,
            priority=settings.priority_for(ticket_class),
            counter_id=counter_id,
            attendant_id=attendant_id,
            created_at=now,
            called_at=now,
            updated_at=now,
        ))
        logger.info("Ticket %s called manually to counter %s", display_code, counter.number)
        self._emit(EventType.CREATED, ticket, counter=counter)
        self._emit(EventType.CALLED, ticket, counter=counter)
        return ticket

    def repeat(self, ticket_id: str) -> Ticket:
        ticket = self._transition(ticket_id, [TicketStatus.called], "repeat", called_at=self.clock())
        logger.info("Call repeated for %s", ticket.display_code)
        self._emit(EventType.REPEATED, ticket)
        return ticket

    def start_service(self, ticket_id: str) -> Ticket:
        ticket = self._transition(
            ticket_id, [TicketStatus.called], "start service",
            status=TicketStatus.in_service, service_started_at=self.clock(),
        )
        logger.info("Service started for %s", ticket.display_code)
        self._emit(EventType.STARTED, ticket)
        return ticket

    def complete(self, ticket_id: str) -> Ticket:
        ticket = self._transition(
            ticket_id, [TicketStatus.in_service], "complete",
            status=TicketStatus.completed, completed_at=self.clock(),
        )
        logger.info("Service completed for %s", ticket.display_code)
        self._emit(EventType.COMPLETED, ticket)
        return ticket

    def skip(self, ticket_id: str, reason: str) -> Ticket:
        if not reason or not reason.strip():
            raise InvalidTransition("a reason is required to skip a ticket")
        before = self._reload(ticket_id)
        counter = self.counters.get(before.counter_id) if before.counter_id else None
        ticket = self._transition(
            ticket_id, [TicketStatus.called, TicketStatus.in_service], "skip",
            status=TicketStatus.skipped, skip_reason=reason.strip(), counter_id=None,
        )
        logger.info("Ticket %s skipped: %s", ticket.display_code, ticket.skip_reason)
        self._emit(EventType.SKIPPED, ticket, reason=ticket.skip_reason, counter=counter)
        return ticket

    def cancel(self, ticket_id: str, reason: str) -> Ticket:
        if not reason or not reason.strip():
            raise InvalidTransition("a reason is required to cancel a ticket")
        before = self._reload(ticket_id)
        counter = self.counters.get(before.counter_id) if before.counter_id else None
        ticket = self._transition(
            ticket_id, [TicketStatus.waiting, TicketStatus.called], "cancel",
            status=TicketStatus.cancelled, cancel_reason=reason.strip(), counter_id=None,
        )
        logger.info("Ticket %s cancelled: %s", ticket.display_code, ticket.cancel_reason)
        self._emit(EventType.CANCELLED, ticket, reason=ticket.cancel_reason, counter=counter)
        return ticket

    # ----- reads -----

    def get(self, ticket_id: str) -> Ticket:
        return self._reload(ticket_id)

    def waiting(self, service_point_id: str) -> List[Ticket]:
        return self.store.list_by_status(service_point_id, [TicketStatus.waiting], self.today())

    def describe(self, ticket: Ticket) -> Dict[str, Any]:
        data = ticket.to_dict()
        counter = self.counters.get(ticket.counter_id) if ticket.counter_id else None
        data["counter"] = counter.to_dict() if counter else None
        return data
