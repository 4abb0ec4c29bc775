"""Ticket persistence and priority-ordered retrieval.

``TicketStore`` never decides transitions; it exposes reads plus the
conditional writes the dispatcher builds its atomic claims on.  Those
writes return the number of rows they touched so the caller can tell a
lost race from a success.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import aliased
from sqlmodel import col, select

from db import get_session
from errors import CounterOccupied, InvalidTransition, SequenceConflict
from models import ACTIVE_STATUSES, Counter, ServicePointSettings, Ticket, TicketClass, TicketStatus

logger = logging.getLogger(__name__)


def queue_order():
    """Descending priority, then strict FIFO, then id for determinism."""
    return (col(Ticket.priority).desc(), col(Ticket.created_at).asc(), col(Ticket.id).asc())


def lock_counter(session, counter_id: str) -> None:
    """Row-lock the counter for the rest of the transaction.

    Every write that puts a ticket on a counter takes this lock first, so
    concurrent writers for one counter are serialized on PostgreSQL.  SQLite
    ignores FOR UPDATE; its single writer lock gives the same ordering.
    """
    session.exec(select(Counter.id).where(col(Counter.id) == counter_id).with_for_update()).first()


class TicketStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ----- writes -----

    def enqueue(self, ticket: Ticket) -> Ticket:
        """Insert a new ticket; the row is visible only once committed."""
        with get_session(self.engine) as session:
            session.add(ticket)
            try:
                session.commit()
            except (IntegrityError, OperationalError) as exc:
                session.rollback()
                raise SequenceConflict(f"could not store {ticket.display_code}: {exc}") from exc
            session.refresh(ticket)
        return ticket

    def enqueue_called(self, ticket: Ticket) -> Ticket:
        """Insert a ticket that is already called at ``ticket.counter_id``.

        The insert and the check that the counter holds no other active
        ticket share one transaction, so the ticket never passes through the
        waiting queue.
        """
        with get_session(self.engine) as session:
            try:
                lock_counter(session, ticket.counter_id)
                session.add(ticket)
                session.flush()
                busy = session.exec(
                    select(Ticket.display_code).where(
                        Ticket.counter_id == ticket.counter_id,
                        Ticket.id != ticket.id,
                        col(Ticket.status).in_(list(ACTIVE_STATUSES)),
                    )
                ).first()
                if busy is not None:
                    session.rollback()
                    raise CounterOccupied(f"counter is already serving {busy}")
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise InvalidTransition(f"{ticket.display_code} was already issued today") from exc
            except OperationalError as exc:
                session.rollback()
                raise SequenceConflict(f"could not store {ticket.display_code}: {exc}") from exc
            session.refresh(ticket)
        return ticket

    def update_if(self, ticket_id: str, allowed: Sequence[TicketStatus], **values: Any) -> int:
        """Apply ``values`` only while the ticket is in one of ``allowed``."""
        with get_session(self.engine) as session:
            result = session.connection().execute(
                update(Ticket)
                .where(col(Ticket.id) == ticket_id, col(Ticket.status).in_(list(allowed)))
                .values(**values)
            )
            session.commit()
            return result.rowcount

    def claim(self, ticket_id: str, counter_id: str, **values: Any) -> int:
        """Move a waiting ticket onto ``counter_id``.

        The update only matches while the ticket is still waiting and the
        counter holds no called or in-service ticket.  It runs after the
        counter row is locked, so two claims at one counter are evaluated one
        after the other and only the first can win.
        """
        busy = aliased(Ticket)
        occupied = (
            select(busy.id)
            .where(busy.counter_id == counter_id, busy.status.in_(list(ACTIVE_STATUSES)))
            .exists()
        )
        with get_session(self.engine) as session:
            lock_counter(session, counter_id)
            result = session.connection().execute(
                update(Ticket)
                .where(
                    col(Ticket.id) == ticket_id,
                    col(Ticket.status) == TicketStatus.waiting,
                    ~occupied,
                )
                .values(counter_id=counter_id, **values)
            )
            session.commit()
            return result.rowcount

    # ----- reads -----

    def by_id(self, ticket_id: str) -> Optional[Ticket]:
        with get_session(self.engine) as session:
            return session.get(Ticket, ticket_id)

    def peek_next(self, service_point_id: str, day: date) -> Optional[Ticket]:
        """Highest-priority waiting ticket for the day, without claiming it."""
        with get_session(self.engine) as session:
            return session.exec(
                select(Ticket)
                .where(
                    Ticket.service_point_id == service_point_id,
                    Ticket.service_day == day,
                    Ticket.status == TicketStatus.waiting,
                )
                .order_by(*queue_order())
                .limit(1)
            ).first()

    def list_by_status(self, service_point_id: str, statuses: Iterable[TicketStatus],
                       day: Optional[date] = None) -> List[Ticket]:
        query = select(Ticket).where(
            Ticket.service_point_id == service_point_id,
            col(Ticket.status).in_(list(statuses)),
        )
        if day is not None:
            query = query.where(Ticket.service_day == day)
        with get_session(self.engine) as session:
            return list(session.exec(query.order_by(*queue_order())).all())

    def list_for_day(self, service_point_id: str, day: date) -> List[Ticket]:
        with get_session(self.engine) as session:
            return list(session.exec(
                select(Ticket)
                .where(Ticket.service_point_id == service_point_id, Ticket.service_day == day)
                .order_by(col(Ticket.created_at).asc(), col(Ticket.id).asc())
            ).all())

    def active_for_counter(self, counter_id: str) -> Optional[Ticket]:
        with get_session(self.engine) as session:
            return session.exec(
                select(Ticket).where(
                    Ticket.counter_id == counter_id,
                    col(Ticket.status).in_(list(ACTIVE_STATUSES)),
                )
            ).first()

    def find_number(self, service_point_id: str, ticket_class: TicketClass, day: date,
                    number: int) -> Optional[Ticket]:
        with get_session(self.engine) as session:
            return session.exec(
                select(Ticket).where(
                    Ticket.service_point_id == service_point_id,
                    Ticket.ticket_class == ticket_class,
                    Ticket.service_day == day,
                    Ticket.number == number,
                )
            ).first()

    def recent_calls(self, service_point_id: str, day: date, limit: int = 6) -> List[Ticket]:
        """Tickets most recently called today, newest first."""
        with get_session(self.engine) as session:
            return list(session.exec(
                select(Ticket)
                .where(
                    Ticket.service_point_id == service_point_id,
                    Ticket.service_day == day,
                    col(Ticket.called_at).is_not(None),
                )
                .order_by(col(Ticket.called_at).desc())
                .limit(limit)
            ).all())


class SettingsStore:
    """Per service point settings; read-only from the dispatcher's side."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, service_point_id: str) -> ServicePointSettings:
        with get_session(self.engine) as session:
            settings = session.get(ServicePointSettings, service_point_id)
        return settings or ServicePointSettings(service_point_id=service_point_id)

    def save(self, service_point_id: str, **values: Any) -> ServicePointSettings:
        with get_session(self.engine) as session:
            settings = session.get(ServicePointSettings, service_point_id)
            if settings is None:
                settings = ServicePointSettings(service_point_id=service_point_id)
            for key, value in values.items():
                setattr(settings, key, value)
            session.add(settings)
            session.commit()
            session.refresh(settings)
        logger.info("Settings updated for service point %s", service_point_id)
        return settings
