"""Counter to attendant binding.

A counter is held by at most one attendant and an attendant holds at most
one counter.  Binding is a conditional update on the counter row, so two
attendants racing for the same counter cannot both succeed.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from auth import Identity
from db import get_session
from errors import CounterOccupied, InvalidTransition, NotFound
from models import Counter, EventType, utcnow
from schemas import QueueEvent

logger = logging.getLogger(__name__)

Publish = Callable[[str, QueueEvent], None]


class CounterRegistry:
    def __init__(self, engine: Engine, publish: Optional[Publish] = None) -> None:
        self.engine = engine
        self.publish = publish

    def _emit(self, event_type: EventType, counter: Counter, attendant_id: Optional[str]) -> None:
        if self.publish is None:
            return
        self.publish(counter.service_point_id, QueueEvent(
            type=event_type,
            service_point=counter.service_point_id,
            payload={"counter": counter.to_dict(), "attendant_id": attendant_id},
        ))

    # ----- administration -----

    def add(self, service_point_id: str, number: int, name: Optional[str] = None) -> Counter:
        counter = Counter(service_point_id=service_point_id, number=number, name=name)
        with get_session(self.engine) as session:
            session.add(counter)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise InvalidTransition(
                    f"counter {number} already exists at {service_point_id}"
                ) from exc
            session.refresh(counter)
        logger.info("Counter %s added at %s", number, service_point_id)
        return counter

    def set_active(self, counter_id: str, active: bool) -> Counter:
        with get_session(self.engine) as session:
            counter = session.get(Counter, counter_id)
            if counter is None:
                raise NotFound(f"counter {counter_id}")
            counter.active = active
            counter.updated_at = utcnow()
            session.add(counter)
            session.commit()
            session.refresh(counter)
        return counter

    def get(self, counter_id: str) -> Optional[Counter]:
        with get_session(self.engine) as session:
            return session.get(Counter, counter_id)

    def for_service_point(self, service_point_id: str) -> List[Counter]:
        with get_session(self.engine) as session:
            return list(session.exec(
                select(Counter)
                .where(Counter.service_point_id == service_point_id)
                .order_by(col(Counter.number))
            ).all())

    # ----- binding -----

    def bind(self, counter_id: str, attendant_id: str) -> Counter:
        """Give ``counter_id`` to ``attendant_id``.

        Rebinding the current holder is a no-op.  An attendant who already
        holds another counter is moved: that counter is released in the same
        transaction.
        """
        released: Optional[Counter] = None
        with get_session(self.engine) as session:
            counter = session.get(Counter, counter_id)
            if counter is None:
                raise NotFound(f"counter {counter_id}")
            if not counter.active:
                raise InvalidTransition(f"counter {counter.number} is inactive")
            already_held = counter.attendant_id == attendant_id

            now = utcnow()
            result = session.connection().execute(
                update(Counter)
                .where(
                    col(Counter.id) == counter_id,
                    or_(col(Counter.attendant_id).is_(None), col(Counter.attendant_id) == attendant_id),
                )
                .values(attendant_id=attendant_id, updated_at=now)
            )
            if not result.rowcount:
                session.rollback()
                raise CounterOccupied(f"counter {counter.number} is held by another attendant")

            previous = session.exec(
                select(Counter).where(
                    Counter.attendant_id == attendant_id,
                    Counter.id != counter_id,
                )
            ).first()
            if previous is not None:
                previous.attendant_id = None
                previous.updated_at = now
                session.add(previous)
                released = previous
            session.commit()
            session.refresh(counter)
            if released is not None:
                session.refresh(released)

        if released is not None:
            logger.info("Attendant %s moved off counter %s", attendant_id, released.number)
            self._emit(EventType.COUNTER_RELEASED, released, attendant_id)
        if not already_held:
            logger.info("Counter %s bound to %s", counter.number, attendant_id)
            self._emit(EventType.COUNTER_ASSIGNED, counter, attendant_id)
        return counter

    def release(self, counter_id: str, identity: Identity) -> Counter:
        """Clear the binding; only its holder or an administrator may do so."""
        with get_session(self.engine) as session:
            counter = session.get(Counter, counter_id)
            if counter is None:
                raise NotFound(f"counter {counter_id}")
            holder = counter.attendant_id
            if holder is None:
                return counter

            query = update(Counter).where(col(Counter.id) == counter_id)
            if not identity.is_admin:
                query = query.where(col(Counter.attendant_id) == identity.subject_id)
            result = session.connection().execute(query.values(attendant_id=None, updated_at=utcnow()))
            if not result.rowcount:
                session.rollback()
                raise CounterOccupied(f"counter {counter.number} is held by another attendant")
            session.commit()
            session.refresh(counter)

        logger.info("Counter %s released (was %s, by %s)", counter.number, holder, identity.subject_id)
        self._emit(EventType.COUNTER_RELEASED, counter, holder)
        return counter

    def owner_of(self, counter_id: str) -> Optional[str]:
        counter = self.get(counter_id)
        return counter.attendant_id if counter else None

    def counter_of(self, attendant_id: str) -> Optional[Counter]:
        with get_session(self.engine) as session:
            return session.exec(select(Counter).where(Counter.attendant_id == attendant_id)).first()
