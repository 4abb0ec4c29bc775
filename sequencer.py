"""Per-day ticket numbering.

A single row per (service point, ticket class, day) holds the last number
issued.  The row is incremented in place inside its own transaction, so the
database's write lock is what keeps two callers from receiving the same
number; there is no read-then-write window in application code.
"""

from __future__ import annotations

import logging
import time
from datetime import date

from sqlalchemy import and_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import select

import config
from db import get_session
from errors import SequenceConflict
from models import DailySequence, TicketClass, utcnow

logger = logging.getLogger(__name__)


class Sequencer:
    def __init__(self, engine: Engine, max_retries: int = config.SEQUENCE_MAX_RETRIES,
                 backoff_seconds: float = 0.05) -> None:
        self.engine = engine
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds

    def issue(self, service_point_id: str, ticket_class: TicketClass, day: date,
              start: int = 1) -> int:
        """Return the next number for the key, initialising the day at ``start``.

        Raises ``SequenceConflict`` once ``max_retries`` attempts have hit
        storage contention.  Gaps are possible (a caller may fail after
        numbering); duplicates are not.
        """
        key = and_(
            DailySequence.service_point_id == service_point_id,
            DailySequence.ticket_class == ticket_class,
            DailySequence.day == day,
        )
        for attempt in range(1, self.max_retries + 1):
            with get_session(self.engine) as session:
                try:
                    result = session.connection().execute(
                        update(DailySequence)
                        .where(key)
                        .values(last_number=DailySequence.last_number + 1, updated_at=utcnow())
                    )
                    if result.rowcount:
                        number = session.exec(select(DailySequence.last_number).where(key)).one()
                    else:
                        number = start
                        session.add(DailySequence(
                            service_point_id=service_point_id,
                            ticket_class=ticket_class,
                            day=day,
                            last_number=number,
                        ))
                        session.flush()
                    session.commit()
                    return number
                except (IntegrityError, OperationalError) as exc:
                    session.rollback()
                    logger.warning(
                        "Sequence contention for %s/%s/%s (attempt %d/%d): %s",
                        service_point_id, ticket_class.value, day, attempt, self.max_retries, exc,
                    )
            time.sleep(self.backoff_seconds * attempt)
        raise SequenceConflict(
            f"could not issue a number for {service_point_id}/{ticket_class.value} on {day}"
        )

    def last_issued(self, service_point_id: str, ticket_class: TicketClass, day: date) -> int:
        """Last number issued for the key, 0 when nothing was issued yet."""
        with get_session(self.engine) as session:
            row = session.exec(
                select(DailySequence.last_number).where(
                    DailySequence.service_point_id == service_point_id,
                    DailySequence.ticket_class == ticket_class,
                    DailySequence.day == day,
                )
            ).first()
        return row or 0
