"""Database models for the ticket queue.

We use SQLModel to define the schema.  Tickets are the units being queued,
daily sequences hold the last number issued per service point, ticket class
and day, counters are the staffed service positions, and the settings table
keeps the per service point knobs (priority weights, numbering offsets,
manual mode, voice template).
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_day(moment: datetime, tz_name: str) -> date:
    """Calendar day of a naive UTC ``moment`` in the queue's time zone."""
    return moment.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).date()


def new_id() -> str:
    return uuid4().hex


class TicketStatus(str, Enum):
    """Possible statuses for a ticket."""

    waiting = "waiting"
    called = "called"
    in_service = "in_service"
    completed = "completed"
    skipped = "skipped"
    cancelled = "cancelled"


ACTIVE_STATUSES = (TicketStatus.called, TicketStatus.in_service)
TERMINAL_STATUSES = (TicketStatus.completed, TicketStatus.skipped, TicketStatus.cancelled)


class TicketClass(str, Enum):
    normal = "normal"
    priority = "priority"

    @property
    def prefix(self) -> str:
        return "P" if self is TicketClass.priority else "N"


class EventType(str, Enum):
    CREATED = "CREATED"
    CALLED = "CALLED"
    REPEATED = "REPEATED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"
    COUNTER_ASSIGNED = "COUNTER_ASSIGNED"
    COUNTER_RELEASED = "COUNTER_RELEASED"


def format_display_code(ticket_class: TicketClass, number: int) -> str:
    return f"{ticket_class.prefix}-{number:03d}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("service_point_id", "ticket_class", "service_day", "number"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    service_point_id: str = Field(index=True)
    ticket_class: TicketClass = Field(default=TicketClass.normal)
    service_day: date = Field(index=True)
    number: int
    display_code: str
    status: TicketStatus = Field(default=TicketStatus.waiting, index=True)
    priority: int = Field(default=0)
    client_name: Optional[str] = None
    client_document: Optional[str] = None
    counter_id: Optional[str] = Field(default=None, index=True)
    attendant_id: Optional[str] = None
    skip_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    called_at: Optional[datetime] = None
    service_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service_point_id": self.service_point_id,
            "ticket_class": self.ticket_class.value,
            "service_day": self.service_day.isoformat(),
            "number": self.number,
            "display_code": self.display_code,
            "status": self.status.value,
            "priority": self.priority,
            "client_name": self.client_name,
            "client_document": self.client_document,
            "counter_id": self.counter_id,
            "attendant_id": self.attendant_id,
            "skip_reason": self.skip_reason,
            "cancel_reason": self.cancel_reason,
            "created_at": _iso(self.created_at),
            "called_at": _iso(self.called_at),
            "service_started_at": _iso(self.service_started_at),
            "completed_at": _iso(self.completed_at),
        }


class DailySequence(SQLModel, table=True):
    __tablename__ = "daily_sequences"
    __table_args__ = (UniqueConstraint("service_point_id", "ticket_class", "day"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    service_point_id: str = Field(index=True)
    ticket_class: TicketClass
    day: date
    last_number: int
    updated_at: datetime = Field(default_factory=utcnow)


class Counter(SQLModel, table=True):
    __tablename__ = "counters"
    __table_args__ = (UniqueConstraint("service_point_id", "number"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    service_point_id: str = Field(index=True)
    number: int
    name: Optional[str] = None
    active: bool = Field(default=True)
    attendant_id: Optional[str] = Field(default=None, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service_point_id": self.service_point_id,
            "number": self.number,
            "name": self.name,
            "active": self.active,
            "attendant_id": self.attendant_id,
        }


class ServicePointSettings(SQLModel, table=True):
    __tablename__ = "service_point_settings"

    service_point_id: str = Field(primary_key=True)
    normal_priority: int = Field(default=0)
    priority_priority: int = Field(default=10)
    normal_start: int = Field(default=1)
    priority_start: int = Field(default=1)
    manual_mode_enabled: bool = Field(default=False)
    manual_mode_min_number: int = Field(default=500)
    voice_template: str = Field(default="Senha {ticket}, guichê {counter}")

    def priority_for(self, ticket_class: TicketClass) -> int:
        if ticket_class is TicketClass.priority:
            return self.priority_priority
        return self.normal_priority

    def start_for(self, ticket_class: TicketClass) -> int:
        if ticket_class is TicketClass.priority:
            return self.priority_start
        return self.normal_start
