"""Pydantic schemas for requests and the real-time event envelope.

Responses are returned as plain dicts built by the models' ``to_dict``.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from models import EventType, TicketClass, utcnow


class CreateTicketRequest(BaseModel):
    ticket_class: TicketClass = TicketClass.normal
    client_name: Optional[str] = None
    client_document: Optional[str] = None


class CallNextRequest(BaseModel):
    counter_id: str


class ManualCallRequest(BaseModel):
    counter_id: str
    ticket_class: TicketClass
    number: int = Field(..., ge=1)


class ActiveRequest(BaseModel):
    active: bool


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CreateCounterRequest(BaseModel):
    number: int = Field(..., ge=1)
    name: Optional[str] = None


class SettingsRequest(BaseModel):
    normal_priority: int = 0
    priority_priority: int = 10
    normal_start: int = Field(default=1, ge=1)
    priority_start: int = Field(default=1, ge=1)
    manual_mode_enabled: bool = False
    manual_mode_min_number: int = Field(default=500, ge=1)
    voice_template: str = "Senha {ticket}, guichê {counter}"


class QueueEvent(BaseModel):
    """Envelope delivered to every subscriber of a service point."""

    type: EventType
    service_point: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utcnow)

    @property
    def ticket_id(self) -> Optional[str]:
        ticket = self.payload.get("ticket") or {}
        return ticket.get("id")

    @property
    def counter(self) -> Dict[str, Any]:
        return self.payload.get("counter") or {}

    def to_json(self) -> str:
        return self.model_dump_json()
