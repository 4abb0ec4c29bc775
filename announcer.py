"""Public display call scheduling.

When a ticket is called (or a call is repeated) at a counter, the display
announces it up to ``max_calls`` times for that ticket/counter pair, at least
``spacing`` seconds apart, counting calls already made.  Only one schedule
per service point is live: an event for a different ticket cancels whatever
is still pending for the previous one before anything new is planned.

The announcer is driven by an event loop (anything with ``time``,
``call_at`` and ``call_soon_threadsafe``); the actual voice/visual output is
delegated to a renderer.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import config
from models import EventType
from schemas import QueueEvent

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "Senha {ticket}, guichê {counter}"
CALL_EVENTS = (EventType.CALLED, EventType.REPEATED)

_UNITS = ["", "um", "dois", "três", "quatro", "cinco", "seis", "sete", "oito", "nove"]
_TEENS = ["dez", "onze", "doze", "treze", "quatorze", "quinze", "dezesseis", "dezessete",
          "dezoito", "dezenove"]
_TENS = ["", "", "vinte", "trinta", "quarenta", "cinquenta", "sessenta", "setenta",
         "oitenta", "noventa"]
_HUNDREDS = ["", "cento", "duzentos", "trezentos", "quatrocentos", "quinhentos",
             "seiscentos", "setecentos", "oitocentos", "novecentos"]


def number_to_words(num: int) -> str:
    """Spell ``num`` out in Portuguese, as the voice reads it."""
    if num == 0:
        return "zero"
    if num == 100:
        return "cem"
    parts = []
    if num >= 1000:
        thousands = num // 1000
        parts.append("mil" if thousands == 1 else f"{number_to_words(thousands)} mil")
        num %= 1000
    if num >= 100:
        parts.append("cem" if num == 100 else _HUNDREDS[num // 100])
        num %= 100
    if num >= 20:
        tens = _TENS[num // 10]
        parts.append(f"{tens} e {_UNITS[num % 10]}" if num % 10 else tens)
    elif num >= 10:
        parts.append(_TEENS[num - 10])
    elif num > 0:
        parts.append(_UNITS[num])
    return " e ".join(parts)


def build_call_phrase(display_code: str, counter_number: Optional[int],
                      template: str = DEFAULT_TEMPLATE) -> str:
    prefix, _, digits = display_code.partition("-")
    kind = "preferencial" if prefix == "P" else "normal"
    ticket = f"{kind} {number_to_words(int(digits))}" if digits.isdigit() else display_code
    counter = number_to_words(counter_number) if counter_number is not None else ""
    return template.replace("{ticket}", ticket).replace("{counter}", counter)


@dataclass
class Announcement:
    service_point_id: str
    ticket_id: str
    display_code: str
    counter_id: str
    counter_number: Optional[int]
    attempt: int
    phrase: str


class Renderer(Protocol):
    def render(self, announcement: Announcement) -> None:
        ...


class LoggingRenderer:
    def render(self, announcement: Announcement) -> None:
        logger.info(
            "CALL %s at counter %s (%d): %s",
            announcement.display_code, announcement.counter_number,
            announcement.attempt, announcement.phrase,
        )


class RedisRenderer:
    """Hand announcements to an external display/voice client over Redis."""

    def __init__(self, relay) -> None:
        self.relay = relay

    def render(self, announcement: Announcement) -> None:
        self.relay.publish(announcement.service_point_id, json.dumps(asdict(announcement)))


class CancelToken:
    def __init__(self) -> None:
        self.cancelled = False
        self._handles: List[Any] = []

    def add(self, handle: Any) -> None:
        self._handles.append(handle)

    def cancel(self) -> None:
        self.cancelled = True
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()


@dataclass
class AnnouncementSchedule:
    service_point_id: str
    ticket_id: str
    counter_id: str
    display_code: str
    counter_number: Optional[int]
    phrase: str
    token: CancelToken = field(default_factory=CancelToken)
    planned: List[float] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.ticket_id, self.counter_id)

    @property
    def pending(self) -> int:
        return len(self.planned)

    def cancel(self) -> None:
        self.token.cancel()
        self.planned.clear()


class CallAnnouncer:
    history_size = 256

    def __init__(self, renderer: Renderer, loop: Any, max_calls: int = config.ANNOUNCE_MAX_CALLS,
                 spacing: float = config.ANNOUNCE_SPACING_SECONDS,
                 template_for: Optional[Callable[[str], str]] = None) -> None:
        self.renderer = renderer
        self.loop = loop
        self.max_calls = max_calls
        self.spacing = spacing
        self.template_for = template_for
        self._live: Dict[str, AnnouncementSchedule] = {}
        self._issued: "OrderedDict[Tuple[str, str], List[float]]" = OrderedDict()

    def notify(self, event: QueueEvent) -> None:
        """Thread-safe entry point; the schedule is updated on the loop."""
        if event.type in CALL_EVENTS:
            self.loop.call_soon_threadsafe(self.handle, event)

    def live(self, service_point_id: str) -> Optional[AnnouncementSchedule]:
        return self._live.get(service_point_id)

    def issued(self, ticket_id: str, counter_id: str) -> List[float]:
        return list(self._issued.get((ticket_id, counter_id), ()))

    def handle(self, event: QueueEvent) -> Optional[AnnouncementSchedule]:
        if event.type not in CALL_EVENTS:
            return None
        ticket = event.payload.get("ticket") or {}
        counter = event.counter
        if not ticket.get("id") or not counter.get("id"):
            logger.warning("Ignoring %s without ticket/counter on %s", event.type.value, event.service_point)
            return None

        sp = event.service_point
        key = (ticket["id"], counter["id"])
        live = self._live.get(sp)
        if live is not None and live.key != key:
            if live.pending:
                logger.info("Cancelling %d pending calls for %s", live.pending, live.display_code)
            live.cancel()
            del self._live[sp]
            live = None

        issued = self._issued.get(key, [])
        pending = live.pending if live is not None else 0
        remaining = self.max_calls - len(issued) - pending
        if remaining <= 0:
            logger.debug("Call budget for %s exhausted", ticket.get("display_code"))
            return live

        if live is None:
            template = self.template_for(sp) if self.template_for else DEFAULT_TEMPLATE
            live = AnnouncementSchedule(
                service_point_id=sp,
                ticket_id=key[0],
                counter_id=key[1],
                display_code=ticket.get("display_code", ""),
                counter_number=counter.get("number"),
                phrase=build_call_phrase(ticket.get("display_code", ""), counter.get("number"), template),
            )
            self._live[sp] = live

        last = max(live.planned[-1:] + issued[-1:], default=None)
        now = self.loop.time()
        first = now if last is None else max(now, last + self.spacing)
        for i in range(remaining):
            when = first + i * self.spacing
            live.planned.append(when)
            live.token.add(self.loop.call_at(when, self._fire, live, live.token))
        logger.info("Scheduled %d calls for %s", remaining, live.display_code)
        return live

    def _fire(self, schedule: AnnouncementSchedule, token: CancelToken) -> None:
        if token.cancelled or schedule.token is not token:
            return
        if schedule.planned:
            schedule.planned.pop(0)
        issued = self._issued.setdefault(schedule.key, [])
        self._issued.move_to_end(schedule.key)
        issued.append(self.loop.time())
        while len(self._issued) > self.history_size:
            self._issued.popitem(last=False)

        announcement = Announcement(
            service_point_id=schedule.service_point_id,
            ticket_id=schedule.ticket_id,
            display_code=schedule.display_code,
            counter_id=schedule.counter_id,
            counter_number=schedule.counter_number,
            attempt=len(issued),
            phrase=schedule.phrase,
        )
        try:
            self.renderer.render(announcement)
        except Exception:
            logger.exception("Renderer failed for %s", schedule.display_code)

    def cancel_all(self) -> None:
        for schedule in self._live.values():
            schedule.cancel()
        self._live.clear()
