"""Tests for component wiring, the board snapshot and statistics."""

from datetime import timedelta

from announcer import LoggingRenderer
from models import TicketClass
from services import get_board, get_relay, queue_stats


class RecordingRenderer:
    def __init__(self):
        self.phrases = []

    def render(self, announcement):
        self.phrases.append(announcement.phrase)


class TestBoard:
    def test_board_groups_and_history(self, services, staffed_counter):
        d = services.dispatcher
        counter = staffed_counter(number=4)
        first = d.create("sp1", TicketClass.normal)
        second = d.create("sp1", TicketClass.normal)
        d.create("sp1", TicketClass.normal)

        d.call_next("sp1", counter.id, "alice")
        d.skip(first.id, "no show")
        d.call_next("sp1", counter.id, "alice")

        board = get_board(services, "sp1")
        assert [t["id"] for t in board["tickets"]["skipped"]] == [first.id]
        assert [t["id"] for t in board["tickets"]["called"]] == [second.id]
        assert len(board["tickets"]["waiting"]) == 1
        assert board["current_call"]["id"] == second.id
        assert board["current_call"]["counter"]["number"] == 4
        assert [t["id"] for t in board["last_calls"]] == [first.id]
        assert [c["number"] for c in board["counters"]] == [4]

    def test_empty_board(self, services):
        board = get_board(services, "sp9")
        assert board["current_call"] is None
        assert board["last_calls"] == []
        assert all(tickets == [] for tickets in board["tickets"].values())


class TestStats:
    def test_counts_and_averages(self, services, staffed_counter, clock):
        d = services.dispatcher
        counter = staffed_counter()
        served = d.create("sp1", TicketClass.normal)
        d.create("sp1", TicketClass.priority)
        d.create("sp1", TicketClass.normal)

        clock.advance(timedelta(minutes=6))
        d.call_next("sp1", counter.id, "alice")  # the priority ticket
        d.cancel(d.waiting("sp1")[-1].id, "left")
        d.skip(d.store.active_for_counter(counter.id).id, "no show")
        d.call_next("sp1", counter.id, "alice")
        d.start_service(served.id)
        clock.advance(timedelta(minutes=3))
        d.complete(served.id)

        stats = queue_stats(services, "sp1")
        assert stats["total_tickets"] == 3
        assert stats["status_counts"]["completed"] == 1
        assert stats["status_counts"]["skipped"] == 1
        assert stats["status_counts"]["cancelled"] == 1
        assert stats["waiting_by_class"] == {"normal": 0, "priority": 0}
        assert stats["last_issued"] == {"normal": 2, "priority": 1}
        assert stats["avg_wait_minutes"] == 6.0
        assert stats["avg_service_minutes"] == 3.0


class TestAnnouncerWiring:
    def test_calls_reach_the_renderer(self, services, staffed_counter, fake_loop):
        renderer = RecordingRenderer()
        services.start_announcer(fake_loop, renderer=renderer)
        counter = staffed_counter(number=3)
        services.dispatcher.create("sp1", TicketClass.priority)
        services.dispatcher.call_next("sp1", counter.id, "alice")
        fake_loop.advance(60)

        assert renderer.phrases == ["Senha preferencial um, guichê três"] * 3

    def test_voice_template_comes_from_settings(self, services, staffed_counter, fake_loop):
        services.settings.save("sp1", voice_template="Ticket {ticket}, desk {counter}")
        renderer = RecordingRenderer()
        services.start_announcer(fake_loop, renderer=renderer)
        counter = staffed_counter(number=2)
        services.dispatcher.create("sp1", TicketClass.normal)
        services.dispatcher.call_next("sp1", counter.id, "alice")
        fake_loop.advance(0)

        assert renderer.phrases == ["Ticket normal um, desk dois"]

    def test_stop_detaches_the_listener(self, services, staffed_counter, fake_loop):
        renderer = RecordingRenderer()
        services.start_announcer(fake_loop, renderer=renderer)
        services.stop_announcer()
        assert services.announcer is None

        counter = staffed_counter()
        services.dispatcher.create("sp1", TicketClass.normal)
        services.dispatcher.call_next("sp1", counter.id, "alice")
        fake_loop.advance(60)
        assert renderer.phrases == []

    def test_default_renderer_without_redis(self, services, fake_loop, monkeypatch):
        monkeypatch.setattr("config.REDIS_URL", None)
        assert get_relay("display") is None
        assert isinstance(services.start_announcer(fake_loop).renderer, LoggingRenderer)
