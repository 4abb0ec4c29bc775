"""Tests for per-day ticket numbering."""

import threading
from datetime import date
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st
from sqlalchemy.exc import OperationalError

from errors import SequenceConflict
from models import TicketClass
from sequencer import Sequencer

DAY = date(2026, 3, 2)


class TestIssue:
    def test_first_number_is_the_start_offset(self, engine):
        seq = Sequencer(engine)
        assert seq.issue("sp1", TicketClass.normal, DAY) == 1
        assert seq.issue("sp1", TicketClass.normal, DAY) == 2
        assert seq.issue("sp1", TicketClass.normal, DAY) == 3

    def test_custom_start_only_applies_to_a_new_day(self, engine):
        seq = Sequencer(engine)
        assert seq.issue("sp1", TicketClass.priority, DAY, start=100) == 100
        assert seq.issue("sp1", TicketClass.priority, DAY, start=100) == 101
        # an existing row keeps counting regardless of the offset passed
        assert seq.issue("sp1", TicketClass.priority, DAY, start=1) == 102

    def test_keys_are_independent(self, engine):
        seq = Sequencer(engine)
        assert seq.issue("sp1", TicketClass.normal, DAY) == 1
        assert seq.issue("sp1", TicketClass.priority, DAY) == 1
        assert seq.issue("sp2", TicketClass.normal, DAY) == 1
        assert seq.issue("sp1", TicketClass.normal, date(2026, 3, 3)) == 1
        assert seq.issue("sp1", TicketClass.normal, DAY) == 2

    def test_last_issued(self, engine):
        seq = Sequencer(engine)
        assert seq.last_issued("sp1", TicketClass.normal, DAY) == 0
        seq.issue("sp1", TicketClass.normal, DAY)
        seq.issue("sp1", TicketClass.normal, DAY)
        assert seq.last_issued("sp1", TicketClass.normal, DAY) == 2


class TestConcurrency:
    def test_concurrent_issue_never_duplicates(self, engine):
        seq = Sequencer(engine)
        issued, errors = [], []
        lock = threading.Lock()

        def worker():
            try:
                for _ in range(10):
                    number = seq.issue("sp1", TicketClass.normal, DAY)
                    with lock:
                        issued.append(number)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(issued) == 80
        assert sorted(issued) == list(range(1, 81))

    @settings(max_examples=20, deadline=None,
              suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(classes=st.lists(st.sampled_from(list(TicketClass)), min_size=1, max_size=15))
    def test_numbers_are_dense_per_class(self, engine, classes):
        """Sequential issuance yields 1..n for each class, whatever the interleaving."""
        seq = Sequencer(engine)
        sp = uuid4().hex
        issued = {c: [] for c in TicketClass}
        for cls in classes:
            issued[cls].append(seq.issue(sp, cls, DAY))
        for cls, numbers in issued.items():
            assert numbers == list(range(1, len(numbers) + 1))


class TestContention:
    def test_gives_up_after_max_retries(self, engine):
        session = MagicMock()
        session.__enter__.return_value = session
        session.connection.return_value.execute.side_effect = OperationalError(
            "UPDATE daily_sequences", {}, Exception("database is locked")
        )
        seq = Sequencer(engine, max_retries=3, backoff_seconds=0)

        with patch("sequencer.get_session", return_value=session):
            with pytest.raises(SequenceConflict):
                seq.issue("sp1", TicketClass.normal, DAY)

        assert session.connection.return_value.execute.call_count == 3
        assert session.rollback.call_count == 3
        session.commit.assert_not_called()
