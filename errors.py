"""Errors raised by the queue engine.

Contention errors are transient and may be retried by the caller.  State
errors mean the request no longer matches the ticket or counter and must be
shown to the user as a rejected action.  ``QueueEmpty`` is a normal outcome
of calling the next ticket and only exists so the HTTP layer can report it.
"""

from __future__ import annotations


class QueueError(Exception):
    code = "queue_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ContentionError(QueueError):
    status_code = 409


class SequenceConflict(ContentionError):
    """Numbering could not complete after the configured retries."""

    code = "sequence_conflict"
    status_code = 503


class CounterOccupied(ContentionError):
    code = "counter_occupied"


class StateError(QueueError):
    status_code = 409


class InvalidTransition(StateError):
    code = "invalid_transition"


class NotFound(StateError):
    code = "not_found"
    status_code = 404


class QueueEmpty(QueueError):
    code = "queue_empty"
    status_code = 200
