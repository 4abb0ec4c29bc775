"""Caller identity.

Authentication happens upstream (local login or directory service); the
gateway forwards the verified subject in request headers and the queue
trusts it without checking credentials again.  The only credential checked
here is the optional stream token, once, when a viewer subscribes.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import Header, HTTPException

import config

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    subject_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    service_point_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def can_access(self, service_point_id: str) -> bool:
        return self.is_admin or self.service_point_id in (None, service_point_id)


def get_identity(
    x_subject_id: Optional[str] = Header(default=None),
    x_roles: Optional[str] = Header(default=None),
    x_service_point: Optional[str] = Header(default=None),
) -> Identity:
    """FastAPI dependency reading the identity forwarded by the gateway."""
    if not x_subject_id:
        raise HTTPException(status_code=401, detail="Missing identity")
    roles = frozenset(r.strip() for r in (x_roles or "").split(",") if r.strip())
    return Identity(subject_id=x_subject_id, roles=roles, service_point_id=x_service_point)


def check_stream_token(token: Optional[str], expected: Optional[str] = None) -> bool:
    """Validate the bearer credential of a subscriber; open when unset."""
    expected = expected if expected is not None else config.STREAM_TOKEN
    if not expected:
        return True
    return bool(token) and hmac.compare_digest(token, expected)
