"""Outbound events emitted by the lifecycle engines.

Engines only append to an ``EventQueue``; delivery happens later through
``NotificationDispatcher`` so a dead mail server never affects state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from access_manager.models.access_request import AccessRequest


@dataclass(frozen=True)
class UserSnapshot:
    request_id: int
    email: str
    full_name: str
    expires_at: Optional[datetime] = None

    @classmethod
    def of(cls, request: AccessRequest) -> "UserSnapshot":
        return cls(
            request_id=request.id,
            email=request.email,
            full_name=request.full_name,
            expires_at=request.expires_at,
        )


@dataclass(frozen=True)
class UserActivated:
    user: UserSnapshot
    slot_number: Optional[int] = None


@dataclass(frozen=True)
class UserExpired:
    user: UserSnapshot


@dataclass(frozen=True)
class ExpiryWarningDue:
    user: UserSnapshot


@dataclass(frozen=True)
class EscalationRequired:
    user: UserSnapshot
    attempts: int
    last_error: Optional[str] = None


@dataclass(frozen=True)
class JobFailed:
    error: str


Event = Union[UserActivated, UserExpired, ExpiryWarningDue, EscalationRequired, JobFailed]


@dataclass
class EventQueue:
    """In-process outbox."""

    _events: List[Event] = field(default_factory=list)

    def emit(self, event: Event) -> None:
        self._events.append(event)

    def drain(self) -> List[Event]:
        events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        return len(self._events)
