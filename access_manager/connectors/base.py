"""Abstract base class for dashboard automation actors."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class ActorOutcome:
    """Result of one add/remove call against the dashboard."""

    success: bool
    error: Optional[str] = None
    note: Optional[str] = None


class DashboardActor(ABC):
    """Drives the dashboard's user management on our behalf.

    One actor instance is one session: ``open`` is called once before the
    first operation and ``close`` exactly once after the last, whatever the
    outcome of the run. Operations are awaited one at a time.
    """

    @abstractmethod
    async def open(self) -> None:
        """Start the session (browser, HTTP client, ...)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release everything ``open`` acquired."""
        ...

    @abstractmethod
    async def add_user(self, full_name: str, email: str) -> ActorOutcome:
        """Grant dashboard access. Failures are returned, not raised."""
        ...

    @abstractmethod
    async def remove_user(self, email: str) -> ActorOutcome:
        """Revoke dashboard access. Failures are returned, not raised."""
        ...

    @property
    @abstractmethod
    def actor_type(self) -> str:
        """Return the actor identifier (e.g., 'dry_run', 'http')."""
        ...
