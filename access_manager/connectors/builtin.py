"""Built-in dashboard actors: dry run and HTTP automation service."""

import logging
from typing import Dict, Optional

import httpx

from access_manager.connectors.base import ActorOutcome, DashboardActor
from access_manager.core.config import settings
from access_manager.core.exceptions import AutomationFailure

logger = logging.getLogger("access_manager.actor")


class DryRunActor(DashboardActor):
    """Logs every operation and reports success. Nothing leaves the process."""

    actor_type = "dry_run"

    async def open(self) -> None:
        logger.info("Dry-run actor session opened")

    async def close(self) -> None:
        logger.info("Dry-run actor session closed")

    async def add_user(self, full_name: str, email: str) -> ActorOutcome:
        logger.info("[dry run] would add %s <%s>", full_name, email)
        return ActorOutcome(success=True, note="dry run")

    async def remove_user(self, email: str) -> ActorOutcome:
        logger.info("[dry run] would remove %s", email)
        return ActorOutcome(success=True, note="dry run")


class HttpAutomationActor(DashboardActor):
    """Client for the browser-automation service that owns the dashboard session.

    The service exposes ``POST /users/add`` and ``POST /users/remove`` and
    answers ``{"success": bool, "error": str | null, "note": str | null}``.
    """

    actor_type = "http"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.AUTOMATION_SERVICE_URL or "").rstrip("/")
        self.token = token if token is not None else settings.AUTOMATION_SERVICE_TOKEN
        self.timeout = timeout or settings.AUTOMATION_TIMEOUT_SECONDS
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def open(self) -> None:
        if not self.base_url:
            raise RuntimeError("AUTOMATION_SERVICE_URL is not configured")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self.transport,
        )
        logger.info("Automation service session opened: %s", self.base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Automation service session closed")

    async def _call(self, path: str, payload: Dict[str, str]) -> ActorOutcome:
        if self._client is None:
            raise AutomationFailure("Actor session is not open")
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.TimeoutException:
            raise AutomationFailure(f"Automation service timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            raise AutomationFailure(f"Automation service unreachable: {e}")

        if resp.status_code >= 400:
            raise AutomationFailure(f"Automation service returned {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise AutomationFailure("Automation service returned invalid JSON")
        return ActorOutcome(
            success=bool(body.get("success")),
            error=body.get("error"),
            note=body.get("note"),
        )

    async def _post(self, path: str, payload: Dict[str, str]) -> ActorOutcome:
        try:
            return await self._call(path, payload)
        except AutomationFailure as e:
            logger.warning("%s failed: %s", path, e.message)
            return ActorOutcome(success=False, error=e.message)

    async def add_user(self, full_name: str, email: str) -> ActorOutcome:
        return await self._post("/users/add", {"fullName": full_name, "email": email})

    async def remove_user(self, email: str) -> ActorOutcome:
        return await self._post("/users/remove", {"email": email})


# Actor registry
ACTOR_REGISTRY: Dict[str, type] = {
    "dry_run": DryRunActor,
    "http": HttpAutomationActor,
}


def get_actor(actor_type: Optional[str] = None) -> DashboardActor:
    """Get a fresh actor instance by type."""
    actor_type = actor_type or settings.AUTOMATION_ACTOR
    cls = ACTOR_REGISTRY.get(actor_type)
    if not cls:
        raise ValueError(f"Unknown actor type: {actor_type}")
    return cls()
