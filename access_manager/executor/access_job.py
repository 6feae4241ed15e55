"""Orchestration job — one pass of expire-then-promote against the dashboard.

A run is strictly sequential: the dashboard actor is a single session that
cannot take concurrent operations, so every actor call and store call is
awaited before the next user is touched. Expirations always run before
promotions so freed capacity is visible to promotion selection.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session, sessionmaker

from access_manager.connectors.base import DashboardActor
from access_manager.connectors.builtin import get_actor
from access_manager.core.clock import Clock, utcnow
from access_manager.core.config import settings
from access_manager.core.exceptions import AccessManagerError, JobLockedError
from access_manager.models.access_request import AccessStatus
from access_manager.services.cache_service import NullLock, cache_service
from access_manager.services.events import EventQueue, JobFailed
from access_manager.services.expiry_sweeper import ExpirySweeper
from access_manager.services.notification_service import NotificationDispatcher, NotificationService
from access_manager.services.queue_engine import QueueEngine
from access_manager.services.reconciliation import (
    ACTION_ADDED,
    ACTION_JOB_ERROR,
    ACTION_REMOVED,
    ReconciliationEngine,
)
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy, SettingsService

logger = logging.getLogger("access_manager.job")


def load_policy(db: Session) -> AccessPolicy:
    return SettingsService(db).load_policy()


@dataclass
class JobResult:
    action: str
    request_id: Optional[int]
    email: Optional[str]
    success: bool
    error: Optional[str] = None
    slot_number: Optional[int] = None
    needs_manual_intervention: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """Webhook entry; the job has already reconciled it."""
        return {
            "action": self.action,
            "requestId": self.request_id,
            "email": self.email,
            "success": self.success,
            "error": self.error,
            "slotNumber": self.slot_number,
            "needsManualIntervention": self.needs_manual_intervention,
            "reconciled": True,
        }


@dataclass
class JobReport:
    results: List[JobResult] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None

    @property
    def failures(self) -> List[JobResult]:
        return [r for r in self.results if not r.success]

    @property
    def exit_code(self) -> int:
        """Non-zero when any operation failed, for schedulers watching degraded runs."""
        return 1 if self.failures else 0

    def summary(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "operations": len(self.results),
            "failures": len(self.failures),
            "exit_code": self.exit_code,
            "results": [r.to_payload() for r in self.results],
        }


class AccessJob:
    """Runs one reconciliation pass: remove expired users, then promote from the queue."""

    def __init__(
        self,
        session_factory: sessionmaker,
        actor: DashboardActor,
        notifier: Optional[NotificationService] = None,
        lock=None,
        clock: Clock = utcnow,
        operation_delay: Optional[float] = None,
        report_url: Optional[str] = None,
        report_secret: Optional[str] = None,
        policy_loader: Callable[[Session], AccessPolicy] = load_policy,
    ):
        self.session_factory = session_factory
        self.actor = actor
        self.notifier = notifier
        self.lock = lock or NullLock()
        self.clock = clock
        self.operation_delay = settings.OPERATION_DELAY_SECONDS if operation_delay is None else operation_delay
        self.report_url = report_url
        self.report_secret = report_secret
        self.policy_loader = policy_loader

    @classmethod
    def from_settings(
        cls,
        session_factory: sessionmaker,
        actor_type: Optional[str] = None,
        use_lock: bool = True,
    ) -> "AccessJob":
        return cls(
            session_factory=session_factory,
            actor=get_actor(actor_type),
            notifier=NotificationService(),
            lock=cache_service.run_lock() if use_lock else NullLock(),
            report_url=settings.APP_WEBHOOK_URL,
            report_secret=settings.AUTOMATION_WEBHOOK_SECRET,
        )

    async def _pause(self) -> None:
        if self.operation_delay > 0:
            await asyncio.sleep(self.operation_delay)

    async def run(self) -> JobReport:
        report = JobReport()
        events = EventQueue()
        db = self.session_factory()
        store = RequestStore(db, clock=self.clock)
        locked = False
        actor_opened = False

        try:
            try:
                self.lock.acquire()
            except JobLockedError as e:
                logger.warning("Skipping run: %s", e.message)
                report.skipped, report.skip_reason = True, e.message
                return report
            locked = True

            policy = self.policy_loader(db)
            if not policy.automation_enabled:
                logger.info("Automation disabled in system settings; skipping run")
                report.skipped, report.skip_reason = True, "automation disabled"
                return report

            queue = QueueEngine(store, policy)
            reconciler = ReconciliationEngine(store, policy, events)
            sweeper = ExpirySweeper(store, policy, events)

            active_before = store.count(AccessStatus.active)
            expired = sweeper.get_expired_users()
            logger.info("Starting run: %d active, %d expired", active_before, len(expired))

            await self.actor.open()
            actor_opened = True

            # Phase 1: expirations
            expired_ok = 0
            for request in expired:
                request_id, email = request.id, request.email
                outcome = await self.actor.remove_user(email)
                applied = reconciler.apply_result(ACTION_REMOVED, request_id, outcome.success, outcome.error)
                success = outcome.success and applied.applied
                if success:
                    expired_ok += 1
                report.results.append(JobResult(
                    action=ACTION_REMOVED,
                    request_id=request_id,
                    email=email,
                    success=success,
                    error=outcome.error if not outcome.success else applied.error,
                    needs_manual_intervention=applied.needs_manual_intervention,
                ))
                await self._pause()

            # Phase 2: promotions
            available = queue.compute_available_slots(active_before, expired_ok)
            candidates = queue.select_promotion_candidates(available)
            logger.info("%d slot(s) available, promoting %d", max(0, available), len(candidates))

            for i, request in enumerate(candidates):
                request_id, email = request.id, request.email
                slot_number = active_before - expired_ok + i + 1
                outcome = await self.actor.add_user(request.full_name, email)
                applied = reconciler.apply_result(
                    ACTION_ADDED, request_id, outcome.success, outcome.error, slot_number=slot_number
                )
                success = outcome.success and applied.applied
                report.results.append(JobResult(
                    action=ACTION_ADDED,
                    request_id=request_id,
                    email=email,
                    success=success,
                    error=outcome.error if not outcome.success else applied.error,
                    slot_number=slot_number,
                    needs_manual_intervention=applied.needs_manual_intervention,
                ))
                await self._pause()

            logger.info(
                "Run complete: %d operation(s), %d failure(s)",
                len(report.results), len(report.failures),
            )

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.exception("Access job aborted: %s", message)
            report.results.append(JobResult(
                action=ACTION_JOB_ERROR, request_id=None, email=None, success=False, error=message,
            ))
            self._record_abort(store, events, message)

        finally:
            if actor_opened:
                try:
                    await self.actor.close()
                except Exception as e:
                    logger.error("Failed to close actor session: %s", e)
            if locked:
                try:
                    self.lock.release()
                except Exception as e:
                    logger.error("Failed to release run lock: %s", e)
            if not report.skipped:
                await self._post_report(report)
            if self.notifier is not None:
                await NotificationDispatcher(self.notifier).dispatch(events.drain())
            db.close()

        return report

    def _record_abort(self, store: RequestStore, events: EventQueue, message: str) -> None:
        try:
            store.audit("job_error", None, {"error": message}, success=False, error_message=message)
        except AccessManagerError as e:
            logger.error("Could not audit job error: %s", e.message)
        events.emit(JobFailed(error=message))

    async def _post_report(self, report: JobReport) -> bool:
        """Best-effort results report to the app webhook."""
        if not self.report_url:
            logger.debug("APP_WEBHOOK_URL not set; results not reported")
            return False
        headers = {}
        if self.report_secret:
            headers["Authorization"] = f"Bearer {self.report_secret}"
        payload = {"results": [r.to_payload() for r in report.results]}
        try:
            async with httpx.AsyncClient(timeout=30) as client:
                resp = await client.post(self.report_url, json=payload, headers=headers)
                resp.raise_for_status()
            logger.info("Reported %d result(s) to %s", len(report.results), self.report_url)
            return True
        except httpx.HTTPError as e:
            logger.error("Failed to report results: %s", e)
            return False


async def send_expiry_warnings(
    session_factory: sessionmaker,
    notifier: Optional[NotificationService] = None,
    clock: Clock = utcnow,
) -> int:
    """Queue and deliver expiry warnings; returns how many were queued."""
    db = session_factory()
    try:
        store = RequestStore(db, clock=clock)
        events = EventQueue()
        sweeper = ExpirySweeper(store, load_policy(db), events)
        count = sweeper.queue_expiry_warnings()
    finally:
        db.close()
    await NotificationDispatcher(notifier or NotificationService()).dispatch(events.drain())
    return count
