"""Webhooks API router — automation results reported by the dashboard actor."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends

from access_manager.api.deps import get_dispatcher, get_policy, get_store
from access_manager.core.security import require_automation_secret
from access_manager.schemas.schemas import AutomationWebhookIn, AutomationWebhookOut
from access_manager.services.events import EventQueue
from access_manager.services.notification_service import NotificationDispatcher
from access_manager.services.reconciliation import ReconciliationEngine
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy

logger = logging.getLogger("access_manager.webhooks")

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post(
    "/automation",
    response_model=AutomationWebhookOut,
    dependencies=[Depends(require_automation_secret)],
)
async def automation_results(
    body: AutomationWebhookIn,
    background_tasks: BackgroundTasks,
    store: RequestStore = Depends(get_store),
    policy: AccessPolicy = Depends(get_policy),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Feed actor outcomes into reconciliation.

    Entries flagged ``reconciled`` were already applied by the in-process job
    and are only counted.
    """
    events = EventQueue()
    reconciler = ReconciliationEngine(store, policy, events)
    skipped = applied = needs_manual = 0

    for result in body.results:
        if result.reconciled:
            skipped += 1
            continue
        outcome = reconciler.apply_result(
            result.action,
            request_id=result.request_id,
            success=result.success,
            error=result.error,
            slot_number=result.slot_number,
        )
        if outcome.applied:
            applied += 1
        if outcome.needs_manual_intervention:
            needs_manual += 1

    logger.info(
        "Automation webhook: %d result(s), %d skipped, %d applied",
        len(body.results), skipped, applied,
    )
    background_tasks.add_task(dispatcher.dispatch, events.drain())
    return AutomationWebhookOut(
        processed=len(body.results) - skipped,
        skipped=skipped,
        applied=applied,
        needs_manual_intervention=needs_manual,
    )
