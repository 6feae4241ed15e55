"""Admin API router — login, queue dashboard, manual actions, audit and settings."""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from access_manager.api.deps import get_dispatcher, get_policy, get_store
from access_manager.core.config import settings
from access_manager.core.exceptions import AuthorizationError
from access_manager.core.rate_limiter import limiter
from access_manager.core.security import create_admin_token, require_admin, verify_password
from access_manager.db.session import get_db
from access_manager.schemas.schemas import (
    AdminActionOut,
    AdminLoginRequest,
    AuditLogOut,
    AuditPage,
    ManualActionRequest,
    QueueStatusOut,
    SettingsOut,
    SettingsUpdate,
    TokenResponse,
)
from access_manager.services.audit_service import audit_service
from access_manager.services.events import EventQueue
from access_manager.services.notification_service import NotificationDispatcher
from access_manager.services.queue_engine import QueueEngine, to_admin_view
from access_manager.services.reconciliation import ACTION_ADDED, ReconciliationEngine
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy, SettingsService
from access_manager.services.transitions import Trigger

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/login", response_model=TokenResponse)
@limiter.limit(settings.RATE_LIMIT_LOGIN)
async def login(
    request: Request,
    body: AdminLoginRequest,
    store: RequestStore = Depends(get_store),
):
    """Exchange the admin password for a session token."""
    if not verify_password(body.password, settings.ADMIN_PASSWORD_HASH):
        store.audit("admin_login", details={"client": request.client.host if request.client else None},
                    performed_by="admin", success=False, error_message="Invalid password")
        raise AuthorizationError("Invalid password")
    store.audit("admin_login", performed_by="admin")
    return TokenResponse(access_token=create_admin_token())


@router.get("/queue", response_model=QueueStatusOut)
async def get_queue(
    store: RequestStore = Depends(get_store),
    policy: AccessPolicy = Depends(get_policy),
    admin: dict = Depends(require_admin),
):
    """Capacity summary plus active, pending and recently ended requests."""
    return QueueEngine(store, policy).get_queue_status()


@router.post("/manual/{request_id}", response_model=AdminActionOut)
async def manual_action(
    request_id: int,
    body: ManualActionRequest,
    background_tasks: BackgroundTasks,
    store: RequestStore = Depends(get_store),
    policy: AccessPolicy = Depends(get_policy),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    admin: dict = Depends(require_admin),
):
    """Record that an admin added or removed the user on the dashboard by hand."""
    events = EventQueue()
    reconciler = ReconciliationEngine(store, policy, events)
    access_request = reconciler.mark_manually_processed(request_id, body.action, performed_by=admin["sub"])
    background_tasks.add_task(dispatcher.dispatch, events.drain())
    verb = "activated" if body.action == ACTION_ADDED else "removed"
    return AdminActionOut(
        message=f"Request {request_id} manually {verb}",
        request=to_admin_view(access_request, store.clock()),
    )


@router.post("/remove/{request_id}", response_model=AdminActionOut)
async def force_remove(
    request_id: int,
    store: RequestStore = Depends(get_store),
    policy: AccessPolicy = Depends(get_policy),
    admin: dict = Depends(require_admin),
):
    """Force an active user out of their slot."""
    reconciler = ReconciliationEngine(store, policy)
    access_request = reconciler.mark_user_removed(
        request_id, reason="admin", trigger=Trigger.admin, performed_by=admin["sub"]
    )
    return AdminActionOut(
        message=f"Request {request_id} removed",
        request=to_admin_view(access_request, store.clock()),
    )


@router.get("/audit", response_model=AuditPage)
async def list_audit_logs(
    action: Optional[str] = None,
    request_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Audit entries, newest first."""
    result = audit_service.query_logs(db, action=action, request_id=request_id, page=page, page_size=page_size)
    result["logs"] = [AuditLogOut.model_validate(entry) for entry in result["logs"]]
    return AuditPage(**result)


@router.get("/settings", response_model=SettingsOut)
async def get_settings(db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    return SettingsService(db).as_dict()


@router.put("/settings", response_model=SettingsOut)
async def update_settings(
    body: SettingsUpdate,
    store: RequestStore = Depends(get_store),
    admin: dict = Depends(require_admin),
):
    """Update runtime policy keys; unknown keys are rejected."""
    changes = body.model_dump(exclude_unset=True)
    updated = SettingsService(store.db).update(changes)
    store.audit("settings_updated", details=changes, performed_by=admin["sub"])
    return updated
