"""Shared FastAPI dependencies built from app state."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from access_manager.db.session import get_db
from access_manager.services.notification_service import NotificationDispatcher
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy, SettingsService


def get_store(request: Request, db: Session = Depends(get_db)) -> RequestStore:
    return RequestStore(db, clock=request.app.state.clock)


def get_policy(db: Session = Depends(get_db)) -> AccessPolicy:
    return SettingsService(db).load_policy()


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return NotificationDispatcher(request.app.state.notifier)
