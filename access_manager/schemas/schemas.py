"""Pydantic schemas for API request/response serialization.

JSON bodies use camelCase field names; Python code uses snake_case.
"""

import json
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ---- Public access ----
class AccessRequestIn(CamelModel):
    email: Optional[str] = None
    full_name: Optional[str] = None

class SubmissionOut(CamelModel):
    success: bool = True
    message: str
    request_id: int
    email: str
    status: str
    queue_position: Optional[int] = None
    estimated_wait: Optional[str] = None
    expires_at: Optional[datetime] = None
    days_remaining: Optional[int] = None

class AccessStatusOut(CamelModel):
    status: str
    queue_position: Optional[int] = None
    estimated_wait: Optional[str] = None
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    slot_number: Optional[int] = None
    message: Optional[str] = None


# ---- Admin ----
class AdminLoginRequest(BaseModel):
    password: str = Field(..., min_length=1)

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class AdminRequestView(CamelModel):
    """Admin projection of one access request."""
    id: int
    email: str
    full_name: str
    status: str
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    slot_number: Optional[int] = None
    automation_attempts: int = 0
    last_automation_error: Optional[str] = None
    queue_position: Optional[int] = None

class QueueSummary(CamelModel):
    total_slots: int
    active_slots: int
    available_slots: int
    pending_requests: int
    expiring_today: int
    expiring_tomorrow: int

class QueueStatusOut(CamelModel):
    summary: QueueSummary
    active: List[AdminRequestView] = []
    pending: List[AdminRequestView] = []
    recently_expired: List[AdminRequestView] = []

class ManualActionRequest(CamelModel):
    action: str

class AdminActionOut(CamelModel):
    success: bool = True
    message: str
    request: AdminRequestView

class AuditLogOut(CamelModel):
    id: int
    timestamp: datetime
    action: str
    request_id: Optional[int] = None
    details: Optional[Dict[str, Any]] = Field(default=None, validation_alias="details_json")
    performed_by: str
    success: bool
    error_message: Optional[str] = None

    @field_validator("details", mode="before")
    @classmethod
    def _parse_details(cls, value):
        if isinstance(value, str):
            return json.loads(value)
        return value

class AuditPage(CamelModel):
    logs: List[AuditLogOut]
    total: int
    page: int
    page_size: int

class SettingsOut(CamelModel):
    max_slots: int
    access_duration_days: int
    expiry_warning_hours: int
    automation_enabled: bool

class SettingsUpdate(CamelModel):
    class Config:
        extra = "forbid"

    max_slots: Optional[int] = None
    access_duration_days: Optional[int] = None
    expiry_warning_hours: Optional[int] = None
    automation_enabled: Optional[bool] = None


# ---- Automation webhook ----
class AutomationResultIn(CamelModel):
    action: str
    request_id: Optional[int] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    slot_number: Optional[int] = None
    success: bool = False
    error: Optional[str] = None
    reconciled: bool = False

class AutomationWebhookIn(BaseModel):
    results: List[AutomationResultIn] = []

class AutomationWebhookOut(CamelModel):
    processed: int
    skipped: int
    applied: int
    needs_manual_intervention: int
