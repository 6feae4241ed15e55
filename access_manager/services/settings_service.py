"""Runtime access policy backed by the system_settings table."""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict

from sqlalchemy.orm import Session

from access_manager.core.config import settings
from access_manager.core.exceptions import ValidationError
from access_manager.db.errors import guarded
from access_manager.models.system_setting import SystemSetting

logger = logging.getLogger("access_manager.settings")

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AccessPolicy:
    max_slots: int = 25
    access_duration_days: int = 7
    expiry_warning_hours: int = 24
    max_automation_attempts: int = 3
    automation_enabled: bool = True

    @classmethod
    def from_settings(cls) -> "AccessPolicy":
        return cls(
            max_slots=settings.MAX_SLOTS,
            access_duration_days=settings.ACCESS_DURATION_DAYS,
            expiry_warning_hours=settings.EXPIRY_WARNING_HOURS,
            max_automation_attempts=settings.MAX_AUTOMATION_ATTEMPTS,
        )


# key -> (policy field, parser, lower bound for ints)
TUNABLE_KEYS = {
    "max_slots": ("max_slots", int, 0),
    "access_duration_days": ("access_duration_days", int, 1),
    "expiry_warning_hours": ("expiry_warning_hours", int, 0),
    "automation_enabled": ("automation_enabled", bool, None),
}


def _parse(key: str, raw: Any) -> Any:
    _, kind, minimum = TUNABLE_KEYS[key]
    if kind is bool:
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUE_VALUES
    value = int(raw)
    if minimum is not None and value < minimum:
        raise ValueError(f"{key} must be >= {minimum}")
    return value


class SettingsService:
    """Reads and writes tunable keys; env settings are the fallback."""

    def __init__(self, db: Session):
        self.db = db

    @guarded()
    def load_policy(self) -> AccessPolicy:
        values = asdict(AccessPolicy.from_settings())
        for row in self.db.query(SystemSetting).all():
            if row.key not in TUNABLE_KEYS:
                continue
            try:
                values[TUNABLE_KEYS[row.key][0]] = _parse(row.key, row.value)
            except ValueError:
                logger.warning("Ignoring malformed system setting %s=%r", row.key, row.value)
        return AccessPolicy(**values)

    def as_dict(self) -> Dict[str, Any]:
        policy = self.load_policy()
        return {key: getattr(policy, field) for key, (field, _, _) in TUNABLE_KEYS.items()}

    @guarded()
    def update(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        parsed = {}
        for key, raw in changes.items():
            if key not in TUNABLE_KEYS:
                raise ValidationError(f"Unknown setting '{key}'")
            try:
                parsed[key] = _parse(key, raw)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid value for {key}: {e}")
        # All keys validate before any row is touched.
        for key, value in parsed.items():
            stored = str(value).lower() if isinstance(value, bool) else str(value)
            row = self.db.get(SystemSetting, key)
            if row:
                row.value = stored
            else:
                self.db.add(SystemSetting(key=key, value=stored))
        self.db.commit()
        return self.as_dict()

    @guarded()
    def seed_defaults(self) -> int:
        """Insert defaults for absent keys; returns how many were added."""
        defaults = AccessPolicy.from_settings()
        added = 0
        for key, (field, _, _) in TUNABLE_KEYS.items():
            if self.db.get(SystemSetting, key) is None:
                value = getattr(defaults, field)
                stored = str(value).lower() if isinstance(value, bool) else str(value)
                self.db.add(SystemSetting(key=key, value=stored))
                added += 1
        self.db.commit()
        return added
