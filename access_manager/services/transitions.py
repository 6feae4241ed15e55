"""Access request state machine.

Every status change goes through ``ensure_transition``; anything not listed
in ``TRANSITIONS`` is rejected.
"""

import enum
from typing import Dict, FrozenSet, Optional, Tuple

from access_manager.core.exceptions import InvalidTransitionError
from access_manager.models.access_request import AccessStatus


class Trigger(str, enum.Enum):
    submission = "submission"
    resubmission = "resubmission"
    automation = "automation"
    manual = "manual"
    admin = "admin"
    escalation = "escalation"


S = AccessStatus
T = Trigger

TRANSITIONS: Dict[Tuple[Optional[AccessStatus], AccessStatus], FrozenSet[Trigger]] = {
    (None, S.pending): frozenset({T.submission}),
    (S.pending, S.active): frozenset({T.automation, T.manual}),
    (S.failed, S.active): frozenset({T.manual}),
    (S.active, S.expired): frozenset({T.automation}),
    (S.active, S.removed): frozenset({T.manual, T.admin}),
    (S.failed, S.removed): frozenset({T.manual}),
    (S.pending, S.failed): frozenset({T.escalation}),
    (S.expired, S.pending): frozenset({T.resubmission}),
    (S.removed, S.pending): frozenset({T.resubmission}),
    (S.failed, S.pending): frozenset({T.resubmission}),
}


def can_transition(current: Optional[AccessStatus], target: AccessStatus, trigger: Trigger) -> bool:
    return trigger in TRANSITIONS.get((current, target), frozenset())


def ensure_transition(current: Optional[AccessStatus], target: AccessStatus, trigger: Trigger) -> None:
    """Raise ``InvalidTransitionError`` unless the transition is allowed."""
    if not can_transition(current, target, trigger):
        source = current.value if current else "new"
        raise InvalidTransitionError(
            f"Cannot move request from {source} to {target.value} via {trigger.value}",
            data={"from": source, "to": target.value, "trigger": trigger.value},
        )
