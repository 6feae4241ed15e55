import json
from datetime import timedelta

import pytest

from access_manager.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from access_manager.models.access_request import AccessStatus
from access_manager.models.audit_log import AuditLog
from access_manager.services.events import EscalationRequired, JobFailed, UserActivated, UserExpired
from access_manager.services.reconciliation import ReconciliationEngine


@pytest.fixture
def reconciler(store, policy, events):
    return ReconciliationEngine(store, policy, events)


def audit_rows(db, action=None):
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    return query.order_by(AuditLog.id).all()


class TestActivate:
    def test_sets_window_and_emits_event(self, reconciler, seed, clock, events, db):
        request = seed.pending("ana@example.com")

        reconciler.activate_user(request.id, 2)

        assert request.status == AccessStatus.active
        assert request.activated_at == clock()
        assert request.expires_at == clock() + timedelta(days=7)
        assert request.slot_number == 2
        (event,) = events.drain()
        assert isinstance(event, UserActivated)
        assert event.user.email == "ana@example.com"
        assert event.slot_number == 2
        (entry,) = audit_rows(db, "user_activated")
        assert json.loads(entry.details_json)["slotNumber"] == 2

    def test_unknown_id(self, reconciler):
        with pytest.raises(NotFoundError):
            reconciler.activate_user(999, 1)

    def test_only_pending_can_be_activated_by_automation(self, reconciler, seed):
        request = seed.status("ana@example.com", AccessStatus.expired)
        with pytest.raises(InvalidTransitionError):
            reconciler.activate_user(request.id, 1)


class TestExpire:
    def test_marks_expired_and_notifies_once(self, reconciler, seed, clock, events):
        request = seed.expired_window("ana@example.com")

        reconciler.mark_user_expired(request.id)

        assert request.status == AccessStatus.expired
        assert request.removed_at == clock()
        assert request.expiry_notification_sent is True
        assert [type(e) for e in events.drain()] == [UserExpired]

    def test_no_second_notification_when_already_sent(self, reconciler, seed, store, events):
        request = seed.expired_window("ana@example.com")
        request.expiry_notification_sent = True
        store.db.commit()

        reconciler.mark_user_expired(request.id)

        assert len(events) == 0

    def test_expire_requires_active(self, reconciler, seed):
        request = seed.pending("ana@example.com")
        with pytest.raises(InvalidTransitionError):
            reconciler.mark_user_expired(request.id)


class TestRemove:
    def test_admin_removal(self, reconciler, seed, db):
        request = seed.active("ana@example.com")

        reconciler.mark_user_removed(request.id, reason="admin")

        assert request.status == AccessStatus.removed
        (entry,) = audit_rows(db, "user_removed")
        assert entry.performed_by == "admin"
        assert json.loads(entry.details_json) == {"reason": "admin"}

    def test_pending_cannot_be_force_removed(self, reconciler, seed):
        request = seed.pending("ana@example.com")
        with pytest.raises(InvalidTransitionError):
            reconciler.mark_user_removed(request.id, reason="admin")


class TestAutomationFailures:
    def test_failures_below_threshold(self, reconciler, seed, events, db):
        request = seed.pending("ana@example.com")

        assert reconciler.mark_automation_failed(request.id, "Timeout") is False
        assert reconciler.mark_automation_failed(request.id, "Selector not found") is False

        assert request.status == AccessStatus.pending
        assert request.automation_attempts == 2
        assert request.last_automation_error == "Selector not found"
        assert len(audit_rows(db, "automation_failed")) == 2
        assert len(events) == 0

    def test_third_failure_escalates(self, reconciler, seed, events, db):
        request = seed.pending("ana@example.com")
        reconciler.mark_automation_failed(request.id, "e1")
        reconciler.mark_automation_failed(request.id, "e2")

        assert reconciler.mark_automation_failed(request.id, "e3") is True

        assert request.status == AccessStatus.failed
        assert request.automation_attempts == 3
        (entry,) = audit_rows(db, "automation_max_failures")
        assert entry.success is False
        (event,) = events.drain()
        assert isinstance(event, EscalationRequired)
        assert event.attempts == 3
        assert event.last_error == "e3"

    def test_failed_request_leaves_the_queue(self, reconciler, seed, store):
        request = seed.pending("ana@example.com")
        for i in range(3):
            reconciler.mark_automation_failed(request.id, f"e{i}")
        assert store.oldest_pending(10) == []

    def test_failing_removal_stays_active_but_escalates(self, reconciler, seed, events):
        request = seed.expired_window("ana@example.com")
        for i in range(3):
            needs_manual = reconciler.mark_automation_failed(request.id, f"e{i}")

        assert needs_manual is True
        assert request.status == AccessStatus.active
        assert any(isinstance(e, EscalationRequired) for e in events.drain())

    def test_repeated_removal_failures_escalate_once(self, reconciler, seed, events, db):
        request = seed.expired_window("ana@example.com")

        flags = [reconciler.mark_automation_failed(request.id, f"e{i}") for i in range(6)]

        assert flags == [False, False, True, True, True, True]
        assert request.status == AccessStatus.active
        assert request.automation_attempts == 6
        assert len([e for e in events.drain() if isinstance(e, EscalationRequired)]) == 1
        assert len(audit_rows(db, "automation_max_failures")) == 1
        assert len(audit_rows(db, "automation_failed")) == 6

    def test_stale_failure_on_failed_request_does_not_realert(self, reconciler, seed, events, db):
        request = seed.pending("ana@example.com")
        for i in range(3):
            reconciler.mark_automation_failed(request.id, f"e{i}")
        events.drain()

        assert reconciler.mark_automation_failed(request.id, "late result") is True

        assert request.status == AccessStatus.failed
        assert events.drain() == []
        assert len(audit_rows(db, "automation_max_failures")) == 1

    def test_lowered_threshold_still_escalates_pending(self, store, seed, events, policy):
        from dataclasses import replace

        request = seed.pending("ana@example.com")
        request.automation_attempts = 2
        store.db.commit()
        reconciler = ReconciliationEngine(store, replace(policy, max_automation_attempts=2), events)

        assert reconciler.mark_automation_failed(request.id, "Timeout") is True

        assert request.status == AccessStatus.failed
        assert len([e for e in events.drain() if isinstance(e, EscalationRequired)]) == 1


class TestManual:
    def test_manual_add_from_failed(self, reconciler, seed, store, db):
        seed.active("other@example.com")
        request = seed.status("ana@example.com", AccessStatus.failed)

        reconciler.mark_manually_processed(request.id, "added")

        assert request.status == AccessStatus.active
        assert request.slot_number == 2
        (entry,) = audit_rows(db, "manual_intervention")
        assert entry.performed_by == "admin"
        details = json.loads(entry.details_json)
        assert details["action"] == "added"
        assert details["previousStatus"] == "failed"

    def test_manual_remove_from_failed(self, reconciler, seed):
        request = seed.status("ana@example.com", AccessStatus.failed)
        reconciler.mark_manually_processed(request.id, "removed")
        assert request.status == AccessStatus.removed

    def test_unknown_action(self, reconciler, seed):
        request = seed.pending("ana@example.com")
        with pytest.raises(ValidationError):
            reconciler.mark_manually_processed(request.id, "promoted")

    def test_manual_add_of_active_is_rejected(self, reconciler, seed):
        request = seed.active("ana@example.com")
        with pytest.raises(InvalidTransitionError):
            reconciler.mark_manually_processed(request.id, "added")


class TestApplyResult:
    def test_successful_add(self, reconciler, seed):
        request = seed.pending("ana@example.com")
        outcome = reconciler.apply_result("added", request.id, success=True, slot_number=1)
        assert outcome.applied
        assert request.status == AccessStatus.active

    def test_successful_remove_expires(self, reconciler, seed):
        request = seed.expired_window("ana@example.com")
        outcome = reconciler.apply_result("removed", request.id, success=True)
        assert outcome.applied
        assert request.status == AccessStatus.expired

    def test_failed_add_counts_attempt(self, reconciler, seed):
        request = seed.pending("ana@example.com")
        outcome = reconciler.apply_result("added", request.id, success=False, error="Timeout")
        assert outcome.applied
        assert not outcome.needs_manual_intervention
        assert request.automation_attempts == 1

    def test_job_error_is_audited_and_alerted(self, reconciler, events, db):
        outcome = reconciler.apply_result("job_error", error="Browser crashed")
        assert outcome.applied
        (entry,) = audit_rows(db, "job_error")
        assert entry.error_message == "Browser crashed"
        assert [type(e) for e in events.drain()] == [JobFailed]

    def test_unknown_request_is_rejected_not_raised(self, reconciler, db):
        outcome = reconciler.apply_result("added", 999, success=True)
        assert not outcome.applied
        (entry,) = audit_rows(db, "reconciliation_rejected")
        assert entry.request_id is None

    def test_stale_result_is_rejected(self, reconciler, seed, db):
        request = seed.status("ana@example.com", AccessStatus.removed)
        outcome = reconciler.apply_result("added", request.id, success=True)
        assert not outcome.applied
        assert request.status == AccessStatus.removed
        (entry,) = audit_rows(db, "reconciliation_rejected")
        assert entry.request_id == request.id

    def test_unknown_action_is_rejected(self, reconciler, seed):
        request = seed.pending("ana@example.com")
        assert not reconciler.apply_result("promoted", request.id, success=True).applied
