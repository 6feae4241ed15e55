from datetime import timedelta

import pytest

from access_manager.executor.access_job import AccessJob, send_expiry_warnings
from access_manager.models.access_request import AccessRequest, AccessStatus
from access_manager.models.audit_log import AuditLog

from tests.mocks.fakes import FakeActor, FakeLock


@pytest.fixture
def make_job(session_factory, clock, policy, notifier):
    def _make(actor=None, lock=None, run_policy=None):
        return AccessJob(
            session_factory=session_factory,
            actor=actor or FakeActor(),
            notifier=notifier,
            lock=lock or FakeLock(),
            clock=clock,
            operation_delay=0,
            policy_loader=lambda db: run_policy or policy,
        )

    return _make


def statuses(session_factory):
    session = session_factory()
    try:
        return {r.email: r for r in session.query(AccessRequest).all()}
    finally:
        session.close()


class TestAccessJob:
    @pytest.mark.asyncio
    async def test_expires_then_promotes_into_freed_slots(self, make_job, seed, session_factory, notifier):
        seed.expired_window("old1@example.com")
        seed.expired_window("old2@example.com")
        seed.active("current@example.com")
        seed.pending("next1@example.com")
        seed.pending("next2@example.com")
        seed.pending("next3@example.com")
        actor = FakeActor()

        report = await make_job(actor=actor).run()

        assert report.exit_code == 0
        assert actor.calls == [
            ("remove", "old1@example.com"),
            ("remove", "old2@example.com"),
            ("add", "next1@example.com"),
            ("add", "next2@example.com"),
        ]
        rows = statuses(session_factory)
        assert rows["old1@example.com"].status == AccessStatus.expired
        assert rows["next1@example.com"].status == AccessStatus.active
        assert rows["next2@example.com"].status == AccessStatus.active
        assert rows["next3@example.com"].status == AccessStatus.pending
        assert [r.slot_number for r in report.results if r.action == "added"] == [2, 3]
        assert sorted(notifier.kinds()) == ["access_expired"] * 2 + ["access_granted"] * 2

    @pytest.mark.asyncio
    async def test_active_count_never_exceeds_max_slots(self, make_job, seed, session_factory):
        seed.active("a@example.com")
        seed.active("b@example.com")
        seed.expired_window("c@example.com")
        for i in range(5):
            seed.pending(f"p{i}@example.com")
        actor = FakeActor(fail_remove={"c@example.com": "Timeout"})

        report = await make_job(actor=actor).run()

        active = [r for r in statuses(session_factory).values() if r.status == AccessStatus.active]
        assert len(active) == 3
        assert ("add", "p0@example.com") not in actor.calls
        assert report.exit_code == 1

    @pytest.mark.asyncio
    async def test_failed_add_does_not_block_others(self, make_job, seed, session_factory):
        seed.pending("bad@example.com")
        seed.pending("good@example.com")
        actor = FakeActor(fail_add={"bad@example.com": "Selector not found"})

        report = await make_job(actor=actor).run()

        rows = statuses(session_factory)
        assert rows["bad@example.com"].status == AccessStatus.pending
        assert rows["bad@example.com"].automation_attempts == 1
        assert rows["good@example.com"].status == AccessStatus.active
        failed = report.failures
        assert [(r.email, r.error) for r in failed] == [("bad@example.com", "Selector not found")]
        assert report.exit_code == 1

    @pytest.mark.asyncio
    async def test_third_failed_run_escalates(self, make_job, seed, session_factory, notifier):
        seed.pending("bad@example.com")
        actor = FakeActor(fail_add={"bad@example.com": "Timeout"})

        for _ in range(3):
            report = await make_job(actor=actor).run()

        assert report.results[-1].needs_manual_intervention is True
        assert statuses(session_factory)["bad@example.com"].status == AccessStatus.failed
        assert "admin" in notifier.kinds()

        # The failed request is out of the queue on the next run.
        actor.calls.clear()
        await make_job(actor=actor).run()
        assert actor.calls == []

    @pytest.mark.asyncio
    async def test_abort_records_job_error_and_cleans_up(self, make_job, seed, session_factory, notifier):
        seed.pending("next@example.com")
        actor = FakeActor(fail_open="Browser failed to launch")
        lock = FakeLock()

        report = await make_job(actor=actor, lock=lock).run()

        (result,) = report.results
        assert result.action == "job_error"
        assert result.error == "Browser failed to launch"
        assert report.exit_code == 1
        assert actor.closed == 0
        assert lock.released == 1
        assert notifier.kinds() == ["admin"]
        session = session_factory()
        try:
            assert session.query(AuditLog).filter(AuditLog.action == "job_error").count() == 1
        finally:
            session.close()

    @pytest.mark.asyncio
    async def test_actor_closed_exactly_once(self, make_job, seed):
        seed.pending("next@example.com")
        actor = FakeActor()
        await make_job(actor=actor).run()
        assert (actor.opened, actor.closed) == (1, 1)

    @pytest.mark.asyncio
    async def test_held_lock_skips_the_run(self, make_job, seed):
        seed.pending("next@example.com")
        actor = FakeActor()

        report = await make_job(actor=actor, lock=FakeLock(held=True)).run()

        assert report.skipped is True
        assert report.exit_code == 0
        assert actor.opened == 0
        assert actor.calls == []

    @pytest.mark.asyncio
    async def test_unreachable_lock_aborts(self, make_job, seed):
        seed.pending("next@example.com")
        actor = FakeActor()

        report = await make_job(actor=actor, lock=FakeLock(unreachable=True)).run()

        assert report.skipped is False
        assert [r.action for r in report.results] == ["job_error"]
        assert actor.opened == 0

    @pytest.mark.asyncio
    async def test_disabled_automation_skips(self, make_job, seed, policy):
        from dataclasses import replace

        seed.pending("next@example.com")
        actor = FakeActor()
        lock = FakeLock()

        report = await make_job(actor=actor, lock=lock, run_policy=replace(policy, automation_enabled=False)).run()

        assert report.skipped is True
        assert actor.calls == []
        assert lock.released == 1

    @pytest.mark.asyncio
    async def test_report_entries_are_marked_reconciled(self, make_job, seed):
        seed.pending("next@example.com")
        report = await make_job().run()
        (payload,) = [r.to_payload() for r in report.results]
        assert payload["reconciled"] is True
        assert payload["requestId"] is not None
        assert payload["slotNumber"] == 1


class TestExpiryWarnings:
    @pytest.mark.asyncio
    async def test_sends_each_warning_once(self, seed, session_factory, clock, notifier):
        seed.active("soon@example.com", expires_in=timedelta(hours=6))
        seed.active("later@example.com", expires_in=timedelta(days=4))

        assert await send_expiry_warnings(session_factory, notifier=notifier, clock=clock) == 1
        assert await send_expiry_warnings(session_factory, notifier=notifier, clock=clock) == 0
        assert notifier.kinds() == ["expiry_warning"]
