"""
Tests for the session lifecycle, authorization and two-step termination
"""

import pytest

from exam_integrity.models.events import EventType
from exam_integrity.models.session import SessionState
from exam_integrity.utils.exceptions import ConfirmationExpired, InvalidTransition, NotAuthorized


class TestLifecycle:
    """State machine transitions"""

    @pytest.mark.asyncio
    async def test_admit_activates_session(self, engine, start_session):
        session = await start_session()
        assert session.state == SessionState.ACTIVE
        assert session.audit_trail[-1].action == "admit"

    @pytest.mark.asyncio
    async def test_pause_resume_twice_keeps_ordered_audit(self, engine, start_session, proctor):
        session = await start_session()

        await engine.pause(proctor, session.id, "noise complaint")
        await engine.resume(proctor, session.id)
        await engine.pause(proctor, session.id)
        await engine.resume(proctor, session.id)

        trail = engine.audit_trail(proctor, session.id)
        assert [e.action for e in trail] == ["admit", "pause", "resume", "pause", "resume"]
        assert [e.sequence for e in trail] == [1, 2, 3, 4, 5]
        assert all(e.actor_id == proctor.id for e in trail[1:])
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["resume", "admit"])
    async def test_illegal_transition_leaves_state(self, engine, start_session, admin, command):
        session = await start_session()
        version = session.version

        with pytest.raises(InvalidTransition):
            await getattr(engine, command)(admin, session.id)

        assert session.state == SessionState.ACTIVE
        assert session.version == version

    @pytest.mark.asyncio
    async def test_nothing_leaves_submitted(self, engine, start_session, admin, student):
        session = await start_session()
        await engine.submit(student, session.id)

        with pytest.raises(InvalidTransition):
            await engine.pause(admin, session.id)
        with pytest.raises(InvalidTransition):
            await engine.submit(student, session.id)
        assert session.state == SessionState.SUBMITTED

    @pytest.mark.asyncio
    async def test_paused_session_cannot_be_submitted(self, engine, start_session, admin, student):
        session = await start_session()
        await engine.pause(admin, session.id)

        with pytest.raises(InvalidTransition):
            await engine.submit(student, session.id)

    @pytest.mark.asyncio
    async def test_unknown_session_command(self, engine, admin):
        with pytest.raises(InvalidTransition):
            await engine.pause(admin, "missing")

    @pytest.mark.asyncio
    async def test_elapsed_time_only_advances_while_active(self, engine, start_session, admin, clock):
        session = await start_session(duration=600)
        clock.advance(100)
        await engine.pause(admin, session.id)
        clock.advance(1000)
        assert session.elapsed_seconds(clock()) == pytest.approx(100)

        await engine.resume(admin, session.id)
        clock.advance(50)
        assert session.elapsed_seconds(clock()) == pytest.approx(150)

    @pytest.mark.asyncio
    async def test_time_expiry_auto_submits(self, engine, start_session, clock):
        session = await start_session(duration=60)
        clock.advance(61)
        await engine.tick()

        assert session.state == SessionState.SUBMITTED
        assert session.audit_trail[-1].action == "time-expired"
        assert session.audit_trail[-1].actor_id == "system"


class TestAuthorization:
    """Role checks on commands"""

    @pytest.mark.asyncio
    async def test_unassigned_proctor_cannot_pause(self, engine, start_session, other_proctor):
        session = await start_session()
        with pytest.raises(NotAuthorized):
            await engine.pause(other_proctor, session.id)
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_assigned_proctor_gains_access(self, engine, start_session, admin, other_proctor):
        session = await start_session()
        await engine.assign_proctor(admin, session.id, other_proctor.id)
        await engine.pause(other_proctor, session.id)
        assert session.state == SessionState.PAUSED

    @pytest.mark.asyncio
    async def test_student_cannot_pause(self, engine, start_session, student):
        session = await start_session()
        with pytest.raises(NotAuthorized):
            await engine.pause(student, session.id)

    @pytest.mark.asyncio
    async def test_only_owner_submits(self, engine, start_session, proctor):
        session = await start_session(student_id="someone-else")
        with pytest.raises(NotAuthorized):
            await engine.submit(proctor, session.id)

    @pytest.mark.asyncio
    async def test_proctor_cannot_admit(self, engine, admin, proctor):
        session = engine.create_session(admin, "student-1", "exam-1", 600, proctor_ids=[proctor.id])
        with pytest.raises(NotAuthorized):
            await engine.admit(proctor, session.id)


class TestWarnings:
    """Warnings are audited and reach the student"""

    @pytest.mark.asyncio
    async def test_warning_audited_without_state_change(self, engine, start_session, proctor, student):
        session = await start_session()
        cursor = engine.subscribe(student)

        entry = await engine.warn(proctor, session.id, "Please keep your face in view")

        assert entry.action == "warn"
        assert entry.from_state == entry.to_state == SessionState.ACTIVE
        assert session.warning_count == 1

        result = engine.poll(student, cursor.subscription_id, cursor.offset)
        assert [e.type for e in result.events] == [EventType.SESSION_WARNING]
        assert result.events[0].payload["message"] == "Please keep your face in view"

    @pytest.mark.asyncio
    async def test_warn_terminal_session_rejected(self, engine, start_session, proctor, student):
        session = await start_session()
        await engine.submit(student, session.id)
        with pytest.raises(InvalidTransition):
            await engine.warn(proctor, session.id, "too late")


class TestTwoStepTermination:
    """request_termination / confirm_termination"""

    @pytest.mark.asyncio
    async def test_request_then_confirm(self, engine, start_session, proctor):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id, "second device")

        assert session.state == SessionState.ACTIVE

        await engine.confirm_termination(proctor, handle.handle)
        assert session.state == SessionState.TERMINATED
        assert session.end_reason == "second device"

    @pytest.mark.asyncio
    async def test_submit_before_confirm_invalidates_handle(self, engine, start_session, proctor, student):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id, "second device")

        await engine.submit(student, session.id)

        with pytest.raises(InvalidTransition):
            await engine.confirm_termination(proctor, handle.handle)
        assert session.state == SessionState.SUBMITTED

    @pytest.mark.asyncio
    async def test_pause_invalidates_handle(self, engine, start_session, proctor):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)
        await engine.pause(proctor, session.id)

        with pytest.raises(InvalidTransition):
            await engine.confirm_termination(proctor, handle.handle)
        assert session.state == SessionState.PAUSED

    @pytest.mark.asyncio
    async def test_expired_confirmation(self, engine, start_session, proctor, clock):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)
        clock.advance(61)

        with pytest.raises(ConfirmationExpired):
            await engine.confirm_termination(proctor, handle.handle)
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_handle_is_single_use(self, engine, start_session, proctor):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)
        await engine.confirm_termination(proctor, handle.handle)

        with pytest.raises(InvalidTransition):
            await engine.confirm_termination(proctor, handle.handle)

    @pytest.mark.asyncio
    async def test_unknown_handle(self, engine, proctor):
        with pytest.raises(InvalidTransition):
            await engine.confirm_termination(proctor, "no-such-handle")

    @pytest.mark.asyncio
    async def test_unassigned_proctor_cannot_confirm(self, engine, start_session, proctor, other_proctor):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)

        with pytest.raises(NotAuthorized):
            await engine.confirm_termination(other_proctor, handle.handle)
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_expired_handle_still_expired_after_purge(self, engine, start_session, proctor, clock):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)
        assert engine.control.pending_handles(session.id) == [handle]

        clock.advance(125)
        await engine.tick()
        assert engine.control.pending_handles(session.id) == []

        with pytest.raises(ConfirmationExpired):
            await engine.confirm_termination(proctor, handle.handle)
        assert session.state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_used_handle_rejected_after_purge(self, engine, start_session, proctor, clock):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)
        await engine.confirm_termination(proctor, handle.handle)

        assert engine.control.purge_handles(clock()) == 1
        with pytest.raises(InvalidTransition):
            await engine.confirm_termination(proctor, handle.handle)

    @pytest.mark.asyncio
    async def test_purged_handle_still_checks_authorization(
        self, engine, start_session, proctor, other_proctor, clock
    ):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)
        clock.advance(125)
        engine.control.purge_handles(clock())

        with pytest.raises(NotAuthorized):
            await engine.confirm_termination(other_proctor, handle.handle)

    @pytest.mark.asyncio
    async def test_archival_forgets_handles(self, engine, start_session, proctor, student, clock):
        session = await start_session()
        handle = await engine.request_termination(proctor, session.id)
        await engine.submit(student, session.id)

        clock.advance(engine.config.SESSION_RETENTION_MINUTES * 60)
        await engine.tick()

        assert engine.registry.is_archived(session.id)
        with pytest.raises(InvalidTransition, match="Unknown"):
            await engine.confirm_termination(proctor, handle.handle)
