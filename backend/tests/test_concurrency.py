"""
Concurrency tests: commands, scheduler ticks, workers and reviews racing on
the same sessions under asyncio.gather
"""

import asyncio
import random
import pytest
from datetime import timedelta

from exam_integrity.models.events import EventType
from exam_integrity.models.incident import EscalationAction, IncidentStatus
from exam_integrity.models.session import SessionState, SYSTEM_ACTOR
from exam_integrity.utils.exceptions import StateConflict

CHANNELS = ["video", "audio", "screen", "navigation"]


def read_log(engine, actor, cursor):
    return engine.poll(actor, cursor.subscription_id, cursor.offset, limit=10000).events


def assert_entity_order(events):
    """Every entity's sequence strictly increases in log order"""
    last = {}
    for event in events:
        assert event.sequence > last.get(event.entity_id, 0), (
            f"{event.type} for {event.entity_id} went back to sequence {event.sequence}"
        )
        last[event.entity_id] = event.sequence


def types_for(events, session_id):
    return [e.type for e in events if e.session_id == session_id]


class TestCommandRaces:
    """Session commands against batch processing of the same session"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("submit_first", [True, False])
    async def test_submit_races_batch(self, engine, start_session, detector, student, admin, clock, submit_first):
        session = await start_session()
        cursor = engine.subscribe(admin)
        t0 = clock()
        for offset, channel in enumerate(["video", "audio", "navigation"]):
            engine.submit_signal(detector, session.id, channel, 0.7, t0 + timedelta(seconds=offset))

        clock.advance(10)
        batch = engine.ingress.release(session.id, clock())
        assert len(batch) == 3

        submit = engine.submit(student, session.id)
        process = engine.process_batch(session.id, batch)
        await asyncio.gather(*([submit, process] if submit_first else [process, submit]))

        assert session.state == SessionState.SUBMITTED
        events = read_log(engine, admin, cursor)
        assert_entity_order(events)

        types = types_for(events, session.id)
        submitted_at = types.index(EventType.SESSION_SUBMITTED)
        after_submit = types[submitted_at + 1:]
        assert EventType.INCIDENT_CREATED not in after_submit
        assert EventType.ESCALATION_RECOMMEND_TERMINATE not in after_submit

        incidents = engine.incidents_for_session(admin, session.id)
        if submit_first:
            assert incidents == []
        else:
            assert len(incidents) == 3
            assert EventType.ESCALATION_RECOMMEND_TERMINATE in types[:submitted_at]

        await engine.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("resume_first", [True, False])
    async def test_resume_races_buffered_signals(
        self, engine, start_session, detector, proctor, clock, resume_first
    ):
        session = await start_session()
        cursor = engine.subscribe(proctor)
        engine.submit_signal(detector, session.id, "video", 0.95, clock())
        await engine.pause(proctor, session.id, "restroom break")

        clock.advance(10)

        async def scheduler_pass():
            await engine.tick()
            await engine.drain()

        resume = engine.resume(proctor, session.id)
        await asyncio.gather(*([resume, scheduler_pass()] if resume_first else [scheduler_pass(), resume]))
        await engine.drain()

        assert session.state == SessionState.ACTIVE
        events = read_log(engine, proctor, cursor)
        assert_entity_order(events)

        types = types_for(events, session.id)
        assert types.index(EventType.SESSION_PAUSED) < types.index(EventType.SESSION_RESUMED)
        assert types.count(EventType.INCIDENT_CREATED) == 1
        assert types.count(EventType.ESCALATION_NOTIFY) == 1
        assert types.count(EventType.ESCALATION_RECOMMEND_TERMINATE) == 0

        await engine.stop()

    @pytest.mark.asyncio
    async def test_resolve_races_correlating_signal(self, engine, start_session, detector, proctor, admin, clock):
        session = await start_session()
        cursor = engine.subscribe(admin)
        t0 = clock()
        engine.submit_signal(detector, session.id, "video", 0.7, t0)
        clock.advance(10)
        await engine.tick()
        await engine.drain()
        [incident] = engine.incidents_for_session(admin, session.id)

        engine.submit_signal(detector, session.id, "video", 0.9, clock())
        clock.advance(10)
        await asyncio.gather(
            engine.update_incident_status(proctor, incident.id, IncidentStatus.RESOLVED, "false positive"),
            engine.tick(),
        )
        await engine.drain()

        events = read_log(engine, admin, cursor)
        assert_entity_order(events)
        last = [e for e in events if e.entity_id == incident.id][-1]
        assert last.sequence == incident.version
        assert last.payload["status"] == IncidentStatus.RESOLVED.value

        await engine.stop()


class TestInterleavedProducers:
    """Seeded interleavings of detectors, reviewers, commands and the scheduler"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 7, 42])
    async def test_interleavings_keep_per_session_order(self, engine, start_session, detector, proctor, admin,
                                                        clock, seed):
        rng = random.Random(seed)
        sessions = [await start_session(student_id=f"student-{n}") for n in range(3)]
        cursor = engine.subscribe(admin)

        async def detect(session, channel):
            await asyncio.sleep(0)
            if session.state == SessionState.ACTIVE:
                engine.submit_signal(detector, session.id, channel, rng.uniform(0.5, 1.0), clock())

        async def review(session):
            await asyncio.sleep(0)
            for incident in engine.aggregator.incidents_for(session.id):
                if not incident.is_closed:
                    try:
                        await engine.update_incident_status(proctor, incident.id, IncidentStatus.RESOLVED)
                    except StateConflict:
                        pass  # another reviewer got there first
                    return

        async def toggle(session):
            try:
                if session.state == SessionState.ACTIVE:
                    await engine.pause(proctor, session.id)
                elif session.state == SessionState.PAUSED:
                    await engine.resume(proctor, session.id)
            except StateConflict:
                pass  # lost the race to another command

        async def scheduler_pass():
            clock.advance(rng.choice([1, 3, 6]))
            await engine.tick()
            await engine.drain()

        async def finish(session):
            while session.state != SessionState.SUBMITTED:
                await asyncio.sleep(0)
                try:
                    if session.state == SessionState.PAUSED:
                        await engine.resume(SYSTEM_ACTOR, session.id)
                    await engine.submit(SYSTEM_ACTOR, session.id)
                except StateConflict:
                    pass  # paused again in between

        for round_number in range(4):
            steps = []
            for session in sessions:
                steps += [detect(session, channel) for channel in rng.sample(CHANNELS, 2)]
                steps += [review(session), toggle(session)]
            steps.append(scheduler_pass())
            if round_number == 2:
                steps.append(finish(sessions[2]))
            rng.shuffle(steps)
            await asyncio.gather(*steps)

        clock.advance(30)
        await engine.tick()
        await engine.drain()

        events = read_log(engine, admin, cursor)
        assert_entity_order(events)

        for session in sessions:
            state_events = [e for e in events if e.entity_id == session.id]
            assert state_events[-1].sequence == session.version

            for incident in engine.aggregator.incidents_for(session.id):
                last = [e for e in events if e.entity_id == incident.id][-1]
                assert last.sequence == incident.version
                assert last.payload["status"] == incident.status.value

        finished = sessions[2]
        assert finished.state == SessionState.SUBMITTED
        types = types_for(events, finished.id)
        after_submit = types[types.index(EventType.SESSION_SUBMITTED) + 1:]
        assert EventType.INCIDENT_CREATED not in after_submit
        assert EventType.ESCALATION_RECOMMEND_TERMINATE not in after_submit
        for decision in engine.audit.decisions_for_session(finished.id):
            if decision.action == EscalationAction.RECOMMEND_TERMINATE and decision.applied:
                assert decision.timestamp <= finished.ended_at

        await engine.stop()
