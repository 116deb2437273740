"""
Tests for the escalation policy rules
"""

import pytest
from datetime import datetime, timedelta, timezone

from exam_integrity.models.incident import EscalationAction, Incident, IncidentStatus, Severity
from exam_integrity.models.policy import EscalationPolicy
from exam_integrity.services.escalation import (
    EscalationContext, EscalationPolicyEngine, RULE_NOTIFY_SEVERITY, RULE_RECOMMEND_TERMINATE, RULE_REVIEW_SLA,
    decide, decide_all
)

T0 = datetime(2026, 1, 15, 9, 0, 0, tzinfo=timezone.utc)
POLICY = EscalationPolicy()


def make_incident(incident_id: str, severity: Severity, first_seen: datetime = T0, **kwargs) -> Incident:
    return Incident(
        id=incident_id,
        session_id="session-1",
        exam_id="exam-1",
        channel_group="visual",
        category="face_or_motion",
        severity=severity,
        first_seen=first_seen,
        last_seen=first_seen,
        created_at=first_seen,
        **kwargs,
    )


class TestDecide:
    """Rule precedence"""

    def test_new_low_incident_is_flagged(self):
        incident = make_incident("i1", Severity.LOW)
        action, rule = decide(EscalationContext(incident, created=True, session_incidents=[incident]), POLICY, T0)
        assert action == EscalationAction.FLAG

    def test_high_new_incident_notifies(self):
        incident = make_incident("i1", Severity.HIGH)
        context = EscalationContext(incident, previous_severity=Severity.MEDIUM, session_incidents=[incident])
        action, _ = decide(context, POLICY, T0)
        assert action == EscalationAction.NOTIFY

    def test_notify_fires_once(self):
        incident = make_incident("i1", Severity.HIGH, escalated_actions=["notify"])
        context = EscalationContext(incident, previous_severity=Severity.HIGH, session_incidents=[incident])
        action, _ = decide(context, POLICY, T0)
        assert action == EscalationAction.NONE

    def test_acknowledged_high_incident_does_not_notify(self):
        incident = make_incident("i1", Severity.HIGH, status=IncidentStatus.ACKNOWLEDGED)
        context = EscalationContext(incident, previous_severity=Severity.MEDIUM, session_incidents=[incident])
        action, _ = decide(context, POLICY, T0)
        assert action == EscalationAction.FLAG

    def test_third_medium_incident_recommends_termination(self):
        earlier = [
            make_incident("i1", Severity.MEDIUM, T0 - timedelta(minutes=4)),
            make_incident("i2", Severity.HIGH, T0 - timedelta(minutes=2)),
        ]
        incident = make_incident("i3", Severity.MEDIUM)
        context = EscalationContext(incident, created=True, session_incidents=earlier + [incident])

        action, rule = decide(context, POLICY, T0)
        assert action == EscalationAction.RECOMMEND_TERMINATE
        assert rule == RULE_RECOMMEND_TERMINATE

    def test_old_and_dismissed_incidents_do_not_count(self):
        others = [
            make_incident("i1", Severity.MEDIUM, T0 - timedelta(minutes=11)),
            make_incident("i2", Severity.HIGH, T0 - timedelta(minutes=1), status=IncidentStatus.DISMISSED),
        ]
        incident = make_incident("i3", Severity.MEDIUM)
        context = EscalationContext(incident, created=True, session_incidents=others + [incident])

        action, _ = decide(context, POLICY, T0)
        assert action != EscalationAction.RECOMMEND_TERMINATE

    def test_recommendation_only_when_crossing(self):
        others = [make_incident(f"i{n}", Severity.MEDIUM) for n in range(3)]
        incident = make_incident("i9", Severity.HIGH)
        # Already medium before: no new crossing of the recommend severity
        context = EscalationContext(incident, previous_severity=Severity.MEDIUM, session_incidents=others + [incident])

        action, _ = decide(context, POLICY, T0)
        assert action == EscalationAction.NOTIFY

    def test_review_sla_reminder(self):
        incident = make_incident("i1", Severity.MEDIUM, T0 - timedelta(minutes=6))
        context = EscalationContext(incident, previous_severity=Severity.MEDIUM, session_incidents=[incident])

        action, rule = decide(context, POLICY, T0)
        assert action == EscalationAction.NOTIFY
        assert rule == RULE_REVIEW_SLA

    def test_closed_incidents_never_escalate(self):
        incident = make_incident("i1", Severity.HIGH, status=IncidentStatus.RESOLVED)
        context = EscalationContext(incident, created=True, session_incidents=[incident])
        assert decide(context, POLICY, T0) == (EscalationAction.NONE, "no-change")


class TestPolicyEngine:
    """Per-exam policy tables and decision records"""

    def test_low_flags_are_digested(self):
        engine = EscalationPolicyEngine()
        incident = make_incident("i1", Severity.LOW)
        decision = engine.evaluate(EscalationContext(incident, created=True, session_incidents=[incident]), T0)

        assert decision.action == EscalationAction.FLAG
        assert decision.digest
        assert decision.policy_version == "default-1"

    def test_medium_flags_publish_immediately(self):
        engine = EscalationPolicyEngine()
        incident = make_incident("i1", Severity.MEDIUM)
        decision = engine.evaluate(EscalationContext(incident, created=True, session_incidents=[incident]), T0)

        assert decision.action == EscalationAction.FLAG
        assert not decision.digest

    def test_exam_policy_overrides_default(self):
        engine = EscalationPolicyEngine()
        engine.set_policy("exam-1", EscalationPolicy(version="strict-2", notify_severity=Severity.MEDIUM))
        incident = make_incident("i1", Severity.MEDIUM)

        decision = engine.evaluate(EscalationContext(incident, created=True, session_incidents=[incident]), T0)
        assert decision.action == EscalationAction.NOTIFY
        assert decision.policy_version == "strict-2"

    def test_sla_candidates(self):
        engine = EscalationPolicyEngine()
        stale = make_incident("i1", Severity.MEDIUM, T0 - timedelta(minutes=5))
        fresh = make_incident("i2", Severity.MEDIUM, T0 - timedelta(minutes=1))
        low = make_incident("i3", Severity.LOW, T0 - timedelta(minutes=30))
        reminded = make_incident("i4", Severity.MEDIUM, T0 - timedelta(minutes=9), escalated_actions=["notify", "review-sla"])

        assert engine.sla_candidates([stale, fresh, low, reminded], T0) == [stale]


class TestDecideAll:
    """One change can both recommend termination and notify"""

    def test_high_incident_completing_pattern_gets_both(self):
        earlier = [
            make_incident("i1", Severity.MEDIUM, T0 - timedelta(seconds=2)),
            make_incident("i2", Severity.MEDIUM, T0 - timedelta(seconds=1)),
        ]
        incident = make_incident("i3", Severity.HIGH)
        context = EscalationContext(incident, created=True, session_incidents=earlier + [incident])

        assert decide_all(context, POLICY, T0) == [
            (EscalationAction.RECOMMEND_TERMINATE, RULE_RECOMMEND_TERMINATE),
            (EscalationAction.NOTIFY, RULE_NOTIFY_SEVERITY),
        ]

    def test_medium_incident_completing_pattern_only_recommends(self):
        earlier = [make_incident(f"i{n}", Severity.MEDIUM, T0 - timedelta(seconds=n + 1)) for n in range(2)]
        incident = make_incident("i3", Severity.MEDIUM)
        context = EscalationContext(incident, created=True, session_incidents=earlier + [incident])

        assert decide_all(context, POLICY, T0) == [
            (EscalationAction.RECOMMEND_TERMINATE, RULE_RECOMMEND_TERMINATE),
        ]

    def test_already_notified_incident_only_recommends(self):
        earlier = [make_incident(f"i{n}", Severity.MEDIUM, T0 - timedelta(seconds=n + 1)) for n in range(2)]
        incident = make_incident("i3", Severity.HIGH, escalated_actions=["notify"])
        context = EscalationContext(incident, created=True, session_incidents=earlier + [incident])

        assert [action for action, _ in decide_all(context, POLICY, T0)] == [
            EscalationAction.RECOMMEND_TERMINATE
        ]

    def test_evaluate_all_records_policy_version(self):
        engine = EscalationPolicyEngine()
        earlier = [make_incident(f"i{n}", Severity.MEDIUM, T0 - timedelta(seconds=n + 1)) for n in range(2)]
        incident = make_incident("i3", Severity.HIGH)
        context = EscalationContext(incident, created=True, session_incidents=earlier + [incident])

        decisions = engine.evaluate_all(context, T0)
        assert [d.action for d in decisions] == [EscalationAction.RECOMMEND_TERMINATE, EscalationAction.NOTIFY]
        assert {d.policy_version for d in decisions} == {"default-1"}
        assert len({d.id for d in decisions}) == 2
