"""
Escalation Policy Engine - decides what an incident change should trigger.

``decide`` is a pure function of the incident, its previous severity, the
session's other incidents and the exam's policy table. It never terminates a
session: the strongest outcome is ``recommend-terminate``, which still needs
the two-step human confirmation in Session Control.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from exam_integrity.models.incident import (
    EscalationAction, EscalationDecision, Incident, IncidentStatus, Severity
)
from exam_integrity.models.policy import DEFAULT_POLICY, EscalationPolicy

logger = logging.getLogger(__name__)

RULE_RECOMMEND_TERMINATE = "repeated-incidents"
RULE_NOTIFY_SEVERITY = "severity-notify"
RULE_REVIEW_SLA = "review-sla"
RULE_FLAG = "flag"
RULE_NONE = "no-change"


@dataclass
class EscalationContext:
    """Everything a policy evaluation may look at"""
    incident: Incident
    previous_severity: Optional[Severity] = None
    created: bool = False
    session_incidents: List[Incident] = field(default_factory=list)


def _crossed(context: EscalationContext, floor: Severity) -> bool:
    """Did this change bring the incident to ``floor`` or above?"""
    if not context.incident.severity.at_least(floor):
        return False
    if context.created or context.previous_severity is None:
        return True
    return not context.previous_severity.at_least(floor)


def _needs_notify(incident: Incident, policy: EscalationPolicy) -> bool:
    """High severity, nobody has looked at it yet"""
    return (
        incident.severity.at_least(policy.notify_severity)
        and incident.status == IncidentStatus.NEW
        and EscalationAction.NOTIFY.value not in incident.escalated_actions
    )


def decide(context: EscalationContext, policy: EscalationPolicy, now: datetime) -> Tuple[EscalationAction, str]:
    """
    Pure policy evaluation.

    Returns:
        (action, rule name)
    """
    incident = context.incident
    escalated = set(incident.escalated_actions)
    changed = context.created or (
        context.previous_severity is not None and context.previous_severity != incident.severity
    )

    if incident.is_closed:
        return EscalationAction.NONE, RULE_NONE

    # Repeated medium-or-worse incidents in one session
    if changed and _crossed(context, policy.recommend_severity) \
            and EscalationAction.RECOMMEND_TERMINATE.value not in escalated:
        window_start = now - timedelta(minutes=policy.recommend_window_minutes)
        qualifying = [
            other for other in context.session_incidents
            if other.severity.at_least(policy.recommend_severity)
            and other.status != IncidentStatus.DISMISSED
            and other.first_seen >= window_start
        ]
        if not any(other.id == incident.id for other in qualifying):
            qualifying.append(incident)
        if len(qualifying) >= policy.recommend_count:
            return EscalationAction.RECOMMEND_TERMINATE, RULE_RECOMMEND_TERMINATE

    if _needs_notify(incident, policy):
        return EscalationAction.NOTIFY, RULE_NOTIFY_SEVERITY

    # Unreviewed for too long
    if incident.status == IncidentStatus.NEW \
            and incident.severity.at_least(policy.review_sla_severity) \
            and now - incident.first_seen >= timedelta(minutes=policy.review_sla_minutes) \
            and EscalationAction.NOTIFY.value not in escalated \
            and RULE_REVIEW_SLA not in escalated:
        return EscalationAction.NOTIFY, RULE_REVIEW_SLA

    if changed:
        return EscalationAction.FLAG, RULE_FLAG

    return EscalationAction.NONE, RULE_NONE


def decide_all(
    context: EscalationContext, policy: EscalationPolicy, now: datetime
) -> List[Tuple[EscalationAction, str]]:
    """
    Like ``decide`` but keeps the immediate notification when a change
    both completes a repeated-incident pattern and reaches notify severity.
    """
    action, rule = decide(context, policy, now)
    outcomes = [(action, rule)]
    if action == EscalationAction.RECOMMEND_TERMINATE and _needs_notify(context.incident, policy):
        outcomes.append((EscalationAction.NOTIFY, RULE_NOTIFY_SEVERITY))
    return outcomes


class EscalationPolicyEngine:
    """Holds per-exam policy tables and produces audit-ready decisions"""

    def __init__(self, default_policy: EscalationPolicy = DEFAULT_POLICY):
        self.default_policy = default_policy
        self._policies: Dict[str, EscalationPolicy] = {}

    def set_policy(self, exam_id: str, policy: EscalationPolicy) -> None:
        self._policies[exam_id] = policy
        logger.info(f"Escalation policy {policy.version} installed for exam {exam_id}")

    def policy_for(self, exam_id: str) -> EscalationPolicy:
        return self._policies.get(exam_id, self.default_policy)

    def evaluate(self, context: EscalationContext, now: datetime) -> EscalationDecision:
        policy = self.policy_for(context.incident.exam_id)
        action, rule = decide(context, policy, now)
        return self._decision(context, policy, action, rule, now)

    def evaluate_all(self, context: EscalationContext, now: datetime) -> List[EscalationDecision]:
        """Every decision one incident change produces, strongest first"""
        policy = self.policy_for(context.incident.exam_id)
        return [
            self._decision(context, policy, action, rule, now)
            for action, rule in decide_all(context, policy, now)
        ]

    @staticmethod
    def _decision(
        context: EscalationContext,
        policy: EscalationPolicy,
        action: EscalationAction,
        rule: str,
        now: datetime,
    ) -> EscalationDecision:
        digest = (
            action == EscalationAction.FLAG
            and context.incident.severity.rank <= policy.digest_severity.rank
        )

        return EscalationDecision(
            id=str(uuid.uuid4()),
            incident_id=context.incident.id,
            session_id=context.incident.session_id,
            action=action,
            rule=rule,
            policy_version=policy.version,
            timestamp=now,
            severity=context.incident.severity,
            digest=digest,
        )

    def sla_candidates(self, incidents: List[Incident], now: datetime) -> List[Incident]:
        """Incidents the review-SLA rule could fire for on a scheduler tick"""
        candidates = []
        for incident in incidents:
            policy = self.policy_for(incident.exam_id)
            escalated = set(incident.escalated_actions)
            if incident.status != IncidentStatus.NEW:
                continue
            if not incident.severity.at_least(policy.review_sla_severity):
                continue
            if EscalationAction.NOTIFY.value in escalated or RULE_REVIEW_SLA in escalated:
                continue
            if now - incident.first_seen >= timedelta(minutes=policy.review_sla_minutes):
                candidates.append(incident)
        return candidates
