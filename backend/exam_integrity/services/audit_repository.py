"""
Audit Repository - keeps escalation decisions and session audit entries,
mirroring them to Supabase when it is configured.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from exam_integrity.config import settings
from exam_integrity.models.incident import EscalationDecision
from exam_integrity.models.session import AuditEntry

logger = logging.getLogger(__name__)


class AuditRepository:
    """In-memory audit store with a best-effort Supabase mirror"""

    def __init__(
        self,
        client: Optional[Any] = None,
        decisions_table: str = settings.AUDIT_DECISIONS_TABLE,
        session_table: str = settings.AUDIT_SESSION_TABLE,
    ):
        self.client = client
        self.decisions_table = decisions_table
        self.session_table = session_table
        self._decisions_by_incident: Dict[str, List[EscalationDecision]] = defaultdict(list)
        self._decisions_by_session: Dict[str, List[EscalationDecision]] = defaultdict(list)
        self.mirror_failures = 0

    def record_decision(self, decision: EscalationDecision) -> None:
        self._decisions_by_incident[decision.incident_id].append(decision)
        self._decisions_by_session[decision.session_id].append(decision)

        logger.debug(
            f"Escalation decision {decision.action.value} ({decision.rule}) "
            f"for incident {decision.incident_id}"
        )
        self._mirror(self.decisions_table, decision.to_record())

    def record_session_entry(self, entry: AuditEntry) -> None:
        record = entry.model_dump(mode="json")
        self._mirror(self.session_table, record)

    def decisions_for_incident(self, incident_id: str) -> List[EscalationDecision]:
        return list(self._decisions_by_incident.get(incident_id, []))

    def decisions_for_session(self, session_id: str) -> List[EscalationDecision]:
        return list(self._decisions_by_session.get(session_id, []))

    def forget_session(self, session_id: str) -> None:
        """Drop in-memory decisions of an archived session"""
        for decision in self._decisions_by_session.pop(session_id, []):
            self._decisions_by_incident.pop(decision.incident_id, None)

    def _mirror(self, table: str, record: Dict[str, Any]) -> None:
        if self.client is None:
            return
        try:
            self.client.table(table).insert(record).execute()
        except Exception as e:
            self.mirror_failures += 1
            logger.error(f"Failed to mirror audit record to {table}: {str(e)}")
