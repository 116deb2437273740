"""
Signal Ingress - validation, sequencing and bounded re-ordering of detector signals.

Detectors deliver over different paths, so signals of one session arrive out
of order across channels. Ingress buffers each session's signals and releases
them in (detected_at, sequence) order once they are older than the lateness
window. Anything that shows up after its slot was released is dropped and
counted; it must not rewrite an evidence chain that may already have been
escalated.
"""

import heapq
import logging
import math
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from exam_integrity.config import settings
from exam_integrity.models.incident import Channel, Signal
from exam_integrity.models.session import ExamSession, SessionState
from exam_integrity.utils.clock import Clock, utc_now
from exam_integrity.utils.exceptions import (
    ClockSkew, InvalidChannel, InvalidConfidence, TransientIngressOverload, UnknownSession
)

logger = logging.getLogger(__name__)


class _SessionBuffer:
    """Per-session reorder buffer and replay guard"""

    def __init__(self):
        self.heap: List[Tuple[datetime, int, Signal]] = []
        self.next_sequence = 1
        self.seen_ids: Set[str] = set()
        self.released_until: Optional[datetime] = None  # detected_at of last released signal


class SignalIngress:
    """Accepts suspicion signals from external detectors"""

    def __init__(
        self,
        session_lookup: Callable[[str], Optional[ExamSession]],
        clock: Clock = utc_now,
        clock_skew_tolerance_seconds: float = settings.CLOCK_SKEW_TOLERANCE_SECONDS,
        lateness_window_seconds: float = settings.LATENESS_WINDOW_SECONDS,
        buffer_size: int = settings.INGRESS_BUFFER_SIZE,
    ):
        self.session_lookup = session_lookup
        self.clock = clock
        self.skew_tolerance = timedelta(seconds=clock_skew_tolerance_seconds)
        self.lateness_window = timedelta(seconds=lateness_window_seconds)
        self.buffer_size = buffer_size

        self._buffers: Dict[str, _SessionBuffer] = defaultdict(_SessionBuffer)
        self.late_dropped: Dict[str, int] = defaultdict(int)
        self.accepted_count = 0
        self.duplicate_count = 0

    def submit(
        self,
        session_id: str,
        channel: Union[Channel, str],
        confidence: float,
        detected_at: datetime,
        evidence_ref: Optional[str] = None,
        signal_id: Optional[str] = None,
    ) -> str:
        """
        Validate, sequence and buffer one signal.

        Args:
            session_id: Exam session the detector observed
            channel: video, audio, screen or navigation
            confidence: Detector confidence in [0, 1]
            detected_at: Detector timestamp (timezone-aware)
            evidence_ref: Opaque evidence handle, never interpreted here
            signal_id: Detector-assigned id; replays of a known id are ignored

        Returns:
            The signal id

        Raises:
            UnknownSession: session missing or not active
            InvalidChannel, InvalidConfidence, ClockSkew: malformed input
            TransientIngressOverload: the session's buffer is full
        """
        session = self.session_lookup(session_id)
        if session is None or session.state != SessionState.ACTIVE:
            raise UnknownSession(f"Session {session_id} is not an active exam session")

        try:
            channel = Channel(channel)
        except ValueError:
            raise InvalidChannel(f"Unknown signal channel: {channel}")

        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) \
                or math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
            raise InvalidConfidence(f"Confidence must be within [0, 1], got {confidence}")

        now = self.clock()
        if detected_at.tzinfo is None:
            raise ClockSkew("detected_at must carry a timezone")
        if detected_at - now > self.skew_tolerance:
            raise ClockSkew(
                f"Signal detected_at {detected_at.isoformat()} is more than "
                f"{self.skew_tolerance.total_seconds():.0f}s ahead of ingress time"
            )

        buffer = self._buffers[session_id]
        if signal_id is not None and signal_id in buffer.seen_ids:
            self.duplicate_count += 1
            logger.debug(f"Ignoring replayed signal {signal_id} for session {session_id}")
            return signal_id

        signal_id = signal_id or str(uuid.uuid4())

        too_old = now - detected_at > self.lateness_window
        behind_release = buffer.released_until is not None and detected_at < buffer.released_until
        if too_old or behind_release:
            buffer.seen_ids.add(signal_id)
            self.late_dropped[session_id] += 1
            logger.warning(
                f"Dropped late {channel.value} signal {signal_id} for session {session_id} "
                f"(detected {detected_at.isoformat()}, received {now.isoformat()})"
            )
            return signal_id

        if len(buffer.heap) >= self.buffer_size:
            raise TransientIngressOverload(
                f"Ingress buffer for session {session_id} is full, retry later"
            )

        signal = Signal(
            id=signal_id,
            session_id=session_id,
            channel=channel,
            confidence=float(confidence),
            detected_at=detected_at,
            received_at=now,
            sequence=buffer.next_sequence,
            evidence_ref=evidence_ref,
        )
        buffer.next_sequence += 1
        buffer.seen_ids.add(signal_id)
        heapq.heappush(buffer.heap, (signal.detected_at, signal.sequence, signal))
        self.accepted_count += 1
        return signal_id

    def release(self, session_id: str, now: Optional[datetime] = None) -> List[Signal]:
        """Pop every buffered signal older than the lateness window, in order"""
        buffer = self._buffers.get(session_id)
        if buffer is None or not buffer.heap:
            return []

        now = now or self.clock()
        horizon = now - self.lateness_window
        ready: List[Signal] = []
        while buffer.heap and buffer.heap[0][0] <= horizon:
            _, _, signal = heapq.heappop(buffer.heap)
            ready.append(signal)

        if ready:
            buffer.released_until = ready[-1].detected_at
        return ready

    def pending_sessions(self) -> List[str]:
        return [sid for sid, buffer in self._buffers.items() if buffer.heap]

    def pending_count(self, session_id: str) -> int:
        buffer = self._buffers.get(session_id)
        return len(buffer.heap) if buffer else 0

    def discard(self, session_id: str) -> int:
        """Drop buffered signals of a session that left ACTIVE"""
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return 0
        count = len(buffer.heap)
        buffer.heap.clear()
        if count:
            logger.info(f"Discarded {count} buffered signals for session {session_id}")
        return count

    def forget(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)
        self.late_dropped.pop(session_id, None)
