"""
Alert Fan-out / Subscription Hub.

Every published event is appended to one hub log and gets a monotonically
increasing offset. Events for a session are published while that session's
lock is held, so log order is production order per session. Subscribers read
the log through a cursor; delivery is at-least-once because nothing is
considered delivered until the subscriber acknowledges an offset.
Retention never evicts an event a live subscriber still needs, except digests.

Role filtering lives here and nowhere else:
- admin: every session (optionally narrowed by filter)
- proctor: sessions the proctor is assigned to
- student: own sessions, state changes and warnings only
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from exam_integrity.config import settings
from exam_integrity.models.events import (
    Cursor, Event, EventType, PollResult, Subscription, SubscriptionFilter
)
from exam_integrity.models.incident import Severity
from exam_integrity.models.session import ActorRole
from exam_integrity.utils.clock import Clock, utc_now
from exam_integrity.utils.exceptions import (
    CursorExpired, InvalidFilter, SubscriberStalled, UnknownSubscription
)

logger = logging.getLogger(__name__)


class SubscriptionHub:
    """Ordered, filtered, back-pressured event delivery"""

    def __init__(
        self,
        proctors_for: Callable[[str], List[str]],
        student_for: Callable[[str], Optional[str]],
        clock: Clock = utc_now,
        buffer_limit: int = settings.SUBSCRIBER_BUFFER_LIMIT,
        stall_timeout_seconds: int = settings.SUBSCRIBER_STALL_TIMEOUT_SECONDS,
        retention_events: int = settings.HUB_RETENTION_EVENTS,
    ):
        self.proctors_for = proctors_for
        self.student_for = student_for
        self.clock = clock
        self.buffer_limit = buffer_limit
        self.stall_timeout = timedelta(seconds=stall_timeout_seconds)
        self.retention_events = retention_events

        self._log: Deque[Event] = deque()
        self._next_offset = 1
        self._subscriptions: Dict[str, Subscription] = {}
        self._delivered: Dict[str, int] = {}  # push-stream position per subscription
        self._wakeups: Dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    @property
    def last_offset(self) -> int:
        return self._next_offset - 1

    @property
    def first_offset(self) -> int:
        return self._log[0].offset if self._log else self._next_offset

    def publish(
        self,
        event_type: str,
        entity_id: str,
        sequence: int,
        session_id: str,
        payload: Optional[Dict[str, Any]] = None,
        severity: Optional[Severity] = None,
        digest: bool = False,
    ) -> Event:
        event = Event(
            offset=self._next_offset,
            type=event_type,
            entity_id=entity_id,
            sequence=sequence,
            session_id=session_id,
            severity=severity,
            digest=digest,
            produced_at=self.clock(),
            payload=payload or {},
        )
        self._next_offset += 1
        self._log.append(event)

        now = event.produced_at
        for sub in self._subscriptions.values():
            if sub.disconnected or not self._matches(sub, event):
                continue
            sub.outstanding += 1
            self._apply_backpressure(sub, now)
            self._wake(sub.id)

        self._trim(now)
        return event

    def _trim(self, now: Optional[datetime] = None) -> None:
        """
        Evict the log head down to the retention size.

        A non-digest event a live subscriber has not acknowledged is never
        evicted: the log grows past retention and the subscribers holding it
        are marked stalled, so ``reap`` disconnects them if they stop
        acknowledging. Unacknowledged digest events may go and count as dropped.
        """
        while len(self._log) > self.retention_events:
            head = self._log[0]
            needed_by = [
                sub for sub in self._subscriptions.values()
                if not sub.disconnected
                and head.offset > sub.acked_offset
                and head.offset not in sub.dropped_offsets
                and self._matches(sub, head)
            ]
            if needed_by and not head.digest:
                now = now or self.clock()
                for sub in needed_by:
                    if sub.stalled_since is None:
                        sub.stalled_since = now
                        logger.warning(
                            f"Subscription {sub.id} holds event {head.offset} past hub retention "
                            f"({len(self._log)} events retained)"
                        )
                return

            self._log.popleft()
            for sub in self._subscriptions.values():
                sub.dropped_offsets.discard(head.offset)
            for sub in needed_by:
                sub.dropped_count += 1
                sub.outstanding = max(0, sub.outstanding - 1)
                logger.info(f"Retention evicted digest event {head.offset} for subscription {sub.id}")

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def _matches(self, sub: Subscription, event: Event) -> bool:
        session_filter = sub.filter.session_ids
        if session_filter and event.session_id not in session_filter:
            return False

        if sub.role == ActorRole.STUDENT:
            if event.type not in EventType.STUDENT_VISIBLE:
                return False
            return self.student_for(event.session_id) == sub.subscriber_id

        if sub.role == ActorRole.PROCTOR:
            if sub.subscriber_id not in self.proctors_for(event.session_id):
                return False
        elif sub.role != ActorRole.ADMIN:
            return False

        if event.severity is not None and not event.severity.at_least(sub.filter.severity_floor):
            return False
        return True

    def _visible(self, sub: Subscription, after_offset: int):
        """Matching, undropped events with offset > after_offset"""
        for event in self._log:
            if event.offset <= after_offset:
                continue
            if event.offset in sub.dropped_offsets:
                continue
            if self._matches(sub, event):
                yield event

    # ------------------------------------------------------------------
    # Backpressure
    # ------------------------------------------------------------------

    def _apply_backpressure(self, sub: Subscription, now: datetime) -> None:
        while sub.outstanding > self.buffer_limit:
            victim = next(
                (e for e in self._visible(sub, sub.acked_offset) if e.digest),
                None,
            )
            if victim is None:
                if sub.stalled_since is None:
                    sub.stalled_since = now
                    logger.warning(
                        f"Subscription {sub.id} ({sub.role.value} {sub.subscriber_id}) stalled "
                        f"with {sub.outstanding} outstanding events"
                    )
                return
            sub.dropped_offsets.add(victim.offset)
            sub.dropped_count += 1
            sub.outstanding -= 1
            logger.info(f"Dropped digest event {victim.offset} for lagging subscription {sub.id}")

    def _recount(self, sub: Subscription) -> None:
        sub.outstanding = sum(1 for _ in self._visible(sub, sub.acked_offset))
        if sub.outstanding <= self.buffer_limit and sub.stalled_since is not None:
            logger.info(f"Subscription {sub.id} caught up")
            sub.stalled_since = None
            self._wake(sub.id)

    def reap(self, now: Optional[datetime] = None) -> List[str]:
        """Disconnect subscribers stalled longer than the timeout"""
        now = now or self.clock()
        reaped = []
        for sub in self._subscriptions.values():
            if sub.disconnected or sub.stalled_since is None:
                continue
            if now - sub.stalled_since >= self.stall_timeout:
                sub.disconnected = True
                sub.disconnect_reason = SubscriberStalled.reason
                reaped.append(sub.id)
                self._wake(sub.id)
                logger.warning(f"Subscription {sub.id} disconnected after stalling since {sub.stalled_since}")
        if reaped:
            self._trim(now)
        return reaped

    # ------------------------------------------------------------------
    # Subscriber API
    # ------------------------------------------------------------------

    def subscribe(
        self,
        subscriber_id: str,
        role: ActorRole,
        filter: Optional[SubscriptionFilter] = None,
        after_offset: Optional[int] = None,
    ) -> Cursor:
        """
        Open a feed.

        Args:
            after_offset: resume point of a reconnecting subscriber; None starts
                at the current end of the log

        Returns:
            Cursor to pass to poll

        Raises:
            CursorExpired: after_offset is older than the retained log
        """
        if role not in (ActorRole.ADMIN, ActorRole.PROCTOR, ActorRole.STUDENT):
            raise InvalidFilter(f"Role {role.value} cannot subscribe to alerts")
        if role == ActorRole.STUDENT and filter is not None and filter.severity_floor != Severity.LOW:
            raise InvalidFilter("Student feeds do not carry incident severities")

        if after_offset is not None and after_offset < self.first_offset - 1:
            raise CursorExpired(
                f"Offset {after_offset} is older than the retained log (first offset {self.first_offset})"
            )
        start = self.last_offset if after_offset is None else max(0, min(after_offset, self.last_offset))
        sub = Subscription(
            id=str(uuid.uuid4()),
            subscriber_id=subscriber_id,
            role=role,
            filter=filter or SubscriptionFilter(),
            acked_offset=start,
            created_at=self.clock(),
        )
        self._subscriptions[sub.id] = sub
        self._delivered[sub.id] = start
        self._wakeups[sub.id] = asyncio.Event()
        self._recount(sub)
        self._apply_backpressure(sub, sub.created_at)

        logger.info(f"Subscription {sub.id} opened for {role.value} {subscriber_id} at offset {start}")
        return Cursor(subscription_id=sub.id, offset=start)

    def get_subscription(self, subscription_id: str) -> Subscription:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise UnknownSubscription(f"Subscription {subscription_id} not found")
        if sub.disconnected:
            raise SubscriberStalled(
                f"Subscription {subscription_id} was disconnected: {sub.disconnect_reason}"
            )
        return sub

    def acknowledge(self, subscription_id: str, offset: int) -> Subscription:
        """Everything up to ``offset`` has been processed by the subscriber"""
        sub = self.get_subscription(subscription_id)
        sub.acked_offset = max(0, min(offset, self.last_offset))
        self._delivered[sub.id] = max(self._delivered.get(sub.id, 0), sub.acked_offset)
        self._recount(sub)
        self._trim()
        return sub

    def poll(self, cursor: Cursor, limit: int = 100) -> PollResult:
        """
        Return events after the cursor.

        Passing a cursor acknowledges everything up to it. Passing an older
        cursor than before re-delivers (at-least-once).
        """
        sub = self.acknowledge(cursor.subscription_id, cursor.offset)

        events: List[Event] = []
        for event in self._visible(sub, sub.acked_offset):
            events.append(event)
            if len(events) >= limit:
                break

        if events:
            new_offset = events[-1].offset
        elif sub.stalled_since is None:
            # Nothing matching up to the end of the log
            new_offset = self.last_offset
        else:
            new_offset = sub.acked_offset

        self._delivered[sub.id] = max(self._delivered.get(sub.id, 0), new_offset)
        return PollResult(
            events=events,
            cursor=Cursor(subscription_id=sub.id, offset=new_offset),
            stalled=sub.stalled_since is not None,
        )

    async def next_batch(self, subscription_id: str, limit: int = 100) -> List[Event]:
        """
        Push-stream read: wait for undelivered events, then return them.

        Delivery pauses while the subscriber has more unacknowledged events
        than the buffer bound and resumes once its acknowledgements bring it
        back under.
        """
        while True:
            sub = self.get_subscription(subscription_id)
            wakeup = self._wakeups[subscription_id]
            wakeup.clear()

            if sub.outstanding <= self.buffer_limit:
                delivered = self._delivered.get(subscription_id, sub.acked_offset)
                events: List[Event] = []
                for event in self._visible(sub, delivered):
                    events.append(event)
                    if len(events) >= limit:
                        break
                if events:
                    self._delivered[subscription_id] = events[-1].offset
                    return events

            await wakeup.wait()

    def unsubscribe(self, subscription_id: str) -> None:
        sub = self._subscriptions.pop(subscription_id, None)
        self._delivered.pop(subscription_id, None)
        wakeup = self._wakeups.pop(subscription_id, None)
        if wakeup is not None:
            wakeup.set()
        if sub is not None:
            logger.info(f"Subscription {subscription_id} closed")
            self._trim()

    def _wake(self, subscription_id: str) -> None:
        wakeup = self._wakeups.get(subscription_id)
        if wakeup is not None:
            wakeup.set()

    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())
