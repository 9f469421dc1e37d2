"""Delayed urgent alerts for unanswered cards, gated by working hours."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from approval_bridge.config import WorkingHoursConfig
from approval_bridge.models.enums import AlertKind

LOG = logging.getLogger(__name__)


class UrgentSender(Protocol):
    def send_urgent_text(self, user_id: str, text: str, reason: str) -> Optional[str]:
        ...


class WorkingHoursPolicy:
    """Predicate over wall-clock time; weekday 0 is Sunday."""

    def __init__(self, config: WorkingHoursConfig) -> None:
        self.config = config
        self._zone = ZoneInfo(config.timezone)

    def is_working_hours(self, now: Optional[float] = None) -> bool:
        if not self.config.enabled:
            return True
        moment = datetime.fromtimestamp(time.time() if now is None else now, tz=timezone.utc)
        local = moment.astimezone(self._zone)
        if local.isoweekday() % 7 not in self.config.weekdays:
            return False
        return self.config.start_hour <= local.hour < self.config.end_hour


@dataclass
class PendingAlert:
    key: str
    chat_ref: Optional[str]
    operator_ref: str
    session_id: str
    kind: AlertKind
    created_at: float
    due_at: float
    seq: int


def _wait_minutes(alert: PendingAlert, now: float) -> int:
    return int((now - alert.created_at) // 60)


def build_alert_text(alert: PendingAlert, now: float) -> Tuple[str, str]:
    """Return ``(message, urgent_reason)`` for an alert."""
    waited = _wait_minutes(alert, now)
    short_session = alert.session_id[:8]
    if alert.kind == AlertKind.AUTHORIZATION:
        text = (
            "⚠️ [Authorization request]\n\n"
            f"An authorization request has waited {waited} minutes without a decision\n"
            f"Session: {short_session}\n\n"
            "Open the project group and press Allow or Deny on the card."
        )
        reason = f"Authorization request unanswered for {waited} minutes"
    else:
        text = (
            "📋 [Task complete]\n\n"
            f"A finished task has waited {waited} minutes without a reply\n"
            f"Session: {short_session}\n\n"
            "Review the result and reply in the project group."
        )
        reason = f"Task completion unanswered for {waited} minutes"
    return text, reason


class AlertScheduler:
    """Keyed one-shot alerts held in a min-heap.

    ``_pending`` is the source of truth; heap items whose alert was
    cancelled or replaced are discarded when they surface.
    """

    def __init__(
        self,
        sender: UrgentSender,
        policy: WorkingHoursPolicy,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sender = sender
        self.policy = policy
        self.clock = clock
        self._pending: Dict[str, PendingAlert] = {}
        self._heap: List[Tuple[float, int, str]] = []
        self._counter = itertools.count()
        self._lock = threading.RLock()

    def schedule_alert(
        self,
        key: str,
        operator_ref: str,
        session_id: str,
        kind: AlertKind,
        delay_minutes: float,
        chat_ref: Optional[str] = None,
    ) -> bool:
        now = self.clock()
        if not self.policy.is_working_hours(now):
            LOG.info("voice_alert_skip_non_working_hours key=%s", key)
            return False

        with self._lock:
            self.cancel_alert(key)
            alert = PendingAlert(
                key=key,
                chat_ref=chat_ref,
                operator_ref=operator_ref,
                session_id=session_id,
                kind=kind,
                created_at=now,
                due_at=now + delay_minutes * 60,
                seq=next(self._counter),
            )
            self._pending[key] = alert
            heapq.heappush(self._heap, (alert.due_at, alert.seq, key))
        LOG.info(
            "voice_alert_scheduled key=%s kind=%s delay_minutes=%s operator=%s",
            key,
            kind.value,
            delay_minutes,
            operator_ref,
        )
        return True

    def cancel_alert(self, key: str) -> bool:
        with self._lock:
            alert = self._pending.pop(key, None)
        if alert is None:
            return False
        LOG.info(
            "voice_alert_cancelled key=%s kind=%s waited_minutes=%d",
            key,
            alert.kind.value,
            _wait_minutes(alert, self.clock()),
        )
        return True

    def fire_due(self) -> int:
        """Send every alert whose delay has elapsed; returns how many fired."""
        now = self.clock()
        due: List[PendingAlert] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, seq, key = heapq.heappop(self._heap)
                alert = self._pending.get(key)
                if alert is None or alert.seq != seq:
                    continue
                del self._pending[key]
                due.append(alert)
        for alert in due:
            self._send(alert, now)
        return len(due)

    def _send(self, alert: PendingAlert, now: float) -> None:
        text, reason = build_alert_text(alert, now)
        LOG.info(
            "voice_alert_sending key=%s kind=%s operator=%s",
            alert.key,
            alert.kind.value,
            alert.operator_ref,
        )
        try:
            message_id = self.sender.send_urgent_text(alert.operator_ref, text, reason)
        except Exception:
            LOG.exception("voice_alert_send_failed key=%s", alert.key)
            return
        LOG.info("voice_alert_sent key=%s urgent_message_id=%s", alert.key, message_id)

    def next_due(self) -> Optional[float]:
        with self._lock:
            while self._heap:
                due_at, seq, key = self._heap[0]
                alert = self._pending.get(key)
                if alert is not None and alert.seq == seq:
                    return due_at
                heapq.heappop(self._heap)
        return None

    def pending_count(self) -> int:
        return len(self._pending)

    def clear_all(self) -> None:
        with self._lock:
            self._pending.clear()
            self._heap.clear()
        LOG.info("voice_alert_cleared_all")
