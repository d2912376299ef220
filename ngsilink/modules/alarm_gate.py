"""
NGSILink Alarm Gate Module

Shared reachability signal toggled by Context Broker exchange outcomes.
One gate is created by the caller and handed to every exchange client that
should report into it.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import structlog

from ngsilink.utils.metrics import NGSILinkMetrics, get_metrics

logger = structlog.get_logger(__name__)

ORION_ALARM = "ORION-ALARM"


class AlarmSink(Protocol):
    """External alarm subscriber. Only receives state transitions."""

    def raise_alarm(self, key: str, detail: str) -> None: ...

    def release(self, key: str) -> None: ...


@dataclass
class AlarmState:
    active: bool = False
    detail: str | None = None
    changed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AlarmGate:
    """
    Lock-guarded alarm state keyed by alarm name.

    Raising an active alarm only refreshes its detail and releasing an
    inactive one is a no-op; neither is logged nor forwarded to the sink.
    """

    def __init__(self, sink: AlarmSink | None = None, metrics: NGSILinkMetrics | None = None):
        self.sink = sink
        self.metrics = metrics or get_metrics()
        self._lock = threading.Lock()
        self._states: dict[str, AlarmState] = {}

    def raise_alarm(self, key: str, detail: str) -> bool:
        """
        Raise an alarm.

        Returns:
            True if the alarm was inactive before this call
        """
        with self._lock:
            current = self._states.get(key)
            transition = current is None or not current.active
            if transition:
                self._states[key] = AlarmState(active=True, detail=detail)
            else:
                current.detail = detail

        if transition:
            logger.error("alarm.raised", alarm=key, detail=detail)
            self.metrics.set_alarm(key, True)
            if self.sink is not None:
                self.sink.raise_alarm(key, detail)
        return transition

    def release(self, key: str) -> bool:
        """
        Release an alarm.

        Returns:
            True if the alarm was active before this call
        """
        with self._lock:
            current = self._states.get(key)
            transition = current is not None and current.active
            if transition:
                self._states[key] = AlarmState(active=False)

        if transition:
            logger.info("alarm.released", alarm=key)
            self.metrics.set_alarm(key, False)
            if self.sink is not None:
                self.sink.release(key)
        return transition

    def is_active(self, key: str = ORION_ALARM) -> bool:
        with self._lock:
            state = self._states.get(key)
            return state is not None and state.active

    def state(self, key: str = ORION_ALARM) -> AlarmState:
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return AlarmState()
            return AlarmState(state.active, state.detail, state.changed_at)

    def active_alarms(self) -> dict[str, str | None]:
        with self._lock:
            return {key: state.detail for key, state in self._states.items() if state.active}
