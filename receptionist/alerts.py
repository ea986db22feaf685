"""Operator alerts and human handoff routing."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

log = logging.getLogger("receptionist.alerts")


@dataclass
class Alert:
    reason: str
    payload: dict[str, Any]
    created_at: float = field(default_factory=time.time)


@dataclass
class Handoff:
    call_id: str
    reason: str
    category: Optional[str] = None
    created_at: float = field(default_factory=time.time)


class AlertSink(ABC):
    """Where booking failures and escalations are reported."""

    @abstractmethod
    async def create_alert(self, reason: str, payload: dict[str, Any]) -> None:
        """Record an alert for the operator dashboard."""

    @abstractmethod
    async def route_handoff(self, call_id: str, reason: str, category: Optional[str] = None) -> None:
        """Ask a human to take over (or call back) for this call."""


class LoggingAlertSink(AlertSink):
    """Logs alerts and keeps the most recent ones in memory."""

    def __init__(self, max_kept: int = 500) -> None:
        self.alerts: list[Alert] = []
        self.handoffs: list[Handoff] = []
        self._max_kept = max_kept

    async def create_alert(self, reason: str, payload: dict[str, Any]) -> None:
        self.alerts.append(Alert(reason=reason, payload=payload))
        del self.alerts[:-self._max_kept]
        log.warning("ALERT %s: %s", reason, payload)

    async def route_handoff(self, call_id: str, reason: str, category: Optional[str] = None) -> None:
        self.handoffs.append(Handoff(call_id=call_id, reason=reason, category=category))
        del self.handoffs[:-self._max_kept]
        log.warning("Handoff requested for call %s (reason=%s, category=%s)", call_id, reason, category)

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        return [
            {"reason": a.reason, "payload": a.payload, "created_at": a.created_at}
            for a in self.alerts[-limit:]
        ]
