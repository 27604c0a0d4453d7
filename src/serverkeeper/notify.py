"""
Notification sinks for keeper events.

Delivery is best effort: a sink that raises or reports failure is logged and
never propagates into the operation that produced the event.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .events import KeeperEvent

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Result of a delivery attempt."""

    success: bool
    sink: str
    delivery_time: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'sink': self.sink,
            'delivery_time': self.delivery_time.isoformat() if self.delivery_time else None,
            'error': self.error
        }


class NotificationSink(ABC):
    """Abstract base class for event delivery targets."""

    @abstractmethod
    def send(self, event: KeeperEvent) -> DeliveryResult:
        """
        Deliver an event.

        Args:
            event: Event to deliver

        Returns:
            DeliveryResult with delivery status
        """

    def get_sink_name(self) -> str:
        return self.__class__.__name__


class WebhookSink(NotificationSink):
    """POST events as JSON to a webhook (chat bridge, ntfy, etc.)."""

    def __init__(self, url: str, timeout_s: float = 10.0):
        self.url = url
        self.timeout_s = timeout_s

    def send(self, event: KeeperEvent) -> DeliveryResult:
        try:
            response = requests.post(self.url, json=event.to_dict(), timeout=self.timeout_s)
            response.raise_for_status()
            return DeliveryResult(success=True, sink=self.get_sink_name(), delivery_time=datetime.now())
        except requests.RequestException as e:
            return DeliveryResult(success=False, sink=self.get_sink_name(), error=str(e))


class LogSink(NotificationSink):
    """Writes events to the log; always available."""

    def send(self, event: KeeperEvent) -> DeliveryResult:
        level = logging.ERROR if event.severity in ("error", "critical") else logging.INFO
        logger.log(level, f"[notify] {event.kind}: {event.payload}")
        return DeliveryResult(success=True, sink=self.get_sink_name(), delivery_time=datetime.now())


class Notifier:
    """Fans events out to every registered sink, isolating failures."""

    def __init__(self, sinks: Optional[List[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks or [])

    def register(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def notify(self, event: KeeperEvent) -> List[DeliveryResult]:
        """Deliver to all sinks. Never raises."""
        results = []
        for sink in self.sinks:
            try:
                result = sink.send(event)
            except Exception as e:
                logger.warning(f"[notify] {sink.get_sink_name()} raised while sending {event.kind}: {e}")
                result = DeliveryResult(success=False, sink=sink.get_sink_name(), error=str(e))
            if not result.success:
                logger.warning(f"[notify] Delivery of {event.kind} via {result.sink} failed: {result.error}")
            results.append(result)
        return results


def build_notifier(webhook_url: Optional[str] = None) -> Notifier:
    """Notifier with a log sink plus an optional webhook."""
    notifier = Notifier([LogSink()])
    if webhook_url:
        notifier.register(WebhookSink(webhook_url))
    return notifier
