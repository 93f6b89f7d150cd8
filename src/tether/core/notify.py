"""Notification hand-off to an external sink.

Delivery transport is owned by the caller; tether only builds the payload.
"""

from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class Notification:
    """Payload forwarded to the notification sink.

    Attributes:
        subject: Session id for watchdog alerts, item path for recovery fixes
        kind: Alert kind ("stale", "dead", ...) or "recovery"
        message: Human-readable description
    """

    subject: str
    kind: str
    message: str


NotificationSink = Callable[[Notification], None]
