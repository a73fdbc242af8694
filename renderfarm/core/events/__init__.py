"""Notification hub.

Decouples the render queue from whoever watches it. The scheduler publishes
job events; a desktop window, a websocket set or the CLI subscribes.
"""

from .hub import NotificationHub, Subscription
from .job_events import (
    FrameSaved,
    JobCreated,
    JobLogLine,
    JobsRemoved,
    JobUpdated,
    JobWarning,
    QueueReordered,
    QueueStateChanged,
)

__all__ = [
    "NotificationHub",
    "Subscription",
    "JobCreated",
    "JobUpdated",
    "JobsRemoved",
    "JobLogLine",
    "JobWarning",
    "FrameSaved",
    "QueueReordered",
    "QueueStateChanged",
]
