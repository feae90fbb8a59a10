"""Operator notifications for DexGuard."""

from dexguard.notifications.alerts import AlertDispatcher, AlertSink, LogAlertSink

__all__ = [
    "AlertDispatcher",
    "AlertSink",
    "LogAlertSink",
]
