"""Operator alert dispatch.

Alerts are queued and delivered by a background task so a slow or failing sink
never blocks the caller. notify() is synchronous and never raises; the emergency
path uses it between state changes.
"""
import asyncio
import inspect
from typing import Any, Callable, List, Optional

import structlog

from dexguard.core.config import AlertConfig
from dexguard.core.models import Alert, RiskLevel

logger = structlog.get_logger(__name__)

AlertSink = Callable[[Alert], Any]


class LogAlertSink:
    """Writes alerts to the structured log."""

    async def __call__(self, alert: Alert):
        log = logger.critical if alert.severity == RiskLevel.CRITICAL else logger.warning
        log(
            "alerts.delivered",
            alert_id=alert.id,
            title=alert.title,
            message=alert.message,
            severity=alert.severity.value,
            source=alert.source,
            metadata=alert.metadata,
        )


class AlertDispatcher:
    """Bounded alert queue drained into registered sinks."""

    STOP_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        sinks: Optional[List[AlertSink]] = None,
    ):
        self.config = config or AlertConfig()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._sinks: List[AlertSink] = list(sinks) if sinks else [LogAlertSink()]
        self._worker: Optional[asyncio.Task] = None

        self.delivered_count = 0
        self.dropped_count = 0
        self.failed_count = 0

    def add_sink(self, sink: AlertSink):
        self._sinks.append(sink)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def notify(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if queued, False if alerts are disabled or the queue is full
        """
        if not self.config.enabled:
            logger.debug("alerts.disabled", title=alert.title)
            return False

        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            self.dropped_count += 1
            logger.error(
                "alerts.queue_full",
                title=alert.title,
                severity=alert.severity.value,
                dropped=self.dropped_count,
            )
            return False

        self._ensure_worker()
        return True

    def _ensure_worker(self):
        if self.is_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Delivered once start() runs inside an event loop
            return
        self._worker = loop.create_task(self._run())

    async def start(self):
        self._ensure_worker()
        logger.info("alerts.dispatcher_started", sinks=len(self._sinks))

    async def stop(self):
        """Deliver pending alerts, then stop the worker."""
        if not self._queue.empty():
            self._ensure_worker()
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self.STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("alerts.drain_timeout", pending=self._queue.qsize())

        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        logger.info(
            "alerts.dispatcher_stopped",
            delivered=self.delivered_count,
            failed=self.failed_count,
            dropped=self.dropped_count,
        )

    async def _run(self):
        while True:
            alert = await self._queue.get()
            try:
                await self._deliver(alert)
            finally:
                self._queue.task_done()

    async def _deliver(self, alert: Alert):
        for sink in self._sinks:
            try:
                result = sink(alert)
                if inspect.isawaitable(result):
                    await result
                self.delivered_count += 1
            except Exception as e:
                self.failed_count += 1
                logger.error(
                    "alerts.sink_failed",
                    sink=type(sink).__name__,
                    title=alert.title,
                    error=str(e),
                )
