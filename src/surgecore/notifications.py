"""
Notification sinks for alert events.

Sinks are best-effort: a failing sink is logged and never aborts the run or
prevents the remaining sinks from receiving the event.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional, Sequence

import aiohttp
import structlog

from surgecore.protocols import AlertEvent, AlertSink

logger = structlog.get_logger(__name__)


class ConsoleAlertSink:
    """Writes alerts to the structured log at warning level."""

    async def emit(self, event: AlertEvent) -> None:
        logger.warning(
            "Performance alert",
            alert_category=event.category,
            alert_message=event.message,
            test_id=event.test_id,
            **event.data,
        )


class FileAlertSink:
    """Appends one JSON document per alert to a file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def emit(self, event: AlertEvent) -> None:
        line = json.dumps(event.to_dict(), default=str)
        async with self._lock:
            await asyncio.get_running_loop().run_in_executor(None, self._append, line)


class WebhookAlertSink:
    """POSTs each alert as JSON to a webhook URL."""

    def __init__(self, url: str, *, timeout: float = 5.0, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None

    async def emit(self, event: AlertEvent) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        async with self.session.post(self.url, json=event.to_dict()) as response:
            if response.status >= 400:
                logger.warning("Webhook rejected alert", url=self.url, status=response.status)

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None


class AlertNotifier:
    """Fans an event out to every configured sink."""

    def __init__(self, sinks: Optional[Sequence[AlertSink]] = None) -> None:
        self.sinks: List[AlertSink] = list(sinks or [])
        self.sent = 0
        self.failed = 0

    async def notify(self, event: AlertEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(event)
                self.sent += 1
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self.failed += 1
                logger.error(
                    "Alert delivery failed",
                    sink=type(sink).__name__,
                    alert_category=event.category,
                    error=str(e),
                )

    async def notify_all(self, events: Sequence[AlertEvent]) -> None:
        for event in events:
            await self.notify(event)

    async def close(self) -> None:
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                await close()


def build_sinks(
    channels: Sequence[str],
    *,
    file_path: Optional[Path] = None,
    webhook_url: Optional[str] = None,
    webhook_timeout: float = 5.0,
) -> List[AlertSink]:
    sinks: List[AlertSink] = []
    for channel in channels:
        if channel == "console":
            sinks.append(ConsoleAlertSink())
        elif channel == "file":
            if file_path is None:
                logger.warning("File alert channel configured without a path, skipping")
                continue
            sinks.append(FileAlertSink(file_path))
        elif channel == "webhook":
            if not webhook_url:
                logger.warning("Webhook alert channel configured without a URL, skipping")
                continue
            sinks.append(WebhookAlertSink(webhook_url, timeout=webhook_timeout))
        else:
            logger.warning("Unknown alert channel", channel=channel)
    return sinks
