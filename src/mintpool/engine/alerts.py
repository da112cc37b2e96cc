"""
Alert sinks - operator notifications for anomalies.

Alerting is best effort: a broken sink is logged and never fails the
operation that raised the alert.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

SUBJECT_PREFIX = "[NFT Mint]"


class AlertSink(ABC):
    """Destination for operator alerts."""

    @abstractmethod
    async def notify(self, subject: str, body: str) -> None:
        pass

    async def close(self) -> None:
        pass


class LoggingAlertSink(AlertSink):
    """Writes alerts to the structured log."""

    async def notify(self, subject: str, body: str) -> None:
        logger.warning("alert", subject=f"{SUBJECT_PREFIX} {subject}", body=body)


class WebhookAlertSink(AlertSink):
    """POSTs alerts as JSON to a webhook."""

    def __init__(self, url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def notify(self, subject: str, body: str) -> None:
        response = await self._client.post(
            self.url,
            json={"subject": f"{SUBJECT_PREFIX} {subject}", "message": body},
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


async def safe_notify(sink: Optional[AlertSink], subject: str, body: str) -> None:
    """Send an alert, logging instead of raising if the sink fails."""
    if sink is None:
        return
    try:
        await sink.notify(subject, body)
    except Exception as e:
        logger.error("alert_delivery_failed", subject=subject, error=str(e))
