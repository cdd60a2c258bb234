"""
Metrics Abstraction Layer

A small metrics interface used by the HTTP middleware chain and the session
manager. Implementations:

- TelegrafMetricsClient: StatsD with Telegraf tags, backed by aio-statsd
- NoOpMetricsClient: discards everything; the default when metrics are disabled

Metric names are prefixed with the configured ``statsd_prefix``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

from dropanchor.app.config import Settings

logger = logging.getLogger(__name__)


class MetricsClient(ABC):
    """
    Interface for recording counters, gauges and timings.

    Methods are synchronous and must never raise into the caller; only
    ``close`` awaits the backend.
    """

    @abstractmethod
    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a duration in milliseconds."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class TelegrafMetricsClient(MetricsClient):
    """Delegates to a connected ``TelegrafStatsdClient``."""

    def __init__(self, telegraf_client: TelegrafStatsdClient, prefix: str = "anchor"):
        self.client = telegraf_client
        self.prefix = prefix

    def _name(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.increment(self._name(name), value, tag_dict=tag_dict or {})

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.gauge(self._name(name), value, tag_dict=tag_dict or {})

    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.timer(self._name(name), value, tag_dict=tag_dict or {})

    async def close(self) -> None:
        try:
            await self.client.close()
        except OSError as e:
            logger.warning(f"Error closing Telegraf client: {e}")


class NoOpMetricsClient(MetricsClient):
    """Metrics client that records nothing."""

    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    async def close(self) -> None:
        pass


async def create_metrics_client(settings: Settings) -> MetricsClient:
    """
    Build the metrics client described by ``settings``.

    Returns a connected TelegrafMetricsClient when ``metrics_enabled`` is set,
    otherwise a NoOpMetricsClient.
    """
    if not settings.metrics_enabled:
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    telegraf_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await telegraf_client.connect()
    logger.info(
        f"Sending metrics to {settings.statsd_host}:{settings.statsd_port}"
    )
    return TelegrafMetricsClient(telegraf_client, prefix=settings.statsd_prefix)
