"""
Push sink for collection snapshots.

MetricsPusher forwards snapshots to a remote dashboard endpoint over HTTP.
It does not collect on its own: the scheduler hands it each completed
snapshot and the pusher decides, based on its interval, whether to send it.

Payload:
    {
        "container_id": "<container_id>-multi-instance",
        "service_type": "multi-instance",
        "metrics": {<snapshot wire form>}
    }

POSTed to <target_url>/api/v1/metrics (or /api/v1/metrics/queue) with a
bearer token. Push failures are logged and never raised.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx

from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.config import PushConfig
    from dasharr.metrics.collector import Snapshot

logger = get_logger(__name__)

DIRECT_ENDPOINT = "/api/v1/metrics"
QUEUE_ENDPOINT = "/api/v1/metrics/queue"
SERVICE_TYPE = "multi-instance"

# Response bodies are truncated to this length in error logs
MAX_LOGGED_BODY = 500


class MetricsPusher:
    """
    Sends snapshots to a remote endpoint, at most once per interval.

    Example:
        >>> pusher = MetricsPusher("https://dash.example.com", "s3cret", container_id="home")
        >>> await pusher.maybe_push(snapshot)
        True
    """

    def __init__(
        self,
        target_url: str,
        secret: str,
        *,
        container_id: str,
        interval_seconds: float = 300,
        use_queue: bool = False,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target_url = target_url.rstrip("/")
        self._secret = secret
        self.container_id = container_id
        self.interval_seconds = interval_seconds
        self.use_queue = use_queue
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._last_push: float | None = None
        self.push_count = 0
        self.failure_count = 0

    @classmethod
    def from_config(cls, config: PushConfig) -> MetricsPusher:
        """Create a MetricsPusher from configuration."""
        return cls(
            config.target_url,
            config.secret,
            container_id=config.container_id,
            interval_seconds=config.interval_seconds,
            use_queue=config.use_queue,
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def endpoint(self) -> str:
        """Full URL snapshots are posted to."""
        return self.target_url + (QUEUE_ENDPOINT if self.use_queue else DIRECT_ENDPOINT)

    def build_payload(self, snapshot: Snapshot) -> dict[str, Any]:
        return {
            "container_id": f"{self.container_id}-{SERVICE_TYPE}",
            "service_type": SERVICE_TYPE,
            "metrics": snapshot.to_dict(),
        }

    def is_due(self) -> bool:
        """Whether the push interval has elapsed since the last attempt."""
        return self._last_push is None or self._clock() - self._last_push >= self.interval_seconds

    async def maybe_push(self, snapshot: Snapshot) -> bool:
        """
        Push snapshot if the interval has elapsed.

        Returns:
            True if the snapshot was sent successfully.
        """
        if not self.is_due():
            return False
        return await self.push(snapshot)

    async def push(self, snapshot: Snapshot) -> bool:
        """
        Push snapshot now.

        Returns:
            True on a 2xx response, False when skipped or failed.
        """
        if not snapshot.metrics:
            logger.warning("No metrics collected from any instances, skipping push")
            return False

        self._last_push = self._clock()
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._secret}",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.endpoint,
                    json=self.build_payload(snapshot),
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self.failure_count += 1
            logger.error(
                "Metrics push rejected",
                extra={
                    "endpoint": self.endpoint,
                    "status_code": e.response.status_code,
                    "response": e.response.text[:MAX_LOGGED_BODY],
                },
            )
            return False
        except httpx.HTTPError as e:
            self.failure_count += 1
            logger.error(
                "Failed to push metrics",
                extra={"endpoint": self.endpoint, "error": str(e) or type(e).__name__},
            )
            return False

        self.push_count += 1
        logger.info(
            "Pushed metrics to queue" if self.use_queue else "Pushed metrics",
            extra={
                "endpoint": self.endpoint,
                "instances": len(snapshot.metrics),
                "status_code": response.status_code,
            },
        )
        return True
