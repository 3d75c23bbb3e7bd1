"""
Client-side delivery of behavioral events to the collector.

Delivery is fire-and-forget with at most `retry_limit` attempts per event.
Only transport-level failures are retried; an HTTP error response counts as
delivered. Nothing here raises into the detection code path.
"""

import asyncio
import logging
from typing import Optional, Protocol

import httpx

from .config import DeliveryConfig
from .errors import TransportError
from .models import BehavioralEvent, PendingDelivery

log = logging.getLogger(__name__)


class EventTransport(Protocol):
    async def send(self, event: BehavioralEvent) -> None:
        """Deliver one event. Raises TransportError on network failure."""
        ...


class HttpTransport:
    """POSTs events as JSON to the collector endpoint."""

    def __init__(
        self,
        collector_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.collector_url = collector_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(self, event: BehavioralEvent) -> None:
        try:
            response = await self._client.post(self.collector_url, json=event.to_wire())
        except httpx.TransportError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        if response.is_error:
            log.warning(
                "Collector rejected %s with %s: %s",
                event.event_type.value, response.status_code, response.text,
            )
        else:
            log.debug("Event sent: %s", event.event_type.value)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


class DeliveryQueue:
    """
    Sends events immediately and buffers transport failures for retry.

    A periodic drain swaps the retry buffer for an empty one before
    resending, so failures that happen while a pass is running wait for
    the next pass. An event is dropped once it has failed `retry_limit`
    times.
    """

    def __init__(
        self,
        transport: EventTransport,
        config: Optional[DeliveryConfig] = None,
    ):
        self.transport = transport
        self.config = config if config is not None else DeliveryConfig()
        self._buffer: list[PendingDelivery] = []
        self._in_flight: set[asyncio.Task] = set()
        self._drain_task: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def retry_limit(self) -> int:
        return self.config.retry_limit

    @property
    def pending(self) -> list[PendingDelivery]:
        """Snapshot of the retry buffer."""
        return list(self._buffer)

    def submit(self, event: BehavioralEvent) -> asyncio.Task:
        """Start delivering an event and return without waiting."""
        task = asyncio.get_running_loop().create_task(self._attempt(event, 1))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _attempt(self, event: BehavioralEvent, attempt: int):
        try:
            await self.transport.send(event)
        except TransportError as e:
            if attempt < self.retry_limit:
                self._buffer.append(PendingDelivery(event=event, attempt_count=attempt))
                log.info(
                    "Delivery of %s failed (attempt %d/%d), buffered: %s",
                    event.event_type.value, attempt, self.retry_limit, e,
                )
            else:
                self.dropped += 1
                log.warning(
                    "Dropping %s after %d failed attempts: %s",
                    event.event_type.value, attempt, e,
                )
        except Exception:
            self.dropped += 1
            log.exception("Unexpected error delivering %s", event.event_type.value)

    async def drain(self) -> int:
        """
        Run one retry pass over the buffered deliveries.

        Returns:
            Number of deliveries taken from the buffer
        """
        pending, self._buffer = self._buffer, []
        for item in pending:
            if item.attempt_count >= self.retry_limit:
                self.dropped += 1
                continue
            await self._attempt(item.event, item.attempt_count + 1)
        return len(pending)

    async def _drain_loop(self):
        while True:
            await asyncio.sleep(self.config.retry_interval_seconds)
            try:
                await self.drain()
            except Exception:
                log.exception("Retry drain failed")

    def start(self):
        """Start the periodic retry drain on the running loop."""
        if self._drain_task is None:
            self._drain_task = asyncio.get_running_loop().create_task(self._drain_loop())

    async def flush(self):
        """Wait for in-flight sends (not buffered retries) to settle."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def close(self):
        """Stop the drain timer, settle in-flight sends and close the transport."""
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None
        await self.flush()
        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()
