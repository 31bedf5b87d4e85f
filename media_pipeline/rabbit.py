"""RabbitMQ helpers: connections, stage topology, the stage queue backend and
the outbound transport.

This module wraps ``aio_pika`` to provide:
- Robust connections with optional TLS/mTLS support
- Per-stage topology: a direct exchange ``media.<stage>`` bound to the durable
  queue ``media.<stage>.q``, plus a delay exchange whose per-delay TTL queues
  (``media.<stage>.delay.<ms>``) dead-letter back into the stage exchange
- ``RabbitStageQueue``, the ``StageQueue`` implementation for multi-process
  deployments
- ``RabbitTransport``, which publishes replies to the outbound exchange that
  the chat transport consumes
- ``consume_inbound`` for inbound submission events

Example:
    >>> conn = await connect()
    >>> queue = RabbitStageQueue("upload", workers=3, settings=Settings(), connection=conn)
    >>> await queue.start(handler)
    >>> await queue.enqueue(job, delay_ms=4000)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import ssl
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlsplit

import aio_pika
import httpx
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractRobustConnection
from opentelemetry import context  # type: ignore
from pydantic import ValidationError

from media_pipeline.config import Settings
from media_pipeline.jobs import JobBase, dump_job, parse_job
from media_pipeline.models import InboundEvent
from media_pipeline.queues import ActiveJob, Handler, PurgeMode, QueueCounts
from media_pipeline.tracing import extract_context_from_headers, inject_headers

logger = logging.getLogger(__name__)

JOB_ROUTING_KEY = "jobs"
REPLY_ROUTING_KEY = "replies"


def stage_exchange(stage: str) -> str:
    return f"media.{stage}"


def stage_queue(stage: str) -> str:
    return f"media.{stage}.q"


def delay_exchange(stage: str) -> str:
    return f"media.{stage}.delay"


def delay_queue(stage: str, delay_ms: int) -> str:
    return f"media.{stage}.delay.{delay_ms}"


def _build_ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``."""
    scheme = urlsplit(settings.rabbitmq_url).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    context_ = ssl.create_default_context(cafile=settings.rabbitmq_ssl_ca_path or None)
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context_.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context_.check_hostname = False
        context_.verify_mode = ssl.CERT_NONE
    else:
        context_.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context_.verify_mode = ssl.CERT_REQUIRED
    return context_


async def connect(amqp_url: str | None = None, settings: Optional[Settings] = None) -> AbstractRobustConnection:
    """Create a robust AMQP connection with optional TLS and retry/backoff.

    Environment overrides:
    - ``RABBITMQ_CONNECT_ATTEMPTS`` (default: 12)
    - ``RABBITMQ_CONNECT_BASE_DELAY_MS`` (default: 500)
    - ``RABBITMQ_CONNECT_MAX_DELAY_MS`` (default: 3000)
    """
    settings = settings or Settings()
    url = amqp_url or settings.rabbitmq_url
    ssl_context = _build_ssl_context(settings)

    max_attempts = int(os.getenv("RABBITMQ_CONNECT_ATTEMPTS", "12"))
    delay_ms = int(os.getenv("RABBITMQ_CONNECT_BASE_DELAY_MS", "500"))
    max_delay_ms = int(os.getenv("RABBITMQ_CONNECT_MAX_DELAY_MS", "3000"))

    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            if ssl_context is not None:
                return await aio_pika.connect_robust(url, ssl=True, ssl_options=ssl_context)  # type: ignore[arg-type]
            return await aio_pika.connect_robust(url)
        except Exception as exc:  # noqa: BLE001
            last_exc = exc
            if attempt == max_attempts:
                break
            logger.warning("RabbitMQ connect attempt %d/%d failed: %s", attempt, max_attempts, exc)
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(int(delay_ms * 2), max_delay_ms)
    assert last_exc is not None
    raise last_exc


async def declare_stage_topology(channel: AbstractChannel, stage: str) -> None:
    """Declare the stage exchange/queue and its delay exchange."""
    exchange = await channel.declare_exchange(stage_exchange(stage), ExchangeType.DIRECT, durable=True)
    queue = await channel.declare_queue(stage_queue(stage), durable=True)
    await queue.bind(exchange, routing_key=JOB_ROUTING_KEY)
    await channel.declare_exchange(delay_exchange(stage), ExchangeType.DIRECT, durable=True)


async def declare_delay_queue(channel: AbstractChannel, stage: str, delay_ms: int) -> None:
    """Declare a TTL queue holding jobs for ``delay_ms`` before they return to the stage."""
    exchange = await channel.get_exchange(delay_exchange(stage))
    queue = await channel.declare_queue(
        delay_queue(stage, delay_ms),
        durable=True,
        arguments={
            "x-message-ttl": int(delay_ms),
            "x-dead-letter-exchange": stage_exchange(stage),
            "x-dead-letter-routing-key": JOB_ROUTING_KEY,
        },
    )
    await queue.bind(exchange, routing_key=f"delay_{delay_ms}")


async def declare_io_topology(channel: AbstractChannel, settings: Settings) -> None:
    """Declare the inbound submission queue and the outbound reply exchange/queue."""
    await channel.declare_queue(settings.inbound_queue, durable=True)
    outbound = await channel.declare_exchange(settings.outbound_exchange, ExchangeType.DIRECT, durable=True)
    replies = await channel.declare_queue(f"{settings.outbound_exchange}.q", durable=True)
    await replies.bind(outbound, routing_key=REPLY_ROUTING_KEY)


def _json_message(payload: Any, headers: Optional[Dict[str, Any]] = None) -> Message:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return Message(
        body=body,
        content_type="application/json",
        delivery_mode=DeliveryMode.PERSISTENT,
        headers=dict(headers) if headers else {},
    )


class RabbitStageQueue:
    """``StageQueue`` backed by a durable RabbitMQ queue.

    Concurrency is bounded by QoS prefetch and a semaphore sized to
    ``workers``. Jobs are acked after the handler returns; the handler owns
    retries (it re-publishes through a delay queue), so messages are never
    requeued by the broker.
    """

    def __init__(
        self,
        name: str,
        workers: int,
        settings: Optional[Settings] = None,
        connection: Optional[AbstractRobustConnection] = None,
    ) -> None:
        self.name = name
        self._workers = max(1, int(workers))
        self._settings = settings or Settings()
        self._connection = connection
        self._owns_connection = connection is None
        self._channel: Optional[AbstractChannel] = None
        self._declared_delays: set[int] = set()
        self._sem = asyncio.Semaphore(self._workers)
        self._active: dict[str, ActiveJob] = {}
        self._completed = 0
        self._failed = 0
        self._consumer_tag: Optional[str] = None

    async def _get_channel(self) -> AbstractChannel:
        if self._channel is None or self._channel.is_closed:
            if self._connection is None:
                self._connection = await connect(settings=self._settings)
            channel = await self._connection.channel()
            await channel.set_qos(prefetch_count=min(self._settings.prefetch_count, self._workers))
            await declare_stage_topology(channel, self.name)
            self._channel = channel
            self._declared_delays.clear()
        return self._channel

    async def enqueue(self, job: JobBase, delay_ms: int = 0) -> None:
        channel = await self._get_channel()
        message = _json_message(dump_job(job), headers=inject_headers())
        if delay_ms > 0:
            delay_ms = int(delay_ms)
            if delay_ms not in self._declared_delays:
                await declare_delay_queue(channel, self.name, delay_ms)
                self._declared_delays.add(delay_ms)
            exchange = await channel.get_exchange(delay_exchange(self.name))
            await exchange.publish(message, routing_key=f"delay_{delay_ms}")
        else:
            exchange = await channel.get_exchange(stage_exchange(self.name))
            await exchange.publish(message, routing_key=JOB_ROUTING_KEY, mandatory=True)

    async def start(self, handler: Handler) -> None:
        channel = await self._get_channel()
        queue = await channel.get_queue(stage_queue(self.name))

        async def on_message(message: AbstractIncomingMessage) -> None:
            async with self._sem:
                async with message.process(requeue=False):
                    try:
                        job = parse_job(message.body)
                    except ValidationError as exc:
                        logger.error("Dropping invalid %s job payload: %s", self.name, exc)
                        self._failed += 1
                        return
                    token = context.attach(extract_context_from_headers(message.headers))
                    self._active[job.job_id] = ActiveJob(job)
                    try:
                        outcome = await handler(job)
                    except Exception:  # noqa: BLE001
                        logger.exception("Unhandled error in %s handler for job %s", self.name, job.job_id)
                        outcome = "failed"
                    finally:
                        self._active.pop(job.job_id, None)
                        context.detach(token)
                    if outcome == "completed":
                        self._completed += 1
                    elif outcome == "failed":
                        self._failed += 1

        self._consumer_tag = await queue.consume(on_message, no_ack=False)
        logger.info("Consuming %s with %d workers", stage_queue(self.name), self._workers)

    async def stop(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            if self._consumer_tag is not None:
                queue = await self._channel.get_queue(stage_queue(self.name))
                await queue.cancel(self._consumer_tag)
            await self._channel.close()
        self._channel = None
        if self._owns_connection and self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def _queue_stats(self) -> Optional[list[dict[str, Any]]]:
        """Queue listing from the management API, or None when it is unreachable."""
        s = self._settings
        url = f"{s.rabbitmq_mgmt_url}/api/queues/{s.rabbitmq_vhost}"
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                r = await client.get(url, auth=(s.rabbitmq_user, s.rabbitmq_pass))
            if r.status_code != 200:
                logger.warning("Management API returned %s for %s", r.status_code, url)
                return None
            return r.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Management API unavailable: %s", exc)
            return None

    def _is_delay_queue(self, name: str) -> bool:
        return name.startswith(f"{delay_exchange(self.name)}.")

    async def counts(self) -> QueueCounts:
        """Counts from the management API; zeros when it is unreachable.

        ``waiting`` is ready messages, ``active`` is unacknowledged messages,
        ``completed`` is the broker's ack counter, ``delayed`` sums the delay
        queues and ``failed`` is this process's terminal-failure count.
        """
        counts = QueueCounts(failed=self._failed)
        for q in await self._queue_stats() or []:
            name = q.get("name", "")
            if name == stage_queue(self.name):
                counts.waiting = int(q.get("messages_ready", 0))
                counts.active = int(q.get("messages_unacknowledged", 0))
                counts.completed = int((q.get("message_stats") or {}).get("ack", 0))
            elif self._is_delay_queue(name):
                counts.delayed += int(q.get("messages", 0))
        return counts

    def active_jobs(self) -> list[ActiveJob]:
        return list(self._active.values())

    async def pending_jobs(self) -> list[JobBase]:
        # Broker-held messages cannot be listed without consuming them
        return []

    async def remove(self, job_id: str) -> bool:
        logger.info("Selective removal is not supported for %s (job %s)", stage_queue(self.name), job_id)
        return False

    async def purge(self, mode: PurgeMode) -> int:
        if mode == "completed":
            removed = self._completed + self._failed
            self._completed = 0
            self._failed = 0
            return removed
        channel = await self._get_channel()
        removed = 0
        queue = await channel.get_queue(stage_queue(self.name))
        result = await queue.purge()
        removed += int(getattr(result, "message_count", 0) or 0)
        # Delay queues declared by other processes are only visible through the management API
        delay_names = {delay_queue(self.name, d) for d in self._declared_delays}
        for q in await self._queue_stats() or []:
            if self._is_delay_queue(q.get("name", "")):
                delay_names.add(q["name"])
        for name in sorted(delay_names):
            dq = await channel.get_queue(name)
            result = await dq.purge()
            removed += int(getattr(result, "message_count", 0) or 0)
        logger.warning("Queue %s purged (%d messages removed)", stage_queue(self.name), removed)
        return removed


class RabbitTransport:
    """``Transport`` that publishes replies to the outbound exchange.

    Each message is ``{"destination", "text", "quote_id", "sent_at"}``;
    publishing is ``mandatory`` so an unroutable reply raises and the
    dispatcher falls back to its next delivery form.
    """

    def __init__(self, settings: Optional[Settings] = None, connection: Optional[AbstractRobustConnection] = None) -> None:
        self._settings = settings or Settings()
        self._connection = connection
        self._channel: Optional[AbstractChannel] = None

    async def _get_channel(self) -> AbstractChannel:
        if self._channel is None or self._channel.is_closed:
            if self._connection is None:
                self._connection = await connect(settings=self._settings)
            channel = await self._connection.channel(publisher_confirms=True)
            await declare_io_topology(channel, self._settings)
            self._channel = channel
        return self._channel

    async def deliver(self, destination: str, text: str, *, quote_id: Optional[str] = None) -> None:
        channel = await self._get_channel()
        exchange = await channel.get_exchange(self._settings.outbound_exchange)
        payload = {"destination": destination, "text": text, "quote_id": quote_id, "sent_at": time.time()}
        await exchange.publish(_json_message(payload), routing_key=REPLY_ROUTING_KEY, mandatory=True)

    async def close(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None


async def consume_inbound(
    channel: AbstractChannel,
    settings: Settings,
    on_event: Callable[[InboundEvent], Awaitable[Any]],
) -> str:
    """Consume inbound submission events through ``handle_inbound_message``.

    Returns the consumer tag.
    """
    await declare_io_topology(channel, settings)
    queue = await channel.get_queue(settings.inbound_queue)

    async def on_message(message: AbstractIncomingMessage) -> None:
        await handle_inbound_message(message, on_event)

    return await queue.consume(on_message, no_ack=False)


async def handle_inbound_message(
    message: AbstractIncomingMessage,
    on_event: Callable[[InboundEvent], Awaitable[Any]],
) -> str:
    """Ack, requeue or drop one inbound message; returns the action taken.

    Invalid payloads are dropped. When ``on_event`` raises, the message is
    requeued once so a transient failure (database, broker) does not lose the
    submission; a message that fails again after redelivery is dropped.
    """
    try:
        event = InboundEvent.model_validate_json(message.body)
    except ValidationError as exc:
        logger.error("Dropping invalid inbound event: %s", exc)
        await message.reject(requeue=False)
        return "dropped"
    try:
        await on_event(event)
    except Exception:  # noqa: BLE001
        if message.redelivered:
            logger.exception("Inbound event %s failed again after redelivery; dropping", event.submission_id)
            await message.reject(requeue=False)
            return "dropped"
        logger.exception("Inbound event %s failed; requeueing", event.submission_id)
        await message.nack(requeue=True)
        return "requeued"
    await message.ack()
    return "acked"


async def publish_inbound(channel: AbstractChannel, settings: Settings, event: InboundEvent) -> None:
    """Publish an inbound event to the inbound queue via the default exchange."""
    await declare_io_topology(channel, settings)
    await channel.default_exchange.publish(
        _json_message(event.model_dump(mode="json", exclude_none=True)),
        routing_key=settings.inbound_queue,
    )
