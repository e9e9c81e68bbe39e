"""RabbitMQ publisher for the data-worker queues.

This module wraps ``aio_pika`` to provide:
- A default connection factory with optional TLS/mTLS support
- ``QueuePublisher``: one durable priority queue per instance, a lazily
  opened confirm channel shared by all publishes, and self-healing
  reconnection after the broker closes the connection or channel

Connection state is an explicit variant (``Disconnected``, ``Connecting``,
``Ready``) and is only ever changed through ``QueuePublisher._transition``.

Example:
    >>> publisher = QueuePublisher(settings.amqp_url, "osu.beatmaps")
    >>> message = await publisher.publish({"beatmapId": 1234})
    >>> message["priority"]
    5
    >>> await publisher.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Optional, Union
from urllib.parse import urlsplit

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractConnection
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError, DeliveryError, PublishError
from pamqp.commands import Basic
from pydantic import BaseModel, ConfigDict

from otr_queue.config import Settings
from otr_queue.constants import QUEUE_PRIORITY_ARGUMENTS
from otr_queue.errors import DeliveryRejected, TransportError
from otr_queue.metadata import (
    MessageMetadata,
    MessageMetadataOverrides,
    build_envelope,
    create_message_metadata,
)
from otr_queue.metrics import (
    QUEUE_CONNECTION_ESTABLISHED_TOTAL,
    QUEUE_CONNECTION_RESET_TOTAL,
    QUEUE_PUBLISH_LATENCY_SECONDS,
    QUEUE_PUBLISH_TOTAL,
)
from otr_queue.tracing import get_tracer, inject_headers, publish_span


logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Awaitable[AbstractConnection]]


def _build_ssl_context(url: str, settings: Settings) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

    Honors ``RABBITMQ_SSL_*`` flags in ``Settings``. When verification is
    disabled (dev/local), hostname checks and certificate verification are
    relaxed.
    """
    scheme = urlsplit(url).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    cafile = settings.rabbitmq_ssl_ca_path or None
    context = ssl.create_default_context(cafile=cafile)

    # Client certs for mTLS if provided
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        context.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context.verify_mode = ssl.CERT_REQUIRED

    return context


async def connect(amqp_url: str | None = None, settings: Settings | None = None) -> AbstractConnection:
    """Open a single (non-robust) AMQP connection with optional TLS/mTLS.

    One attempt only; ``QueuePublisher`` reconnects on the next publish.
    """
    settings = settings or Settings()
    url = amqp_url or settings.amqp_url
    ssl_context = _build_ssl_context(url, settings)
    if ssl_context is not None:
        return await aio_pika.connect(url, ssl=True, ssl_context=ssl_context)
    return await aio_pika.connect(url)


@dataclass(frozen=True)
class Disconnected:
    """No connection; the next publish or warm-up starts one."""


@dataclass(frozen=True, eq=False)
class Connecting:
    """A shared establishment attempt is in flight."""
    attempt: "asyncio.Task[Ready]"


@dataclass(frozen=True, eq=False)
class Ready:
    """An open confirm channel on an open connection, queue declared."""
    connection: AbstractConnection
    channel: AbstractChannel


ConnectionState = Union[Disconnected, Connecting, Ready]

DISCONNECTED = Disconnected()


class QueuePublishOptions(BaseModel):
    """Per-call publish options."""
    model_config = ConfigDict(extra="forbid")

    metadata: Optional[MessageMetadataOverrides] = None

    @classmethod
    def coerce(cls, options: "QueuePublishOptions | Mapping[str, Any] | None") -> "QueuePublishOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls.model_validate(dict(options))


PublishOptionsInput = Union[QueuePublishOptions, Mapping[str, Any], None]


class QueuePublisher:
    """Publish JSON envelopes to one durable priority queue with publisher confirms.

    Purpose:
    - Stamp each payload with metadata (``requestedAt``, ``correlationId``,
      ``priority``) and deliver it to ``queue_name`` via the default exchange
    - Resolve only after the broker confirms the message

    Connection model:
    - Nothing is opened until the first ``publish`` or ``warm_up``
    - Establishment is single-flight: concurrent callers share one attempt
    - When the connection or channel closes, the cached state is dropped and
      the next publish reconnects from scratch
    - No retry, backoff or buffering: a failed publish raises to the caller

    Properties:
    - ``assert_queue_options``: extra ``declare_queue`` keyword arguments;
      ``arguments`` are merged over the priority preset
    - ``publish_options``: base ``aio_pika.Message`` properties; ``persistent``
      (default True) and ``priority`` (default: the message priority) are
      honored, ``headers`` are merged with trace-context headers
    - ``connection_factory``: zero-argument coroutine returning a connection;
      defaults to ``connect(url, settings)``
    """

    def __init__(
        self,
        url: str,
        queue_name: str,
        assert_queue_options: Optional[Mapping[str, Any]] = None,
        publish_options: Optional[Mapping[str, Any]] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.url = url
        self.queue_name = queue_name
        self._assert_queue_options = dict(assert_queue_options or {})
        self._publish_options = dict(publish_options or {})
        self._connection_factory: ConnectionFactory = connection_factory or partial(connect, url, settings)
        self._state: ConnectionState = DISCONNECTED
        self._tracer = get_tracer(__name__)
        # Background teardown of abandoned connections
        self._background: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def __aenter__(self) -> "QueuePublisher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def publish(self, payload: Mapping[str, Any], options: PublishOptionsInput = None) -> dict[str, Any]:
        """Publish ``payload`` and return the stamped message once confirmed.

        Raises:
        - ``PayloadConflictError`` if the payload uses a metadata field name
        - ``TransportError`` if the connection, channel or queue declaration fails
        - ``DeliveryRejected`` if the broker nacks or returns the message
        """
        opts = QueuePublishOptions.coerce(options)
        metadata = create_message_metadata(opts.metadata)
        message = build_envelope(metadata, payload)
        body = json.dumps(message, separators=(",", ":")).encode("utf-8")

        started = time.perf_counter()
        with publish_span(self._tracer, self.queue_name, metadata.correlation_id, int(metadata.priority)) as span:
            try:
                await self._send(body, metadata)
            except Exception as exc:
                QUEUE_PUBLISH_TOTAL.labels(queue=self.queue_name, result=exc.__class__.__name__).inc()
                span.record_exception(exc)
                span.set_attribute("error", True)
                raise
        QUEUE_PUBLISH_TOTAL.labels(queue=self.queue_name, result="ok").inc()
        QUEUE_PUBLISH_LATENCY_SECONDS.labels(queue=self.queue_name).observe(time.perf_counter() - started)
        return message

    async def warm_up(self) -> None:
        """Open the connection and declare the queue without publishing."""
        await self._acquire_channel()

    async def close(self) -> None:
        """Close the channel and connection; safe to call repeatedly.

        Failures closing one side do not prevent closing the other. An
        establishment still in flight is awaited and then closed.
        """
        state = self._state
        if isinstance(state, Disconnected):
            return
        self._transition(DISCONNECTED)

        if isinstance(state, Connecting):
            try:
                state = await asyncio.shield(state.attempt)
            except TransportError:
                return
            except asyncio.CancelledError:
                if not state.attempt.cancelled():
                    raise
                return

        results = await asyncio.gather(state.channel.close(), state.connection.close(), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.debug("error while closing publisher for %s: %r", self.queue_name, result)
        logger.info("closed publisher for queue %s", self.queue_name)

    async def _send(self, body: bytes, metadata: MessageMetadata) -> None:
        channel = await self._acquire_channel()
        amqp_message = self._build_amqp_message(body, metadata)
        try:
            confirmation = await channel.default_exchange.publish(amqp_message, routing_key=self.queue_name)
        except (DeliveryError, PublishError) as exc:
            raise DeliveryRejected(self.queue_name, metadata.correlation_id, exc.__class__.__name__) from exc
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            raise TransportError(self.queue_name, str(exc) or exc.__class__.__name__) from exc
        if isinstance(confirmation, Basic.Nack):
            raise DeliveryRejected(self.queue_name, metadata.correlation_id)

    def _build_amqp_message(self, body: bytes, metadata: MessageMetadata) -> Message:
        properties: dict[str, Any] = {"persistent": True, **self._publish_options}
        persistent = bool(properties.pop("persistent"))
        if properties.get("priority") is None:
            properties["priority"] = int(metadata.priority)
        headers = inject_headers(dict(properties.pop("headers", None) or {}))
        properties.setdefault("content_type", "application/json")
        properties.setdefault("content_encoding", "utf-8")
        properties.setdefault("correlation_id", metadata.correlation_id)
        return Message(
            body,
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
            headers=headers,
            **properties,
        )

    def _queue_declaration(self) -> dict[str, Any]:
        options: dict[str, Any] = {"durable": True, **self._assert_queue_options}
        options["arguments"] = {
            **QUEUE_PRIORITY_ARGUMENTS,
            **(self._assert_queue_options.get("arguments") or {}),
        }
        return options

    async def _acquire_channel(self) -> AbstractChannel:
        state = self._state
        if isinstance(state, Ready):
            return state.channel
        if isinstance(state, Disconnected):
            attempt = asyncio.ensure_future(self._establish())
            attempt.add_done_callback(self._attempt_done)
            state = Connecting(attempt)
            self._transition(state)
        # Shielded so one cancelled caller does not abort the shared attempt
        try:
            ready = await asyncio.shield(state.attempt)
        except asyncio.CancelledError:
            if not state.attempt.cancelled():
                raise
            raise TransportError(self.queue_name, "connection attempt cancelled") from None
        return ready.channel

    async def _establish(self) -> Ready:
        connection: Optional[AbstractConnection] = None
        try:
            connection = await self._connection_factory()
            channel = await connection.channel(publisher_confirms=True)
            await channel.declare_queue(self.queue_name, **self._queue_declaration())
        except Exception as exc:
            if self._is_current_attempt():
                self._transition(DISCONNECTED, reason="failed")
            if connection is not None:
                await self._close_quietly(connection)
            raise TransportError(self.queue_name, str(exc) or exc.__class__.__name__) from exc
        except BaseException:
            # Cancelled mid-establishment; _attempt_done resets the state
            if connection is not None:
                self._spawn(self._close_quietly(connection))
            raise

        ready = Ready(connection=connection, channel=channel)
        connection.close_callbacks.add(partial(self._handle_closed, ready))
        channel.close_callbacks.add(partial(self._handle_closed, ready))
        QUEUE_CONNECTION_ESTABLISHED_TOTAL.labels(queue=self.queue_name).inc()
        if self._is_current_attempt():
            self._transition(ready)
            logger.info("connected publisher for queue %s", self.queue_name)
        return ready

    def _attempt_done(self, attempt: "asyncio.Future[Ready]") -> None:
        if not attempt.cancelled():
            # Waiters re-raise the failure; this only marks it as retrieved
            attempt.exception()
            return
        # A cancelled attempt may never have run, so it cannot clean up itself
        state = self._state
        if isinstance(state, Connecting) and state.attempt is attempt:
            self._transition(DISCONNECTED, reason="cancelled")

    def _is_current_attempt(self) -> bool:
        state = self._state
        return isinstance(state, Connecting) and state.attempt is asyncio.current_task()

    def _handle_closed(self, ready: Ready, sender: Any = None, *args: Any) -> None:
        # Callbacks from a connection we already replaced or closed are stale
        if self._state is not ready:
            return
        logger.warning("broker closed connection for queue %s; reconnecting on next publish", self.queue_name)
        self._transition(DISCONNECTED, reason="closed")
        if not ready.connection.is_closed:
            self._spawn(self._close_quietly(ready.connection))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_quietly(self, connection: AbstractConnection) -> None:
        try:
            await connection.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("error while closing connection for %s: %r", self.queue_name, exc)

    def _transition(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        logger.debug(
            "publisher %s: %s -> %s", self.queue_name, type(self._state).__name__, type(state).__name__
        )
        self._state = state
        if reason is not None:
            QUEUE_CONNECTION_RESET_TOTAL.labels(queue=self.queue_name, reason=reason).inc()
