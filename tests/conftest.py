import asyncio
from typing import Any, Optional

import pytest
from pamqp.commands import Basic


class FakeCallbacks:
    """Stands in for aio_pika's ``CallbackCollection``."""

    def __init__(self) -> None:
        self._callbacks: list[Any] = []

    def add(self, callback: Any) -> None:
        self._callbacks.append(callback)

    def fire(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        for callback in list(self._callbacks):
            callback(sender, exc)

    def __len__(self) -> int:
        return len(self._callbacks)


class FakeExchange:
    def __init__(self, channel: "FakeChannel") -> None:
        self._channel = channel

    async def publish(self, message: Any, routing_key: str, **kwargs: Any) -> Any:
        await asyncio.sleep(0)
        if self._channel.publish_error is not None:
            raise self._channel.publish_error
        self._channel.published.append((routing_key, message))
        return self._channel.confirmation


class FakeChannel:
    def __init__(self) -> None:
        self.published: list[tuple[str, Any]] = []
        self.declared: list[tuple[str, dict[str, Any]]] = []
        self.close_callbacks = FakeCallbacks()
        self.default_exchange = FakeExchange(self)
        self.confirmation: Any = Basic.Ack(delivery_tag=1)
        self.publish_error: Optional[BaseException] = None
        self.declare_error: Optional[BaseException] = None
        self.close_error: Optional[BaseException] = None
        self.closed = False

    async def declare_queue(self, name: str, **kwargs: Any) -> None:
        if self.declare_error is not None:
            raise self.declare_error
        self.declared.append((name, kwargs))

    async def close(self) -> None:
        if self.close_error is not None:
            raise self.close_error
        self.closed = True


class FakeConnection:
    def __init__(self) -> None:
        self.channel_obj = FakeChannel()
        self.channel_kwargs: Optional[dict[str, Any]] = None
        self.channel_error: Optional[BaseException] = None
        self.close_callbacks = FakeCallbacks()
        self.is_closed = False
        self.close_calls = 0

    async def channel(self, **kwargs: Any) -> FakeChannel:
        self.channel_kwargs = kwargs
        if self.channel_error is not None:
            raise self.channel_error
        return self.channel_obj

    async def close(self) -> None:
        self.close_calls += 1
        self.is_closed = True


class FakeBroker:
    """Connection factory handing out ``FakeConnection`` objects.

    ``failures`` makes the next N calls raise ``ConnectionError``;
    ``configure`` runs on each new connection before it is returned.
    """

    def __init__(self) -> None:
        self.calls = 0
        self.connections: list[FakeConnection] = []
        self.failures = 0
        self.delay = 0.0
        self.configure: Any = None

    async def __call__(self) -> FakeConnection:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise ConnectionError("broker unreachable")
        connection = FakeConnection()
        if self.configure is not None:
            self.configure(connection)
        self.connections.append(connection)
        return connection

    @property
    def published(self) -> list[tuple[str, Any]]:
        return [item for conn in self.connections for item in conn.channel_obj.published]


class FakeTime:
    """Millisecond clock plus a sleep that advances it instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds * 1000.0
        await asyncio.sleep(0)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()
