import asyncio

import pytest

_CLEAN_CLOSE = object()


class FakeUpstreamSocket:
    """Stands in for a websockets client connection"""

    def __init__(self):
        self.sent = []
        self.inbox = asyncio.Queue()
        self.closed = False

    async def send(self, message):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(message)

    def push(self, frame):
        self.inbox.put_nowait(frame)

    def drop(self, exc=None):
        """End the stream: clean close by default, or raise `exc`"""
        self.inbox.put_nowait(exc if exc is not None else _CLEAN_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _CLEAN_CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


class FakeConnector:
    """Async `connect(url)` replacement recording every attempt"""

    def __init__(self, fail_first: int = 0):
        self.fail_first = fail_first
        self.attempts = 0
        self.sockets = []

    async def __call__(self, url):
        self.attempts += 1
        if self.attempts <= self.fail_first:
            raise OSError("connection refused")
        ws = FakeUpstreamSocket()
        self.sockets.append(ws)
        return ws


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait_until


@pytest.fixture
def flaky_connector():
    """Refuses the first two connection attempts"""
    return FakeConnector(fail_first=2)
