"""
WebSocket relay: one Polygon upstream fanned out to many subscribers.

Subscribers connect to ws://<host>:<ws_port>/ws and speak the Polygon
envelope ({"action": "auth"|"subscribe"|"unsubscribe", "params": ...}).
Their control messages are forwarded upstream (auth with the proxy's own
key), every upstream frame is broadcast to all of them.
"""

import asyncio
import itertools
import json
from http import HTTPStatus
from typing import Any, Optional, Set

from prometheus_client import Counter, Gauge
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from polygon_proxy.config import RELAY_PATH
from polygon_proxy.core.collector.polygon_manager import UpstreamConnectionManager
from polygon_proxy.core.errors import DeliveryFailed
from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)

FRAMES_RELAYED = Counter(
    "polygon_proxy_frames_relayed_total", "Upstream frames broadcast to subscribers"
)
DELIVERIES_DROPPED = Counter(
    "polygon_proxy_deliveries_dropped_total",
    "Frames dropped for a subscriber that could not keep up",
)
DELIVERY_FAILURES = Counter(
    "polygon_proxy_delivery_failures_total", "Subscribers detached after a failed send"
)
SUBSCRIBERS = Gauge("polygon_proxy_subscribers", "Currently attached subscribers")

_ids = itertools.count(1)


class Subscriber:
    """A downstream connection plus its liveness flag"""

    def __init__(self, connection: Any):
        self.id = next(_ids)
        self.connection = connection
        self.alive = True

    @property
    def is_open(self) -> bool:
        return self.alive and self.connection.state is State.OPEN

    async def send(self, raw: str) -> None:
        try:
            await self.connection.send(raw)
        except ConnectionClosed as e:
            self.alive = False
            raise DeliveryFailed(f"subscriber {self.id} closed: {e}") from e
        except Exception as e:
            self.alive = False
            raise DeliveryFailed(f"subscriber {self.id}: {e}") from e

    def __repr__(self) -> str:
        return f"Subscriber({self.id})"


class FanoutBroker:
    """
    Relays between the upstream manager and the attached subscribers.

    Runs entirely on the event loop, so the subscriber set and the upstream
    state are only ever touched from one thread.
    """

    def __init__(
        self,
        upstream: UpstreamConnectionManager,
        api_key: str,
        delivery_timeout: float = 1.0,
    ):
        self.upstream = upstream
        self.api_key = api_key
        self.delivery_timeout = delivery_timeout
        self.subscribers: Set[Subscriber] = set()
        self._dispatcher: Optional[asyncio.Task] = None

    # ----------------- subscribers -----------------------
    def attach(self, subscriber: Subscriber) -> None:
        self.subscribers.add(subscriber)
        SUBSCRIBERS.set(len(self.subscribers))
        logger.info(f"Client connected: {subscriber} ({len(self.subscribers)} total)")
        self.warm_up()

    def detach(self, subscriber: Subscriber) -> None:
        if subscriber not in self.subscribers:
            return
        self.subscribers.discard(subscriber)
        subscriber.alive = False
        SUBSCRIBERS.set(len(self.subscribers))
        logger.info(f"🔌 Client disconnected: {subscriber} ({len(self.subscribers)} left)")

    # ----------------- upstream -> subscribers -----------------------
    async def on_upstream_message(self, raw: str) -> None:
        """Deliver `raw` unchanged to every open subscriber"""
        targets = [s for s in self.subscribers if s.is_open]
        for subscriber in self.subscribers - set(targets):
            self.detach(subscriber)
        if not targets:
            return

        FRAMES_RELAYED.inc()
        await asyncio.gather(*(self._deliver(s, raw) for s in targets))

    async def _deliver(self, subscriber: Subscriber, raw: str) -> None:
        try:
            await asyncio.wait_for(subscriber.send(raw), timeout=self.delivery_timeout)
        except asyncio.TimeoutError:
            DELIVERIES_DROPPED.inc()
            logger.warning(f"Dropping frame for slow {subscriber}")
        except DeliveryFailed as e:
            DELIVERY_FAILURES.inc()
            logger.info(f"Delivery failed, detaching: {e}")
            self.detach(subscriber)

    def warm_up(self) -> None:
        """Connect upstream before any subscriber arrives"""
        self.start_dispatcher()
        self.upstream.ensure_connected()

    def start_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(
                self._dispatch(), name="fanout-dispatcher"
            )

    async def _dispatch(self):
        while True:
            raw = await self.upstream.frames.get()
            try:
                await self.on_upstream_message(raw)
            except Exception as e:
                logger.error(f"❌ Broadcast error: {e}")

    async def stop(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    # ----------------- subscribers -> upstream -----------------------
    async def on_subscriber_message(self, subscriber: Subscriber, raw: Any) -> bool:
        """
        Forward a control message upstream.

        Returns:
            True if it was sent; dropped when upstream is not streaming or the
            message is not a JSON envelope.
        """
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")

        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.debug(f"Dropping non-JSON message from {subscriber}")
            return False

        if isinstance(envelope, dict) and envelope.get("action") == "auth":
            raw = json.dumps({**envelope, "params": self.api_key})

        if not self.upstream.is_streaming:
            logger.debug(
                f"Upstream {self.upstream.state.value}, dropping message from {subscriber}"
            )
            return False

        return await self.upstream.send(raw)


class RelayServer:
    """Accepts subscribers on the relay path and wires them to the broker"""

    def __init__(self, broker: FanoutBroker, host: str, port: int, path: str = RELAY_PATH):
        self.broker = broker
        self.host = host
        self.port = port
        self.path = path
        self._server = None

    def _process_request(self, connection, request):
        if request.path != self.path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def handler(self, connection) -> None:
        subscriber = Subscriber(connection)
        self.broker.attach(subscriber)
        try:
            async for message in connection:
                await self.broker.on_subscriber_message(subscriber, message)
        except ConnectionClosed:
            pass
        finally:
            self.broker.detach(subscriber)

    async def start(self) -> None:
        self._server = await serve(
            self.handler,
            self.host,
            self.port,
            process_request=self._process_request,
        )
        if not self.port:
            # port 0: report the one the OS picked
            self.port = next(iter(self._server.sockets)).getsockname()[1]
        logger.info(f"✅ Relay listening on ws://{self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.broker.stop()
        await self.broker.upstream.close()
