import asyncio
import enum
import json
from typing import Any, Awaitable, Callable, List, Optional, Set

from websockets.asyncio.client import connect as ws_connect

from polygon_proxy.config import POLYGON_WS_URL
from polygon_proxy.core.errors import MalformedFrame, UpstreamUnavailable
from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)


class ConnectionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    STREAMING = "streaming"
    CLOSED = "closed"


def parse_frame(raw: Any) -> Any:
    """Decode an upstream frame; Polygon pushes a JSON array or object."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrame(f"not utf-8: {e}") from e
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedFrame(str(e)) from e
    if not isinstance(data, (list, dict)):
        raise MalformedFrame(f"unexpected frame type {type(data).__name__}")
    return data


def _channels(params: Any) -> List[str]:
    if not isinstance(params, str):
        return []
    return [c.strip() for c in params.split(",") if c.strip()]


class UpstreamConnectionManager:
    """
    Owns the single websocket to the Polygon feed.

    One supervisor task connects, authenticates and streams; on any close or
    error it waits `reconnect_delay` and starts over, so there is never more
    than one connection attempt in flight. Raw frames are pushed onto
    `self.frames` for the fan-out dispatcher.
    """

    def __init__(
        self,
        api_key: str,
        url: str = POLYGON_WS_URL,
        reconnect_delay: float = 2.0,
        connect: Callable[[str], Awaitable[Any]] = ws_connect,
        max_queue: int = 10000,
    ):
        self.api_key = api_key
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._connect = connect

        self.state = ConnectionState.IDLE
        self.retry_count = 0
        self.frames: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.subscribed_channels: Set[str] = set()

        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.state_listeners: List[Callable[[ConnectionState], None]] = []

    # ----------------- lifecycle -----------------------
    def ensure_connected(self) -> None:
        """Start the supervisor unless one is already connecting or running"""
        if self._stopping:
            return
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(
            self._supervise(), name="polygon-upstream"
        )

    async def close(self) -> None:
        """Terminal shutdown: stop reconnecting and drop the transport"""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_transport()
        self._set_state(ConnectionState.CLOSED)

    @property
    def is_streaming(self) -> bool:
        return self.state is ConnectionState.STREAMING

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.debug(f"Upstream state {self.state.value} -> {state.value}")
        self.state = state
        for listener in self.state_listeners:
            listener(state)

    async def _supervise(self):
        while not self._stopping:
            try:
                await self._open()
                self.retry_count = 0
                await self._stream()
                logger.warning("🔌 Polygon WebSocket connection closed, reconnecting...")
            except asyncio.CancelledError:
                raise
            except UpstreamUnavailable as e:
                logger.error(f"❌ Failed to connect: {e}")
            except Exception as e:
                logger.error(f"❌ Error in upstream stream: {e}")
            finally:
                await self._close_transport()
                if not self._stopping:
                    self._set_state(ConnectionState.CLOSED)

            if self._stopping:
                break
            self.retry_count += 1
            logger.info(
                f"Reconnecting in {self.reconnect_delay}s (attempt {self.retry_count})"
            )
            await asyncio.sleep(self.reconnect_delay)

    async def _open(self):
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._ws = await self._connect(self.url)
        except Exception as e:
            raise UpstreamUnavailable(f"connect {self.url}: {e}") from e

        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            await self._ws.send(json.dumps({"action": "auth", "params": self.api_key}))
            if self.subscribed_channels:
                # a fresh session has no subscriptions, restore them
                await self._ws.send(
                    json.dumps(
                        {
                            "action": "subscribe",
                            "params": ",".join(sorted(self.subscribed_channels)),
                        }
                    )
                )
        except Exception as e:
            raise UpstreamUnavailable(f"auth: {e}") from e

        self._set_state(ConnectionState.STREAMING)
        logger.info("🔐 Polygon WebSocket connected & authenticated")

    async def _stream(self):
        async for msg in self._ws:
            try:
                parse_frame(msg)
            except MalformedFrame as e:
                logger.debug(f"Dropping malformed frame: {e}")
                continue

            if isinstance(msg, (bytes, bytearray)):
                msg = msg.decode("utf-8")
            try:
                self.frames.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("Frame queue full, dropping upstream frame")

    async def _close_transport(self):
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing upstream: {e}")

    # ----------------- control messages -----------------------
    async def send(self, message: str) -> bool:
        """
        Forward a control message upstream.

        Returns:
            False when not streaming (the message is dropped, not queued)
        """
        if not self.is_streaming or self._ws is None:
            return False

        try:
            await self._ws.send(message)
        except Exception as e:
            logger.error(f"❌ Failed to send upstream: {e}")
            return False

        self._track_subscription(message)
        return True

    def _track_subscription(self, message: str) -> None:
        try:
            envelope = json.loads(message)
        except ValueError:
            return
        if not isinstance(envelope, dict):
            return

        action = envelope.get("action")
        channels = _channels(envelope.get("params"))
        if action == "subscribe":
            self.subscribed_channels.update(channels)
            logger.info(f"📡 Subscribed to Polygon: {','.join(channels)}")
        elif action == "unsubscribe":
            self.subscribed_channels.difference_update(channels)
            logger.info(f"❌ Unsubscribed from Polygon: {','.join(channels)}")
