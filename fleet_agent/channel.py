"""Control channel to the backend.

A single outbound WebSocket connection carries JSON text frames in both
directions. The channel runs a reconnecting state machine::

    Disconnected -> Connecting -> Handshaking -> Connected -> Closing
         ^____________________________________________________|

Outbound frames go through a bounded queue served by one writer task, so
writes are totally ordered. Inbound frames are handed to a handler (the
command dispatcher) which must return promptly.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Awaitable, Callable

import aiohttp

from fleet_agent.errors import ProtocolError, TransportError
from fleet_agent.metrics import (
    channel_connected,
    frames_dropped,
    frames_received,
    frames_sent,
    reconnect_attempts,
)
from fleet_agent.schemas import AgentHello, Frame, FrameKind

logger = logging.getLogger(__name__)

FrameHandler = Callable[[Frame], Awaitable[None]]
TeardownHook = Callable[[], Awaitable[None]]


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    CLOSING = "closing"


class Backoff:
    """Exponential reconnect schedule with full jitter.

    The ceiling grows ``base * factor**attempt`` up to ``cap`` and only
    resets through :meth:`reset`; each delay is drawn uniformly from
    ``[0, ceiling]``.
    """

    def __init__(
        self,
        base: float = 1.0,
        factor: float = 2.0,
        cap: float = 60.0,
        rng: random.Random | None = None,
    ):
        self.base = base
        self.factor = factor
        self.cap = cap
        self.attempt = 0
        self._rng = rng or random.Random()

    def ceiling(self) -> float:
        return min(self.cap, self.base * self.factor ** self.attempt)

    def next_delay(self) -> float:
        ceiling = self.ceiling()
        self.attempt += 1
        return self._rng.uniform(0, ceiling)

    def reset(self) -> None:
        self.attempt = 0


class ControlChannel:
    """Reconnecting duplex connection to the backend."""

    def __init__(
        self,
        url: str,
        token: str,
        hello: Callable[[], AgentHello],
        handler: FrameHandler | None = None,
        on_teardown: TeardownHook | None = None,
        connect_timeout: float = 10.0,
        handshake_timeout: float = 10.0,
        heartbeat_interval: float = 20.0,
        heartbeat_miss_limit: int = 3,
        queue_size: int = 1024,
        backoff: Backoff | None = None,
    ):
        self.url = url
        self.token = token
        self.hello = hello
        self.handler = handler
        self.on_teardown = on_teardown
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_miss_limit = heartbeat_miss_limit
        self.queue_size = queue_size
        self.backoff = backoff or Backoff()

        self._state = ChannelState.DISCONNECTED
        self._queue: asyncio.Queue[Frame] | None = None
        self._heard = False
        self._missed = 0
        self._stopping = False
        self._ready = asyncio.Event()

    # --- State ---

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ChannelState.CONNECTED

    def _set_state(self, state: ChannelState) -> None:
        if state is not self._state:
            logger.debug(f"Control channel {self._state.value} -> {state.value}")
        self._state = state
        channel_connected.set(1 if state is ChannelState.CONNECTED else 0)
        if state is ChannelState.CONNECTED:
            self._ready.set()
        else:
            self._ready.clear()

    async def wait_connected(self) -> None:
        await self._ready.wait()

    # --- Outbound ---

    async def send(self, frame: Frame, timeout: float | None = None) -> bool:
        """Queue a frame for the writer.

        Returns:
            False if the channel is not connected or the queue stayed full
            for ``timeout`` seconds; the frame is dropped in both cases
        """
        queue = self._queue
        if not self.connected or queue is None:
            frames_dropped.labels(reason="disconnected").inc()
            return False
        try:
            if timeout is None:
                await queue.put(frame)
            else:
                await asyncio.wait_for(queue.put(frame), timeout)
        except asyncio.TimeoutError:
            frames_dropped.labels(reason="backpressure").inc()
            return False
        return True

    def send_nowait(self, frame: Frame) -> bool:
        """Queue a frame without waiting; drop it if it does not fit."""
        queue = self._queue
        if not self.connected or queue is None:
            frames_dropped.labels(reason="disconnected").inc()
            return False
        try:
            queue.put_nowait(frame)
        except asyncio.QueueFull:
            frames_dropped.labels(reason="queue_full").inc()
            return False
        return True

    # --- Lifecycle ---

    async def run_forever(self) -> None:
        """Connect, serve and reconnect until :meth:`stop` or cancellation."""
        self._stopping = False
        try:
            async with aiohttp.ClientSession() as session:
                while not self._stopping:
                    try:
                        ws = await self._connect(session)
                    except TransportError as e:
                        reconnect_attempts.labels(result="connect_failed").inc()
                        await self._retry_later(f"connect failed: {e}")
                        continue

                    try:
                        await self._handshake(ws)
                    except (TransportError, ProtocolError) as e:
                        reconnect_attempts.labels(result="handshake_failed").inc()
                        await ws.close()
                        await self._retry_later(f"handshake failed: {e}")
                        continue

                    reconnect_attempts.labels(result="connected").inc()
                    self.backoff.reset()
                    started = asyncio.get_running_loop().time()
                    await self._serve(ws)

                    lasted = asyncio.get_running_loop().time() - started
                    if not self._stopping and lasted < self.heartbeat_interval:
                        # Backend accepts then drops us; do not spin
                        await self._retry_later(f"session ended after {lasted:.1f}s")
        finally:
            self._set_state(ChannelState.DISCONNECTED)

    def stop(self) -> None:
        self._stopping = True

    async def _retry_later(self, reason: str) -> None:
        self._set_state(ChannelState.DISCONNECTED)
        delay = self.backoff.next_delay()
        logger.warning(f"Control channel {reason}; retrying in {delay:.1f}s")
        await asyncio.sleep(delay)

    async def _connect(self, session: aiohttp.ClientSession) -> aiohttp.ClientWebSocketResponse:
        self._set_state(ChannelState.CONNECTING)
        logger.info(f"Connecting to backend at {self.url}")
        try:
            return await asyncio.wait_for(
                session.ws_connect(
                    self.url,
                    headers={"Authorization": f"Bearer {self.token}"},
                    max_msg_size=0,
                ),
                self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"timed out after {self.connect_timeout:g}s") from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def _handshake(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._set_state(ChannelState.HANDSHAKING)
        hello = Frame.new(FrameKind.AGENT_HELLO, self.hello().model_dump())
        try:
            await ws.send_str(hello.encode())
            msg = await asyncio.wait_for(ws.receive(), self.handshake_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"no backend.ready within {self.handshake_timeout:g}s"
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(str(e) or type(e).__name__) from e

        if msg.type is not aiohttp.WSMsgType.TEXT:
            raise TransportError(f"connection ended during handshake ({msg.type.name})")
        frame = Frame.decode(msg.data)
        if frame.kind == FrameKind.ERROR.value:
            raise TransportError(f"backend rejected agent: {frame.payload}")
        if frame.kind != FrameKind.BACKEND_READY.value:
            raise ProtocolError(f"expected backend.ready, got {frame.kind}")

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._heard = True
        self._missed = 0
        self._set_state(ChannelState.CONNECTED)
        logger.info("Control channel connected")

        tasks = [
            asyncio.create_task(self._read_loop(ws), name="channel-reader"),
            asyncio.create_task(self._write_loop(ws), name="channel-writer"),
            asyncio.create_task(self._heartbeat_loop(), name="channel-heartbeat"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    logger.warning(f"Control channel closing: {exc}")
                else:
                    logger.info("Control channel closed by backend")
        finally:
            await self._close(ws, tasks)

    async def _close(self, ws: aiohttp.ClientWebSocketResponse, tasks: list[asyncio.Task]) -> None:
        self._set_state(ChannelState.CLOSING)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.on_teardown is not None:
            try:
                await self.on_teardown()
            except Exception:
                logger.exception("Control channel teardown hook failed")

        await ws.close()

        queue, self._queue = self._queue, None
        if queue is not None and not queue.empty():
            frames_dropped.labels(reason="teardown").inc(queue.qsize())
        self.backoff.reset()
        self._set_state(ChannelState.DISCONNECTED)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type is aiohttp.WSMsgType.TEXT:
                frame = Frame.decode(msg.data)
                self._heard = True
                frames_received.labels(kind=frame.kind).inc()
                if frame.kind == FrameKind.PONG.value:
                    continue
                if self.handler is not None:
                    await self.handler(frame)
            elif msg.type is aiohttp.WSMsgType.BINARY:
                raise ProtocolError("binary frames are not supported")
            elif msg.type is aiohttp.WSMsgType.ERROR:
                raise TransportError(f"socket error: {ws.exception()}")

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        queue = self._queue
        while True:
            frame = await queue.get()
            try:
                await ws.send_str(frame.encode())
            except (aiohttp.ClientError, ConnectionError) as e:
                raise TransportError(f"write failed: {e}") from e
            frames_sent.labels(kind=frame.kind).inc()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self._heard:
                self._missed = 0
            else:
                self._missed += 1
                if self._missed >= self.heartbeat_miss_limit:
                    raise TransportError(
                        f"no response for {self._missed} heartbeat intervals"
                    )
            self._heard = False
            self.send_nowait(Frame.new(FrameKind.PING))
