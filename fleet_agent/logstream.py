"""Container log multiplexer.

Each followed container gets one ``logs --follow`` child process. Two reader
tasks drain its stdout and stderr into a bounded per-follower buffer and a
forwarder task turns buffered lines into ``log.line`` frames. The forwarder
waits at most ``send_timeout`` for room on the outbound queue; a line that
does not fit is dropped and counted, and the count is reported in a
``log.dropped`` frame once the channel accepts frames again. Readers never
wait on the channel, so one slow consumer cannot stall other followers or
the child's pipes.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fleet_agent.errors import FollowerError
from fleet_agent.metrics import active_followers, log_lines_dropped
from fleet_agent.schemas import Frame, FrameKind, LogDropped, LogEnded, LogLine

if TYPE_CHECKING:
    from fleet_agent.channel import ControlChannel
    from fleet_agent.runtime.nerdctl import NerdctlRuntime

logger = logging.getLogger(__name__)

# RFC 3339 prefix added by ``logs --timestamps``
_TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T[0-9:.]+(?:Z|[+-]\d{2}:\d{2}))\s?(.*)$", re.S)


def split_timestamp(line: str) -> tuple[str | None, str]:
    """Split ``"<ts> <text>"`` into ``(ts, text)``; ``ts`` is None if absent."""
    match = _TIMESTAMP_RE.match(line)
    if match is None:
        return None, line
    return match.group(1), match.group(2)


@dataclass
class LogFollower:
    """Handle for one container's follower process."""
    container_id: str
    process: asyncio.subprocess.Process
    buffer: deque
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dropped: int = 0
    eof: bool = False
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


class LogMultiplexer:
    """Owns the set of active followers; at most one per container id."""

    def __init__(
        self,
        runtime: NerdctlRuntime,
        channel: ControlChannel,
        send_timeout: float = 1.0,
        buffer_lines: int = 1000,
    ):
        self.runtime = runtime
        self.channel = channel
        self.send_timeout = send_timeout
        self.buffer_lines = buffer_lines
        self._followers: dict[str, LogFollower] = {}
        self._lock = asyncio.Lock()

    def is_following(self, container_id: str) -> bool:
        return container_id in self._followers

    def active(self) -> list[str]:
        return sorted(self._followers)

    async def start(self, container_id: str) -> bool:
        """Start following a container's logs.

        Returns:
            True if a follower was started, False if one already existed

        Raises:
            ContainerRuntimeError: if the container CLI is missing
            FollowerError: if the follower process could not be spawned
        """
        async with self._lock:
            if container_id in self._followers:
                return False
            try:
                process = await self.runtime.spawn_log_follower(container_id)
            except OSError as e:
                ended = LogEnded(id=container_id, error=f"spawn failed: {e}")
                self.channel.send_nowait(
                    Frame.new(FrameKind.LOG_ENDED, ended.model_dump(exclude_none=True))
                )
                raise FollowerError(f"cannot spawn log follower for {container_id}: {e}") from e

            follower = LogFollower(
                container_id=container_id,
                process=process,
                buffer=deque(maxlen=self.buffer_lines),
            )
            follower.task = asyncio.create_task(
                self._supervise(follower), name=f"log-follower-{container_id}"
            )
            self._followers[container_id] = follower
            active_followers.set(len(self._followers))
        logger.info(f"Following logs of {container_id}")
        return True

    async def stop(self, container_id: str) -> bool:
        """Kill, reap and forget a container's follower.

        Once this returns no further ``log.line`` frames for the container
        will be queued.
        """
        async with self._lock:
            follower = self._followers.pop(container_id, None)
            active_followers.set(len(self._followers))
        if follower is None:
            return False
        await self._terminate(follower)
        logger.info(f"Stopped following logs of {container_id}")
        return True

    async def stop_all(self) -> None:
        async with self._lock:
            followers = list(self._followers.values())
            self._followers.clear()
            active_followers.set(0)
        if followers:
            await asyncio.gather(*(self._terminate(f) for f in followers))
            logger.info(f"Stopped {len(followers)} log follower(s)")

    async def _terminate(self, follower: LogFollower) -> None:
        if follower.task is not None:
            follower.task.cancel()
        process = follower.process
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        if follower.task is not None:
            await asyncio.gather(follower.task, return_exceptions=True)

    async def _supervise(self, follower: LogFollower) -> None:
        """Pump a follower until its process exits, then report the exit."""
        process = follower.process
        readers = [
            asyncio.create_task(self._read(follower, process.stdout, "stdout")),
            asyncio.create_task(self._read(follower, process.stderr, "stderr")),
        ]
        forwarder = asyncio.create_task(self._forward(follower))
        try:
            await asyncio.gather(*readers)
            exit_code = await process.wait()
            follower.eof = True
            follower.wakeup.set()
            await forwarder
        except asyncio.CancelledError:
            for task in (*readers, forwarder):
                task.cancel()
            await asyncio.gather(*readers, forwarder, return_exceptions=True)
            raise

        if self._followers.get(follower.container_id) is follower:
            del self._followers[follower.container_id]
            active_followers.set(len(self._followers))

        logger.info(f"Log follower for {follower.container_id} exited with {exit_code}")
        ended = LogEnded(id=follower.container_id, exit_code=exit_code)
        await self.channel.send(
            Frame.new(FrameKind.LOG_ENDED, ended.model_dump(exclude_none=True)),
            timeout=self.send_timeout,
        )

    async def _read(
        self, follower: LogFollower, stream: asyncio.StreamReader | None, name: str
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the partial data is discarded
                self._count_drop(follower)
                continue
            if not raw:
                return
            ts, text = split_timestamp(raw.decode(errors="replace").rstrip("\r\n"))
            if len(follower.buffer) == follower.buffer.maxlen:
                self._count_drop(follower)
            follower.buffer.append((name, text, ts))
            follower.wakeup.set()

    async def _forward(self, follower: LogFollower) -> None:
        while True:
            if not follower.buffer:
                if follower.eof:
                    break
                follower.wakeup.clear()
                await follower.wakeup.wait()
                continue

            if follower.dropped:
                self._flush_dropped(follower)

            stream, text, ts = follower.buffer.popleft()
            line = LogLine(id=follower.container_id, stream=stream, text=text, ts=ts)
            frame = Frame.new(FrameKind.LOG_LINE, line.model_dump(exclude_none=True))
            if not await self.channel.send(frame, timeout=self.send_timeout):
                self._count_drop(follower)

        if follower.dropped:
            await self._flush_dropped_final(follower)

    async def _flush_dropped_final(self, follower: LogFollower) -> None:
        notice = LogDropped(id=follower.container_id, count=follower.dropped)
        frame = Frame.new(FrameKind.LOG_DROPPED, notice.model_dump())
        if await self.channel.send(frame, timeout=self.send_timeout):
            follower.dropped = 0
        else:
            logger.warning(
                f"Lost count of {follower.dropped} dropped log line(s) for {follower.container_id}"
            )

    def _flush_dropped(self, follower: LogFollower) -> None:
        notice = LogDropped(id=follower.container_id, count=follower.dropped)
        if self.channel.send_nowait(Frame.new(FrameKind.LOG_DROPPED, notice.model_dump())):
            follower.dropped = 0

    @staticmethod
    def _count_drop(follower: LogFollower) -> None:
        follower.dropped += 1
        log_lines_dropped.inc()
