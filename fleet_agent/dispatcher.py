"""Command dispatcher for inbound control frames.

Every inbound request runs in its own task so long operations (image pulls
on create, slow stops) do not hold up short ones. Each request produces
exactly one reply frame carrying the request's correlation id: ``reply`` on
success, ``pong`` for ``ping``, ``error`` otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import ValidationError

from fleet_agent.errors import ContainerRuntimeError, ErrorKind, FollowerError
from fleet_agent.runtime.models import ContainerDescriptor
from fleet_agent.schemas import (
    ContainerRef,
    ExecRequest,
    Frame,
    FrameKind,
    KillRequest,
    LogsRequest,
    StopRequest,
)

if TYPE_CHECKING:
    from fleet_agent.channel import ControlChannel
    from fleet_agent.logstream import LogMultiplexer
    from fleet_agent.runtime.nerdctl import NerdctlRuntime

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def _validation_text(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "payload"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class CommandDispatcher:
    """Routes command frames to the runtime adapter and log multiplexer."""

    def __init__(
        self,
        runtime: NerdctlRuntime,
        channel: ControlChannel,
        logs: LogMultiplexer,
    ):
        self.runtime = runtime
        self.channel = channel
        self.logs = logs
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            FrameKind.CONTAINER_CREATE.value: self._create,
            FrameKind.CONTAINER_START.value: self._start,
            FrameKind.CONTAINER_STOP.value: self._stop,
            FrameKind.CONTAINER_KILL.value: self._kill,
            FrameKind.CONTAINER_REMOVE.value: self._remove,
            FrameKind.CONTAINER_EXEC.value: self._exec,
            FrameKind.CONTAINER_LIST.value: self._list,
            FrameKind.CONTAINER_LOGS.value: self._logs,
            FrameKind.CONTAINER_STATS.value: self._stats,
            FrameKind.CONTAINER_INSPECT_IP.value: self._inspect_ip,
            FrameKind.LOG_START.value: self._log_start,
            FrameKind.LOG_STOP.value: self._log_stop,
            FrameKind.PING.value: self._ping,
        }

    @property
    def commands(self) -> list[str]:
        """Command kinds this agent accepts, advertised in ``agent.hello``."""
        return list(self._handlers)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def handle_frame(self, frame: Frame) -> None:
        """Spawn a task that executes the request and sends its reply."""
        task = asyncio.create_task(
            self._respond(frame), name=f"request-{frame.kind}-{frame.id[:8]}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def shutdown(self) -> None:
        """Cancel in-flight requests and stop every log follower."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info(f"Cancelled {len(tasks)} in-flight request(s)")
        await self.logs.stop_all()

    async def _respond(self, frame: Frame) -> None:
        reply = await self.dispatch(frame)
        if not await self.channel.send(reply):
            logger.warning(f"Reply to {frame.kind} {frame.id} dropped; channel is down")

    async def dispatch(self, frame: Frame) -> Frame:
        """Execute one request and build its reply frame."""
        handler = self._handlers.get(frame.kind)
        if handler is None:
            logger.warning(f"Unknown command kind {frame.kind!r} (request {frame.id})")
            return Frame.error(
                frame.id, ErrorKind.UNKNOWN_COMMAND, f"unknown command kind: {frame.kind}"
            )

        try:
            payload = await handler(frame.payload)
        except ValidationError as e:
            return Frame.error(frame.id, ErrorKind.BAD_REQUEST, _validation_text(e))
        except ContainerRuntimeError as e:
            logger.warning(f"{frame.kind} {frame.id} failed: {e}")
            return Frame.error(frame.id, ErrorKind(e.kind.value), e.text)
        except FollowerError as e:
            logger.warning(f"{frame.kind} {frame.id} failed: {e}")
            return Frame.error(frame.id, ErrorKind.FOLLOWER_ERROR, str(e))
        except Exception as e:
            logger.exception(f"{frame.kind} {frame.id} raised an unexpected error")
            return Frame.error(frame.id, ErrorKind.INTERNAL, f"{type(e).__name__}: {e}")

        if frame.kind == FrameKind.PING.value:
            return Frame(id=frame.id, kind=FrameKind.PONG.value, payload=payload)
        return Frame.reply(frame.id, payload)

    # --- Handlers ---

    async def _create(self, payload: dict[str, Any]) -> dict[str, Any]:
        desc = ContainerDescriptor.model_validate(payload)
        full_id = await self.runtime.create(desc)
        return {"container_id": full_id}

    async def _start(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = ContainerRef.model_validate(payload)
        await self.runtime.start(req.id)
        return {}

    async def _stop(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = StopRequest.model_validate(payload)
        await self.runtime.stop(req.id, req.grace_secs)
        return {}

    async def _kill(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = KillRequest.model_validate(payload)
        await self.runtime.kill(req.id, req.signal)
        return {}

    async def _remove(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = ContainerRef.model_validate(payload)
        await self.runtime.remove(req.id)
        return {}

    async def _exec(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = ExecRequest.model_validate(payload)
        stdout = await self.runtime.exec(req.id, req.argv)
        return {"stdout": stdout}

    async def _list(self, payload: dict[str, Any]) -> dict[str, Any]:
        items = await self.runtime.list()
        return {"items": [item.model_dump() for item in items]}

    async def _logs(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = LogsRequest.model_validate(payload)
        return {"text": await self.runtime.logs(req.id, req.lines)}

    async def _stats(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = ContainerRef.model_validate(payload)
        stats = await self.runtime.stats(req.id)
        return stats.model_dump()

    async def _inspect_ip(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = ContainerRef.model_validate(payload)
        return {"ip": await self.runtime.inspect_ip(req.id)}

    async def _log_start(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = ContainerRef.model_validate(payload)
        if self.logs.is_following(req.id):
            return {}
        if not await self.runtime.exists(req.id):
            raise ContainerRuntimeError.command_failed(f"no such container: {req.id}")
        await self.logs.start(req.id)
        return {}

    async def _log_stop(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = ContainerRef.model_validate(payload)
        await self.logs.stop(req.id)
        return {}

    async def _ping(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {}
