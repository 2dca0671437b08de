"""Tests for the container log multiplexer."""

from __future__ import annotations

import asyncio

import pytest

from fleet_agent.errors import FollowerError
from fleet_agent.logstream import LogMultiplexer, split_timestamp
from conftest import FakeChannel


class ShellRuntime:
    """Spawns ``sh -c <script>`` in place of ``logs --follow``."""

    def __init__(self, script: str):
        self.script = script
        self.processes = []

    async def spawn_log_follower(self, container_id):
        process = await asyncio.create_subprocess_exec(
            "sh", "-c", self.script,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self.processes.append(process)
        return process


class FakeProcess:
    """Process whose output is already complete."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0):
        self.stdout = self._reader(stdout)
        self.stderr = self._reader(stderr)
        self.returncode = None
        self._exit_code = exit_code

    @staticmethod
    def _reader(data: bytes) -> asyncio.StreamReader:
        reader = asyncio.StreamReader()
        reader.feed_data(data)
        reader.feed_eof()
        return reader

    async def wait(self):
        self.returncode = self._exit_code
        return self.returncode

    def kill(self):
        self.returncode = -9


class FixedRuntime:
    def __init__(self, process):
        self.process = process

    async def spawn_log_follower(self, container_id):
        return self.process


async def _wait_until(predicate, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# --- split_timestamp ---

@pytest.mark.parametrize("line,expected", [
    ("2024-05-01T12:00:00.123456789Z [Server] Done (3.2s)!",
     ("2024-05-01T12:00:00.123456789Z", "[Server] Done (3.2s)!")),
    ("2024-05-01T12:00:00+02:00 hello", ("2024-05-01T12:00:00+02:00", "hello")),
    ("no timestamp here", (None, "no timestamp here")),
    ("2024-05-01T12:00:00Z", ("2024-05-01T12:00:00Z", "")),
])
def test_split_timestamp(line, expected):
    assert split_timestamp(line) == expected


# --- following ---

@pytest.mark.asyncio
async def test_lines_are_forwarded_then_log_ended():
    channel = FakeChannel()
    script = (
        "printf '2024-05-01T12:00:00.5Z Starting minecraft server\\n'; "
        "echo 'Can not keep up!' >&2; exit 3"
    )
    mux = LogMultiplexer(ShellRuntime(script), channel)

    assert await mux.start("mc-1") is True
    await _wait_until(lambda: channel.of_kind("log.ended"))

    lines = {f.payload["stream"]: f.payload for f in channel.of_kind("log.line")}
    assert lines["stdout"] == {
        "id": "mc-1",
        "stream": "stdout",
        "text": "Starting minecraft server",
        "ts": "2024-05-01T12:00:00.5Z",
    }
    assert lines["stderr"]["text"] == "Can not keep up!"
    assert "ts" not in lines["stderr"]
    assert channel.frames[-1].payload == {"id": "mc-1", "exit_code": 3}
    assert not mux.is_following("mc-1")


@pytest.mark.asyncio
async def test_start_twice_keeps_one_follower():
    channel = FakeChannel()
    runtime = ShellRuntime("echo hello; exec sleep 30")
    mux = LogMultiplexer(runtime, channel)

    assert await mux.start("mc-1") is True
    assert await mux.start("mc-1") is False
    assert len(runtime.processes) == 1
    assert mux.active() == ["mc-1"]

    await mux.stop_all()
    assert mux.active() == []


@pytest.mark.asyncio
async def test_no_lines_after_stop():
    channel = FakeChannel()
    runtime = ShellRuntime("echo hello; while true; do echo tick; sleep 0.02; done")
    mux = LogMultiplexer(runtime, channel)

    await mux.start("mc-1")
    await _wait_until(lambda: len(channel.of_kind("log.line")) >= 2)

    assert await mux.stop("mc-1") is True
    count = len(channel.frames)
    await asyncio.sleep(0.2)

    assert len(channel.frames) == count
    assert channel.of_kind("log.ended") == []
    assert runtime.processes[0].returncode is not None
    assert not mux.is_following("mc-1")


@pytest.mark.asyncio
async def test_stop_unknown_container():
    mux = LogMultiplexer(ShellRuntime("true"), FakeChannel())

    assert await mux.stop("nope") is False


@pytest.mark.asyncio
async def test_failed_send_is_counted_and_reported():
    channel = FakeChannel(reject_sends=1)
    mux = LogMultiplexer(ShellRuntime("printf 'a\\nb\\nc\\n'"), channel, send_timeout=0.05)

    await mux.start("mc-1")
    await _wait_until(lambda: channel.of_kind("log.ended"))

    assert [f.payload["text"] for f in channel.of_kind("log.line")] == ["b", "c"]
    dropped = channel.of_kind("log.dropped")
    assert len(dropped) == 1
    assert dropped[0].payload == {"id": "mc-1", "count": 1}
    kinds = [f.kind for f in channel.frames]
    assert kinds.index("log.dropped") < kinds.index("log.line")


@pytest.mark.asyncio
async def test_full_buffer_drops_oldest_lines():
    channel = FakeChannel()
    process = FakeProcess(stdout=b"1\n2\n3\n4\n5\n")
    mux = LogMultiplexer(FixedRuntime(process), channel, buffer_lines=2)

    await mux.start("mc-1")
    await _wait_until(lambda: channel.of_kind("log.ended"))

    assert [f.payload["text"] for f in channel.of_kind("log.line")] == ["4", "5"]
    assert channel.of_kind("log.dropped")[0].payload["count"] == 3


@pytest.mark.asyncio
async def test_lines_dropped_while_disconnected():
    channel = FakeChannel(connected=False)
    process = FakeProcess(stdout=b"1\n2\n")
    mux = LogMultiplexer(FixedRuntime(process), channel)

    await mux.start("mc-1")
    await _wait_until(lambda: not mux.is_following("mc-1"))

    assert channel.frames == []


@pytest.mark.asyncio
async def test_spawn_failure_is_follower_error():
    class BrokenRuntime:
        async def spawn_log_follower(self, container_id):
            raise PermissionError("permission denied")

    mux = LogMultiplexer(BrokenRuntime(), FakeChannel())

    with pytest.raises(FollowerError):
        await mux.start("mc-1")
    assert not mux.is_following("mc-1")


@pytest.mark.asyncio
async def test_spawn_failure_emits_log_ended():
    class ForkFailingRuntime:
        async def spawn_log_follower(self, container_id):
            raise OSError("fork failed")

    channel = FakeChannel()
    mux = LogMultiplexer(ForkFailingRuntime(), channel)

    with pytest.raises(FollowerError):
        await mux.start("srv-1")

    ended = channel.of_kind("log.ended")
    assert len(ended) == 1
    assert ended[0].payload["id"] == "srv-1"
    assert "fork failed" in ended[0].payload["error"]
    assert "exit_code" not in ended[0].payload


@pytest.mark.asyncio
async def test_drop_count_after_eof_survives_full_queue():
    # The queue never has room for non-blocking sends; the final drop
    # notice must go through the bounded send instead.
    channel = FakeChannel(reject_sends=1, queue_full=True)
    process = FakeProcess(stdout=b"only line\n")
    mux = LogMultiplexer(FixedRuntime(process), channel, send_timeout=0.05)

    await mux.start("mc-1")
    await _wait_until(lambda: channel.of_kind("log.ended"))

    assert channel.of_kind("log.line") == []
    dropped = channel.of_kind("log.dropped")
    assert [f.payload for f in dropped] == [{"id": "mc-1", "count": 1}]
    kinds = [f.kind for f in channel.frames]
    assert kinds == ["log.dropped", "log.ended"]
