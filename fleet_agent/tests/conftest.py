from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from fleet_agent.config import settings


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep tests away from host paths and the real backend."""
    monkeypatch.setattr(settings, "data_dir", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "backend_url", "ws://127.0.0.1:1/agent")
    monkeypatch.setattr(settings, "token", "test-token")
    monkeypatch.setattr(settings, "provision_on_start", False)
    yield


class FakeChannel:
    """In-memory stand-in for ControlChannel's outbound API."""

    def __init__(self, connected: bool = True, reject_sends: int = 0, queue_full: bool = False):
        self.connected = connected
        self.reject_sends = reject_sends
        self.queue_full = queue_full
        self.frames = []

    async def send(self, frame, timeout=None):
        if not self.connected:
            return False
        if self.reject_sends:
            self.reject_sends -= 1
            await asyncio.sleep(0)
            return False
        self.frames.append(frame)
        return True

    def send_nowait(self, frame):
        if not self.connected or self.queue_full:
            return False
        self.frames.append(frame)
        return True

    def of_kind(self, kind: str):
        return [f for f in self.frames if f.kind == kind]


@pytest.fixture
def fake_channel():
    return FakeChannel()


def completed(returncode: int = 0, stdout: str = "", stderr: str = ""):
    """Shape of subprocess.CompletedProcess used by the provisioner."""
    return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)
