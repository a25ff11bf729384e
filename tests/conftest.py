import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

from preview_sandbox.config import Config
from preview_sandbox.schemas import Framework
from preview_sandbox.sandbox.manager import SandboxManager
from preview_sandbox.sandbox.ports import PortAllocator
from preview_sandbox.sandbox.probe import ReadinessProbe
from preview_sandbox.sandbox.runtime import ContainerState


NEXT_READY_LOGS = "  ▲ Next.js 14.2.5\n  - Local:        http://localhost:3000\n ✓ Ready in 2.3s\n"


class FakeClock:
    """Monotonic clock whose waits advance time instead of sleeping."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.waits: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def wait(self, event: threading.Event, seconds: float) -> bool:
        if event.is_set():
            return True
        with self._lock:
            self.waits.append(seconds)
            self.now += seconds
        return event.is_set()


class FakeRuntime:
    """
    ContainerRuntime double with scripted container states and logs.

    `states` is replayed per container on each inspect (the last entry
    repeats). `overrides` pins the state of one container.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.states: List[ContainerState] = [ContainerState(state="running")]
        self.log_script: List[str] = [NEXT_READY_LOGS]
        self.overrides: Dict[str, ContainerState] = {}
        self.containers: Dict[str, Dict] = {}
        self.images = set()
        self.build_error: Optional[Exception] = None
        self.run_error: Optional[Exception] = None
        self.build_gate: Optional[threading.Event] = None
        self.orphans: List[str] = []
        self._inspections: Dict[str, int] = {}
        self._log_reads: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def calls_named(self, name: str) -> List[tuple]:
        with self._lock:
            return [call for call in self.calls if call[0] == name]

    def ping(self) -> bool:
        return True

    def build(self, work_dir, framework, tag, labels=None):
        self._record("build", tag, Path(work_dir))
        if self.build_gate is not None:
            self.build_gate.wait(10)
        if self.build_error is not None:
            raise self.build_error
        self.images.add(tag)
        return tag

    def run(self, image_ref, port, name, framework=Framework.NEXTJS, labels=None):
        self._record("run", name, port)
        if self.run_error is not None:
            raise self.run_error
        ref = f"ctr-{name}"
        with self._lock:
            self.containers[ref] = {"name": name, "port": port, "running": True, "labels": labels or {}}
        return ref

    def inspect(self, container_ref):
        self._record("inspect", container_ref)
        with self._lock:
            if container_ref in self.overrides:
                return self.overrides[container_ref]
            if container_ref not in self.containers:
                return ContainerState(state="missing")
            position = self._inspections.get(container_ref, 0)
            self._inspections[container_ref] = position + 1
            return self.states[min(position, len(self.states) - 1)]

    def logs(self, container_ref, tail=100):
        with self._lock:
            position = self._log_reads.get(container_ref, 0)
            self._log_reads[container_ref] = position + 1
            return self.log_script[min(position, len(self.log_script) - 1)]

    def stop(self, container_ref):
        self._record("stop", container_ref)
        with self._lock:
            if container_ref in self.containers:
                self.containers[container_ref]["running"] = False

    def remove(self, container_ref):
        self._record("remove", container_ref)
        with self._lock:
            self.containers.pop(container_ref, None)

    def remove_image(self, image_ref):
        self._record("remove_image", image_ref)
        self.images.discard(image_ref)

    def remove_stale(self, name):
        self._record("remove_stale", name)

    def managed_ports(self):
        with self._lock:
            return {c["port"] for c in self.containers.values() if c["running"]}

    def remove_orphans(self, keep=()):
        self._record("remove_orphans", tuple(keep))
        removed, self.orphans = self.orphans, []
        return removed


def ok_transport() -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(200, text="<html>ok</html>"))


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    for name in list(os.environ):
        if name.startswith("SANDBOX_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SANDBOX_WORK_ROOT", str(tmp_path / "sandboxes"))
    return Config(env_file=tmp_path / "test.env")


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_probe(config, fake_runtime, fake_clock):
    def factory(transport: Optional[httpx.BaseTransport] = None, runtime=None) -> ReadinessProbe:
        return ReadinessProbe(
            runtime or fake_runtime,
            config,
            clock=fake_clock,
            wait=fake_clock.wait,
            transport=transport or ok_transport(),
        )

    return factory


@pytest.fixture
def make_manager(config, fake_runtime, make_probe):
    managers: List[SandboxManager] = []

    def factory(transport: Optional[httpx.BaseTransport] = None, port_checker=None) -> SandboxManager:
        allocator = PortAllocator(
            config.port_start,
            config.port_end,
            host=config.host,
            port_checker=port_checker or (lambda port: True),
        )
        manager = SandboxManager(
            config=config,
            runtime=fake_runtime,
            allocator=allocator,
            probe=make_probe(transport),
        )
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        if manager.runtime is fake_runtime and fake_runtime.build_gate is not None:
            fake_runtime.build_gate.set()
        manager.shutdown()


@pytest.fixture
def manager(make_manager) -> SandboxManager:
    return make_manager()
