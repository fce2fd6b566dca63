"""
Shared fixtures: in-memory image provider and runtime driver that record
every call so tests can assert on ordering.
"""
import hashlib
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

import pytest

from stackorch.DRIVERS.base import ImageRef, InstanceSpec
from stackorch.errors import BuildError, StartError
from stackorch.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackorch.MODELS.named_resource import ResourceHandle
from stackorch.PARSERS.compose_parser import ComposeParser
from stackorch.settings import OrchestratorSettings


class FakeImageProvider:
    def __init__(self):
        self.resolved: List[str] = []
        self.broken: Set[str] = set()
        self._lock = threading.Lock()

    def resolve(self, service) -> ImageRef:
        with self._lock:
            self.resolved.append(service.name)
        if service.name in self.broken:
            raise BuildError(f"cannot build {service.name}", service=service.name)
        name = service.image_name or service.name
        return ImageRef(name=name, digest="sha256:" + hashlib.sha256(name.encode()).hexdigest())


@dataclass(eq=False)
class FakeHandle:
    instance_id: str
    service: str
    resources: List[ResourceHandle]
    running: bool = True
    exit_code: Optional[int] = None


class FakeRuntimeDriver:
    """
    Records ("start", id), ("stop", id), ("probe", id), ("create_volume", name)
    and friends in `events`, in call order.

    start_failures: service -> number of start attempts that fail (-1 = all)
    probe_results: service -> exit codes returned by successive probes; the
    last value repeats once the list runs out
    hanging_probes: services whose probes never answer; they raise
    TimeoutError once their timeout (or release_probes) expires
    """

    def __init__(self):
        self.events: List[tuple] = []
        self.start_failures: Dict[str, int] = {}
        self.probe_results: Dict[str, List[int]] = {}
        self.probe_timeouts: List[Optional[float]] = []
        self.hanging_probes: Set[str] = set()
        self.release_probes = threading.Event()
        self.broken_resources: Set[str] = set()
        self.stop_failures: Set[str] = set()
        self.handles: Dict[str, FakeHandle] = {}
        self.specs: Dict[str, InstanceSpec] = {}
        self.volumes: Set[str] = set()
        self.networks: Set[str] = set()
        self._lock = threading.Lock()

    def _record(self, *event):
        with self._lock:
            self.events.append(event)

    def events_of(self, kind: str) -> List[str]:
        with self._lock:
            return [e[1] for e in self.events if e[0] == kind]

    def index_of(self, kind: str, target: str) -> int:
        with self._lock:
            return self.events.index((kind, target))

    def start(self, spec: InstanceSpec, resources):
        service = spec.service.name
        with self._lock:
            remaining = self.start_failures.get(service, 0)
            if remaining > 0:
                self.start_failures[service] = remaining - 1
        self._record("start", spec.instance_id)
        if remaining != 0:
            raise StartError(f"{spec.instance_id} refused to start", service=service, replica=spec.replica)
        handle = FakeHandle(spec.instance_id, service, list(resources))
        with self._lock:
            self.handles[spec.instance_id] = handle
            self.specs[spec.instance_id] = spec
        return handle

    def stop(self, handle: FakeHandle, timeout=None):
        self._record("stop", handle.instance_id)
        if handle.service in self.stop_failures:
            raise RuntimeError("stuck")
        handle.running = False

    def is_running(self, handle: FakeHandle) -> bool:
        return handle.running

    def exit_code(self, handle: FakeHandle) -> Optional[int]:
        return handle.exit_code

    def kill(self, instance_id: str, exit_code: int = 1) -> None:
        handle = self.handles[instance_id]
        handle.running = False
        handle.exit_code = exit_code

    def probe(self, handle: FakeHandle, command, timeout=None) -> int:
        self._record("probe", handle.instance_id)
        with self._lock:
            self.probe_timeouts.append(timeout)
        if handle.service in self.hanging_probes:
            # Mirrors a real driver killing a probe that outlived its timeout
            self.release_probes.wait(timeout)
            raise TimeoutError(f"probe for {handle.instance_id} timed out after {timeout}s")
        with self._lock:
            results = self.probe_results.get(handle.service, [0])
            if len(results) > 1:
                return results.pop(0)
            return results[0]

    def create_volume(self, name: str) -> None:
        self._record("create_volume", name)
        if name in self.broken_resources:
            raise RuntimeError(f"disk full creating {name}")
        self.volumes.add(name)

    def create_network(self, name: str) -> None:
        self._record("create_network", name)
        if name in self.broken_resources:
            raise RuntimeError(f"cannot create {name}")
        self.networks.add(name)

    def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        self.volumes.discard(name)

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        self.networks.discard(name)


@pytest.fixture
def images():
    return FakeImageProvider()


@pytest.fixture
def driver():
    return FakeRuntimeDriver()


@pytest.fixture
def settings():
    return OrchestratorSettings(
        project_name="demo",
        supervise=False,
        stop_timeout=1,
        restart_backoff_max=0.05,
        default_start_retries=2,
    )


@pytest.fixture
def orchestrator(images, driver, settings):
    orch = ServiceOrchestrator(images, driver, settings=settings)
    yield orch
    orch.close()


@pytest.fixture
def load_stack():
    """Parses YAML into a stack definition named "demo"."""
    parser = ComposeParser(context={})

    def load(content: str):
        return parser.parse_from_string(content, name="demo")

    return load
