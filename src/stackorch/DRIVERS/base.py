"""
Interfaces of the collaborators the orchestrator drives: an image provider
that turns a service definition into an image reference, and a runtime driver
that starts, stops and probes instances and materializes volumes and networks.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..MODELS.named_resource import ResourceHandle
from ..MODELS.service_definition import ServiceDefinition


@dataclass(frozen=True)
class ImageRef:
    """Content-addressable reference to a resolved image."""

    name: str
    digest: str

    def __str__(self) -> str:
        return f"{self.name}@{self.digest}"


@dataclass
class InstanceSpec:
    """Everything a driver needs to start one replica."""

    instance_id: str
    project: str
    service: ServiceDefinition
    replica: int
    image: ImageRef
    extra_env: Dict[str, str] = field(default_factory=dict)

    # Declared volume name -> driver-level resource name
    volumes: Dict[str, str] = field(default_factory=dict)


@runtime_checkable
class ImageProvider(Protocol):
    def resolve(self, service: ServiceDefinition) -> ImageRef:
        """
        Builds or pulls the image for a service.

        :raises BuildError: If the image cannot be produced.
        """
        ...


@runtime_checkable
class RuntimeDriver(Protocol):
    def start(self, spec: InstanceSpec, resources: List[ResourceHandle]) -> Any:
        """
        Starts an instance with the given resources attached.

        :return: An opaque handle for later calls.
        :raises StartError: If the instance could not be started.
        """
        ...

    def stop(self, handle: Any, timeout: Optional[float] = None) -> None:
        ...

    def is_running(self, handle: Any) -> bool:
        ...

    def exit_code(self, handle: Any) -> Optional[int]:
        ...

    def probe(self, handle: Any, command: List[str], timeout: Optional[float] = None) -> int:
        """
        Runs a health command against a running instance.

        :param timeout: Seconds the command may run, None for no limit.
        :return: The command's exit status; zero means healthy.
        :raises TimeoutError: If the command outlived the timeout. It is killed first.
        """
        ...

    def create_volume(self, name: str) -> None:
        ...

    def create_network(self, name: str) -> None:
        ...

    def remove_volume(self, name: str) -> None:
        ...

    def remove_network(self, name: str) -> None:
        ...
