"""
Explicit handle for one loaded stack and the instances running for it.
"""
import threading
from typing import Dict, List, Optional

from ..DRIVERS.base import ImageRef
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.service_instance import ServiceInstance, TransitionListener
from ..MODELS.stack_definition import StackDefinition
from ..RUNNERS.dependency_resolver import ServiceGraph


class StackHandle:
    """
    Everything the orchestrator knows about one stack. Passed to every
    orchestrator call instead of living in module state.

    `lock` is held for the whole of up, down, scale and reload, so a new
    definition is never swapped in under an in-flight call.
    """

    def __init__(self, definition: StackDefinition, graph: ServiceGraph, project: str):
        self.definition = definition
        self.graph = graph
        self.project = project
        self.lock = threading.Lock()
        self.desired: Dict[str, int] = {name: svc.replicas for name, svc in definition.services.items()}
        self.images: Dict[str, ImageRef] = {}
        self.listeners: List[TransitionListener] = []
        self._instances: Dict[str, Dict[int, ServiceInstance]] = {}
        self._instances_lock = threading.Lock()

    def service(self, name: str) -> ServiceDefinition:
        return self.definition.services[name]

    def instance_id(self, service: str, replica: int) -> str:
        return f"{self.project}-{service}-{replica}"

    def resource_name(self, name: str) -> str:
        """Driver-level name of a declared volume or network."""
        return f"{self.project}_{name}"

    def add_listener(self, listener: TransitionListener) -> None:
        """Registers a callback for every state transition of this stack's instances."""
        with self._instances_lock:
            self.listeners.append(listener)
            for replicas in self._instances.values():
                for instance in replicas.values():
                    instance.listeners.append(listener)

    def instance(self, service: str, replica: int) -> ServiceInstance:
        """
        Returns the instance for a replica index, creating it if needed.
        There is at most one instance per (service, replica).
        """
        with self._instances_lock:
            replicas = self._instances.setdefault(service, {})
            instance = replicas.get(replica)
            if instance is None:
                instance = ServiceInstance(
                    service=service,
                    replica=replica,
                    instance_id=self.instance_id(service, replica),
                    listeners=list(self.listeners),
                )
                replicas[replica] = instance
            return instance

    def instances(self, service: Optional[str] = None) -> List[ServiceInstance]:
        """Instances of one service (or all services) ordered by replica index."""
        with self._instances_lock:
            if service is not None:
                replicas = self._instances.get(service, {})
                return [replicas[r] for r in sorted(replicas)]
            result = []
            for replicas in self._instances.values():
                result.extend(replicas[r] for r in sorted(replicas))
            return result

    def remove_instance(self, instance: ServiceInstance) -> None:
        with self._instances_lock:
            replicas = self._instances.get(instance.service, {})
            if replicas.get(instance.replica) is instance:
                del replicas[instance.replica]

    def orphan_services(self) -> List[str]:
        """Services with instances that are no longer part of the definition."""
        with self._instances_lock:
            return [
                name
                for name, replicas in self._instances.items()
                if replicas and name not in self.definition.services
            ]

    def replace(self, definition: StackDefinition, graph: ServiceGraph) -> None:
        """Swaps in a new definition. Callers must hold `lock`."""
        self.definition = definition
        self.graph = graph
        self.desired = {name: svc.replicas for name, svc in definition.services.items()}
        self.images = {}
