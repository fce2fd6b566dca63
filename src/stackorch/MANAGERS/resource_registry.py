"""
Reference-counted registry of the named volumes and networks shared between instances.
"""
import logging
import threading
from typing import Dict, List, Optional, Set, Tuple

from ..DRIVERS.base import RuntimeDriver
from ..errors import ResourceError
from ..MODELS.named_resource import NamedResource, ResourceHandle, ResourceKind

logger = logging.getLogger(__name__)

ResourceKey = Tuple[ResourceKind, str]


class ResourceRegistry:
    """
    Tracks named resources and the instances attached to them.

    A resource is created through the runtime driver on its first attach and is
    never destroyed implicitly: detaching the last instance leaves it in place
    (volumes persist across stack restarts) until destroy_unused() is called.
    Operations on one resource name serialize on that name's lock; operations on
    different names do not contend.
    """

    def __init__(self, driver: RuntimeDriver):
        """
        :param driver: Driver used to create and remove the underlying objects.
        """
        self.driver = driver
        self._resources: Dict[ResourceKey, NamedResource] = {}
        self._locks: Dict[ResourceKey, threading.Lock] = {}
        self._table_lock = threading.Lock()

    def _lock_for(self, key: ResourceKey) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def declare(self, name: str, kind: ResourceKind, driver: str = "local") -> NamedResource:
        """
        Records a resource without materializing it. Declaring an existing name
        keeps its attachments.
        """
        key = (ResourceKind(kind), name)
        with self._lock_for(key):
            resource = self._resources.get(key)
            if resource is None:
                resource = self._resources[key] = NamedResource(name=name, kind=key[0], driver=driver)
            return resource

    def attach(self, name: str, kind: ResourceKind, instance_id: str) -> ResourceHandle:
        """
        Attaches an instance to a resource, creating the resource on first use.

        :param name: Resource name.
        :param kind: Volume or network.
        :param instance_id: The attaching instance.
        :return: Handle to pass to detach().
        :raises ResourceError: If the driver cannot create the resource.
        """
        key = (ResourceKind(kind), name)
        with self._lock_for(key):
            resource = self._resources.get(key)
            if resource is None:
                resource = self._resources[key] = NamedResource(name=name, kind=key[0])

            if not resource.materialized:
                logger.info("Creating %s %s", resource.kind.value, name)
                try:
                    if resource.kind == ResourceKind.VOLUME:
                        self.driver.create_volume(name)
                    else:
                        self.driver.create_network(name)
                except Exception as e:
                    raise ResourceError(
                        f"Failed to create {resource.kind.value} {name}: {e}",
                        name=name,
                        kind=resource.kind.value,
                    ) from e
                resource.materialized = True

            resource.attached.add(instance_id)
            return ResourceHandle(name=name, kind=resource.kind, instance_id=instance_id)

    def detach(self, handle: ResourceHandle) -> None:
        """
        Releases one attachment. The resource itself is kept; detaching an
        already released handle does nothing.
        """
        key = (handle.kind, handle.name)
        with self._lock_for(key):
            resource = self._resources.get(key)
            if resource is not None:
                resource.attached.discard(handle.instance_id)

    def destroy_unused(self, kind: Optional[ResourceKind] = None) -> Set[str]:
        """
        Removes every materialized resource with no attachments.

        :param kind: Restrict the prune to volumes or networks.
        :return: Names of the destroyed resources.
        """
        with self._table_lock:
            keys = list(self._resources)

        destroyed: Set[str] = set()
        for key in keys:
            if kind is not None and key[0] != kind:
                continue
            with self._lock_for(key):
                resource = self._resources[key]
                if not resource.materialized or resource.attached:
                    continue
                try:
                    if resource.kind == ResourceKind.VOLUME:
                        self.driver.remove_volume(resource.name)
                    else:
                        self.driver.remove_network(resource.name)
                except Exception as e:
                    logger.error("Failed to remove %s %s: %s", resource.kind.value, resource.name, e)
                    continue
                resource.materialized = False
                destroyed.add(resource.name)
                logger.info("Removed %s %s", resource.kind.value, resource.name)
        return destroyed

    def get(self, name: str, kind: ResourceKind = ResourceKind.VOLUME) -> Optional[NamedResource]:
        return self._resources.get((ResourceKind(kind), name))

    def refcount(self, name: str, kind: ResourceKind = ResourceKind.VOLUME) -> int:
        resource = self.get(name, kind)
        return resource.refcount if resource else 0

    def list(self, kind: Optional[ResourceKind] = None) -> List[NamedResource]:
        with self._table_lock:
            resources = list(self._resources.values())
        return [r for r in resources if kind is None or r.kind == kind]
