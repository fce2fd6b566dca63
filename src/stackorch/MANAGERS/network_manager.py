"""
Network bookkeeping for the local process driver: network membership, host
port allocation and service discovery variables.
"""
import socket
import threading
from typing import Dict, List, Optional, Set

from ..MODELS.service_definition import ServiceDefinition


def get_free_port() -> int:
    """
    Finds a free port on localhost.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('', 0))
        return s.getsockname()[1]


def is_port_free(port: int) -> bool:
    """
    Checks if a port is free on localhost.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(('', port))
            return True
        except OSError:
            return False


class NetworkManager:
    """
    Tracks which instances are on which network and the host ports each
    instance publishes. Processes share the host network stack, so a network
    only scopes service discovery.
    """
    def __init__(self):
        self.networks: Dict[str, Set[str]] = {}  # network -> instance ids
        self.instance_service: Dict[str, str] = {}  # instance id -> service name
        self.instance_ports: Dict[str, Dict[int, int]] = {}  # instance id -> {container: host}
        self._lock = threading.Lock()

    def create_network(self, name: str) -> None:
        with self._lock:
            self.networks.setdefault(name, set())

    def remove_network(self, name: str) -> None:
        with self._lock:
            members = self.networks.get(name)
            if members:
                raise RuntimeError(f"Network {name} still has {len(members)} member(s)")
            self.networks.pop(name, None)

    def allocate_ports(self, instance_id: str, service_def: ServiceDefinition) -> Dict[int, int]:
        """
        Allocates host ports for an instance based on its service definition.

        :return: Mapping from container port to allocated host port.
        :raises RuntimeError: If a requested host port is already taken.
        """
        with self._lock:
            taken = {p for ports in self.instance_ports.values() for p in ports.values()}
            mappings = {}
            for binding in service_def.ports:
                if binding.published is None:
                    host_port = get_free_port()
                elif binding.published not in taken and is_port_free(binding.published):
                    host_port = binding.published
                else:
                    raise RuntimeError(
                        f"Port {binding.published} is already in use, cannot start service {service_def.name}"
                    )
                mappings[binding.target] = host_port
                taken.add(host_port)
            self.instance_ports[instance_id] = mappings
            return mappings

    def connect(self, network: str, instance_id: str, service: str) -> None:
        with self._lock:
            if network not in self.networks:
                raise RuntimeError(f"Network {network} does not exist")
            self.networks[network].add(instance_id)
            self.instance_service[instance_id] = service

    def disconnect(self, instance_id: str) -> None:
        with self._lock:
            for members in self.networks.values():
                members.discard(instance_id)
            self.instance_service.pop(instance_id, None)
            self.instance_ports.pop(instance_id, None)

    def get_service_discovery_env(self, networks: List[str]) -> Dict[str, str]:
        """
        Generates discovery variables for every service reachable on the given
        networks. Example: DB_HOST=127.0.0.1, DB_PORT=5432
        """
        env = {}
        with self._lock:
            for network in networks:
                for instance_id in sorted(self.networks.get(network, ())):
                    service = self.instance_service.get(instance_id)
                    if service is None:
                        continue
                    prefix = service.upper().replace('-', '_').replace('.', '_')
                    env[f"{prefix}_HOST"] = "127.0.0.1"
                    ports = self.instance_ports.get(instance_id)
                    # First published port of the lowest instance id is the default
                    if ports and f"{prefix}_PORT" not in env:
                        env[f"{prefix}_PORT"] = str(next(iter(ports.values())))
        return env

    def get_host_port(self, instance_id: str, container_port: int) -> Optional[int]:
        return self.instance_ports.get(instance_id, {}).get(container_port)
