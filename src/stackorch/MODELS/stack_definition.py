"""
Models for a complete stack: services plus the volumes and networks they share.
"""
from typing import List, Dict
from pydantic import BaseModel, ConfigDict

from .service_definition import ServiceDefinition, DependencyGate

DEFAULT_NETWORK = "default"


class ResourceDeclaration(BaseModel):
    """
    A top-level volume or network entry of a stack file.
    """
    model_config = ConfigDict(frozen=True)

    driver: str = "local"
    labels: Dict[str, str] = {}


class DependencyEdge(BaseModel):
    """
    source depends on target, gated on the target being started or healthy.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    gate: DependencyGate = DependencyGate.STARTED


class StackDefinition(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed compose file.
    """
    model_config = ConfigDict(frozen=True)

    name: str = "stackorch"
    services: Dict[str, ServiceDefinition] = {}
    volumes: Dict[str, ResourceDeclaration] = {}
    networks: Dict[str, ResourceDeclaration] = {}

    def edges(self) -> List[DependencyEdge]:
        """
        Flattens every service's depends_on list into dependency edges.
        """
        return [
            DependencyEdge(source=name, target=dep.service, gate=dep.gate)
            for name, service in self.services.items()
            for dep in service.depends_on
        ]

    def service_networks(self, name: str) -> List[str]:
        """Networks a service joins; services that name none join the default network."""
        return list(self.services[name].networks) or [DEFAULT_NETWORK]

    def merge(self, other: "StackDefinition") -> "StackDefinition":
        """
        Overlays another definition on this one.
        Services declared again are replaced wholesale, never merged field by field.
        The project name stays that of the base definition.

        :param other: The later definition.
        :return: A new definition.
        """
        services = dict(self.services)
        services.update(other.services)
        volumes = dict(self.volumes)
        volumes.update(other.volumes)
        networks = dict(self.networks)
        networks.update(other.networks)
        return StackDefinition(
            name=self.name,
            services=services,
            volumes=volumes,
            networks=networks,
        )
