"""
Models for volumes and networks shared between service instances.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Set


class ResourceKind(str, Enum):
    """Kinds of named resources a stack can declare."""

    VOLUME = "volume"
    NETWORK = "network"


@dataclass
class NamedResource:
    """
    A volume or network and the instances currently attached to it.
    Its reference count is the size of the attached set, so it never goes negative.
    """

    name: str
    kind: ResourceKind
    driver: str = "local"
    materialized: bool = False
    attached: Set[str] = field(default_factory=set)

    @property
    def refcount(self) -> int:
        return len(self.attached)


@dataclass(frozen=True)
class ResourceHandle:
    """Proof of one instance's attachment to a named resource."""

    name: str
    kind: ResourceKind
    instance_id: str
