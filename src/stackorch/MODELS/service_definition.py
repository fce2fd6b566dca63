"""
Models for defining services, including restart policies, health checks, mounts and dependencies.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service instance is started again.
    """
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.

    max_retries of None on "on-failure" means the orchestrator default applies.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.NEVER
    max_retries: Optional[int] = Field(default=None, ge=0)
    delay: float = Field(default=0.0, ge=0)


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: float = Field(default=30.0, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=1)
    start_period: float = Field(default=0.0, ge=0)

    @property
    def disabled(self) -> bool:
        return bool(self.test) and self.test[0] == "NONE"


class DependencyGate(str, Enum):
    """
    Condition a dependency must satisfy before its dependent may start.
    """
    STARTED = "started"
    HEALTHY = "healthy"


class DependencySpec(BaseModel):
    """
    One depends_on entry of a service.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    gate: DependencyGate = DependencyGate.STARTED


class VolumeMount(BaseModel):
    """
    Defines a mapping between a volume (named or host path) and a service path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """Named volumes are plain identifiers; anything path-like is a bind mount."""
        return bool(self.source) and not (
            "/" in self.source or "\\" in self.source or self.source.startswith((".", "~"))
        )


class PortBinding(BaseModel):
    """
    A container port and the host port it is published on (None = any free port).
    """
    model_config = ConfigDict(frozen=True)

    target: int = Field(gt=0, lt=65536)
    published: Optional[int] = Field(default=None, gt=0, lt=65536)


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service in a stack.
    Immutable once loaded; a later definition with the same name replaces it.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image_name: str = ""
    build_context: Optional[str] = None
    dockerfile_path: Optional[str] = None

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []

    # Networking
    ports: List[PortBinding] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: List[DependencySpec] = []
    replicas: int = Field(default=1, ge=0)

    # Metadata
    labels: Dict[str, str] = {}

    @field_validator("name")
    @classmethod
    def _name_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Service name cannot be empty")
        return value

    @model_validator(mode="after")
    def _image_or_build(self) -> "ServiceDefinition":
        if not self.image_name and not self.build_context:
            raise ValueError(f"Service {self.name} must specify an image or a build context")
        return self

    @property
    def has_probe(self) -> bool:
        """True when the service declares an enabled healthcheck."""
        return self.health_check is not None and not self.health_check.disabled

    @property
    def named_volumes(self) -> List[str]:
        return [v.source for v in self.volumes if v.is_named]

    def full_command(self) -> List[str]:
        """
        Combines entrypoint and cmd the way Docker does: entrypoint is the
        executable and cmd becomes its arguments.
        """
        if self.entrypoint:
            return list(self.entrypoint) + list(self.cmd)
        return list(self.cmd)
