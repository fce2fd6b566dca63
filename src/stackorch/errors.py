"""
Exception hierarchy for stack loading and orchestration.
"""
from typing import List, Optional


class StackError(Exception):
    """Base class for every error raised by stackorch."""


class LoadError(StackError):
    """
    A stack definition was rejected at load time.
    Nothing is started when a LoadError is raised.
    """


class DefinitionError(LoadError):
    """The stack file is malformed or references undeclared resources."""


class CycleDetected(LoadError):
    """The depends_on graph contains at least one cycle."""

    def __init__(self, participants: List[str]):
        self.participants = list(participants)
        super().__init__(
            f"Circular dependency detected between services: {', '.join(self.participants)}"
        )


class UnknownDependency(LoadError):
    """A service depends on a name that is not part of the stack."""

    def __init__(self, service: str, target: str):
        self.service = service
        self.target = target
        super().__init__(f"Service {service} depends on undefined service {target}")


class HealthGateWithoutProbe(LoadError):
    """A service waits for another to be healthy but that service has no healthcheck."""

    def __init__(self, service: str, target: str):
        self.service = service
        self.target = target
        super().__init__(
            f"Service {service} waits for {target} to be healthy, "
            f"but {target} declares no healthcheck"
        )


class StartError(StackError):
    """The runtime driver could not start an instance."""

    def __init__(self, message: str, service: Optional[str] = None, replica: Optional[int] = None):
        self.service = service
        self.replica = replica
        super().__init__(message)


class BuildError(StartError):
    """The image provider could not build or pull an image."""


class StopError(StackError):
    """The runtime driver could not stop an instance."""


class HealthError(StackError):
    """A health probe exhausted its retry budget."""


class ResourceError(StackError):
    """A named volume or network could not be materialized."""

    def __init__(self, message: str, name: Optional[str] = None, kind: Optional[str] = None):
        self.name = name
        self.kind = kind
        super().__init__(message)


class ScaleError(StackError):
    """A scale request was invalid for the loaded stack."""
