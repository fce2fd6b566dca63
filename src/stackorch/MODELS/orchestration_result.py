"""
Structured results returned by up, down and scale.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..errors import HealthError, ResourceError, StackError, StartError, StopError


class FailureKind(str, Enum):
    """Why a service did not reach its target state."""

    START = "start"
    HEALTH = "health"
    RESOURCE = "resource"
    STOP = "stop"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


@dataclass
class ServiceFailure:
    """One service (and replica, when known) that missed its target state."""

    service: str
    kind: FailureKind
    message: str
    replica: Optional[int] = None

    def __str__(self) -> str:
        where = self.service if self.replica is None else f"{self.service}[{self.replica}]"
        return f"{where}: {self.kind.value}: {self.message}"


@dataclass
class OrchestrationResult:
    """Outcome of one orchestration call."""

    operation: str
    failures: List[ServiceFailure] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    cancelled: bool = False
    rolled_back: bool = False

    @property
    def success(self) -> bool:
        return not self.failures and not self.cancelled

    @property
    def failed_services(self) -> List[str]:
        seen: List[str] = []
        for failure in self.failures:
            if failure.service not in seen:
                seen.append(failure.service)
        return seen

    @property
    def blocked(self) -> List[str]:
        return [f.service for f in self.failures if f.kind == FailureKind.BLOCKED]

    def add_failure(
        self, service: str, kind: FailureKind, message: str, replica: Optional[int] = None
    ) -> ServiceFailure:
        failure = ServiceFailure(service=service, kind=kind, message=message, replica=replica)
        self.failures.append(failure)
        return failure

    def failures_for(self, service: str) -> List[ServiceFailure]:
        return [f for f in self.failures if f.service == service]

    def summary(self) -> str:
        if self.success:
            return f"{self.operation}: ok"
        if self.cancelled and not self.failures:
            return f"{self.operation}: cancelled"
        lines = [f"{self.operation}: {len(self.failed_services)} service(s) failed"]
        lines.extend(f"  {failure}" for failure in self.failures)
        return "\n".join(lines)

    def raise_for_status(self) -> None:
        """
        Raises the error matching the first failure, if any.

        :raises StartError: For start failures.
        :raises HealthError: For instances that never became healthy.
        :raises ResourceError: For volumes or networks that could not be created.
        :raises StopError: For instances that could not be stopped.
        :raises StackError: For blocked services or a cancelled call.
        """
        if self.success:
            return
        if not self.failures:
            raise StackError(self.summary())
        first = self.failures[0]
        message = self.summary()
        if first.kind == FailureKind.START:
            raise StartError(message, service=first.service, replica=first.replica)
        if first.kind == FailureKind.HEALTH:
            raise HealthError(message)
        if first.kind == FailureKind.RESOURCE:
            raise ResourceError(message)
        if first.kind == FailureKind.STOP:
            raise StopError(message)
        raise StackError(message)
