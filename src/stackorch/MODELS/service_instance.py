"""
Runtime state of a single replica of a service.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional


class InstanceState(str, Enum):
    """Lifecycle states of a service instance."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    HEALTH_CHECKING = "health-checking"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


# States in which the driver reports the instance process as up
ACTIVE_STATES = frozenset(
    {
        InstanceState.RUNNING,
        InstanceState.HEALTH_CHECKING,
        InstanceState.HEALTHY,
        InstanceState.UNHEALTHY,
    }
)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class InstanceStatus:
    """Point-in-time view of an instance, safe to hand to callers."""

    instance_id: str
    service: str
    replica: int
    state: InstanceState
    attempts: int = 0
    restart_count: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[str] = None


TransitionListener = Callable[["ServiceInstance", InstanceState, InstanceState], None]


@dataclass(eq=False)
class ServiceInstance:
    """
    One replica of a service. Owned by the orchestrator; state changes go
    through transition() so listeners observe every step.
    """

    service: str
    replica: int
    instance_id: str
    state: InstanceState = InstanceState.PENDING
    handle: Any = None
    attempts: int = 0
    restart_count: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[str] = None
    attachments: List[Any] = field(default_factory=list)
    history: List[InstanceState] = field(default_factory=list)
    listeners: List[TransitionListener] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def transition(self, new_state: InstanceState, error: Optional[str] = None) -> InstanceState:
        """
        Moves the instance to a new state and notifies listeners.

        :param new_state: Target state.
        :param error: Optional error message recorded with the transition.
        :return: The previous state.
        """
        with self._lock:
            old_state = self.state
            self.state = new_state
            self.history.append(new_state)
            self.updated_at = _utcnow()
            if error is not None:
                self.last_error = error
            listeners = list(self.listeners)
        for listener in listeners:
            listener(self, old_state, new_state)
        return old_state

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def snapshot(self) -> InstanceStatus:
        with self._lock:
            return InstanceStatus(
                instance_id=self.instance_id,
                service=self.service,
                replica=self.replica,
                state=self.state,
                attempts=self.attempts,
                restart_count=self.restart_count,
                last_error=self.last_error,
                updated_at=self.updated_at,
            )
