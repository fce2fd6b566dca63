"""
Restart policy enforcement for instances that exit after the stack is up.
"""
import logging
import threading
import time
from typing import TYPE_CHECKING, Dict, List, Optional

from ..MODELS.service_definition import RestartPolicyCondition, ServiceDefinition
from ..MODELS.service_instance import ACTIVE_STATES, InstanceState, ServiceInstance
from .stack_handle import StackHandle

if TYPE_CHECKING:
    from .service_orchestrator import ServiceOrchestrator

logger = logging.getLogger(__name__)


class RestartSupervisor:
    """
    Periodically checks running instances and restarts the ones that exited,
    according to their service's restart policy, with exponential backoff.

    A sweep only runs when the stack lock is free, so it never interleaves
    with up, down or scale.
    """

    def __init__(self, orchestrator: "ServiceOrchestrator", interval: float = 1.0):
        """
        :param orchestrator: Orchestrator used to restart instances.
        :param interval: Seconds between sweeps.
        """
        self.orchestrator = orchestrator
        self.interval = interval
        self._handles: List[StackHandle] = []
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # instance_id -> (monotonic time before which no restart happens, next delay)
        self._backoff: Dict[str, tuple] = {}

    def watch(self, handle: StackHandle) -> None:
        with self._lock:
            if handle not in self._handles:
                self._handles.append(handle)
            if self._thread is None or not self._thread.is_alive():
                self._stopping.clear()
                self._thread = threading.Thread(target=self._loop, name="restart-supervisor", daemon=True)
                self._thread.start()

    def unwatch(self, handle: StackHandle) -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)

    def stop(self) -> None:
        self._stopping.set()
        if self._thread:
            self._thread.join(timeout=1)

    def _loop(self) -> None:
        while not self._stopping.wait(self.interval):
            with self._lock:
                handles = list(self._handles)
            for handle in handles:
                self.sweep(handle)

    def sweep(self, handle: StackHandle) -> List[str]:
        """
        Checks every active instance of a stack once.

        :param handle: The stack to check.
        :return: IDs of the instances that were restarted.
        """
        if not handle.lock.acquire(blocking=False):
            return []
        restarted = []
        try:
            driver = self.orchestrator.driver
            for instance in handle.instances():
                if instance.state not in ACTIVE_STATES or instance.handle is None:
                    continue
                if driver.is_running(instance.handle):
                    continue

                exit_code = driver.exit_code(instance.handle)
                service = handle.definition.services.get(instance.service)
                if service is None or not self._should_restart(service, instance, exit_code):
                    logger.warning("Instance %s exited with code %s", instance.instance_id, exit_code)
                    instance.transition(InstanceState.FAILED, error=f"exited with code {exit_code}")
                    continue
                if not self._backoff_elapsed(instance, service):
                    continue
                if self.orchestrator.restart_instance(handle, instance):
                    restarted.append(instance.instance_id)
        finally:
            handle.lock.release()
        return restarted

    def _should_restart(
        self, service: ServiceDefinition, instance: ServiceInstance, exit_code: Optional[int]
    ) -> bool:
        """
        Determine if an exited instance should be restarted based on its policy.
        """
        policy = service.restart_policy
        if policy.condition == RestartPolicyCondition.ALWAYS:
            return True
        if policy.condition == RestartPolicyCondition.ON_FAILURE:
            if exit_code is None or exit_code == 0:
                return False
            max_retries = policy.max_retries
            if max_retries is None:
                max_retries = self.orchestrator.settings.default_start_retries
            if instance.restart_count >= max_retries:
                logger.warning(
                    "Instance %s exceeded max restart attempts (%d)", instance.instance_id, max_retries
                )
                return False
            return True
        return False

    def _backoff_elapsed(self, instance: ServiceInstance, service: ServiceDefinition) -> bool:
        """
        The first restart happens right away; each following one waits twice as
        long as the previous, capped by the settings.
        """
        now = time.monotonic()
        not_before, delay = self._backoff.get(instance.instance_id, (0.0, 0.0))
        if now < not_before:
            return False
        base = service.restart_policy.delay if service.restart_policy.delay > 0 else 1.0
        next_delay = min(delay * 2 if delay else base, self.orchestrator.settings.restart_backoff_max)
        self._backoff[instance.instance_id] = (now + next_delay, next_delay)
        return True

    def reset(self, instance_id: str) -> None:
        self._backoff.pop(instance_id, None)
