# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Orchestration for multiple services, managing dependencies, health and shared resources.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Set

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
    wait_fixed,
    wait_none,
)

from ..DRIVERS.base import ImageProvider, ImageRef, InstanceSpec, RuntimeDriver
from ..errors import (
    BuildError,
    DefinitionError,
    ResourceError,
    ScaleError,
    StartError,
    StopError,
)
from ..MODELS.named_resource import ResourceHandle, ResourceKind
from ..MODELS.orchestration_result import FailureKind, OrchestrationResult
from ..MODELS.service_definition import DependencyGate, RestartPolicyCondition, ServiceDefinition
from ..MODELS.service_instance import ACTIVE_STATES, InstanceState, InstanceStatus, ServiceInstance
from ..MODELS.stack_definition import DEFAULT_NETWORK, StackDefinition
from ..RUNNERS.dependency_resolver import BatchScheduler, ServiceGraph
from ..settings import OrchestratorSettings
from .health_monitor import HealthMonitor, HealthWatch
from .resource_registry import ResourceRegistry
from .restart_supervisor import RestartSupervisor
from .stack_handle import StackHandle

logger = logging.getLogger(__name__)

# Interval at which waits on health watches re-check the cancel event
_CANCEL_POLL = 0.05


class ServiceOrchestrator:
    """
    Brings stacks up and down in dependency order.

    Services are started batch by batch. A service is released as soon as every
    dependency has met its gate: started for plain dependencies, a passing
    health check for healthy ones. Health checks keep running while services
    that only need their dependencies started go ahead.
    """

    def __init__(
        self,
        image_provider: ImageProvider,
        driver: RuntimeDriver,
        registry: Optional[ResourceRegistry] = None,
        health_monitor: Optional[HealthMonitor] = None,
        settings: Optional[OrchestratorSettings] = None,
    ):
        """
        Initializes the orchestrator.

        :param image_provider: Resolves service images.
        :param driver: Starts, stops and probes instances.
        :param registry: Shared volume/network registry; created from the driver if omitted.
        :param health_monitor: Health monitor; created from the driver if omitted.
        :param settings: Runtime settings.
        """
        self.settings = settings or OrchestratorSettings()
        self.image_provider = image_provider
        self.driver = driver
        self.registry = registry or ResourceRegistry(driver)
        self.health_monitor = health_monitor or HealthMonitor(driver)
        self.supervisor = RestartSupervisor(self, interval=self.settings.supervise_interval)

    # Loading

    def load(self, definition: StackDefinition, project_name: Optional[str] = None) -> StackHandle:
        """
        Validates a stack definition and returns a handle for it.

        :param definition: The stack to load.
        :param project_name: Prefix for instance and resource names; defaults to the stack name.
        :return: A handle to pass to up, down, scale and status.
        :raises LoadError: If the definition is invalid. Nothing is started.
        """
        graph = self._validate(definition)
        handle = StackHandle(definition, graph, project_name or definition.name)
        self._declare_resources(handle)
        logger.info(
            "Loaded stack %s with %d services in %d batches",
            handle.project,
            len(graph),
            len(graph.startup_batches()),
        )
        return handle

    def reload(self, handle: StackHandle, definition: StackDefinition) -> StackHandle:
        """
        Replaces the definition behind a handle. Waits for any in-flight call on
        the handle to settle. Running instances are left alone.
        """
        graph = self._validate(definition)
        with handle.lock:
            handle.replace(definition, graph)
            self._declare_resources(handle)
        return handle

    def _validate(self, definition: StackDefinition) -> ServiceGraph:
        graph = ServiceGraph.load(definition.services, definition.edges())
        for name, service in definition.services.items():
            for volume in service.named_volumes:
                if volume not in definition.volumes:
                    raise DefinitionError(f"Service {name} uses undeclared volume {volume}")
            for network in service.networks:
                if network != DEFAULT_NETWORK and network not in definition.networks:
                    raise DefinitionError(f"Service {name} uses undeclared network {network}")
        return graph

    def _declare_resources(self, handle: StackHandle) -> None:
        definition = handle.definition
        for name, decl in definition.volumes.items():
            self.registry.declare(handle.resource_name(name), ResourceKind.VOLUME, decl.driver)
        for name, decl in definition.networks.items():
            self.registry.declare(handle.resource_name(name), ResourceKind.NETWORK, decl.driver)
        if any(DEFAULT_NETWORK in definition.service_networks(n) for n in definition.services):
            self.registry.declare(handle.resource_name(DEFAULT_NETWORK), ResourceKind.NETWORK)

    # Up

    def up(self, handle: StackHandle, cancel: Optional[threading.Event] = None) -> OrchestrationResult:
        """
        Starts every service at its desired replica count.

        If an instance cannot be started (after its restart policy is exhausted)
        or a volume/network cannot be created, every instance started by this
        call is stopped again in reverse order and the call fails. Instances
        that never become healthy fail the call without a rollback; services
        gated on their health are reported as blocked.

        :param handle: The stack.
        :param cancel: Set to abort; in-flight starts are stopped, resources stay attached.
        :return: Result listing any service that did not reach its target state.
        """
        cancel = cancel or threading.Event()
        result = OrchestrationResult(operation="up")

        with handle.lock:
            started_here: List[ServiceInstance] = []
            scheduler = handle.graph.scheduler()
            # Probed services whose health watches have not all resolved yet
            awaiting: Dict[str, List[HealthWatch]] = {}
            batch_started: List[ServiceInstance] = []

            with ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix=f"{handle.project}-up"
            ) as pool:
                while not cancel.is_set():
                    batch = scheduler.next_batch()
                    if not batch:
                        if not awaiting:
                            break
                        # Nothing is ready until another health gate resolves
                        for name in self._wait_for_resolved(awaiting, cancel):
                            del awaiting[name]
                            self._report_health(handle, name, scheduler, result)
                        continue
                    logger.info("Starting batch: %s", ", ".join(batch))

                    batch_started = []
                    fatal = self._start_batch(handle, batch, pool, cancel, batch_started, result)
                    started_here.extend(batch_started)

                    if cancel.is_set():
                        break
                    batch_started = []
                    if fatal:
                        self._rollback(handle, started_here)
                        result.rolled_back = True
                        for name in scheduler.pending():
                            result.add_failure(name, FailureKind.BLOCKED, "not started: stack aborted")
                        return result

                    for name in batch:
                        scheduler.mark_started(name)
                        if handle.service(name).has_probe:
                            awaiting[name] = self._watch_service(handle, name)

            if cancel.is_set():
                # Services still being health checked count as in flight
                in_flight = [i for i in started_here if i.service in awaiting]
                for watches in awaiting.values():
                    for watch in watches:
                        watch.cancel()
                self._stop_in_flight(handle, in_flight + batch_started)
                logger.warning("up of %s cancelled", handle.project)
                result.cancelled = True
                return result

            for name, cause in scheduler.blocked().items():
                result.add_failure(
                    name,
                    FailureKind.BLOCKED,
                    f"dependency {cause} did not reach its required state",
                )

        if result.success:
            logger.info("Stack %s is up", handle.project)
        else:
            logger.error(result.summary())
        if self.settings.supervise:
            self.supervisor.watch(handle)
        return result

    def _start_batch(
        self,
        handle: StackHandle,
        batch: Iterable[str],
        pool: ThreadPoolExecutor,
        cancel: threading.Event,
        started: List[ServiceInstance],
        result: OrchestrationResult,
    ) -> bool:
        """
        Starts all missing replicas of a batch concurrently.

        :return: True if a failure must abort the whole call.
        """
        futures = {}
        for name in batch:
            for replica in range(handle.desired.get(name, 0)):
                instance = handle.instance(name, replica)
                if instance.is_active:
                    continue
                futures[pool.submit(self._start_instance, handle, instance, cancel)] = instance

        fatal = False
        for future in as_completed(futures):
            instance = futures[future]
            try:
                future.result()
            except ResourceError as e:
                result.add_failure(instance.service, FailureKind.RESOURCE, str(e), instance.replica)
                fatal = True
            except StartError as e:
                if cancel.is_set():
                    result.add_failure(instance.service, FailureKind.CANCELLED, str(e), instance.replica)
                else:
                    result.add_failure(instance.service, FailureKind.START, str(e), instance.replica)
                    fatal = True
            else:
                started.append(instance)
                result.started.append(instance.instance_id)
        return fatal

    def _retrying(self, service: ServiceDefinition, cancel: threading.Event) -> Retrying:
        policy = service.restart_policy
        if policy.condition == RestartPolicyCondition.ALWAYS:
            stop = stop_when_event_set(cancel)
        elif policy.condition == RestartPolicyCondition.ON_FAILURE:
            retries = policy.max_retries
            if retries is None:
                retries = self.settings.default_start_retries
            stop = stop_after_attempt(retries + 1) | stop_when_event_set(cancel)
        else:
            stop = stop_after_attempt(1)

        if policy.delay > 0:
            wait = wait_exponential(multiplier=policy.delay, max=self.settings.restart_backoff_max)
        elif policy.condition == RestartPolicyCondition.ALWAYS:
            wait = wait_fixed(0.1)
        else:
            wait = wait_none()

        return Retrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception_type(StartError),
            sleep=cancel.wait,
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning("Start attempt %d failed, retrying: %s", state.attempt_number, error)

    def _start_instance(self, handle: StackHandle, instance: ServiceInstance, cancel: threading.Event) -> None:
        """
        Starts one instance, retrying per its service's restart policy.

        :raises StartError: When the policy gives up.
        :raises ResourceError: When a resource cannot be created; never retried.
        """
        service = handle.service(instance.service)
        for attempt in self._retrying(service, cancel):
            with attempt:
                self._start_once(handle, instance)

    def _start_once(self, handle: StackHandle, instance: ServiceInstance) -> None:
        service = handle.service(instance.service)
        instance.attempts += 1
        instance.transition(InstanceState.STARTING)

        try:
            image = self._resolve_image(handle, service)
            resources = self._attach_resources(handle, instance, service)
        except (ResourceError, StartError) as e:
            instance.transition(InstanceState.FAILED, error=str(e))
            raise

        spec = InstanceSpec(
            instance_id=instance.instance_id,
            project=handle.project,
            service=service,
            replica=instance.replica,
            image=image,
            extra_env={
                "STACKORCH_PROJECT": handle.project,
                "STACKORCH_SERVICE": service.name,
                "STACKORCH_REPLICA": str(instance.replica),
            },
            volumes={v: handle.resource_name(v) for v in service.named_volumes},
        )
        try:
            instance.handle = self.driver.start(spec, resources)
        except Exception as e:
            self._release(instance)
            instance.transition(InstanceState.FAILED, error=str(e))
            if isinstance(e, StartError):
                raise
            raise StartError(
                f"Failed to start {instance.instance_id}: {e}",
                service=service.name,
                replica=instance.replica,
            ) from e

        instance.transition(InstanceState.RUNNING)
        logger.info("Instance %s is running (%s)", instance.instance_id, image)

    def _resolve_image(self, handle: StackHandle, service: ServiceDefinition) -> ImageRef:
        image = handle.images.get(service.name)
        if image is not None:
            return image
        try:
            image = self.image_provider.resolve(service)
        except StartError:
            raise
        except Exception as e:
            raise BuildError(f"Cannot resolve image for {service.name}: {e}", service=service.name) from e
        handle.images[service.name] = image
        return image

    def _attach_resources(
        self, handle: StackHandle, instance: ServiceInstance, service: ServiceDefinition
    ) -> List[ResourceHandle]:
        wanted = [(handle.resource_name(v), ResourceKind.VOLUME) for v in service.named_volumes]
        wanted += [
            (handle.resource_name(n), ResourceKind.NETWORK)
            for n in handle.definition.service_networks(service.name)
        ]
        attached: List[ResourceHandle] = []
        try:
            for name, kind in wanted:
                attached.append(self.registry.attach(name, kind, instance.instance_id))
        except ResourceError:
            for resource in attached:
                self.registry.detach(resource)
            raise
        instance.attachments = attached
        return attached

    def _release(self, instance: ServiceInstance) -> None:
        for resource in instance.attachments:
            self.registry.detach(resource)
        instance.attachments = []

    def _watch_service(self, handle: StackHandle, name: str) -> List[HealthWatch]:
        """Starts a health watch on every active instance of a service that is not yet healthy."""
        service = handle.service(name)
        return [
            self.health_monitor.watch(instance, service.health_check)
            for instance in handle.instances(name)
            if instance.is_active and instance.state != InstanceState.HEALTHY
        ]

    def _report_health(
        self,
        handle: StackHandle,
        name: str,
        scheduler: BatchScheduler,
        result: OrchestrationResult,
    ) -> None:
        """Reports a service whose watches all resolved to the scheduler and the result."""
        instances = [i for i in handle.instances(name) if i.replica < handle.desired.get(name, 0)]
        unhealthy = [i for i in instances if i.state != InstanceState.HEALTHY]
        if not unhealthy:
            scheduler.mark_healthy(name)
            return
        scheduler.mark_unhealthy(name)
        for instance in unhealthy:
            result.add_failure(
                name,
                FailureKind.HEALTH,
                instance.last_error or f"instance is {instance.state.value}",
                instance.replica,
            )

    def _wait_for_resolved(
        self, awaiting: Dict[str, List[HealthWatch]], cancel: threading.Event
    ) -> List[str]:
        """
        Blocks until at least one awaited service has all of its watches resolved.

        :return: Every service resolved so far, or an empty list once cancel is set.
        """
        while not cancel.is_set():
            resolved = [name for name, watches in awaiting.items() if all(w.done for w in watches)]
            if resolved:
                return resolved
            cancel.wait(_CANCEL_POLL)
        return []

    def _wait_for_watches(self, watches: List[HealthWatch], cancel: threading.Event) -> bool:
        """Waits for all watches. Returns False (after cancelling them) if cancel is set first."""
        for watch in watches:
            while watch.wait(_CANCEL_POLL) is None:
                if cancel.is_set():
                    for pending in watches:
                        pending.cancel()
                    return False
        return not cancel.is_set()

    def _stop_in_flight(self, handle: StackHandle, instances: List[ServiceInstance]) -> None:
        """Stops instances started by a cancelled batch. Their resources stay attached."""
        for instance in reversed(instances):
            try:
                self._stop_instance(handle, instance, release=False)
            except StopError as e:
                logger.warning("Could not stop %s after cancel: %s", instance.instance_id, e)

    def _rollback(self, handle: StackHandle, instances: List[ServiceInstance]) -> None:
        logger.error("Rolling back %d instance(s) of %s", len(instances), handle.project)
        self.health_monitor.cancel_all([i.instance_id for i in instances])
        for instance in reversed(instances):
            try:
                self._stop_instance(handle, instance)
            except StopError as e:
                logger.warning("Rollback could not stop %s: %s", instance.instance_id, e)

    # Down

    def down(self, handle: StackHandle, cancel: Optional[threading.Event] = None) -> OrchestrationResult:
        """
        Stops every instance in reverse dependency order. Resources are released
        only once an instance has stopped; volumes themselves are kept.

        :param handle: The stack.
        :param cancel: Set to stop before the next batch.
        :return: Result listing instances that could not be stopped.
        """
        cancel = cancel or threading.Event()
        result = OrchestrationResult(operation="down")
        self.supervisor.unwatch(handle)

        with handle.lock:
            self.health_monitor.cancel_all([i.instance_id for i in handle.instances()])
            batches = [tuple(handle.orphan_services())] + handle.graph.shutdown_batches()

            with ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix=f"{handle.project}-down"
            ) as pool:
                for batch in batches:
                    if cancel.is_set():
                        result.cancelled = True
                        break
                    instances = [i for name in batch for i in handle.instances(name)]
                    if not instances:
                        continue
                    logger.info("Stopping batch: %s", ", ".join(batch))
                    self._stop_batch(handle, instances, pool, result)

        logger.info("Stack %s is down", handle.project)
        return result

    def _stop_batch(
        self,
        handle: StackHandle,
        instances: List[ServiceInstance],
        pool: ThreadPoolExecutor,
        result: OrchestrationResult,
    ) -> None:
        futures = {pool.submit(self._stop_instance, handle, i): i for i in instances}
        for future in as_completed(futures):
            instance = futures[future]
            try:
                future.result()
            except StopError as e:
                result.add_failure(instance.service, FailureKind.STOP, str(e), instance.replica)
            else:
                result.stopped.append(instance.instance_id)
                handle.remove_instance(instance)

    def _stop_instance(self, handle: StackHandle, instance: ServiceInstance, release: bool = True) -> None:
        """
        Stops an instance, then releases its resource attachments.

        :raises StopError: If the driver fails; attachments are kept.
        """
        if instance.handle is not None:
            instance.transition(InstanceState.STOPPING)
            try:
                self.driver.stop(instance.handle, timeout=self.settings.stop_timeout)
            except Exception as e:
                instance.transition(InstanceState.FAILED, error=f"stop failed: {e}")
                raise StopError(f"Failed to stop {instance.instance_id}: {e}") from e
            instance.handle = None
            instance.transition(InstanceState.STOPPED)
            self.supervisor.reset(instance.instance_id)
            logger.info("Instance %s stopped", instance.instance_id)
        elif instance.state != InstanceState.STOPPED:
            instance.transition(InstanceState.STOPPED)
        if release:
            self._release(instance)

    # Scale

    def scale(
        self,
        handle: StackHandle,
        service: str,
        replicas: int,
        cancel: Optional[threading.Event] = None,
    ) -> OrchestrationResult:
        """
        Changes the replica count of one service without touching any other.
        Scaling up requires the service's own dependencies to satisfy their gates.

        :param handle: The stack.
        :param service: Service to scale.
        :param replicas: New replica count.
        :param cancel: Set to abort the new starts.
        :return: Result of the change.
        :raises ScaleError: For an unknown service or a negative count.
        """
        if service not in handle.definition.services:
            raise ScaleError(f"No such service: {service}")
        if replicas < 0:
            raise ScaleError(f"Replica count must be >= 0, got {replicas}")
        cancel = cancel or threading.Event()
        result = OrchestrationResult(operation="scale")

        with handle.lock:
            active = [i for i in handle.instances(service) if i.is_active]
            if replicas > len(active):
                for target, gate in handle.graph.dependencies(service).items():
                    if not self._gate_satisfied(handle, target, gate):
                        result.add_failure(
                            service,
                            FailureKind.BLOCKED,
                            f"dependency {target} is not {gate.value}",
                        )
                if result.failures:
                    return result
                self._scale_up(handle, service, active, replicas, cancel, result)
            else:
                self._scale_down(handle, service, active, replicas, result)

            if not result.rolled_back:
                handle.desired[service] = replicas
        logger.info("Scaled %s to %d", service, replicas)
        return result

    def _scale_up(
        self,
        handle: StackHandle,
        service: str,
        active: List[ServiceInstance],
        replicas: int,
        cancel: threading.Event,
        result: OrchestrationResult,
    ) -> None:
        used: Set[int] = {i.replica for i in active}
        indices: List[int] = []
        candidate = 0
        while len(indices) < replicas - len(active):
            if candidate not in used:
                indices.append(candidate)
            candidate += 1

        new_instances = [handle.instance(service, r) for r in indices]
        started: List[ServiceInstance] = []
        with ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix=f"{handle.project}-scale"
        ) as pool:
            futures = {pool.submit(self._start_instance, handle, i, cancel): i for i in new_instances}
            fatal = False
            for future in as_completed(futures):
                instance = futures[future]
                try:
                    future.result()
                except ResourceError as e:
                    result.add_failure(service, FailureKind.RESOURCE, str(e), instance.replica)
                    fatal = True
                except StartError as e:
                    result.add_failure(service, FailureKind.START, str(e), instance.replica)
                    fatal = True
                else:
                    started.append(instance)
                    result.started.append(instance.instance_id)

        if fatal or cancel.is_set():
            result.cancelled = cancel.is_set()
            self._rollback(handle, started)
            result.rolled_back = True
            return

        definition = handle.service(service)
        if definition.has_probe:
            watches = [self.health_monitor.watch(i, definition.health_check) for i in started]
            if not self._wait_for_watches(watches, cancel):
                result.cancelled = True
                return
            for instance in started:
                if instance.state != InstanceState.HEALTHY:
                    result.add_failure(
                        service,
                        FailureKind.HEALTH,
                        instance.last_error or f"instance is {instance.state.value}",
                        instance.replica,
                    )

    def _scale_down(
        self,
        handle: StackHandle,
        service: str,
        active: List[ServiceInstance],
        replicas: int,
        result: OrchestrationResult,
    ) -> None:
        victims = sorted(active, key=lambda i: i.replica, reverse=True)[: len(active) - replicas]
        # Leftover failed or stopped replicas beyond the new count go as well
        victims += [
            i for i in handle.instances(service)
            if not i.is_active and i.replica >= replicas
        ]
        self.health_monitor.cancel_all([i.instance_id for i in victims])
        for instance in victims:
            try:
                self._stop_instance(handle, instance)
            except StopError as e:
                result.add_failure(service, FailureKind.STOP, str(e), instance.replica)
            else:
                result.stopped.append(instance.instance_id)
                handle.remove_instance(instance)

    def _gate_satisfied(self, handle: StackHandle, target: str, gate: DependencyGate) -> bool:
        desired = handle.desired.get(target, 0)
        if desired == 0:
            return True
        active = [i for i in handle.instances(target) if i.is_active]
        if len(active) < desired:
            return False
        if gate == DependencyGate.HEALTHY:
            return all(i.state == InstanceState.HEALTHY for i in active)
        return True

    # Restarts

    def restart_instance(self, handle: StackHandle, instance: ServiceInstance) -> bool:
        """
        Restarts an instance whose process exited. Callers must hold the stack lock.

        :return: True if the instance is running again.
        """
        service = handle.service(instance.service)
        instance.restart_count += 1
        logger.info("Restarting %s (restart %d)", instance.instance_id, instance.restart_count)
        if instance.handle is not None:
            try:
                self.driver.stop(instance.handle, timeout=self.settings.stop_timeout)
            except Exception as e:
                logger.warning("Cleanup of exited %s failed: %s", instance.instance_id, e)
            instance.handle = None
        try:
            self._start_once(handle, instance)
        except (StartError, ResourceError) as e:
            logger.error("Restart of %s failed: %s", instance.instance_id, e)
            return False
        if service.has_probe:
            self.health_monitor.watch(instance, service.health_check)
        return True

    # Queries

    def status(self, handle: StackHandle) -> Dict[str, List[InstanceStatus]]:
        """
        Current state of every instance, grouped by service. Does not wait for
        in-flight calls, so it can be polled to render progress.
        """
        services = list(handle.definition.services) + handle.orphan_services()
        return {name: [i.snapshot() for i in handle.instances(name)] for name in services}

    def ps(self, handle: StackHandle) -> Dict[str, str]:
        """
        Returns one summary line per service, e.g. 'healthy 2/2'.
        """
        summary = {}
        for name, instances in self.status(handle).items():
            desired = handle.desired.get(name, 0)
            states = sorted({s.state.value for s in instances}) or ["stopped"]
            active = sum(1 for s in instances if s.state in ACTIVE_STATES)
            summary[name] = f"{','.join(states)} {active}/{desired}"
        return summary

    def prune(self, kind: Optional[ResourceKind] = None) -> Set[str]:
        """Destroys volumes and networks no instance is attached to."""
        return self.registry.destroy_unused(kind)

    def close(self) -> None:
        self.supervisor.stop()
        self.health_monitor.shutdown()
