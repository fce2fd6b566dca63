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
Health monitoring for service instances.

Each watch is an explicit state machine advanced by tick(). The monitor drives
every watch from its own daemon thread and sleeps on the watch's cancel event,
so cancelling a watch wakes it immediately.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from ..DRIVERS.base import RuntimeDriver
from ..MODELS.service_definition import HealthCheck
from ..MODELS.service_instance import InstanceState, ServiceInstance

logger = logging.getLogger(__name__)


class HealthResult(str, Enum):
    """How a watch resolved."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    CANCELLED = "cancelled"


class WatchPhase(str, Enum):
    """Phases of the per-watch state machine."""

    SCHEDULED = "scheduled"
    RUNNING_CHECK = "running-check"
    RESOLVED = "resolved"


@dataclass
class CheckResult:
    """Outcome of a single probe run."""

    success: bool
    output: str = ""


ProbeRunner = Callable[[], CheckResult]


def probe_argv(test: List[str]) -> Optional[List[str]]:
    """
    Translates a compose healthcheck test into an argv.

    :param test: ["CMD", ...], ["CMD-SHELL", "..."], or a bare command.
    :return: The argv to run, or None when the check is disabled.
    """
    if not test or test[0] == "NONE":
        return None
    if test[0] == "CMD":
        return list(test[1:])
    if test[0] == "CMD-SHELL":
        return ["/bin/sh", "-c", " ".join(test[1:])]
    if len(test) == 1:
        return ["/bin/sh", "-c", test[0]]
    return list(test)


class HealthWatch:
    """
    Watches one instance until its probe passes or the retry budget is spent.

    State machine: scheduled -> running-check -> (pass: resolved healthy |
    fail: scheduled). `retries` consecutive counted failures resolve the watch
    unhealthy. Failures during `start_period` are not counted. The failure
    streak belongs to this watch; a new watch starts from zero.
    """

    def __init__(
        self,
        instance: ServiceInstance,
        check: HealthCheck,
        run_probe: ProbeRunner,
        now: float,
        on_resolved: Optional[Callable[["HealthWatch"], None]] = None,
    ):
        self.instance = instance
        self.check = check
        self._run_probe = run_probe
        self._on_resolved = on_resolved

        self.phase = WatchPhase.SCHEDULED
        self.result: Optional[HealthResult] = None
        self.started_at = now
        self.next_check_at = now + check.interval
        self.checks = 0
        self.failing_streak = 0
        self.last_output = ""
        self.last_check: Optional[str] = None

        self._cancelled = threading.Event()
        self._resolved = threading.Event()
        # Reentrant: transition listeners may cancel the watch they run under
        self._lock = threading.RLock()

    @property
    def done(self) -> bool:
        return self._resolved.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def seconds_until_next_check(self, now: float) -> float:
        return max(0.0, self.next_check_at - now)

    def tick(self, now: float) -> Optional[HealthResult]:
        """
        Advances the state machine. Runs a check if one is due.

        :param now: Current monotonic time.
        :return: The result once resolved, otherwise None.
        """
        with self._lock:
            if self.phase == WatchPhase.RESOLVED or now < self.next_check_at:
                return self.result
            if self._cancelled.is_set():
                return self.result
            self.phase = WatchPhase.RUNNING_CHECK

        outcome = self._run_probe()

        with self._lock:
            if self.phase == WatchPhase.RESOLVED:
                # Cancelled while the check was running
                return self.result
            self.checks += 1
            self.last_output = outcome.output
            self.last_check = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

            if outcome.success:
                self.failing_streak = 0
                result = HealthResult.HEALTHY
            else:
                in_start_period = now - self.started_at < self.check.start_period
                if not in_start_period:
                    self.failing_streak += 1
                logger.debug(
                    "Health check %d for %s failed (streak %d/%d): %s",
                    self.checks,
                    self.instance.instance_id,
                    self.failing_streak,
                    self.check.retries,
                    outcome.output,
                )
                if self.failing_streak >= self.check.retries:
                    result = HealthResult.UNHEALTHY
                else:
                    self.phase = WatchPhase.SCHEDULED
                    self.next_check_at = now + self.check.interval
                    return None

            self._resolve(result)
            return self.result

    def _resolve(self, result: HealthResult) -> None:
        # The instance transition happens under the lock, so a concurrent
        # cancel() returns only after it has been recorded.
        with self._lock:
            if self.phase == WatchPhase.RESOLVED:
                return
            self.phase = WatchPhase.RESOLVED
            self.result = result

            if result == HealthResult.HEALTHY:
                logger.info("Instance %s is healthy", self.instance.instance_id)
                self.instance.transition(InstanceState.HEALTHY)
            elif result == HealthResult.UNHEALTHY:
                logger.warning(
                    "Instance %s is unhealthy after %d failed checks: %s",
                    self.instance.instance_id,
                    self.failing_streak,
                    self.last_output,
                )
                self.instance.transition(
                    InstanceState.UNHEALTHY,
                    error=f"health check failed {self.failing_streak} times: {self.last_output}",
                )
        if self._on_resolved:
            self._on_resolved(self)
        self._resolved.set()

    def cancel(self) -> None:
        """Stops the watch. Resolves it as cancelled unless it already resolved."""
        self._cancelled.set()
        self._resolve(HealthResult.CANCELLED)

    def wait(self, timeout: Optional[float] = None) -> Optional[HealthResult]:
        """
        Blocks until the watch resolves.

        :param timeout: Seconds to wait, None for no limit.
        :return: The result, or None if the timeout expired first.
        """
        self._resolved.wait(timeout)
        return self.result

    def sleep(self, seconds: float) -> bool:
        """Sleeps until the next check or cancellation. Returns True if cancelled."""
        return self._cancelled.wait(seconds)


class HealthMonitor:
    """
    Runs Docker-style health checks against instances through the runtime driver.
    Reports transitions on the instances it watches; it never touches the
    dependency graph or the resource registry.
    """

    def __init__(self, driver: RuntimeDriver, clock: Callable[[], float] = time.monotonic):
        """
        :param driver: Driver used to execute probes.
        :param clock: Monotonic time source.
        """
        self.driver = driver
        self.clock = clock
        self._watches: List[HealthWatch] = []
        self._lock = threading.Lock()

    def _probe_runner(self, instance: ServiceInstance, check: HealthCheck) -> ProbeRunner:
        argv = probe_argv(check.test)

        # Runs on the thread that ticks the watch; the driver enforces the timeout
        def run() -> CheckResult:
            if argv is None:
                return CheckResult(success=True)
            try:
                exit_code = self.driver.probe(instance.handle, argv, timeout=check.timeout)
            except TimeoutError:
                return CheckResult(success=False, output="Health check timed out")
            except Exception as e:
                return CheckResult(success=False, output=str(e))
            if exit_code == 0:
                return CheckResult(success=True)
            return CheckResult(success=False, output=f"Exit code: {exit_code}")

        return run

    def create_watch(self, instance: ServiceInstance, check: HealthCheck) -> HealthWatch:
        """
        Creates a watch without driving it; callers advance it with tick().
        """
        instance.transition(InstanceState.HEALTH_CHECKING)
        watch = HealthWatch(
            instance,
            check,
            self._probe_runner(instance, check),
            now=self.clock(),
            on_resolved=self._forget,
        )
        with self._lock:
            self._watches.append(watch)
        return watch

    def watch(self, instance: ServiceInstance, check: HealthCheck) -> HealthWatch:
        """
        Starts watching an instance on a background thread.

        :param instance: The running instance.
        :param check: Its health check definition.
        :return: A cancellable watch that resolves healthy, unhealthy or cancelled.
        """
        watch = self.create_watch(instance, check)
        thread = threading.Thread(
            target=self._drive,
            args=(watch,),
            name=f"health-{instance.instance_id}",
            daemon=True,
        )
        thread.start()
        return watch

    def _drive(self, watch: HealthWatch) -> None:
        while not watch.done:
            delay = watch.seconds_until_next_check(self.clock())
            if delay > 0 and watch.sleep(delay):
                break
            watch.tick(self.clock())

    def _forget(self, watch: HealthWatch) -> None:
        with self._lock:
            if watch in self._watches:
                self._watches.remove(watch)

    def active_watches(self) -> List[HealthWatch]:
        with self._lock:
            return list(self._watches)

    def cancel_all(self, instance_ids: Optional[List[str]] = None) -> None:
        for watch in self.active_watches():
            if instance_ids is None or watch.instance.instance_id in instance_ids:
                watch.cancel()

    def shutdown(self) -> None:
        self.cancel_all()
