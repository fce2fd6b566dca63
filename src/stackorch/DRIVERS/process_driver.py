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
Runtime driver that runs every instance as a native process on the host.
"""
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import StartError
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.network_manager import NetworkManager
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.named_resource import ResourceHandle, ResourceKind
from ..RUNNERS.process_runner import ProcessRunner, kill_process_tree
from ..settings import OrchestratorSettings
from .base import InstanceSpec

logger = logging.getLogger(__name__)


@dataclass
class ProcessHandle:
    """Driver handle for one running process."""

    instance_id: str
    runner: ProcessRunner
    env: Dict[str, str] = field(default_factory=dict, repr=False)
    working_dir: Optional[str] = None
    ports: Dict[int, int] = field(default_factory=dict)


def volume_env_name(name: str) -> str:
    return "STACKORCH_VOLUME_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper()


class ProcessRuntimeDriver:
    """
    Starts instances as host processes, logs each to
    <state_dir>/logs/<instance>.log, backs named volumes with directories and
    scopes service discovery by network.
    """

    def __init__(self, base_dir: str = ".", settings: Optional[OrchestratorSettings] = None):
        """
        :param base_dir: Directory of the stack file; relative paths resolve against it.
        :param settings: Runtime settings (state directory, stop timeout).
        """
        self.settings = settings or OrchestratorSettings()
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = os.path.join(self.base_dir, self.settings.state_dir)
        self.log_dir = os.path.join(self.state_dir, "logs")
        self.env_manager = EnvironmentManager(self.base_dir)
        self.volume_manager = VolumeManager(self.base_dir, os.path.join(self.settings.state_dir, "volumes"))
        self.network_manager = NetworkManager()

    def log_path(self, instance_id: str) -> str:
        return os.path.join(self.log_dir, f"{instance_id}.log")

    def start(self, spec: InstanceSpec, resources: List[ResourceHandle]) -> ProcessHandle:
        service = spec.service
        command = service.full_command()
        if not command:
            raise StartError(
                f"Service {service.name} has no command or entrypoint to run",
                service=service.name,
                replica=spec.replica,
            )

        working_dir = None
        if service.working_dir:
            working_dir = os.path.join(self.base_dir, service.working_dir)

        networks = [r.name for r in resources if r.kind == ResourceKind.NETWORK]
        try:
            ports = self.network_manager.allocate_ports(spec.instance_id, service)
            for network in networks:
                self.network_manager.connect(network, spec.instance_id, service.name)
            mounts = self.volume_manager.prepare_mounts(service.volumes, spec.volumes, working_dir)

            extra = dict(spec.extra_env)
            extra.update(self.network_manager.get_service_discovery_env(networks))
            for target, path in mounts.items():
                extra[volume_env_name(target)] = path
            env = self.env_manager.get_merged_environment(
                service.environment, service.environment_files, extra
            )

            runner = ProcessRunner(spec.instance_id, log_file=self.log_path(spec.instance_id))
            runner.start(command, env=env, working_dir=working_dir)
        except (OSError, RuntimeError) as e:
            self.network_manager.disconnect(spec.instance_id)
            raise StartError(
                f"Failed to start {spec.instance_id}: {e}", service=service.name, replica=spec.replica
            ) from e

        return ProcessHandle(
            instance_id=spec.instance_id,
            runner=runner,
            env=env,
            working_dir=working_dir,
            ports=ports,
        )

    def stop(self, handle: ProcessHandle, timeout: Optional[float] = None) -> None:
        handle.runner.stop(timeout=self.settings.stop_timeout if timeout is None else timeout)
        self.network_manager.disconnect(handle.instance_id)

    def is_running(self, handle: ProcessHandle) -> bool:
        return handle.runner.is_running()

    def exit_code(self, handle: ProcessHandle) -> Optional[int]:
        return handle.runner.get_exit_code()

    def probe(self, handle: ProcessHandle, command: List[str], timeout: Optional[float] = None) -> int:
        """
        Runs a health command with the instance's environment and working directory.
        A command still running after `timeout` seconds is killed together with
        any processes it spawned.
        """
        with subprocess.Popen(
            command,
            env=handle.env,
            cwd=handle.working_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        ) as process:
            try:
                output, _ = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                kill_process_tree(process)
                process.communicate()
                raise TimeoutError(f"Probe {command} for {handle.instance_id} timed out after {timeout}s")
        if process.returncode != 0:
            logger.debug(
                "Probe %s for %s exited %d: %s",
                command,
                handle.instance_id,
                process.returncode,
                (output or "")[:500],
            )
        return process.returncode

    def create_volume(self, name: str) -> None:
        self.volume_manager.create_volume(name)

    def remove_volume(self, name: str) -> None:
        self.volume_manager.remove_volume(name)

    def create_network(self, name: str) -> None:
        self.network_manager.create_network(name)

    def remove_network(self, name: str) -> None:
        self.network_manager.remove_network(name)
