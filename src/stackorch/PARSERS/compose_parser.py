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
Parsers for compose-style stack YAML files.
"""
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from ..errors import DefinitionError
from ..MODELS.service_definition import (
    DependencyGate,
    DependencySpec,
    HealthCheck,
    PortBinding,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
    VolumeMount,
)
from ..MODELS.stack_definition import DEFAULT_NETWORK, ResourceDeclaration, StackDefinition
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(us|ms|h|m|s)')
_DURATION_UNITS = {'us': 1e-6, 'ms': 1e-3, 's': 1.0, 'm': 60.0, 'h': 3600.0}

_CONDITIONS = {
    'service_started': DependencyGate.STARTED,
    'service_healthy': DependencyGate.HEALTHY,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Converts a compose duration to seconds.

    Examples: 10 -> 10.0, "10s" -> 10.0, "1m30s" -> 90.0, "500ms" -> 0.5

    :raises ValueError: If the value is not a duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def parse_restart(value: Any) -> RestartPolicy:
    """
    Maps a compose restart string to a policy.
    "no" and "never" never restart, "unless-stopped" behaves like "always",
    "on-failure:N" allows N retries.
    """
    if value is None or value is False:
        return RestartPolicy(condition=RestartPolicyCondition.NEVER)
    text = str(value).strip()
    if text in ('no', 'never'):
        return RestartPolicy(condition=RestartPolicyCondition.NEVER)
    if text in ('always', 'unless-stopped'):
        return RestartPolicy(condition=RestartPolicyCondition.ALWAYS)
    if text == 'on-failure':
        return RestartPolicy(condition=RestartPolicyCondition.ON_FAILURE)
    if text.startswith('on-failure:'):
        count = text.split(':', 1)[1]
        if not count.isdigit():
            raise ValueError(f"Invalid restart retry count: {count!r}")
        return RestartPolicy(condition=RestartPolicyCondition.ON_FAILURE, max_retries=int(count))
    raise ValueError(f"Unknown restart policy: {text!r}")


class ComposeParser:
    """
    Parser for compose-style stack files.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = dict(os.environ) if context is None else dict(context)

    def parse(self, compose_path: str) -> StackDefinition:
        """
        Parses a stack file from a path.

        :param compose_path: Path to the stack file.
        :return: Parsed and validated stack definition.
        :raises DefinitionError: If the file is missing or malformed.
        """
        stack = self._load_file(compose_path)
        self.validate(stack)
        return stack

    def load_files(self, paths: List[str]) -> StackDefinition:
        """
        Parses several files and overlays them in order. A service declared
        in a later file replaces the earlier definition entirely.

        :param paths: Stack file paths, base file first.
        :return: The merged, validated stack definition.
        """
        if not paths:
            raise DefinitionError("No stack files given")
        stack = self._load_file(paths[0])
        for path in paths[1:]:
            stack = stack.merge(self._load_file(path))
        self.validate(stack)
        return stack

    def parse_from_string(self, content: str, name: Optional[str] = None) -> StackDefinition:
        """
        Parses a stack file from a string.

        :param content: YAML content of the stack file.
        :param name: Project name used when the file does not set one.
        :return: Parsed and validated stack definition.
        """
        stack = self._load(content, name)
        self.validate(stack)
        return stack

    def validate(self, stack: StackDefinition) -> None:
        """
        Checks that every named volume and network a service uses is declared.

        :raises DefinitionError: On the first undeclared resource.
        """
        for service in stack.services.values():
            for volume in service.named_volumes:
                if volume not in stack.volumes:
                    raise DefinitionError(
                        f"Service {service.name} uses undeclared volume {volume}"
                    )
            for network in service.networks:
                if network != DEFAULT_NETWORK and network not in stack.networks:
                    raise DefinitionError(
                        f"Service {service.name} uses undeclared network {network}"
                    )

    def _load_file(self, path: str) -> StackDefinition:
        try:
            with open(path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise DefinitionError(f"Cannot read stack file {path}: {e}") from e
        project = os.path.basename(os.path.dirname(os.path.abspath(path)))
        return self._load(content, re.sub(r'[^a-z0-9_-]', '', project.lower()) or None)

    def _load(self, content: str, name: Optional[str]) -> StackDefinition:
        # Interpolate variables before parsing YAML
        content, missing = EnvironmentInterpolator.interpolate(content, self.context)
        for var_name in missing:
            logger.warning("The %s variable is not set. Defaulting to a blank string.", var_name)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DefinitionError(f"Invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DefinitionError("A stack file must be a mapping")

        services_spec = data.get('services') or {}
        if not isinstance(services_spec, dict):
            raise DefinitionError("services must be a mapping")

        services = {}
        for service_name, spec in services_spec.items():
            service_name = str(service_name)
            if not isinstance(spec, dict):
                raise DefinitionError(f"Service {service_name} must be a mapping")
            try:
                services[service_name] = self._parse_service(service_name, spec)
            except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
                raise DefinitionError(f"Invalid service {service_name}: {e}") from e

        try:
            return StackDefinition(
                name=str(data.get('name') or name or 'stackorch'),
                services=services,
                volumes=self._parse_resources(data.get('volumes')),
                networks=self._parse_resources(data.get('networks')),
            )
        except ValidationError as e:
            raise DefinitionError(f"Invalid stack: {e}") from e

    def _parse_resources(self, spec: Any) -> Dict[str, ResourceDeclaration]:
        resources = {}
        for key, value in (spec or {}).items():
            value = value or {}
            resources[str(key)] = ResourceDeclaration(
                driver=value.get('driver', 'local'),
                labels=self._to_mapping(value.get('labels')),
            )
        return resources

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from a stack file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        build = spec.get('build')
        if isinstance(build, dict):
            build_context = build.get('context', '.')
            dockerfile = build.get('dockerfile')
        else:
            build_context = build
            dockerfile = None

        deploy = spec.get('deploy') or {}
        replicas = deploy.get('replicas', spec.get('replicas', 1))

        return ServiceDefinition(
            name=name,
            image_name=spec.get('image') or '',
            build_context=build_context,
            dockerfile_path=dockerfile,
            cmd=self._to_command(spec.get('command')),
            entrypoint=self._to_command(spec.get('entrypoint')),
            working_dir=spec.get('working_dir'),
            environment=self._parse_environment(name, spec.get('environment')),
            environment_files=self._to_list(spec.get('env_file')),
            ports=[self._parse_port(p) for p in spec.get('ports') or []],
            networks=self._to_list(spec.get('networks')),
            volumes=[self._parse_volume(name, v) for v in spec.get('volumes') or []],
            restart_policy=parse_restart(spec.get('restart')),
            health_check=self._parse_healthcheck(name, spec.get('healthcheck')),
            depends_on=self._parse_depends_on(name, spec.get('depends_on')),
            replicas=replicas,
            labels=self._to_mapping(spec.get('labels')),
        )

    def _parse_environment(self, service: str, env_spec: Any) -> Dict[str, str]:
        environment = {}
        if isinstance(env_spec, list):
            for entry in env_spec:
                key, sep, value = str(entry).partition('=')
                if key in environment:
                    raise DefinitionError(f"Service {service} sets {key} more than once")
                if sep:
                    environment[key] = value
                elif key in self.context:
                    # Bare names pass the value through from the interpolation context
                    environment[key] = self.context[key]
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if value is None:
                    if key in self.context:
                        environment[str(key)] = self.context[key]
                    continue
                environment[str(key)] = self._scalar(value)
        elif env_spec is not None:
            raise DefinitionError(f"Service {service} environment must be a list or mapping")
        return environment

    def _parse_port(self, port: Any) -> PortBinding:
        if isinstance(port, dict):
            return PortBinding(target=int(port['target']), published=port.get('published'))
        text = str(port).split('/', 1)[0]
        parts = text.split(':')
        if len(parts) == 1:
            return PortBinding(target=int(parts[0]))
        # "ip:host:container" or "host:container"; the host ip is ignored
        published = parts[-2]
        return PortBinding(target=int(parts[-1]), published=int(published) if published else None)

    def _parse_volume(self, service: str, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            return VolumeMount(
                source=volume.get('source', ''),
                target=volume['target'],
                read_only=bool(volume.get('read_only', False)),
            )
        parts = str(volume).split(':')
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro'))
        raise DefinitionError(f"Service {service} has an unsupported volume entry: {volume!r}")

    def _parse_healthcheck(self, service: str, spec: Any) -> Optional[HealthCheck]:
        if spec is None:
            return None
        if spec.get('disable'):
            return HealthCheck(test=['NONE'])
        test = spec.get('test')
        if not test:
            raise DefinitionError(f"Service {service} healthcheck has no test")
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        values = {'test': [str(t) for t in test]}
        for key in ('interval', 'timeout', 'start_period'):
            if key in spec:
                values[key] = parse_duration(spec[key])
        if 'retries' in spec:
            values['retries'] = spec['retries']
        return HealthCheck(**values)

    def _parse_depends_on(self, service: str, spec: Any) -> List[DependencySpec]:
        if spec is None:
            return []
        if isinstance(spec, list):
            return [DependencySpec(service=str(target)) for target in spec]
        if isinstance(spec, dict):
            dependencies = []
            for target, options in spec.items():
                condition = (options or {}).get('condition', 'service_started')
                if condition not in _CONDITIONS:
                    raise DefinitionError(
                        f"Service {service} uses unsupported depends_on condition {condition}"
                    )
                dependencies.append(DependencySpec(service=str(target), gate=_CONDITIONS[condition]))
            return dependencies
        raise DefinitionError(f"Service {service} depends_on must be a list or mapping")

    def _to_command(self, val: Any) -> List[str]:
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]

    def _to_mapping(self, val: Any) -> Dict[str, str]:
        if val is None:
            return {}
        if isinstance(val, dict):
            return {str(k): self._scalar(v) for k, v in val.items()}
        return {k: v for k, _, v in (str(item).partition('=') for item in val)}

    def _scalar(self, value: Any) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return '' if value is None else str(value)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]
