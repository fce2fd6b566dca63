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
Dependency resolution for services to determine startup and shutdown order.

The graph is validated eagerly when it is loaded. Services are stored in a flat
array and edges refer to array indices, so cycle detection and batching are
plain index traversals.
"""
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from ..errors import CycleDetected, HealthGateWithoutProbe, UnknownDependency
from ..MODELS.service_definition import DependencyGate, ServiceDefinition
from ..MODELS.stack_definition import DependencyEdge


class ServiceGraph:
    """
    Immutable dependency graph over the services of one stack load.
    """

    def __init__(
        self,
        names: List[str],
        dependencies: List[Dict[int, DependencyGate]],
        order: List[int],
        levels: List[int],
    ):
        self.names = names
        self.index = {name: i for i, name in enumerate(names)}
        self._dependencies = dependencies
        self._dependents: List[List[int]] = [[] for _ in names]
        for i, deps in enumerate(dependencies):
            for j in deps:
                self._dependents[j].append(i)
        self._order = order
        self._levels = levels

    @classmethod
    def load(
        cls,
        services: Mapping[str, ServiceDefinition],
        edges: Iterable[DependencyEdge],
    ) -> "ServiceGraph":
        """
        Builds and validates the graph.

        :param services: Service definitions keyed by name, in declaration order.
        :param edges: Dependency edges between those services.
        :return: The validated graph.
        :raises UnknownDependency: If an edge names a service outside the stack.
        :raises HealthGateWithoutProbe: If a healthy gate targets a service without a healthcheck.
        :raises CycleDetected: If the edges form a cycle.
        """
        names = list(services)
        index = {name: i for i, name in enumerate(names)}
        dependencies: List[Dict[int, DependencyGate]] = [{} for _ in names]

        for edge in edges:
            if edge.source not in index:
                raise UnknownDependency(edge.source, edge.target)
            if edge.target not in index:
                raise UnknownDependency(edge.source, edge.target)
            if edge.gate == DependencyGate.HEALTHY and not services[edge.target].has_probe:
                raise HealthGateWithoutProbe(edge.source, edge.target)

            deps = dependencies[index[edge.source]]
            target = index[edge.target]
            # A healthy gate implies started, so the stricter gate wins on duplicates
            if deps.get(target) != DependencyGate.HEALTHY:
                deps[target] = edge.gate

        order, levels = cls._kahn(names, dependencies)
        return cls(names, dependencies, order, levels)

    @staticmethod
    def _kahn(
        names: List[str], dependencies: List[Dict[int, DependencyGate]]
    ) -> Tuple[List[int], List[int]]:
        """
        Kahn's algorithm over the in-degree array. Returns the topological order
        and the batch level of every service.
        """
        count = len(names)
        in_degree = [len(deps) for deps in dependencies]
        dependents: List[List[int]] = [[] for _ in range(count)]
        for i, deps in enumerate(dependencies):
            for j in deps:
                dependents[j].append(i)

        levels = [0] * count
        frontier = [i for i in range(count) if in_degree[i] == 0]
        order: List[int] = []
        while frontier:
            order.extend(frontier)
            next_frontier = []
            for j in frontier:
                for i in dependents[j]:
                    in_degree[i] -= 1
                    levels[i] = max(levels[i], levels[j] + 1)
                    if in_degree[i] == 0:
                        next_frontier.append(i)
            frontier = sorted(next_frontier)

        if len(order) < count:
            raise CycleDetected([names[i] for i in ServiceGraph._cycle_members(in_degree, dependents)])
        return order, levels

    @staticmethod
    def _cycle_members(in_degree: List[int], dependents: List[List[int]]) -> List[int]:
        """
        Narrows the nodes Kahn could not release down to those on a cycle by
        repeatedly discarding nodes that nothing left over depends on.
        """
        remaining: Set[int] = {i for i, degree in enumerate(in_degree) if degree > 0}
        changed = True
        while changed:
            changed = False
            for i in sorted(remaining):
                if not any(d in remaining for d in dependents[i]):
                    remaining.discard(i)
                    changed = True
        return sorted(remaining)

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name: object) -> bool:
        return name in self.index

    def dependencies(self, name: str) -> Dict[str, DependencyGate]:
        """Direct dependencies of a service and the gate each must satisfy."""
        return {self.names[j]: gate for j, gate in self._dependencies[self.index[name]].items()}

    def dependents(self, name: str) -> List[str]:
        """Services that declare a direct dependency on the given one."""
        return [self.names[i] for i in self._dependents[self.index[name]]]

    def transitive_dependents(self, name: str) -> List[str]:
        """Every service that directly or indirectly depends on the given one."""
        seen: Set[int] = set()
        stack = list(self._dependents[self.index[name]])
        while stack:
            i = stack.pop()
            if i not in seen:
                seen.add(i)
                stack.extend(self._dependents[i])
        return [self.names[i] for i in sorted(seen)]

    def startup_batches(self) -> List[Tuple[str, ...]]:
        """
        Groups services into batches that may start in parallel. Every service
        lands in a later batch than all of its dependencies.

        :return: Batches in start order; names within a batch keep declaration order.
        """
        if not self.names:
            return []
        batches: List[List[str]] = [[] for _ in range(max(self._levels) + 1)]
        for i, name in enumerate(self.names):
            batches[self._levels[i]].append(name)
        return [tuple(batch) for batch in batches]

    def shutdown_batches(self) -> List[Tuple[str, ...]]:
        """Startup batches in reverse: dependents stop before their dependencies."""
        return list(reversed(self.startup_batches()))

    def scheduler(self) -> "BatchScheduler":
        """Creates a scheduler that releases batches as gates are actually met."""
        return BatchScheduler(self)


class BatchScheduler:
    """
    Releases services lazily: a service becomes ready only once every dependency
    has been reported started (or healthy, for healthy gates). Calling
    next_batch() before the previous batch's gates are reported yields nothing.
    """

    def __init__(self, graph: ServiceGraph):
        self.graph = graph
        count = len(graph.names)
        self._scheduled = [False] * count
        self._started = [False] * count
        self._healthy = [False] * count
        self._unhealthy = [False] * count
        self._failed = [False] * count

    def _gate_met(self, j: int, gate: DependencyGate) -> bool:
        if gate == DependencyGate.HEALTHY:
            return self._healthy[j]
        return self._started[j]

    def _dead(self, j: int, gate: DependencyGate) -> bool:
        if self._failed[j]:
            return True
        return gate == DependencyGate.HEALTHY and self._unhealthy[j]

    def next_batch(self) -> Tuple[str, ...]:
        """
        Returns every unscheduled service whose gates are all met and marks them scheduled.
        """
        ready = []
        for i, deps in enumerate(self.graph._dependencies):
            if self._scheduled[i]:
                continue
            if all(self._gate_met(j, gate) for j, gate in deps.items()):
                ready.append(i)
        for i in ready:
            self._scheduled[i] = True
        return tuple(self.graph.names[i] for i in ready)

    def mark_started(self, name: str) -> None:
        self._started[self.graph.index[name]] = True

    def mark_healthy(self, name: str) -> None:
        i = self.graph.index[name]
        self._started[i] = True
        self._healthy[i] = True
        self._unhealthy[i] = False

    def mark_unhealthy(self, name: str) -> None:
        """The service runs, so started gates hold, but healthy gates never will."""
        i = self.graph.index[name]
        self._started[i] = True
        self._unhealthy[i] = True

    def mark_failed(self, name: str) -> None:
        self._failed[self.graph.index[name]] = True

    def is_scheduled(self, name: str) -> bool:
        return self._scheduled[self.graph.index[name]]

    def blocked(self) -> Dict[str, str]:
        """
        Unscheduled services that can never become ready, mapped to the
        dependency that blocks them.
        """
        blocked: Dict[int, str] = {}
        for i in self.graph._order:
            if self._scheduled[i]:
                continue
            for j, gate in self.graph._dependencies[i].items():
                if self._dead(j, gate) or j in blocked:
                    blocked[i] = self.graph.names[j]
                    break
        return {self.graph.names[i]: cause for i, cause in blocked.items()}

    def pending(self) -> List[str]:
        return [self.graph.names[i] for i, scheduled in enumerate(self._scheduled) if not scheduled]

    @property
    def done(self) -> bool:
        return all(self._scheduled)
