"""
Dependency graph over task ids.

Used to explain why the loop is blocked: when tasks remain but none is
runnable, the cause is either a dependency cycle or a dependency on a task
id that does not exist.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from issues_loop.models import Task


class DependencyGraph:
    """
    Adjacency view of dependsOn edges.

    Example:
        US-001: no deps
        US-002: deps on US-001
        US-003: deps on US-002 and US-004
        US-004: deps on US-003   (cycle with US-003)
    """

    def __init__(self, tasks: Optional[list[Task]] = None) -> None:
        # task id -> set of direct dependency ids
        self._graph: dict[str, set[str]] = defaultdict(set)
        if tasks:
            for task in tasks:
                self.add_task(task.id, task.depends_on)

    def add_task(self, task_id: str, dependencies: list[str]) -> None:
        self._graph[task_id] = set(dependencies)

    def get_direct_dependencies(self, task_id: str) -> set[str]:
        return self._graph.get(task_id, set()).copy()

    def get_transitive_dependencies(self, task_id: str) -> set[str]:
        """All ids reachable through dependsOn, excluding the task itself."""
        visited: set[str] = set()
        stack = [task_id]
        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            stack.extend(self._graph.get(node, set()) - visited)
        visited.discard(task_id)
        return visited

    def missing_dependencies(self) -> dict[str, list[str]]:
        """Map of task id to dependency ids that name no known task."""
        known = set(self._graph)
        missing = {}
        for task_id, deps in self._graph.items():
            unknown = sorted(deps - known)
            if unknown:
                missing[task_id] = unknown
        return missing

    def has_cycle(self) -> tuple[bool, list[str]]:
        """
        Detect cycles in the dependency graph.

        Uses Kahn's algorithm. Dependencies on unknown ids are ignored here;
        see missing_dependencies().

        Returns:
            Tuple of (has_cycle, ids of tasks left unprocessed, sorted).
        """
        known = set(self._graph)
        remaining = {
            task_id: len(deps & known) for task_id, deps in self._graph.items()
        }
        dependents_of: dict[str, set[str]] = defaultdict(set)
        for task_id, deps in self._graph.items():
            for dep in deps & known:
                dependents_of[dep].add(task_id)

        queue = [task_id for task_id, count in remaining.items() if count == 0]
        processed = 0
        while queue:
            node = queue.pop(0)
            processed += 1
            for dependent in dependents_of[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    queue.append(dependent)

        cycle_nodes = sorted(t for t, count in remaining.items() if count > 0)
        return processed < len(known), cycle_nodes

    def __repr__(self) -> str:
        return f"DependencyGraph(tasks={len(self._graph)})"
