"""Validation of delegated sub-task payloads.

A delegation request is a non-empty list of tasks forming a DAG:
ids are unique, every dependency names another task in the same
request, and no dependency chain loops back on itself.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import DelegationValidationError

AGENT_ROLES = ("researcher", "bash_operator", "writer")

# Accepted spellings for each field; planner models emit either form.
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "sub_task_id": ("sub_task_id", "subTaskId"),
    "agent_role": ("agent_role", "agentRole"),
    "write_path": ("write_path", "writePath"),
}


@dataclass(frozen=True)
class DelegatedTask:
    sub_task_id: str
    agent_role: str
    prompt: str
    dependencies: list[str] = field(default_factory=list)
    write_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sub_task_id": self.sub_task_id,
            "agent_role": self.agent_role,
            "prompt": self.prompt,
            "dependencies": list(self.dependencies),
        }
        if self.write_path:
            data["write_path"] = self.write_path
        return data


@dataclass(frozen=True)
class SubTaskResult:
    """Outcome of one delegated sub-task, reported by the delegate runner."""
    sub_task_id: str
    success: bool
    output: str = ""
    error: str | None = None
    artifacts: list[str] = field(default_factory=list)


def _lookup(raw: dict[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES.get(name, (name,)):
        if key in raw:
            return raw[key]
    return None


def _parse_task(index: int, raw: Any) -> DelegatedTask:
    if not isinstance(raw, dict):
        raise DelegationValidationError(f"tasks[{index}] must be an object")

    sub_task_id = _lookup(raw, "sub_task_id")
    if not isinstance(sub_task_id, str) or not sub_task_id.strip():
        raise DelegationValidationError(f"tasks[{index}].sub_task_id is required")

    agent_role = _lookup(raw, "agent_role")
    if agent_role not in AGENT_ROLES:
        raise DelegationValidationError(
            f"tasks[{index}].agent_role must be one of {', '.join(AGENT_ROLES)}, "
            f"got {agent_role!r}"
        )

    prompt = _lookup(raw, "prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise DelegationValidationError(f"tasks[{index}].prompt is required")

    dependencies = _lookup(raw, "dependencies")
    if dependencies is None:
        dependencies = []
    if not isinstance(dependencies, list) or not all(
        isinstance(dep, str) for dep in dependencies
    ):
        raise DelegationValidationError(
            f"tasks[{index}].dependencies must be a list of task ids"
        )

    write_path = _lookup(raw, "write_path")
    if write_path is not None and (not isinstance(write_path, str) or not write_path.strip()):
        raise DelegationValidationError(
            f"tasks[{index}].write_path must be a non-empty string"
        )

    return DelegatedTask(
        sub_task_id=sub_task_id.strip(),
        agent_role=agent_role,
        prompt=prompt.strip(),
        dependencies=list(dependencies),
        write_path=write_path,
    )


def _check_graph(tasks: list[DelegatedTask]) -> None:
    ids = {task.sub_task_id for task in tasks}
    for task in tasks:
        for dep in task.dependencies:
            if dep not in ids:
                raise DelegationValidationError(
                    f"Invalid dependency: {dep} not found for task {task.sub_task_id}"
                )

    graph = {task.sub_task_id: task.dependencies for task in tasks}
    visited: set[str] = set()
    visiting: set[str] = set()

    def visit(task_id: str) -> None:
        if task_id in visiting:
            raise DelegationValidationError(
                f"Circular dependency detected at task {task_id}"
            )
        if task_id in visited:
            return
        visiting.add(task_id)
        for dep in graph.get(task_id, []):
            visit(dep)
        visiting.discard(task_id)
        visited.add(task_id)

    for task in tasks:
        visit(task.sub_task_id)


def validate_delegation_tasks(raw_tasks: Any) -> list[DelegatedTask]:
    """Validate a raw ``input.tasks`` payload into DelegatedTask objects.

    Raises:
        DelegationValidationError: on any schema or graph violation.
    """
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise DelegationValidationError("tasks must be a non-empty list")

    tasks = [_parse_task(i, raw) for i, raw in enumerate(raw_tasks)]

    seen: set[str] = set()
    for task in tasks:
        if task.sub_task_id in seen:
            raise DelegationValidationError(
                f"Duplicate sub_task_id: {task.sub_task_id}"
            )
        seen.add(task.sub_task_id)

    _check_graph(tasks)
    return tasks
