"""Per-session key/value memory and task plans."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from apprentice.errors import FatalError, InvalidTransition, NotFoundError, ValidationError
from apprentice.protocol.commands import VALID_TASK_STATUSES, TaskStatus

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    "pending": frozenset({"in_progress"}),
    "in_progress": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


@dataclass(slots=True)
class PlanTask:
    task_id: str
    description: str
    status: TaskStatus = "pending"

    def to_dict(self) -> dict[str, str]:
        return {"task_id": self.task_id, "description": self.description, "status": self.status}


@dataclass(slots=True)
class Plan:
    plan_id: str
    tasks: list[PlanTask] = field(default_factory=list)

    def find(self, task_id: str) -> PlanTask | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def to_dict(self) -> dict[str, object]:
        return {"plan_id": self.plan_id, "tasks": [task.to_dict() for task in self.tasks]}


class SessionStore:
    """Memory entries and plans for a single agent session.

    The store has exactly one writer (the engine running the current batch),
    so it carries no locking.
    """

    def __init__(self, *, id_factory: Callable[[], str] | None = None) -> None:
        self._memory: dict[str, str] = {}
        self._plans: dict[str, Plan] = {}
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def remember(self, key: str, value: str) -> None:
        self._memory[key] = value

    def recall(self, key: str) -> str:
        if key not in self._memory:
            raise NotFoundError(f"No memory found for key: {key}")
        return self._memory[key]

    def memory_keys(self) -> list[str]:
        return sorted(self._memory)

    def create_plan(self, descriptions: tuple[str, ...] | list[str]) -> Plan:
        if not descriptions:
            raise ValidationError("Plan: tasks must contain at least one description.")
        plan_id = self._id_factory()
        if plan_id in self._plans:
            raise FatalError(f"Plan id collision: {plan_id}")
        plan = Plan(
            plan_id=plan_id,
            tasks=[
                PlanTask(task_id=str(index), description=description)
                for index, description in enumerate(descriptions, start=1)
            ],
        )
        self._plans[plan_id] = plan
        return plan

    def get_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Unknown plan: {plan_id}")
        return plan

    def plans(self) -> list[Plan]:
        return list(self._plans.values())

    def update_task(self, plan_id: str, task_id: str, status: TaskStatus) -> PlanTask:
        plan = self.get_plan(plan_id)
        task = plan.find(task_id)
        if task is None:
            raise NotFoundError(f"Unknown task {task_id} in plan {plan_id}")
        if status not in ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTransition(
                f"Task {task_id} cannot move from {task.status} to {status}"
            )
        task.status = status
        return task

    def check_integrity(self) -> None:
        """Raise ``FatalError`` when the store no longer satisfies its invariants."""
        for plan_id, plan in self._plans.items():
            if plan.plan_id != plan_id:
                raise FatalError(f"Plan registered under {plan_id} reports id {plan.plan_id}")
            seen: set[str] = set()
            for task in plan.tasks:
                if task.task_id in seen:
                    raise FatalError(f"Duplicate task id {task.task_id} in plan {plan_id}")
                seen.add(task.task_id)
                if task.status not in VALID_TASK_STATUSES:
                    raise FatalError(f"Task {task.task_id} has unknown status {task.status!r}")
        for key, value in self._memory.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise FatalError(f"Memory entry {key!r} is not a string pair")
