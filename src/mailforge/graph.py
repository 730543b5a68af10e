"""Task graph - named async tasks with static dependencies.

Tasks run in topological order; tasks whose dependencies are all satisfied
run concurrently on the event loop. The first failure stops scheduling:
tasks already in flight finish, everything not yet started is reported as
skipped, and the run raises PipelineError.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable

from mailforge.exceptions import CleanError, PipelineError, TaskGraphError

log = logging.getLogger(__name__)

Action = Callable[[], Awaitable[None]]


class TaskStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Task:
    """A named unit of work with declared upstream tasks."""

    name: str
    action: Action
    deps: tuple[str, ...] = ()
    description: str = ""


@dataclass
class TaskResult:
    name: str
    status: TaskStatus
    error: BaseException | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED


@dataclass
class TaskGraph:
    """Registry of tasks and the scheduler that runs them."""

    tasks: dict[str, Task] = field(default_factory=dict)

    def add(self, name: str, action: Action, deps: Iterable[str] = (), description: str = "") -> Task:
        if name in self.tasks:
            raise TaskGraphError(f"Task '{name}' is already defined")
        task = Task(name=name, action=action, deps=tuple(deps), description=description)
        self.tasks[name] = task
        return task

    def task(self, name: str, deps: Iterable[str] = (), description: str = ""):
        """Decorator form of add()."""

        def register(action: Action) -> Action:
            self.add(name, action, deps, description)
            return action

        return register

    def validate(self) -> None:
        """Check that every dependency exists and there are no cycles."""
        for task in self.tasks.values():
            for dep in task.deps:
                if dep not in self.tasks:
                    raise TaskGraphError(f"Task '{task.name}' depends on unknown task '{dep}'")
        self.order(self.tasks)

    def closure(self, targets: Iterable[str]) -> set[str]:
        """Targets plus everything they transitively depend on."""
        seen: set[str] = set()
        stack = list(targets)
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            if name not in self.tasks:
                raise TaskGraphError(f"Unknown task '{name}'")
            seen.add(name)
            stack.extend(self.tasks[name].deps)
        return seen

    def order(self, names: Iterable[str]) -> list[str]:
        """Deterministic topological order of a subset of tasks.

        Dependencies outside the subset are treated as satisfied.
        """
        subset = set(names)
        for name in subset:
            if name not in self.tasks:
                raise TaskGraphError(f"Unknown task '{name}'")

        ordered: list[str] = []
        state: dict[str, int] = {}  # 1 = visiting, 2 = done

        def visit(name: str, path: list[str]) -> None:
            if state.get(name) == 2:
                return
            if state.get(name) == 1:
                cycle = " -> ".join(path[path.index(name):] + [name])
                raise TaskGraphError(f"Dependency cycle: {cycle}")
            state[name] = 1
            for dep in self.tasks[name].deps:
                if dep in subset:
                    visit(dep, path + [name])
            state[name] = 2
            ordered.append(name)

        for name in sorted(subset):
            visit(name, [])
        return ordered

    async def run(self, targets: Iterable[str]) -> list[TaskResult]:
        """Run targets and all their dependencies."""
        return await self._schedule(self.closure(targets))

    async def run_only(self, names: Iterable[str]) -> list[TaskResult]:
        """Run exactly the named tasks, in dependency order among themselves."""
        return await self._schedule(set(names))

    async def _schedule(self, names: set[str]) -> list[TaskResult]:
        ordered = self.order(names)
        pending = {
            name: {dep for dep in self.tasks[name].deps if dep in names} for name in ordered
        }
        results: dict[str, TaskResult] = {}
        running: dict[asyncio.Task, str] = {}
        failure: TaskResult | None = None

        while pending or running:
            if failure is None:
                ready = [n for n in ordered if n in pending and not pending[n]]
                for name in ready:
                    del pending[name]
                    running[asyncio.create_task(self._execute(self.tasks[name]))] = name

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                name = running.pop(finished)
                result = finished.result()
                results[name] = result
                if result.ok:
                    for deps in pending.values():
                        deps.discard(name)
                elif failure is None:
                    failure = result

        for name in pending:
            results[name] = TaskResult(name, TaskStatus.SKIPPED)
            log.info(f"Skipped '{name}'")

        ordered_results = [results[name] for name in ordered]
        if failure is not None:
            if isinstance(failure.error, CleanError):
                raise failure.error
            raise PipelineError(failure.name, failure.error, ordered_results)
        return ordered_results

    async def _execute(self, task: Task) -> TaskResult:
        log.info(f"Starting '{task.name}'...")
        start = time.perf_counter()
        try:
            await task.action()
        except Exception as e:
            duration = time.perf_counter() - start
            log.error(f"'{task.name}' errored after {_format_duration(duration)}: {e}")
            return TaskResult(task.name, TaskStatus.FAILED, e, duration)

        duration = time.perf_counter() - start
        log.info(f"Finished '{task.name}' after {_format_duration(duration)}")
        return TaskResult(task.name, TaskStatus.SUCCEEDED, None, duration)


def _format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    return f"{seconds:.2f} s"
