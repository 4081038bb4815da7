"""
Lifecycle of user-visible multi-step tasks, their steps and checkpoints.

A task's status is *derived* from its steps (see :func:`derive_status`); only a task without
steps stores its status directly.  ``update_task_status`` is therefore translated into step
transitions rather than written over them, so a task can never read ``completed`` while steps are
still pending.

Operations never raise on user-input mistakes: unknown ids, out-of-range indices and illegal
transitions come back as ``None`` / ``False`` for the caller to report.
"""

import logging
import threading
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
)

from pydantic import ValidationError

from loomcode.common import now_ms
from loomcode.memory.state_file import StateFile
from loomcode.tasks.models import (
    STEP_TRANSITIONS,
    Checkpoint,
    Step,
    Task,
    TaskProgress,
    TaskStatus,
)

logger = logging.getLogger(__name__)

_STEP_MARKS = {
    TaskStatus.PENDING: "[ ]",
    TaskStatus.IN_PROGRESS: "[>]",
    TaskStatus.COMPLETED: "[x]",
    TaskStatus.FAILED: "[!]",
}


def derive_status(task: Task) -> TaskStatus:
    """Aggregate status of a task, computed from its steps."""
    if not task.steps:
        return task.status
    statuses = [step.status for step in task.steps]
    if TaskStatus.FAILED in statuses:
        return TaskStatus.FAILED
    if all(s == TaskStatus.COMPLETED for s in statuses):
        return TaskStatus.COMPLETED
    if TaskStatus.IN_PROGRESS in statuses or TaskStatus.COMPLETED in statuses:
        return TaskStatus.IN_PROGRESS
    return TaskStatus.PENDING


def _parse_status(status: TaskStatus | str) -> Optional[TaskStatus]:
    try:
        return TaskStatus(status)
    except ValueError:
        logger.info("Ignoring unknown task status %r", status)
        return None


class TaskManager:
    """In-memory task store, optionally mirrored to a JSON state file."""

    def __init__(self, state_file: Optional[StateFile] = None):
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()
        self._store = state_file
        self._load_state()

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #
    def create_task(self, title: str, steps: Optional[Iterable[str]] = None) -> Task:
        task = Task(
            title=title,
            steps=[Step(index=i, description=desc) for i, desc in enumerate(steps or [])],
        )
        with self._lock:
            self._tasks[task.id] = task
            self._save_state()
        logger.info("Task created: [%s] %s (%d steps)", task.id, title, len(task.steps))
        return task.model_copy(deep=True)

    def create_atomic_change_task(
        self, title: str, description: str, context_items: Optional[Iterable[str]] = None
    ) -> Task:
        """A single-step task tracking one indivisible edit."""
        task = Task(
            title=title,
            description=description,
            context_items=list(context_items or []),
            steps=[Step(index=0, description=description)],
        )
        with self._lock:
            self._tasks[task.id] = task
            self._save_state()
        logger.info("Atomic change task created: [%s] %s", task.id, title)
        return task.model_copy(deep=True)

    # ------------------------------------------------------------------ #
    # Status transitions
    # ------------------------------------------------------------------ #
    def update_task_status(self, task_id: str, status: TaskStatus | str) -> Optional[Task]:
        """
        Move a task to *status*.

        For a task with steps this acts on the steps: ``completed`` force-completes every unfinished
        step, ``failed`` fails the active (or next pending) step, ``in-progress`` starts the next
        step unless one is running, and ``pending`` resets every step.
        """
        status = _parse_status(status)
        if status is None:
            return None
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None

            if not task.steps:
                task.status = status
            elif not self._apply_task_status(task, status):
                return None

            self._touch(task)
            return task.model_copy(deep=True)

    def _apply_task_status(self, task: Task, status: TaskStatus) -> bool:
        now = now_ms()
        if status == TaskStatus.COMPLETED:
            for step in task.steps:
                if step.status != TaskStatus.COMPLETED:
                    step.status = TaskStatus.COMPLETED
                    step.completed_at = now
                    step.forced = True
            return True

        if status == TaskStatus.FAILED:
            active = [s for s in task.steps if s.status == TaskStatus.IN_PROGRESS]
            if not active:
                active = [s for s in task.steps if s.status == TaskStatus.PENDING][:1]
            if not active:
                return False
            return all(self._transition(step, TaskStatus.FAILED) for step in active)

        if status == TaskStatus.IN_PROGRESS:
            if any(s.status == TaskStatus.IN_PROGRESS for s in task.steps):
                return True
            candidates = [s for s in task.steps if s.status != TaskStatus.COMPLETED]
            step = candidates[0] if candidates else task.steps[-1]
            return self._transition(step, TaskStatus.IN_PROGRESS)

        for step in task.steps:
            self._transition(step, TaskStatus.PENDING)
        return True

    def update_step_status(
        self, task_id: str, step_index: int, status: TaskStatus | str
    ) -> Optional[Task]:
        status = _parse_status(status)
        if status is None:
            return None
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or not 0 <= step_index < len(task.steps):
                return None
            if not self._transition(task.steps[step_index], status):
                logger.info(
                    "Rejected step transition %s -> %s (task %s, step %d)",
                    task.steps[step_index].status.value,
                    status.value,
                    task_id,
                    step_index,
                )
                return None
            self._touch(task)
            return task.model_copy(deep=True)

    def start_step(self, task_id: str, step_index: int) -> bool:
        return self.update_step_status(task_id, step_index, TaskStatus.IN_PROGRESS) is not None

    def complete_step(self, task_id: str, step_index: int) -> bool:
        return self.update_step_status(task_id, step_index, TaskStatus.COMPLETED) is not None

    def fail_step(self, task_id: str, step_index: int) -> bool:
        return self.update_step_status(task_id, step_index, TaskStatus.FAILED) is not None

    @staticmethod
    def _transition(step: Step, target: TaskStatus) -> bool:
        if step.status == target:
            return True

        # Completing a step that was never started passes through in-progress
        if (
            target == TaskStatus.COMPLETED
            and step.status != TaskStatus.IN_PROGRESS
            and TaskStatus.IN_PROGRESS in STEP_TRANSITIONS[step.status]
        ):
            TaskManager._transition(step, TaskStatus.IN_PROGRESS)

        if target not in STEP_TRANSITIONS[step.status]:
            return False

        now = now_ms()
        step.status = target
        if target == TaskStatus.IN_PROGRESS:
            step.started_at = now
            step.completed_at = None
        elif target in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            step.completed_at = now
        else:
            step.started_at = None
            step.completed_at = None
            step.forced = False
        return True

    def _touch(self, task: Task) -> None:
        task.status = derive_status(task)
        task.updated_at = now_ms()
        self._save_state()

    # ------------------------------------------------------------------ #
    # Checkpoints
    # ------------------------------------------------------------------ #
    def create_checkpoint(
        self, task_id: str, summary: str, completed_step_indices: Optional[Iterable[int]] = None
    ) -> bool:
        """Record a resumable summary of progress on *task_id*."""
        indices = sorted(set(completed_step_indices or []))
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            if any(not 0 <= i < len(task.steps) for i in indices):
                return False
            task.checkpoints.append(
                Checkpoint(summary=summary, completed_steps=indices, steps_count=len(task.steps))
            )
            task.updated_at = now_ms()
            self._save_state()
        logger.info("Checkpoint recorded for task %s: %s", task_id, summary)
        return True

    # ------------------------------------------------------------------ #
    # Read-only projections
    # ------------------------------------------------------------------ #
    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(self) -> List[Task]:
        """All tasks, newest first."""
        with self._lock:
            tasks = [t.model_copy(deep=True) for t in self._tasks.values()]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    def get_task_progress(self, task_id: str) -> Optional[TaskProgress]:
        task = self.get_task(task_id)
        if task is None:
            return None
        total = len(task.steps)
        completed = sum(1 for s in task.steps if s.status == TaskStatus.COMPLETED)
        if total:
            percentage = round(completed * 100 / total)
        else:
            percentage = 100 if task.status == TaskStatus.COMPLETED else 0
        current = next(
            (s.index for s in task.steps if s.status == TaskStatus.IN_PROGRESS),
            next((s.index for s in task.steps if s.status == TaskStatus.PENDING), None),
        )
        return TaskProgress(
            task_id=task.id,
            title=task.title,
            status=task.status,
            completed_steps=completed,
            total_steps=total,
            percentage=percentage,
            current_step=current,
            last_checkpoint=task.checkpoints[-1].summary if task.checkpoints else None,
        )

    def get_task_summary(self, task_id: str) -> Optional[str]:
        """Human/model readable summary used to resume work without replaying the conversation."""
        task = self.get_task(task_id)
        progress = self.get_task_progress(task_id)
        if task is None or progress is None:
            return None

        lines = [
            f"Task: {task.title} [{task.status.value}] "
            f"({progress.completed_steps}/{progress.total_steps} steps, {progress.percentage}%)"
        ]
        if task.description:
            lines.append(f"Description: {task.description}")
        if task.context_items:
            lines.append(f"Context: {', '.join(task.context_items)}")
        if task.steps:
            lines.append("Steps:")
            lines.extend(
                f"  {_STEP_MARKS[s.status]} {s.index}. {s.description}" for s in task.steps
            )
        if task.checkpoints:
            last = task.checkpoints[-1]
            done = ", ".join(str(i) for i in last.completed_steps) or "none"
            lines.append(f"Last checkpoint: {last.summary} (completed steps: {done})")
        return "\n".join(lines)

    def clear_tasks(self) -> int:
        """Explicitly drop every task.  Returns how many were removed."""
        with self._lock:
            count = len(self._tasks)
            self._tasks.clear()
            self._save_state()
        return count

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def _save_state(self) -> None:
        if self._store is None:
            return
        self._store.save({"tasks": [t.model_dump(mode="json") for t in self._tasks.values()]})

    def _load_state(self) -> None:
        if self._store is None:
            return
        data = self._store.load() or {}
        for raw in data.get("tasks") or []:
            try:
                task = Task.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping invalid persisted task: %s", exc)
                continue
            self._tasks[task.id] = task
        if self._tasks:
            logger.info("Loaded %d persisted tasks", len(self._tasks))
