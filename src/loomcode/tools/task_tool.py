"""
``manage_task``: one tool multiplexing every TaskManager operation.

The request is validated against :class:`ManageTaskParams`; ``action`` selects exactly one handler
from ``_HANDLERS``.  Missing fields or unknown ids raise :class:`~loomcode.tools.ToolInputError`,
which the gateway reports back to the model as an error result.
"""

import json
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from loomcode.tasks.manager import TaskManager
from loomcode.tasks.models import TaskStatus
from loomcode.tools import (
    ToolContext,
    ToolDefinition,
    ToolInputError,
)

TaskAction = Literal[
    "create",
    "update_status",
    "update_step",
    "list",
    "create_atomic_change",
    "get_progress",
    "start_step",
    "complete_step",
    "create_checkpoint",
    "get_summary",
]


class ManageTaskParams(BaseModel):
    """Arguments accepted by ``manage_task``; which are required depends on ``action``."""

    model_config = ConfigDict(populate_by_name=True)

    action: TaskAction = Field(..., description="The action to perform")
    title: Optional[str] = Field(None, description="Title for a new task")
    steps: Optional[List[str]] = Field(None, description="Step descriptions for a new task")
    task_id: Optional[str] = Field(None, alias="taskId", description="ID of the task")
    status: Optional[TaskStatus] = Field(None, description="New status for the task or step")
    step_index: Optional[int] = Field(
        None, alias="stepIndex", description="Index of the step (0-based)"
    )
    description: Optional[str] = Field(None, description="What an atomic change does")
    context_items: Optional[List[str]] = Field(
        None, alias="contextItems", description="Files relevant to an atomic change"
    )
    summary: Optional[str] = Field(None, description="Checkpoint summary")
    completed_steps: Optional[List[int]] = Field(
        None, alias="completedSteps", description="Step indices covered by a checkpoint"
    )


def _require(args: ManageTaskParams, *fields: str) -> None:
    missing = [f for f in fields if getattr(args, f) is None]
    if missing:
        aliases = [ManageTaskParams.model_fields[f].alias or f for f in missing]
        raise ToolInputError(f"'{args.action}' requires: {', '.join(aliases)}")


def _create(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "title")
    task = tm.create_task(args.title or "", args.steps or [])
    return f"Task created: [{task.id}] {task.title}"


def _create_atomic_change(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "title", "description")
    task = tm.create_atomic_change_task(args.title or "", args.description or "", args.context_items)
    return f"Atomic change task created: [{task.id}] {task.title}"


def _list(tm: TaskManager, args: ManageTaskParams) -> str:
    return json.dumps([t.model_dump(mode="json") for t in tm.list_tasks()], indent=2)


def _update_status(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "task_id", "status")
    task = tm.update_task_status(args.task_id or "", args.status or TaskStatus.PENDING)
    if task is None:
        raise ToolInputError(f"Task {args.task_id} not found or status change not possible")
    return f"Task {task.id} status is now {task.status.value}"


def _update_step(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "task_id", "step_index", "status")
    task = tm.update_step_status(args.task_id or "", args.step_index or 0, args.status or TaskStatus.PENDING)
    if task is None:
        raise ToolInputError(
            f"Task {args.task_id} not found, step {args.step_index} invalid, "
            f"or transition to {args.status.value if args.status else '?'} not allowed"
        )
    return f"Task {task.id} step {args.step_index} updated to {args.status.value if args.status else ''}"


def _start_step(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "task_id", "step_index")
    if not tm.start_step(args.task_id or "", args.step_index or 0):
        raise ToolInputError(f"Could not start step {args.step_index} of task {args.task_id}")
    return f"Started step {args.step_index} of task {args.task_id}"


def _complete_step(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "task_id", "step_index")
    if not tm.complete_step(args.task_id or "", args.step_index or 0):
        raise ToolInputError(f"Could not complete step {args.step_index} of task {args.task_id}")
    return f"Completed step {args.step_index} of task {args.task_id}"


def _get_progress(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "task_id")
    progress = tm.get_task_progress(args.task_id or "")
    if progress is None:
        raise ToolInputError(f"Task {args.task_id} not found")
    return progress.model_dump_json(indent=2)


def _create_checkpoint(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "task_id", "summary")
    if not tm.create_checkpoint(args.task_id or "", args.summary or "", args.completed_steps or []):
        raise ToolInputError(f"Task {args.task_id} not found or step indices out of range")
    return f"Checkpoint created for task {args.task_id}"


def _get_summary(tm: TaskManager, args: ManageTaskParams) -> str:
    _require(args, "task_id")
    summary = tm.get_task_summary(args.task_id or "")
    if summary is None:
        raise ToolInputError(f"Task {args.task_id} not found")
    return summary


_HANDLERS: Dict[str, Callable[[TaskManager, ManageTaskParams], str]] = {
    "create": _create,
    "update_status": _update_status,
    "update_step": _update_step,
    "list": _list,
    "create_atomic_change": _create_atomic_change,
    "get_progress": _get_progress,
    "start_step": _start_step,
    "complete_step": _complete_step,
    "create_checkpoint": _create_checkpoint,
    "get_summary": _get_summary,
}


def create_manage_task_tool(task_manager: TaskManager) -> ToolDefinition:
    """Build the ``manage_task`` tool bound to *task_manager*."""

    def execute(params: Dict[str, Any], context: ToolContext) -> str:
        args = ManageTaskParams.model_validate(params)
        return _HANDLERS[args.action](task_manager, args)

    return ToolDefinition(
        name="manage_task",
        description=(
            "Create, update, or list tasks to track complex goals. Use this to break down large "
            "user requests into steps, mark progress, and record checkpoints you can resume from."
        ),
        parameters=ManageTaskParams,
        execute=execute,
    )
