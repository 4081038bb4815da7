"""Task, step and checkpoint models tracked by the TaskManager."""

from enum import Enum
from typing import (
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from loomcode.common import (
    new_id,
    now_ms,
)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed step transitions; a pending step reaching ``completed`` passes through ``in-progress``
STEP_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING},
    TaskStatus.COMPLETED: {TaskStatus.IN_PROGRESS, TaskStatus.PENDING},
    TaskStatus.FAILED: {TaskStatus.PENDING, TaskStatus.IN_PROGRESS},
}


class Step(BaseModel):
    index: int
    description: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    forced: bool = False  # completed without having been worked on (task force-completed)


class Checkpoint(BaseModel):
    id: str = Field(default_factory=new_id)
    summary: str
    completed_steps: List[int] = Field(default_factory=list)
    steps_count: int = 0
    timestamp: int = Field(default_factory=now_ms)


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: Optional[str] = None
    context_items: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    checkpoints: List[Checkpoint] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class TaskProgress(BaseModel):
    task_id: str
    title: str
    status: TaskStatus
    completed_steps: int
    total_steps: int
    percentage: int
    current_step: Optional[int] = None
    last_checkpoint: Optional[str] = None
