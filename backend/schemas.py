from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum


class TaskStatus(str, Enum):
    todo = "todo"
    doing = "doing"
    blocked = "blocked"
    review = "review"
    done = "done"


class EstimateUnit(str, Enum):
    hours = "hours"
    days = "days"


class DependencyType(str, Enum):
    FS = "FS"
    SS = "SS"
    FF = "FF"
    SF = "SF"


# Project schemas
class ProjectBase(BaseModel):
    name: str
    description: Optional[str] = None


class ProjectCreate(ProjectBase):
    pass


class Project(ProjectBase):
    id: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.todo
    estimate_value: Optional[float] = Field(None, ge=0, description="Estimate (must be >= 0)")
    estimate_unit: EstimateUnit = EstimateUnit.hours
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


class TaskCreate(TaskBase):
    project_id: int
    parent_task_id: Optional[int] = None
    progress: int = Field(0, ge=0, le=100)


class TaskUpdate(BaseModel):
    """Field-level patch. Hierarchy, ordering and progress have dedicated operations."""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    estimate_value: Optional[float] = Field(None, ge=0, description="Estimate (must be >= 0)")
    estimate_unit: Optional[EstimateUnit] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


class Task(TaskBase):
    id: int
    project_id: int
    parent_task_id: Optional[int] = None
    progress: int
    order_index: int
    version: int
    etag: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskTreeNode(BaseModel):
    id: int
    title: str
    status: TaskStatus
    progress: int
    order_index: int
    level: int
    children: List['TaskTreeNode'] = []


# Hierarchy operation schemas
class ReparentRequest(BaseModel):
    new_parent_id: Optional[int] = None


class ReparentResult(BaseModel):
    task_id: int
    new_level: int
    etag: str


class ReorderItem(BaseModel):
    task_id: int
    order_index: int = Field(..., ge=0)
    etag: Optional[str] = None


class ReorderRequest(BaseModel):
    parent_task_id: Optional[int] = None
    items: List[ReorderItem]
    atomic: bool = True


# Progress schemas
class ProgressUpdate(BaseModel):
    progress: int
    comment: Optional[str] = None


class ProgressUpdateResult(BaseModel):
    task_id: int
    previous_progress: int
    new_progress: int
    etag: str
    updated_at: datetime
    recomputed_parents: Dict[int, int] = {}


class BatchProgressItem(BaseModel):
    task_id: int
    progress: int
    etag: Optional[str] = None
    comment: Optional[str] = None


class BatchProgressUpdate(BaseModel):
    updates: List[BatchProgressItem]
    atomic: bool = False
    global_comment: Optional[str] = None


# Bulk field update schemas
class BulkUpdateItem(BaseModel):
    task_id: int
    etag: Optional[str] = None
    changes: TaskUpdate


class BulkTaskUpdate(BaseModel):
    updates: List[BulkUpdateItem]
    atomic: bool = False


# Dependency schemas
class DependencyBase(BaseModel):
    predecessor_id: int
    successor_id: int
    type: DependencyType = DependencyType.FS
    lag: float = 0
    lag_unit: EstimateUnit = EstimateUnit.days


class DependencyCreate(DependencyBase):
    pass


class BulkDependencyCreate(BaseModel):
    dependencies: List[DependencyCreate]
    atomic: bool = True


class Dependency(DependencyBase):
    id: int
    project_id: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Bulk operation schemas
class BulkOperationError(BaseModel):
    task_id: Optional[int] = None
    index: int
    error: str
    error_code: str  # NOT_FOUND, CONFLICT, CYCLE, ROLLED_BACK, etc.


class BulkOperationResult(BaseModel):
    success: bool
    atomic: bool
    success_count: int = 0
    error_count: int = 0
    task_ids: List[int] = []
    errors: List[BulkOperationError] = []


# Schedule schemas
class TaskSchedule(BaseModel):
    task_id: int
    duration: float
    earliest_start: float
    earliest_finish: float
    latest_start: float
    latest_finish: float
    total_float: float
    is_critical: bool
    earliest_start_date: datetime
    earliest_finish_date: datetime
    latest_start_date: datetime
    latest_finish_date: datetime

    class Config:
        from_attributes = True


class ScheduleResult(BaseModel):
    project_id: int
    project_start: datetime
    project_finish: float
    project_finish_date: datetime
    tasks: List[TaskSchedule] = []
    critical_path: List[int] = []
    critical_task_ids: List[int] = []

    class Config:
        from_attributes = True


# Activity log schemas
class ActivityEvent(BaseModel):
    id: int
    project_id: int
    entity_type: str
    entity_id: int
    action: str
    actor: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="event_metadata")
    created_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class ActivityEventsList(BaseModel):
    events: List[ActivityEvent] = []
    total_count: int


TaskTreeNode.model_rebuild()
