from fastapi import FastAPI, Depends, Query, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime
import logging

from database import get_db
import models
import schemas
from activity_log import list_project_activity
from config import CORS_ORIGINS, LOG_LEVEL
from errors import NotFoundError, WBSError
from wbs.concurrency import etag_for
from wbs.service import WBSServices, build_services

# Configure logging
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="WBS Planning API",
    description="Work breakdown structure, task dependencies, progress roll-up and critical path scheduling",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag"],
)


@app.exception_handler(WBSError)
async def wbs_error_handler(request: Request, exc: WBSError):
    logger.info(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.code}
    )


def get_services(db: Session = Depends(get_db)) -> WBSServices:
    return build_services(db)


def task_response(task: models.Task, response: Optional[Response] = None) -> schemas.Task:
    """Serialize a task with its current version token; also set the ETag header when given a response."""
    etag = etag_for(task)
    if response is not None:
        response.headers["ETag"] = f'"{etag}"'
    return schemas.Task.model_validate(task).model_copy(update={"etag": etag})


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Projects ==============

@app.post("/api/projects", response_model=schemas.Project)
def create_project(project: schemas.ProjectCreate, services: WBSServices = Depends(get_services)):
    """Create a new project."""
    return services.task_service.create_project(project)


@app.get("/api/projects/{project_id}", response_model=schemas.Project)
def get_project(project_id: int, services: WBSServices = Depends(get_services)):
    return services.task_service.get_project(project_id)


@app.get("/api/projects/{project_id}/tasks", response_model=List[schemas.Task])
def list_project_tasks(
    project_id: int,
    parent_task_id: Optional[int] = Query(None),
    root_only: bool = Query(False),
    services: WBSServices = Depends(get_services)
):
    """
    List non-deleted tasks of a project ordered by order_index.

    Query parameters:
    - parent_task_id: Only direct children of this task
    - root_only: Only root tasks
    """
    tasks = services.task_service.list_tasks(project_id, parent_task_id=parent_task_id, root_only=root_only)
    return [task_response(task) for task in tasks]


@app.get("/api/projects/{project_id}/tree", response_model=List[schemas.TaskTreeNode])
def get_project_tree(project_id: int, services: WBSServices = Depends(get_services)):
    """Nested WBS tree of a project."""
    services.task_service.get_project(project_id)
    return services.hierarchy.get_tree(project_id)


@app.put("/api/projects/{project_id}/reorder", response_model=schemas.BulkOperationResult)
def reorder_siblings(
    project_id: int,
    request: schemas.ReorderRequest,
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """
    Reassign order_index values among siblings under one parent.

    All items must be children of ``parent_task_id`` (root when null) in this project.
    """
    if request.items:
        first = services.tasks.get_by_id(request.items[0].task_id)
        if first.project_id != project_id:
            raise NotFoundError(f"Task {first.id} not found in project {project_id}")
    return services.hierarchy.reorder_siblings(
        request.parent_task_id, request.items, x_actor, atomic=request.atomic
    )


# ============== Tasks ==============

@app.post("/api/tasks", response_model=schemas.Task)
def create_task(
    task: schemas.TaskCreate,
    response: Response,
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """
    Create a task. It is appended after its existing siblings; a parent's
    progress is recomputed to include it.
    """
    created = services.task_service.create_task(task, actor=x_actor)
    return task_response(created, response)


@app.post("/api/tasks/progress/batch", response_model=schemas.BulkOperationResult)
def batch_update_progress(
    request: schemas.BatchProgressUpdate,
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """
    Set progress on many leaf tasks. Each affected parent is recomputed once.
    """
    return services.progress.batch_update_progress(
        request.updates, x_actor, atomic=request.atomic, global_comment=request.global_comment
    )


@app.post("/api/tasks/bulk-update", response_model=schemas.BulkOperationResult)
def bulk_update_tasks(
    request: schemas.BulkTaskUpdate,
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """
    Versioned field updates on many tasks.

    Every item carries the etag it expects. With ``atomic`` any failure
    rolls back the whole batch.
    """
    return services.task_service.bulk_update(request.updates, actor=x_actor, atomic=request.atomic)


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(task_id: int, response: Response, services: WBSServices = Depends(get_services)):
    """Get task by ID. The ETag header carries the version token for later writes."""
    logger.debug(f"Requesting task {task_id}")
    return task_response(services.task_service.get_task(task_id), response)


@app.patch("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """Update task fields. Requires If-Match with the task's current ETag."""
    updated = services.task_service.update_task(task_id, task_update, actor=x_actor, etag=if_match)
    return task_response(updated, response)


@app.delete("/api/tasks/{task_id}")
def delete_task(
    task_id: int,
    if_match: Optional[str] = Header(None),
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """Soft delete a task without children. Requires If-Match."""
    services.task_service.soft_delete_task(task_id, actor=x_actor, etag=if_match)
    return {"message": "Task deleted successfully"}


@app.post("/api/tasks/{task_id}/reparent", response_model=schemas.ReparentResult)
def reparent_task(
    task_id: int,
    request: schemas.ReparentRequest,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """Move a task and its subtree under another parent (null moves it to root)."""
    result = services.hierarchy.reparent(task_id, request.new_parent_id, x_actor, etag=if_match)
    response.headers["ETag"] = f'"{result.etag}"'
    return result


@app.patch("/api/tasks/{task_id}/progress", response_model=schemas.ProgressUpdateResult)
def update_task_progress(
    task_id: int,
    update: schemas.ProgressUpdate,
    response: Response,
    if_match: Optional[str] = Header(None),
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """Set a leaf task's progress; ancestors are recomputed."""
    result = services.progress.update_progress(
        task_id, update.progress, x_actor, etag=if_match, comment=update.comment
    )
    response.headers["ETag"] = f'"{result.etag}"'
    return schemas.ProgressUpdateResult(
        task_id=result.task_id,
        previous_progress=result.previous_progress,
        new_progress=result.new_progress,
        etag=result.etag,
        updated_at=result.updated_at,
        recomputed_parents=result.recomputed_parents,
    )


# ============== Dependencies ==============

@app.get("/api/projects/{project_id}/dependencies", response_model=List[schemas.Dependency])
def list_dependencies(project_id: int, services: WBSServices = Depends(get_services)):
    services.task_service.get_project(project_id)
    return services.graph.list_for_project(project_id)


@app.post("/api/projects/{project_id}/dependencies", response_model=schemas.Dependency)
def create_dependency(
    project_id: int,
    dependency: schemas.DependencyCreate,
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """
    Add a precedence edge. Rejected when it duplicates an existing edge of the
    same type or would close a cycle.
    """
    return services.graph.create(
        project_id,
        dependency.predecessor_id,
        dependency.successor_id,
        dependency.type,
        dependency.lag,
        dependency.lag_unit,
        actor=x_actor,
    )


@app.post("/api/projects/{project_id}/dependencies/bulk", response_model=schemas.BulkOperationResult)
def bulk_create_dependencies(
    project_id: int,
    request: schemas.BulkDependencyCreate,
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """Create several edges; later items see earlier ones during cycle detection."""
    return services.graph.create_many(project_id, request.dependencies, actor=x_actor, atomic=request.atomic)


@app.delete("/api/dependencies")
def delete_dependency(
    predecessor_id: int = Query(...),
    successor_id: int = Query(...),
    type: Optional[schemas.DependencyType] = Query(None),
    x_actor: Optional[str] = Header(None),
    services: WBSServices = Depends(get_services)
):
    """Remove the edge between a pair (of the given type, or the earliest one)."""
    services.graph.delete(predecessor_id, successor_id, actor=x_actor, dep_type=type)
    return {"message": "Dependency deleted successfully"}


# ============== Schedule & Activity ==============

@app.get("/api/projects/{project_id}/schedule", response_model=schemas.ScheduleResult)
def get_schedule(
    project_id: int,
    project_start: Optional[datetime] = Query(None),
    project_end: Optional[datetime] = Query(None),
    services: WBSServices = Depends(get_services)
):
    """
    Critical path schedule.

    Query parameters:
    - project_start: Day zero (default: earliest task start date)
    - project_end: Fixed end for the backward pass (default: computed finish)
    """
    return services.scheduler.compute(project_id, project_start=project_start, project_end=project_end)


@app.get("/api/projects/{project_id}/activity", response_model=schemas.ActivityEventsList)
def get_project_activity(
    project_id: int,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: WBSServices = Depends(get_services)
):
    """Activity events of a project, newest first."""
    logger.debug(f"Getting activity for project {project_id}: limit={limit}, offset={offset}")
    services.task_service.get_project(project_id)
    events, total = list_project_activity(services.db, project_id, limit=limit, offset=offset)
    logger.info(f"Found {len(events)} events for project {project_id} (total: {total})")
    return schemas.ActivityEventsList(events=events, total_count=total)
