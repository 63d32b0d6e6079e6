"""
Task lifecycle: create, read, field updates, soft delete and bulk updates.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

import models
import schemas
from activity_log import ActivityEvent, ActivityLog, task_snapshot
from errors import ValidationError
from repositories import ProjectRepository, TaskFilter, TaskRepository
from time_utils import ensure_utc
from wbs.batch import run_batch
from wbs.concurrency import ConcurrencyController
from wbs.hierarchy import HierarchyManager
from wbs.locks import ProjectLockRegistry, project_scope, unit_of_work
from wbs.progress import ProgressAggregator

logger = logging.getLogger(__name__)

# Fields whose change alters roll-up weights or the schedule
SCHEDULE_FIELDS = {"estimate_value", "estimate_unit", "start_date"}


def validate_dates(start_date, due_date) -> None:
    if start_date is not None and due_date is not None and ensure_utc(start_date) > ensure_utc(due_date):
        logger.info(f"Rejected start date {start_date} after due date {due_date}")
        raise ValidationError("Start date must not be after due date")


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


class TaskService:
    def __init__(
        self,
        db: Session,
        projects: ProjectRepository,
        tasks: TaskRepository,
        controller: ConcurrencyController,
        hierarchy: HierarchyManager,
        progress: ProgressAggregator,
        activity_log: ActivityLog,
        clock,
        locks: Optional[ProjectLockRegistry] = None,
        on_structure_change=None,
    ):
        self.db = db
        self.projects = projects
        self.tasks = tasks
        self.controller = controller
        self.hierarchy = hierarchy
        self.progress = progress
        self.activity_log = activity_log
        self.clock = clock
        self.locks = locks
        self.on_structure_change = on_structure_change

    def _changed(self, project_id: int) -> None:
        if self.on_structure_change:
            self.on_structure_change(project_id)

    # ============== Projects ==============

    def create_project(self, data: schemas.ProjectCreate, commit: bool = True) -> models.Project:
        logger.debug(f"Creating project: name={data.name}")
        with unit_of_work(self.db, commit):
            now = self.clock.now()
            project = self.projects.create(models.Project(
                name=data.name,
                description=data.description,
                created_at=now,
                updated_at=now,
            ))
        logger.info(f"Project created: id={project.id}, name={project.name}")
        return project

    def get_project(self, project_id: int) -> models.Project:
        return self.projects.get_by_id(project_id)

    # ============== Tasks ==============

    def get_task(self, task_id: int) -> models.Task:
        return self.tasks.get_by_id(task_id)

    def list_tasks(self, project_id: int, parent_task_id=None, root_only: bool = False) -> List[models.Task]:
        self.projects.get_by_id(project_id)
        if root_only:
            return self.tasks.list_children(None, project_id)
        if parent_task_id is not None:
            return self.tasks.list_children(parent_task_id, project_id)
        return self.tasks.find(TaskFilter(project_id=project_id))

    def create_task(self, data: schemas.TaskCreate, actor: Optional[str] = None, commit: bool = True) -> models.Task:
        """
        Create a task at the end of its sibling list.

        Raises:
            NotFoundError: project or parent missing, or parent in another project
            DepthExceeded: the new task would sit at or below the depth limit
            ValidationError: start date after due date
        """
        logger.debug(f"Creating task: title={data.title}, project={data.project_id}, parent={data.parent_task_id}")
        validate_dates(data.start_date, data.due_date)

        with project_scope(self.db, data.project_id, self.locks), unit_of_work(self.db, commit):
            level = self.hierarchy.validate_new_child(data.project_id, data.parent_task_id)
            now = self.clock.now()
            task = self.tasks.create(models.Task(
                project_id=data.project_id,
                parent_task_id=data.parent_task_id,
                title=data.title,
                description=data.description,
                status=models.TaskStatus(_enum_value(data.status)),
                estimate_value=data.estimate_value,
                estimate_unit=models.EstimateUnit(_enum_value(data.estimate_unit)),
                start_date=data.start_date,
                due_date=data.due_date,
                progress=data.progress,
                order_index=self.hierarchy.next_order_index(data.project_id, data.parent_task_id),
                version=1,
                created_at=now,
                updated_at=now,
            ))
            self.activity_log.record(ActivityEvent(
                project_id=task.project_id,
                entity_type="task",
                entity_id=task.id,
                action=models.ActivityAction.created.value,
                actor=actor,
                timestamp=now,
                before=None,
                after=task_snapshot(task),
                metadata={"level": level},
            ))
            if task.parent_task_id is not None:
                self.progress.recompute_parents([task.parent_task_id], actor)

        self._changed(task.project_id)
        logger.info(f"Task created: id={task.id}, title={task.title}, level={level}")
        return task

    def update_task(
        self,
        task_id: int,
        data: schemas.TaskUpdate,
        actor: Optional[str] = None,
        etag: Optional[str] = None,
        expected_version: Optional[int] = None,
        commit: bool = True,
    ) -> models.Task:
        """
        Versioned field update. Changing the estimate re-runs the parent
        roll-up since the task's weight changed.
        """
        logger.debug(f"Updating task {task_id}")
        with unit_of_work(self.db, commit):
            updated = self._apply_update(task_id, data, actor, etag, expected_version)
        logger.info(f"Task {task_id} updated to v{updated.version}")
        return updated

    def _apply_update(self, task_id, data: schemas.TaskUpdate, actor, etag, expected_version) -> models.Task:
        patch: Dict[str, Any] = data.model_dump(exclude_unset=True)
        for required in ("title", "status", "estimate_unit"):
            if required in patch and patch[required] is None:
                raise ValidationError(f"{required} cannot be null")
        if "status" in patch:
            patch["status"] = models.TaskStatus(_enum_value(patch["status"]))
        if "estimate_unit" in patch:
            patch["estimate_unit"] = models.EstimateUnit(_enum_value(patch["estimate_unit"]))

        task = self.tasks.get_by_id(task_id)
        validate_dates(
            patch.get("start_date", task.start_date),
            patch.get("due_date", task.due_date),
        )
        before = task_snapshot(task)
        updated = self.controller.write(task_id, patch, etag, expected_version)

        self.activity_log.record(ActivityEvent(
            project_id=updated.project_id,
            entity_type="task",
            entity_id=task_id,
            action=models.ActivityAction.updated.value,
            actor=actor,
            timestamp=self.clock.now(),
            before=before,
            after=task_snapshot(updated),
            metadata={"fields": sorted(patch.keys())},
        ))

        if SCHEDULE_FIELDS & patch.keys():
            if updated.parent_task_id is not None and ({"estimate_value", "estimate_unit"} & patch.keys()):
                self.progress.recompute_parents([updated.parent_task_id], actor)
            self._changed(updated.project_id)
        return updated

    def soft_delete_task(
        self,
        task_id: int,
        actor: Optional[str] = None,
        etag: Optional[str] = None,
        expected_version: Optional[int] = None,
        commit: bool = True,
    ) -> models.Task:
        """
        Mark a leaf task deleted.

        Raises:
            ValidationError: the task still has non-deleted children
        """
        logger.debug(f"Soft deleting task {task_id}")
        task = self.tasks.get_by_id(task_id)
        project_id = task.project_id

        with project_scope(self.db, project_id, self.locks), unit_of_work(self.db, commit):
            self.controller.expected_version(etag, expected_version)
            task = self.tasks.get_by_id(task_id)
            children = self.tasks.count_children(task_id)
            if children:
                logger.info(f"Task {task_id} has {children} child task(s), refusing delete")
                raise ValidationError(f"Task {task_id} has {children} child task(s); move or delete them first")

            before = task_snapshot(task)
            parent_id = task.parent_task_id
            deleted = self.controller.soft_delete(task_id, etag, expected_version)
            self.activity_log.record(ActivityEvent(
                project_id=project_id,
                entity_type="task",
                entity_id=task_id,
                action=models.ActivityAction.deleted.value,
                actor=actor,
                timestamp=self.clock.now(),
                before=before,
                after=task_snapshot(deleted),
            ))
            if parent_id is not None:
                self.progress.recompute_parents([parent_id], actor)

        self._changed(project_id)
        logger.info(f"Task {task_id} soft deleted")
        return deleted

    def bulk_update(
        self,
        items: List[schemas.BulkUpdateItem],
        actor: Optional[str] = None,
        atomic: bool = False,
    ) -> schemas.BulkOperationResult:
        """Versioned field updates on many tasks, atomic or per item."""
        logger.info(f"Bulk update of {len(items)} task(s), atomic={atomic}")

        def apply_item(item: schemas.BulkUpdateItem, commit: bool) -> models.Task:
            with unit_of_work(self.db, commit):
                return self._apply_update(item.task_id, item.changes, actor, item.etag, None)

        return run_batch(
            self.db,
            items,
            apply_item,
            atomic=atomic,
            task_id_of=lambda item: item.task_id,
        )
