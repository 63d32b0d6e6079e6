"""
SQLAlchemy implementations of the task and dependency repository contracts.

The engine never builds queries itself. It passes a typed ``TaskFilter``
(or plain identifiers) to these repositories, which own every query.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

# Sentinel for "do not filter on parent"; None means "root tasks only"
ANY_PARENT = object()


@dataclass(frozen=True)
class TaskFilter:
    """Typed query object for task listings."""
    project_id: Optional[int] = None
    parent_task_id: Any = ANY_PARENT
    include_deleted: bool = False


class TaskRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, task_id: int, include_deleted: bool = False) -> models.Task:
        """
        Load a task or raise NotFoundError.

        Soft-deleted tasks are treated as missing unless include_deleted is set.
        """
        query = self.db.query(models.Task).filter(models.Task.id == task_id)
        if not include_deleted:
            query = query.filter(models.Task.deleted_at.is_(None))
        task = query.first()
        if not task:
            logger.info(f"Task {task_id} not found")
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def find(self, task_filter: TaskFilter) -> List[models.Task]:
        query = self.db.query(models.Task)
        if task_filter.project_id is not None:
            query = query.filter(models.Task.project_id == task_filter.project_id)
        if task_filter.parent_task_id is not ANY_PARENT:
            if task_filter.parent_task_id is None:
                query = query.filter(models.Task.parent_task_id.is_(None))
            else:
                query = query.filter(models.Task.parent_task_id == task_filter.parent_task_id)
        if not task_filter.include_deleted:
            query = query.filter(models.Task.deleted_at.is_(None))
        return query.order_by(models.Task.order_index, models.Task.id).all()

    def list_children(self, parent_id: Optional[int], project_id: int) -> List[models.Task]:
        """Non-deleted direct children ordered by order_index (roots when parent_id is None)."""
        return self.find(TaskFilter(project_id=project_id, parent_task_id=parent_id))

    def list_children_of_many(self, parent_ids: List[int]) -> List[models.Task]:
        if not parent_ids:
            return []
        return self.db.query(models.Task)\
            .filter(
                models.Task.parent_task_id.in_(parent_ids),
                models.Task.deleted_at.is_(None)
            )\
            .all()

    def count_children(self, task_id: int) -> int:
        return self.db.query(models.Task)\
            .filter(models.Task.parent_task_id == task_id, models.Task.deleted_at.is_(None))\
            .count()

    def list_by_project(self, project_id: int) -> List[models.Task]:
        return self.find(TaskFilter(project_id=project_id))

    def parent_of(self, task_id: int) -> Optional[int]:
        """
        Parent id of a task, read without the soft-delete filter.

        Used by the bounded parent-chain walks; a missing row ends the walk.
        """
        row = self.db.query(models.Task.parent_task_id).filter(models.Task.id == task_id).first()
        return row[0] if row else None

    def max_order_index(self, project_id: int, parent_id: Optional[int]) -> Optional[int]:
        query = self.db.query(func.max(models.Task.order_index))\
            .filter(models.Task.project_id == project_id, models.Task.deleted_at.is_(None))
        if parent_id is None:
            query = query.filter(models.Task.parent_task_id.is_(None))
        else:
            query = query.filter(models.Task.parent_task_id == parent_id)
        return query.scalar()

    def create(self, task: models.Task) -> models.Task:
        self.db.add(task)
        self.db.flush()
        logger.debug(f"Task created: id={task.id}, project={task.project_id}, parent={task.parent_task_id}")
        return task

    def update_with_version_check(
        self,
        task_id: int,
        patch: Dict[str, Any],
        expected_version: int,
        now: datetime
    ) -> int:
        """
        Compare-and-swap write of ``patch``.

        The version check and the write are a single UPDATE statement, so two
        writers holding the same expected version cannot both succeed.

        Returns:
            The new version (expected_version + 1)

        Raises:
            NotFoundError: the task does not exist or is soft-deleted
            ConflictError: the stored version differs from expected_version
        """
        values = dict(patch)
        values["version"] = models.Task.version + 1
        values["updated_at"] = now

        updated = self.db.query(models.Task)\
            .filter(
                models.Task.id == task_id,
                models.Task.version == expected_version,
                models.Task.deleted_at.is_(None)
            )\
            .update(values, synchronize_session=False)

        if updated == 0:
            self.get_by_id(task_id)
            current_version = self.db.query(models.Task.version).filter(models.Task.id == task_id).scalar()
            logger.info(
                f"Version conflict on task {task_id}: expected v{expected_version}, found v{current_version}"
            )
            raise ConflictError(
                f"Task {task_id} has been modified (expected version {expected_version}, "
                f"current version {current_version}). Please refresh and try again."
            )

        task = self.get_by_id(task_id, include_deleted=True)
        self.db.refresh(task)
        logger.debug(f"Task {task_id} written: v{expected_version} -> v{task.version}, fields={list(patch.keys())}")
        return task.version

    def soft_delete(self, task_id: int, expected_version: int, now: datetime) -> int:
        return self.update_with_version_check(task_id, {"deleted_at": now}, expected_version, now)


class DependencyRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_by_project(self, project_id: int) -> List[models.Dependency]:
        return self.db.query(models.Dependency)\
            .filter(models.Dependency.project_id == project_id)\
            .order_by(models.Dependency.id)\
            .all()

    def find_by_pair(
        self,
        predecessor_id: int,
        successor_id: int,
        dep_type: Optional[models.DependencyType] = None
    ) -> Optional[models.Dependency]:
        query = self.db.query(models.Dependency)\
            .filter(
                models.Dependency.predecessor_id == predecessor_id,
                models.Dependency.successor_id == successor_id
            )
        if dep_type is not None:
            query = query.filter(models.Dependency.type == dep_type)
        return query.order_by(models.Dependency.id).first()

    def create(self, dependency: models.Dependency) -> models.Dependency:
        self.db.add(dependency)
        self.db.flush()
        logger.debug(
            f"Dependency created: id={dependency.id}, "
            f"{dependency.predecessor_id} -{dependency.type.value}-> {dependency.successor_id}"
        )
        return dependency

    def delete(self, dependency_id: int) -> None:
        deleted = self.db.query(models.Dependency)\
            .filter(models.Dependency.id == dependency_id)\
            .delete(synchronize_session="fetch")
        if deleted == 0:
            raise NotFoundError(f"Dependency {dependency_id} not found")
        logger.debug(f"Dependency {dependency_id} deleted")


class ProjectRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, project_id: int) -> models.Project:
        project = self.db.query(models.Project).filter(models.Project.id == project_id).first()
        if not project:
            logger.info(f"Project {project_id} not found")
            raise NotFoundError(f"Project {project_id} not found")
        return project

    def create(self, project: models.Project) -> models.Project:
        self.db.add(project)
        self.db.flush()
        logger.debug(f"Project created: id={project.id}")
        return project
