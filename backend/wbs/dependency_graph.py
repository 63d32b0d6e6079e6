"""
Precedence graph between tasks of one project.

The dependency relation restricted to a project is kept acyclic: every
insertion re-derives the project's adjacency list (edges between
non-deleted tasks plus the candidate) and runs an iterative depth-first
search from the candidate's successor before anything is written.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

import models
import schemas
from activity_log import ActivityEvent, ActivityLog, dependency_snapshot
from errors import ConflictError, CycleError, NotFoundError, ValidationError
from repositories import DependencyRepository, TaskRepository
from wbs.batch import run_batch
from wbs.locks import ProjectLockRegistry, project_scope, unit_of_work

logger = logging.getLogger(__name__)

Edge = Tuple[int, int]


def build_adjacency(edges: Iterable[Edge], candidate: Optional[Edge] = None) -> Dict[int, List[int]]:
    """Map each task id to its direct successors."""
    adjacency: Dict[int, List[int]] = {}
    all_edges = list(edges)
    if candidate is not None:
        all_edges.append(candidate)
    for predecessor_id, successor_id in all_edges:
        adjacency.setdefault(predecessor_id, []).append(successor_id)
        adjacency.setdefault(successor_id, [])
    return adjacency


def has_cycle_from(adjacency: Dict[int, List[int]], start: int) -> bool:
    """
    Iterative DFS from ``start`` with a visited set and an on-stack set.

    Returns True as soon as an edge reaches a node that is still on the
    current DFS path (a back-edge).
    """
    visited: Set[int] = {start}
    on_stack: Set[int] = {start}
    stack = [(start, iter(adjacency.get(start, ())))]

    while stack:
        node, successors = stack[-1]
        advanced = False
        for successor in successors:
            if successor in on_stack:
                logger.debug(f"Back-edge {node} -> {successor}")
                return True
            if successor not in visited:
                visited.add(successor)
                on_stack.add(successor)
                stack.append((successor, iter(adjacency.get(successor, ()))))
                advanced = True
                break
        if not advanced:
            stack.pop()
            on_stack.discard(node)

    return False


def would_create_cycle(edges: Iterable[Edge], predecessor_id: int, successor_id: int) -> bool:
    """True if adding ``predecessor_id -> successor_id`` to ``edges`` closes a cycle."""
    if predecessor_id == successor_id:
        return True
    adjacency = build_adjacency(edges, (predecessor_id, successor_id))
    return has_cycle_from(adjacency, successor_id)


def _coerce_type(value) -> models.DependencyType:
    if value is None:
        return models.DependencyType.FS
    try:
        return models.DependencyType(value)
    except ValueError:
        raise ValidationError(f"Unknown dependency type: {value}")


def _coerce_unit(value) -> models.EstimateUnit:
    if value is None:
        return models.EstimateUnit.days
    try:
        return models.EstimateUnit(value)
    except ValueError:
        raise ValidationError(f"Unknown lag unit: {value}")


def _coerce_lag(value) -> Decimal:
    if value is None:
        return Decimal(0)
    try:
        lag = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Lag must be numeric, got {value!r}")
    if not lag.is_finite():
        raise ValidationError(f"Lag must be finite, got {value!r}")
    return lag


class DependencyGraphManager:
    def __init__(
        self,
        db: Session,
        tasks: TaskRepository,
        dependencies: DependencyRepository,
        activity_log: ActivityLog,
        clock,
        locks: Optional[ProjectLockRegistry] = None,
        on_structure_change=None,
    ):
        self.db = db
        self.tasks = tasks
        self.dependencies = dependencies
        self.activity_log = activity_log
        self.clock = clock
        self.locks = locks
        self.on_structure_change = on_structure_change

    def list_for_project(self, project_id: int) -> List[models.Dependency]:
        return self.dependencies.list_by_project(project_id)

    def active_edges(self, project_id: int) -> List[Edge]:
        """Persisted edges whose endpoints are both non-deleted tasks."""
        active_ids = {task.id for task in self.tasks.list_by_project(project_id)}
        return [
            (dep.predecessor_id, dep.successor_id)
            for dep in self.dependencies.list_by_project(project_id)
            if dep.predecessor_id in active_ids and dep.successor_id in active_ids
        ]

    def create(
        self,
        project_id: int,
        predecessor_id: int,
        successor_id: int,
        dep_type=models.DependencyType.FS,
        lag=0,
        lag_unit=models.EstimateUnit.days,
        actor: Optional[str] = None,
        commit: bool = True,
    ) -> models.Dependency:
        """
        Add a precedence edge.

        Raises:
            ValidationError: self-dependency or bad type/lag
            NotFoundError: either task missing, deleted or outside the project
            ConflictError: identical (predecessor, successor, type) already exists
            CycleError: the edge would close a cycle
        """
        logger.debug(f"Creating dependency {predecessor_id} -> {successor_id} ({dep_type}) in project {project_id}")
        if predecessor_id == successor_id:
            logger.info(f"Rejected self-dependency on task {predecessor_id}")
            raise ValidationError("A task cannot depend on itself")

        dep_type = _coerce_type(dep_type)
        lag_value = _coerce_lag(lag)
        lag_unit = _coerce_unit(lag_unit)

        with project_scope(self.db, project_id, self.locks), unit_of_work(self.db, commit):
            predecessor = self.tasks.get_by_id(predecessor_id)
            successor = self.tasks.get_by_id(successor_id)
            for task in (predecessor, successor):
                if task.project_id != project_id:
                    logger.info(f"Task {task.id} is in project {task.project_id}, not {project_id}")
                    raise NotFoundError(f"Task {task.id} not found in project {project_id}")

            if self.dependencies.find_by_pair(predecessor_id, successor_id, dep_type) is not None:
                logger.info(f"Duplicate dependency {predecessor_id} -{dep_type.value}-> {successor_id}")
                raise ConflictError(
                    f"Dependency {predecessor_id} -> {successor_id} of type {dep_type.value} already exists"
                )

            if would_create_cycle(self.active_edges(project_id), predecessor_id, successor_id):
                logger.info(f"Circular dependency detected: {predecessor_id} -> {successor_id}")
                raise CycleError(
                    f"Adding dependency {predecessor_id} -> {successor_id} would create a circular dependency"
                )

            dependency = self.dependencies.create(models.Dependency(
                project_id=project_id,
                predecessor_id=predecessor_id,
                successor_id=successor_id,
                type=dep_type,
                lag=lag_value,
                lag_unit=lag_unit,
                created_at=self.clock.now(),
            ))
            self.activity_log.record(ActivityEvent(
                project_id=project_id,
                entity_type="dependency",
                entity_id=dependency.id,
                action=models.ActivityAction.dependency_added.value,
                actor=actor,
                timestamp=self.clock.now(),
                before=None,
                after=dependency_snapshot(dependency),
            ))

        if self.on_structure_change:
            self.on_structure_change(project_id)
        logger.info(f"Dependency {dependency.id} created: {predecessor_id} -{dep_type.value}-> {successor_id}")
        return dependency

    def delete(
        self,
        predecessor_id: int,
        successor_id: int,
        actor: Optional[str] = None,
        dep_type=None,
        commit: bool = True,
    ) -> None:
        """
        Remove the edge between a pair. Without ``dep_type`` the earliest
        created edge of any type is removed.
        """
        logger.debug(f"Deleting dependency {predecessor_id} -> {successor_id} (type {dep_type})")
        dep_type = _coerce_type(dep_type) if dep_type is not None else None

        existing = self.dependencies.find_by_pair(predecessor_id, successor_id, dep_type)
        if existing is None:
            logger.info(f"No dependency between {predecessor_id} and {successor_id}")
            raise NotFoundError(f"Dependency {predecessor_id} -> {successor_id} not found")
        project_id = existing.project_id

        with project_scope(self.db, project_id, self.locks), unit_of_work(self.db, commit):
            dependency = self.dependencies.find_by_pair(predecessor_id, successor_id, dep_type)
            if dependency is None:
                raise NotFoundError(f"Dependency {predecessor_id} -> {successor_id} not found")
            before = dependency_snapshot(dependency)
            dependency_id = dependency.id
            self.dependencies.delete(dependency_id)
            self.activity_log.record(ActivityEvent(
                project_id=project_id,
                entity_type="dependency",
                entity_id=dependency_id,
                action=models.ActivityAction.dependency_removed.value,
                actor=actor,
                timestamp=self.clock.now(),
                before=before,
                after=None,
            ))

        if self.on_structure_change:
            self.on_structure_change(project_id)
        logger.info(f"Dependency {dependency_id} deleted: {predecessor_id} -> {successor_id}")

    def create_many(
        self,
        project_id: int,
        items: List[schemas.DependencyCreate],
        actor: Optional[str] = None,
        atomic: bool = True,
    ) -> schemas.BulkOperationResult:
        """
        Create several edges in one project. Later items see earlier ones
        during cycle detection.
        """
        logger.info(f"Bulk dependency create of {len(items)} item(s) in project {project_id}, atomic={atomic}")

        def apply_item(item: schemas.DependencyCreate, commit: bool) -> models.Dependency:
            return self.create(
                project_id,
                item.predecessor_id,
                item.successor_id,
                item.type,
                item.lag,
                item.lag_unit,
                actor=actor,
                commit=commit,
            )

        with project_scope(self.db, project_id, self.locks):
            return run_batch(
                self.db,
                items,
                apply_item,
                atomic=atomic,
                task_id_of=lambda item: item.successor_id,
            )
