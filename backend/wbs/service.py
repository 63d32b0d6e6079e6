"""
Wires repositories, the concurrency controller and the managers for one
database session.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from activity_log import ActivityLog, DatabaseActivityLog
from config import HOURS_PER_DAY, MAX_HIERARCHY_DEPTH, SCHEDULE_FLOAT_EPSILON
from repositories import DependencyRepository, ProjectRepository, TaskRepository
from time_utils import SystemClock
from wbs.concurrency import ConcurrencyController
from wbs.dependency_graph import DependencyGraphManager
from wbs.hierarchy import HierarchyManager
from wbs.locks import ProjectLockRegistry, project_locks
from wbs.progress import ProgressAggregator
from wbs.scheduler import CriticalPathScheduler, ScheduleCache, schedule_cache
from wbs.tasks import TaskService


@dataclass
class WBSServices:
    db: Session
    clock: object
    activity_log: ActivityLog
    projects: ProjectRepository
    tasks: TaskRepository
    dependencies: DependencyRepository
    controller: ConcurrencyController
    progress: ProgressAggregator
    hierarchy: HierarchyManager
    graph: DependencyGraphManager
    scheduler: CriticalPathScheduler
    task_service: TaskService


def build_services(
    db: Session,
    clock=None,
    activity_log: Optional[ActivityLog] = None,
    locks: Optional[ProjectLockRegistry] = None,
    cache: Optional[ScheduleCache] = None,
    max_depth: int = MAX_HIERARCHY_DEPTH,
    hours_per_day: float = HOURS_PER_DAY,
    epsilon: float = SCHEDULE_FLOAT_EPSILON,
) -> WBSServices:
    """
    Build the engine for ``db``. Defaults: system clock, activity rows in the
    same session, the process-wide lock registry and schedule cache.
    """
    clock = clock or SystemClock()
    activity_log = activity_log or DatabaseActivityLog(db)
    locks = locks or project_locks
    cache = cache if cache is not None else schedule_cache

    projects = ProjectRepository(db)
    tasks = TaskRepository(db)
    dependencies = DependencyRepository(db)
    controller = ConcurrencyController(tasks, clock)

    progress = ProgressAggregator(db, tasks, controller, activity_log, clock, max_depth=max_depth)
    hierarchy = HierarchyManager(
        db, tasks, controller, progress, activity_log, clock,
        max_depth=max_depth, locks=locks, on_structure_change=cache.invalidate,
    )
    graph = DependencyGraphManager(
        db, tasks, dependencies, activity_log, clock,
        locks=locks, on_structure_change=cache.invalidate,
    )
    scheduler = CriticalPathScheduler(
        projects, tasks, dependencies, clock,
        cache=cache, hours_per_day=hours_per_day, epsilon=epsilon,
    )
    task_service = TaskService(
        db, projects, tasks, controller, hierarchy, progress, activity_log, clock,
        locks=locks, on_structure_change=cache.invalidate,
    )

    return WBSServices(
        db=db,
        clock=clock,
        activity_log=activity_log,
        projects=projects,
        tasks=tasks,
        dependencies=dependencies,
        controller=controller,
        progress=progress,
        hierarchy=hierarchy,
        graph=graph,
        scheduler=scheduler,
        task_service=task_service,
    )
