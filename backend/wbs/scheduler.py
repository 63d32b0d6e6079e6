"""
Critical Path Method scheduling over a project's dependency graph.

Offsets are calendar days from the project start. Durations and lags are
converted from their units (hours are divided by HOURS_PER_DAY), a task
without an estimate is a zero-duration milestone.

Constraint forms, for an edge p -> s with lag L:

    FS  ES(s) >= EF(p) + L        LF(p) <= LS(s) - L
    SS  ES(s) >= ES(p) + L        LS(p) <= LS(s) - L
    FF  EF(s) >= EF(p) + L        LF(p) <= LF(s) - L
    SF  EF(s) >= ES(p) + L        LS(p) <= LF(s) - L
"""

import heapq
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import models
import schemas
from config import HOURS_PER_DAY, SCHEDULE_FLOAT_EPSILON
from errors import CycleError
from repositories import DependencyRepository, ProjectRepository, TaskRepository
from time_utils import add_days, ensure_utc

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


def _in_days(value, unit, hours_per_day: float) -> float:
    if value is None:
        return 0.0
    amount = float(Decimal(str(value)))
    if unit == models.EstimateUnit.hours:
        return amount / hours_per_day
    return amount


def duration_days(task: models.Task, hours_per_day: float = HOURS_PER_DAY) -> float:
    return _in_days(task.estimate_value, task.estimate_unit, hours_per_day)


def lag_days(dependency: models.Dependency, hours_per_day: float = HOURS_PER_DAY) -> float:
    return _in_days(dependency.lag, dependency.lag_unit, hours_per_day)


@dataclass
class Edge:
    predecessor_id: int
    successor_id: int
    type: models.DependencyType
    lag: float


@dataclass
class TaskTimes:
    task_id: int
    duration: float
    earliest_start: float = 0.0
    earliest_finish: float = 0.0
    latest_start: float = 0.0
    latest_finish: float = 0.0
    total_float: float = 0.0
    is_critical: bool = False


def topological_order(task_ids: Sequence[int], edges: Sequence[Edge]) -> List[int]:
    """
    Kahn's algorithm; among ready tasks the lowest id goes first.

    Raises:
        CycleError: the edges do not admit a topological order
    """
    indegree = {task_id: 0 for task_id in task_ids}
    successors: Dict[int, List[int]] = {task_id: [] for task_id in task_ids}
    for edge in edges:
        successors[edge.predecessor_id].append(edge.successor_id)
        indegree[edge.successor_id] += 1

    ready = [task_id for task_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        task_id = heapq.heappop(ready)
        order.append(task_id)
        for successor_id in successors[task_id]:
            indegree[successor_id] -= 1
            if indegree[successor_id] == 0:
                heapq.heappush(ready, successor_id)

    if len(order) != len(indegree):
        stuck = sorted(task_id for task_id, degree in indegree.items() if degree > 0)
        logger.warning(f"Dependency graph has a cycle among tasks {stuck}")
        raise CycleError(f"Dependency graph contains a cycle among tasks {stuck}")
    return order


def forward_pass(order: List[int], times: Dict[int, TaskTimes], incoming: Dict[int, List[Edge]]) -> None:
    for task_id in order:
        current = times[task_id]
        start = 0.0
        for edge in incoming[task_id]:
            pred = times[edge.predecessor_id]
            if edge.type == models.DependencyType.FS:
                bound = pred.earliest_finish + edge.lag
            elif edge.type == models.DependencyType.SS:
                bound = pred.earliest_start + edge.lag
            elif edge.type == models.DependencyType.FF:
                bound = pred.earliest_finish + edge.lag - current.duration
            else:
                bound = pred.earliest_start + edge.lag - current.duration
            start = max(start, bound)
        current.earliest_start = start
        current.earliest_finish = start + current.duration


def backward_pass(
    order: List[int],
    times: Dict[int, TaskTimes],
    outgoing: Dict[int, List[Edge]],
    project_end: float,
) -> None:
    for task_id in reversed(order):
        current = times[task_id]
        finish = project_end
        for edge in outgoing[task_id]:
            succ = times[edge.successor_id]
            if edge.type == models.DependencyType.FS:
                bound = succ.latest_start - edge.lag
            elif edge.type == models.DependencyType.SS:
                bound = succ.latest_start - edge.lag + current.duration
            elif edge.type == models.DependencyType.FF:
                bound = succ.latest_finish - edge.lag
            else:
                bound = succ.latest_finish - edge.lag + current.duration
            finish = min(finish, bound)
        current.latest_finish = finish
        current.latest_start = finish - current.duration


def _is_tight(edge: Edge, times: Dict[int, TaskTimes], epsilon: float) -> bool:
    """True if the edge's forward constraint is what fixes the successor's start."""
    pred = times[edge.predecessor_id]
    succ = times[edge.successor_id]
    if edge.type == models.DependencyType.FS:
        return abs(succ.earliest_start - (pred.earliest_finish + edge.lag)) <= epsilon
    if edge.type == models.DependencyType.SS:
        return abs(succ.earliest_start - (pred.earliest_start + edge.lag)) <= epsilon
    if edge.type == models.DependencyType.FF:
        return abs(succ.earliest_finish - (pred.earliest_finish + edge.lag)) <= epsilon
    return abs(succ.earliest_finish - (pred.earliest_start + edge.lag)) <= epsilon


def critical_chain(
    order: List[int],
    times: Dict[int, TaskTimes],
    incoming: Dict[int, List[Edge]],
    project_finish: float,
    epsilon: float,
) -> List[int]:
    """
    Longest chain of critical tasks linked by tight edges.

    The chain ends at a critical task finishing with the project when one
    exists. Ties between equally long chains go to the one met first in
    topological order.
    """
    position = {task_id: index for index, task_id in enumerate(order)}
    length: Dict[int, int] = {}
    previous: Dict[int, Optional[int]] = {}

    for task_id in order:
        if not times[task_id].is_critical:
            continue
        length[task_id] = 1
        previous[task_id] = None
        candidates = sorted(
            (edge for edge in incoming[task_id]
             if edge.predecessor_id in length and _is_tight(edge, times, epsilon)),
            key=lambda edge: position[edge.predecessor_id],
        )
        for edge in candidates:
            if length[edge.predecessor_id] + 1 > length[task_id]:
                length[task_id] = length[edge.predecessor_id] + 1
                previous[task_id] = edge.predecessor_id

    if not length:
        return []

    finishers = [
        task_id for task_id in length
        if abs(times[task_id].earliest_finish - project_finish) <= epsilon
    ] or list(length)
    end = max(finishers, key=lambda task_id: (length[task_id], -position[task_id]))

    chain = []
    current: Optional[int] = end
    while current is not None:
        chain.append(current)
        current = previous[current]
    chain.reverse()
    return chain


class ScheduleCache:
    """
    Computed schedules keyed by (project, start, end); invalidated per project.

    Each project carries a generation counter bumped by ``invalidate``. A
    result is only stored when the generation read before computing is still
    current, so a schedule computed across a concurrent mutation is dropped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[tuple, schemas.ScheduleResult] = {}
        self._generations: Dict[int, int] = {}

    def generation(self, project_id: int) -> int:
        with self._lock:
            return self._generations.get(project_id, 0)

    def get(self, key: tuple) -> Optional[schemas.ScheduleResult]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: tuple, result: schemas.ScheduleResult, generation: Optional[int] = None) -> bool:
        with self._lock:
            if generation is not None and self._generations.get(key[0], 0) != generation:
                logger.debug(f"Discarding schedule for project {key[0]} computed before an invalidation")
                return False
            self._entries[key] = result
            return True

    def invalidate(self, project_id: int) -> None:
        with self._lock:
            self._generations[project_id] = self._generations.get(project_id, 0) + 1
            stale = [key for key in self._entries if key[0] == project_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cached schedule(s) for project {project_id}")


schedule_cache = ScheduleCache()


class CriticalPathScheduler:
    def __init__(
        self,
        projects: ProjectRepository,
        tasks: TaskRepository,
        dependencies: DependencyRepository,
        clock,
        cache: Optional[ScheduleCache] = None,
        hours_per_day: float = HOURS_PER_DAY,
        epsilon: float = SCHEDULE_FLOAT_EPSILON,
    ):
        self.projects = projects
        self.tasks = tasks
        self.dependencies = dependencies
        self.clock = clock
        self.cache = cache
        self.hours_per_day = hours_per_day
        self.epsilon = epsilon

    def compute(
        self,
        project_id: int,
        project_start: Optional[datetime] = None,
        project_end: Optional[datetime] = None,
    ) -> schemas.ScheduleResult:
        """
        Forward and backward pass over the project's non-deleted tasks.

        Args:
            project_id: Project to schedule
            project_start: Day zero; defaults to the earliest task start date,
                or now when no task has one
            project_end: Fixed end for the backward pass; defaults to the
                latest earliest-finish

        Raises:
            NotFoundError: unknown project
            CycleError: the dependency graph is not acyclic
        """
        project_start = ensure_utc(project_start)
        project_end = ensure_utc(project_end)
        key = (project_id, project_start, project_end)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Schedule cache hit for project {project_id}")
                return cached

        generation = self.cache.generation(project_id) if self.cache is not None else None
        self.projects.get_by_id(project_id)
        result = self._compute(project_id, project_start, project_end)
        if self.cache is not None:
            self.cache.put(key, result, generation)
        return result

    def _compute(self, project_id, project_start, project_end) -> schemas.ScheduleResult:
        logger.debug(f"Computing schedule for project {project_id}")
        tasks = self.tasks.list_by_project(project_id)
        task_ids = [task.id for task in tasks]
        active = set(task_ids)

        edges = [
            Edge(dep.predecessor_id, dep.successor_id, dep.type, lag_days(dep, self.hours_per_day))
            for dep in self.dependencies.list_by_project(project_id)
            if dep.predecessor_id in active and dep.successor_id in active
        ]
        incoming: Dict[int, List[Edge]] = {task_id: [] for task_id in task_ids}
        outgoing: Dict[int, List[Edge]] = {task_id: [] for task_id in task_ids}
        for edge in edges:
            incoming[edge.successor_id].append(edge)
            outgoing[edge.predecessor_id].append(edge)

        if project_start is None:
            starts = [ensure_utc(task.start_date) for task in tasks if task.start_date is not None]
            project_start = min(starts) if starts else self.clock.now()

        order = topological_order(task_ids, edges)
        times = {task.id: TaskTimes(task.id, duration_days(task, self.hours_per_day)) for task in tasks}

        forward_pass(order, times, incoming)
        project_finish = max((t.earliest_finish for t in times.values()), default=0.0)
        if project_end is not None:
            end_offset = (project_end - project_start).total_seconds() / SECONDS_PER_DAY
        else:
            end_offset = project_finish
        backward_pass(order, times, outgoing, end_offset)

        for entry in times.values():
            entry.total_float = entry.latest_start - entry.earliest_start
            # Negative float (missed fixed end) is critical as well
            entry.is_critical = entry.total_float <= self.epsilon

        chain = critical_chain(order, times, incoming, project_finish, self.epsilon)
        critical_ids = [task_id for task_id in order if times[task_id].is_critical]
        logger.info(
            f"Schedule for project {project_id}: {len(order)} task(s), {len(edges)} edge(s), "
            f"finish at day {project_finish:g}, critical path {chain}"
        )

        return schemas.ScheduleResult(
            project_id=project_id,
            project_start=project_start,
            project_finish=project_finish,
            project_finish_date=add_days(project_start, project_finish),
            tasks=[self._task_schedule(times[task_id], project_start) for task_id in order],
            critical_path=chain,
            critical_task_ids=critical_ids,
        )

    def _task_schedule(self, entry: TaskTimes, project_start: datetime) -> schemas.TaskSchedule:
        return schemas.TaskSchedule(
            task_id=entry.task_id,
            duration=entry.duration,
            earliest_start=entry.earliest_start,
            earliest_finish=entry.earliest_finish,
            latest_start=entry.latest_start,
            latest_finish=entry.latest_finish,
            total_float=entry.total_float,
            is_critical=entry.is_critical,
            earliest_start_date=add_days(project_start, entry.earliest_start),
            earliest_finish_date=add_days(project_start, entry.earliest_finish),
            latest_start_date=add_days(project_start, entry.latest_start),
            latest_finish_date=add_days(project_start, entry.latest_finish),
        )
