"""
Bottom-up progress roll-up across the WBS hierarchy.

Only leaf tasks (no non-deleted children) take progress writes. A parent's
progress is the estimate-weighted average of its direct children, rounded
half up, and changes propagate toward the root.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

import models
import schemas
from activity_log import ActivityEvent, ActivityLog, task_snapshot
from config import MAX_HIERARCHY_DEPTH
from errors import ValidationError
from repositories import TaskRepository
from wbs.batch import run_batch
from wbs.concurrency import ConcurrencyController, etag_for
from wbs.locks import unit_of_work

logger = logging.getLogger(__name__)


@dataclass
class ProgressResult:
    task_id: int
    previous_progress: int
    new_progress: int
    etag: str
    updated_at: object
    parent_task_id: Optional[int] = None
    recomputed_parents: Dict[int, int] = field(default_factory=dict)


def child_weight(task: models.Task) -> Decimal:
    """Estimate when present and nonzero, otherwise 1."""
    if task.estimate_value is not None and Decimal(str(task.estimate_value)) != 0:
        return Decimal(str(task.estimate_value))
    return Decimal(1)


def weighted_progress(children: Sequence[models.Task]) -> int:
    """Weighted average of children's progress, rounded half up; 0 without children."""
    if not children:
        return 0
    total_weight = Decimal(0)
    weighted_sum = Decimal(0)
    for child in children:
        weight = child_weight(child)
        total_weight += weight
        weighted_sum += Decimal(child.progress) * weight
    return int((weighted_sum / total_weight).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def validate_progress_value(progress) -> int:
    if isinstance(progress, bool) or not isinstance(progress, int):
        raise ValidationError(f"Progress must be an integer between 0 and 100, got {progress!r}")
    if progress < 0 or progress > 100:
        logger.info(f"Rejected out-of-range progress {progress}")
        raise ValidationError(f"Progress must be between 0 and 100, got {progress}")
    return progress


class ProgressAggregator:
    def __init__(
        self,
        db: Session,
        tasks: TaskRepository,
        controller: ConcurrencyController,
        activity_log: ActivityLog,
        clock,
        max_depth: int = MAX_HIERARCHY_DEPTH,
    ):
        self.db = db
        self.tasks = tasks
        self.controller = controller
        self.activity_log = activity_log
        self.clock = clock
        self.max_depth = max_depth

    def is_leaf(self, task_id: int) -> bool:
        return self.tasks.count_children(task_id) == 0

    def update_progress(
        self,
        task_id: int,
        progress: int,
        actor: Optional[str],
        etag: Optional[str] = None,
        expected_version: Optional[int] = None,
        comment: Optional[str] = None,
        commit: bool = True,
    ) -> ProgressResult:
        """
        Set a leaf task's progress and roll the change up to the root.

        Raises:
            ValidationError: out-of-range value, or the task has children
            PreconditionRequiredError / ConflictError / NotFoundError: see ConcurrencyController
        """
        logger.debug(f"Updating progress of task {task_id} to {progress}")
        with unit_of_work(self.db, commit):
            result = self._write_leaf(task_id, progress, actor, etag, expected_version, comment)
            if result.parent_task_id is not None:
                result.recomputed_parents = self.recompute_parents([result.parent_task_id], actor)
        logger.info(f"Task {task_id} progress {result.previous_progress} -> {result.new_progress}")
        return result

    def _write_leaf(self, task_id, progress, actor, etag, expected_version, comment) -> ProgressResult:
        validate_progress_value(progress)
        task = self.tasks.get_by_id(task_id)
        if not self.is_leaf(task_id):
            logger.info(f"Task {task_id} has children, parent progress is computed")
            raise ValidationError(f"Task {task_id} has children: parent progress is computed")

        before = task_snapshot(task)
        previous = task.progress
        updated = self.controller.write(task_id, {"progress": progress}, etag, expected_version)

        self.activity_log.record(ActivityEvent(
            project_id=updated.project_id,
            entity_type="task",
            entity_id=task_id,
            action=models.ActivityAction.progress_updated.value,
            actor=actor,
            timestamp=self.clock.now(),
            before=before,
            after=task_snapshot(updated),
            metadata={"comment": comment} if comment else {},
        ))
        return ProgressResult(
            task_id=task_id,
            previous_progress=previous,
            new_progress=updated.progress,
            etag=etag_for(updated),
            updated_at=updated.updated_at,
            parent_task_id=updated.parent_task_id,
        )

    def recompute_parent(self, parent_id: int, actor: Optional[str], commit: bool = True) -> int:
        """
        Recompute ``parent_id`` from its children and propagate upward.

        A parent with no non-deleted children returns 0 and keeps its stored
        progress.

        Returns:
            The parent's aggregate progress
        """
        with unit_of_work(self.db, commit):
            parent = self.tasks.get_by_id(parent_id)
            children = self.tasks.list_children(parent_id, parent.project_id)
            if not children:
                logger.debug(f"Task {parent_id} has no children; keeping stored progress {parent.progress}")
                return 0
            recomputed = self.recompute_parents([parent_id], actor)
        return recomputed[parent_id]

    def recompute_parents(self, parent_ids, actor: Optional[str]) -> Dict[int, int]:
        """
        Rewrite the ancestor chains of ``parent_ids``, each task exactly once.

        The chains are merged and written deepest first, so a shared ancestor
        is computed after all of its children and gets a single write and
        activity event.
        """
        levels: Dict[int, int] = {}
        for parent_id in {parent_id for parent_id in parent_ids if parent_id is not None}:
            for task_id, level in self._chain(parent_id):
                levels[task_id] = level

        recomputed: Dict[int, int] = {}
        for task_id in sorted(levels, key=lambda tid: (-levels[tid], tid)):
            aggregate = self._rewrite(task_id, actor)
            if aggregate is not None:
                recomputed[task_id] = aggregate
        return recomputed

    def _chain(self, parent_id: int):
        """(task_id, level) pairs from ``parent_id`` up to the root, at most max_depth of them."""
        level = self._level(parent_id)
        visited = set()
        current_id = parent_id
        for _ in range(self.max_depth):
            if current_id is None or current_id in visited:
                return
            visited.add(current_id)
            yield current_id, level
            current_id = self.tasks.parent_of(current_id)
            level -= 1
        if current_id is not None and current_id not in visited:
            logger.warning(f"Progress roll-up from task {parent_id} stopped at the depth ceiling {self.max_depth}")

    def _rewrite(self, task_id: int, actor: Optional[str]) -> Optional[int]:
        parent = self.tasks.get_by_id(task_id)
        children = self.tasks.list_children(task_id, parent.project_id)
        if not children:
            logger.debug(f"Task {task_id} has no children; keeping stored progress {parent.progress}")
            return None

        aggregate = weighted_progress(children)
        before = task_snapshot(parent)
        previous = parent.progress
        updated = self.controller.write_loaded(parent, {"progress": aggregate})
        self.activity_log.record(ActivityEvent(
            project_id=updated.project_id,
            entity_type="task",
            entity_id=task_id,
            action=models.ActivityAction.progress_recomputed.value,
            actor=actor,
            timestamp=self.clock.now(),
            before=before,
            after=task_snapshot(updated),
            metadata={"children_count": len(children)},
        ))
        logger.info(f"Parent task {task_id} progress recomputed {previous} -> {aggregate}")
        return aggregate

    def _level(self, task_id: int) -> int:
        level = 0
        current_id = task_id
        while level < self.max_depth:
            parent_id = self.tasks.parent_of(current_id)
            if parent_id is None:
                break
            current_id = parent_id
            level += 1
        return level

    def batch_update_progress(
        self,
        items: List[schemas.BatchProgressItem],
        actor: Optional[str],
        atomic: bool = False,
        global_comment: Optional[str] = None,
    ) -> schemas.BulkOperationResult:
        """
        Apply many leaf progress writes, then roll up each affected parent once.
        """
        logger.info(f"Batch progress update of {len(items)} item(s), atomic={atomic}")

        def apply_item(item: schemas.BatchProgressItem, commit: bool) -> ProgressResult:
            with unit_of_work(self.db, commit):
                return self._write_leaf(
                    item.task_id, item.progress, actor, item.etag, None, item.comment or global_comment
                )

        def finalize(results: List[ProgressResult], commit: bool) -> None:
            with unit_of_work(self.db, commit):
                self.recompute_parents([result.parent_task_id for result in results], actor)

        return run_batch(
            self.db,
            items,
            apply_item,
            atomic=atomic,
            task_id_of=lambda item: item.task_id,
            finalize=finalize,
        )
