"""
Work Breakdown Structure hierarchy management.

Every walk over the parent/child relation is iterative and carries an
explicit hop ceiling (the configured maximum depth), so a corrupted,
cyclic parent chain can never make a traversal run unbounded.
"""

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

import models
import schemas
from activity_log import ActivityEvent, ActivityLog, task_snapshot
from config import MAX_HIERARCHY_DEPTH
from errors import CycleError, DepthExceeded, NotFoundError, ValidationError
from repositories import TaskRepository
from wbs.batch import run_batch
from wbs.concurrency import ConcurrencyController, etag_for
from wbs.locks import ProjectLockRegistry, project_scope, unit_of_work
from wbs.progress import ProgressAggregator

logger = logging.getLogger(__name__)


class HierarchyManager:
    def __init__(
        self,
        db: Session,
        tasks: TaskRepository,
        controller: ConcurrencyController,
        progress: ProgressAggregator,
        activity_log: ActivityLog,
        clock,
        max_depth: int = MAX_HIERARCHY_DEPTH,
        locks: Optional[ProjectLockRegistry] = None,
        on_structure_change=None,
    ):
        self.db = db
        self.tasks = tasks
        self.controller = controller
        self.progress = progress
        self.activity_log = activity_log
        self.clock = clock
        self.max_depth = max_depth
        self.locks = locks
        self.on_structure_change = on_structure_change

    # ============== Structural queries ==============

    def next_order_index(self, project_id: int, parent_task_id: Optional[int]) -> int:
        """One past the highest order_index among non-deleted siblings, 0 when there are none."""
        current_max = self.tasks.max_order_index(project_id, parent_task_id)
        return 0 if current_max is None else current_max + 1

    def level_of(self, task_id: int, max_depth: Optional[int] = None) -> int:
        """
        Hops from ``task_id`` to its root (root = 0), capped at ``max_depth``.
        """
        max_depth = self.max_depth if max_depth is None else max_depth
        level = 0
        current_id = task_id

        while current_id is not None and level < max_depth:
            parent_id = self.tasks.parent_of(current_id)
            if parent_id is None:
                break
            current_id = parent_id
            level += 1

        return level

    def is_descendant(self, candidate_id: int, ancestor_id: int, max_depth: Optional[int] = None) -> bool:
        """
        True if ``ancestor_id`` appears on the parent chain above ``candidate_id``.

        A task is never its own descendant.
        """
        max_depth = self.max_depth if max_depth is None else max_depth
        logger.debug(f"Checking if task {candidate_id} descends from task {ancestor_id}")

        current_id = candidate_id
        hops = 0
        while current_id is not None and hops < max_depth:
            parent_id = self.tasks.parent_of(current_id)
            if parent_id is None:
                break
            if parent_id == ancestor_id:
                logger.debug(f"Task {candidate_id} is a descendant of task {ancestor_id}")
                return True
            current_id = parent_id
            hops += 1

        return False

    def deepest_child_depth(self, task_id: int, max_depth: Optional[int] = None) -> int:
        """
        Length of the longest chain of non-deleted descendants below ``task_id``.

        Breadth-first by level, so the answer is the number of non-empty
        levels below the task, capped at ``max_depth``.
        """
        max_depth = self.max_depth if max_depth is None else max_depth
        depth = 0
        frontier = [task_id]
        seen = {task_id}

        while frontier and depth < max_depth:
            children = [
                child.id for child in self.tasks.list_children_of_many(frontier)
                if child.id not in seen
            ]
            if not children:
                break
            seen.update(children)
            frontier = children
            depth += 1

        return depth

    def validate_reparent(self, task_id: int, new_parent_id: Optional[int], max_depth: Optional[int] = None) -> None:
        """
        Check that moving ``task_id`` under ``new_parent_id`` keeps the forest valid.

        Raises:
            NotFoundError: task or new parent missing, or in another project
            CycleError: the new parent is the task itself or one of its descendants
            DepthExceeded: the moved subtree would reach the depth limit
        """
        max_depth = self.max_depth if max_depth is None else max_depth
        task = self.tasks.get_by_id(task_id)

        if new_parent_id is None:
            logger.debug(f"Moving task {task_id} to root is always valid")
            return

        new_parent = self.tasks.get_by_id(new_parent_id)
        if new_parent.project_id != task.project_id:
            logger.info(f"Parent task {new_parent_id} is in project {new_parent.project_id}, not {task.project_id}")
            raise NotFoundError(f"Parent task {new_parent_id} not found in project {task.project_id}")

        if new_parent_id == task_id or self.is_descendant(new_parent_id, task_id, max_depth):
            logger.info(f"Circular hierarchy: task {new_parent_id} is task {task_id} or one of its descendants")
            raise CycleError(f"Cannot move task {task_id} under its own descendant {new_parent_id}")

        parent_level = self.level_of(new_parent_id, max_depth)
        subtree_depth = self.deepest_child_depth(task_id, max_depth)
        if parent_level + 1 + subtree_depth >= max_depth:
            logger.info(
                f"Depth exceeded moving task {task_id} under {new_parent_id}: "
                f"parent level {parent_level}, subtree depth {subtree_depth}, max {max_depth}"
            )
            raise DepthExceeded(
                f"Moving task {task_id} under task {new_parent_id} would exceed the maximum depth of {max_depth}"
            )

    def validate_new_child(self, project_id: int, parent_task_id: Optional[int]) -> int:
        """
        Check a new task may be created under ``parent_task_id``; return its level.
        """
        if parent_task_id is None:
            return 0
        parent = self.tasks.get_by_id(parent_task_id)
        if parent.project_id != project_id:
            logger.info(f"Parent task {parent_task_id} is in project {parent.project_id}, not {project_id}")
            raise NotFoundError(f"Parent task {parent_task_id} not found in project {project_id}")
        level = self.level_of(parent_task_id) + 1
        if level >= self.max_depth:
            logger.info(f"Depth exceeded creating a child of task {parent_task_id} at level {level}")
            raise DepthExceeded(
                f"A child of task {parent_task_id} would exceed the maximum depth of {self.max_depth}"
            )
        return level

    # ============== Mutations ==============

    def reparent(
        self,
        task_id: int,
        new_parent_id: Optional[int],
        actor: Optional[str],
        etag: Optional[str] = None,
        expected_version: Optional[int] = None,
        commit: bool = True,
    ) -> schemas.ReparentResult:
        """
        Move a task (with its subtree) under a new parent, or to root.

        Validation, the write, and the progress roll-up of both the old and
        the new parent run in one unit of work under the project scope.
        """
        logger.debug(f"Reparenting task {task_id} under {new_parent_id}")
        task = self.tasks.get_by_id(task_id)
        project_id = task.project_id

        with project_scope(self.db, project_id, self.locks), unit_of_work(self.db, commit):
            self.controller.expected_version(etag, expected_version)
            self.validate_reparent(task_id, new_parent_id)

            task = self.tasks.get_by_id(task_id)
            old_parent_id = task.parent_task_id
            before = task_snapshot(task)
            order_index = self.next_order_index(project_id, new_parent_id)

            updated = self.controller.write(
                task_id,
                {"parent_task_id": new_parent_id, "order_index": order_index},
                etag,
                expected_version,
            )
            self.activity_log.record(ActivityEvent(
                project_id=project_id,
                entity_type="task",
                entity_id=task_id,
                action=models.ActivityAction.reparented.value,
                actor=actor,
                timestamp=self.clock.now(),
                before=before,
                after=task_snapshot(updated),
                metadata={"old_parent_id": old_parent_id, "new_parent_id": new_parent_id},
            ))

            if old_parent_id != new_parent_id:
                self.progress.recompute_parents([old_parent_id, new_parent_id], actor)

            new_level = self.level_of(task_id)
            result = schemas.ReparentResult(task_id=task_id, new_level=new_level, etag=etag_for(self.tasks.get_by_id(task_id)))

        if self.on_structure_change:
            self.on_structure_change(project_id)
        logger.info(f"Task {task_id} moved from parent {old_parent_id} to {new_parent_id} (level {new_level})")
        return result

    def reorder_siblings(
        self,
        parent_id: Optional[int],
        ordered_pairs: Sequence,
        actor: Optional[str],
        atomic: bool = True,
    ) -> schemas.BulkOperationResult:
        """
        Assign new order_index values to siblings under one parent.

        ``ordered_pairs`` holds ``(task_id, order_index)`` tuples or
        ``schemas.ReorderItem`` objects (which may carry an etag). The project
        and parent are inferred from the first entry; every other entry must
        match them.

        Requested indexes must be distinct and must not land on an index held
        by a sibling left out of the request. In non-atomic mode a failed item
        keeps its old index; if an applied item took that index, the stale
        holder is moved to the end of the sibling list.

        Raises:
            ValidationError: empty list, repeated task or index, or an index
                held by an unlisted sibling
            NotFoundError: first task missing, or it is not under parent_id
        """
        items = [self._reorder_item(pair) for pair in ordered_pairs]
        if not items:
            logger.info("Rejected empty reorder request")
            raise ValidationError("Reorder request must contain at least one item")
        self._check_distinct(items)

        first = self.tasks.get_by_id(items[0].task_id)
        project_id = first.project_id
        if first.parent_task_id != parent_id:
            logger.info(f"Task {first.id} is not a child of {parent_id}")
            raise NotFoundError(f"Task {first.id} not found under parent {parent_id}")

        def apply_item(item: schemas.ReorderItem, commit: bool) -> models.Task:
            with unit_of_work(self.db, commit):
                return self._apply_order(project_id, parent_id, item, actor)

        def finalize(results: List[models.Task], commit: bool) -> None:
            with unit_of_work(self.db, commit):
                self._resolve_collisions(project_id, parent_id, {task.id for task in results}, actor)

        with project_scope(self.db, project_id, self.locks):
            self._check_unlisted_siblings(project_id, parent_id, items)
            result = run_batch(
                self.db,
                items,
                apply_item,
                atomic=atomic,
                task_id_of=lambda item: item.task_id,
                finalize=finalize,
            )
        logger.info(
            f"Reordered {result.success_count} sibling(s) under parent {parent_id} in project {project_id}"
        )
        return result

    def _reorder_item(self, pair) -> schemas.ReorderItem:
        if isinstance(pair, schemas.ReorderItem):
            return pair
        task_id, order_index = pair
        if order_index < 0:
            raise ValidationError(f"order_index must be non-negative, got {order_index}")
        return schemas.ReorderItem(task_id=task_id, order_index=order_index)

    def _check_distinct(self, items: List[schemas.ReorderItem]) -> None:
        task_ids = [item.task_id for item in items]
        if len(set(task_ids)) != len(task_ids):
            logger.info(f"Rejected reorder with repeated tasks: {task_ids}")
            raise ValidationError("Each task may appear only once in a reorder request")
        indexes = [item.order_index for item in items]
        if len(set(indexes)) != len(indexes):
            logger.info(f"Rejected reorder with repeated order_index values: {indexes}")
            raise ValidationError("order_index values in a reorder request must be distinct")

    def _check_unlisted_siblings(self, project_id: int, parent_id: Optional[int], items: List[schemas.ReorderItem]) -> None:
        requested = {item.task_id for item in items}
        held = {
            sibling.order_index: sibling.id
            for sibling in self.tasks.list_children(parent_id, project_id)
            if sibling.id not in requested
        }
        for item in items:
            if item.order_index in held:
                logger.info(
                    f"order_index {item.order_index} for task {item.task_id} is held by sibling {held[item.order_index]}"
                )
                raise ValidationError(
                    f"order_index {item.order_index} is already used by sibling task {held[item.order_index]}"
                )

    def _resolve_collisions(self, project_id: int, parent_id: Optional[int], moved_ids, actor) -> None:
        siblings = self.tasks.list_children(parent_id, project_id)
        if not siblings:
            return
        by_index: Dict[int, List[models.Task]] = {}
        for sibling in siblings:
            by_index.setdefault(sibling.order_index, []).append(sibling)

        next_index = max(by_index) + 1
        for index in sorted(by_index):
            holders = sorted(by_index[index], key=lambda task: task.id)
            if len(holders) < 2:
                continue
            keep = next((task for task in holders if task.id in moved_ids), holders[0])
            for task in holders:
                if task is keep:
                    continue
                logger.warning(
                    f"Task {task.id} shared order_index {index} with task {keep.id}; moving it to {next_index}"
                )
                self._write_order(project_id, task, next_index, actor)
                next_index += 1

    def _apply_order(self, project_id: int, parent_id: Optional[int], item: schemas.ReorderItem, actor) -> models.Task:
        task = self.tasks.get_by_id(item.task_id)
        if task.project_id != project_id or task.parent_task_id != parent_id:
            logger.info(f"Task {item.task_id} is not a sibling under parent {parent_id} in project {project_id}")
            raise NotFoundError(f"Task {item.task_id} not found under parent {parent_id}")
        return self._write_order(project_id, task, item.order_index, actor, etag=item.etag)

    def _write_order(self, project_id: int, task: models.Task, order_index: int, actor, etag: Optional[str] = None) -> models.Task:
        before = task_snapshot(task)
        patch = {"order_index": order_index}
        if etag is not None:
            updated = self.controller.write(task.id, patch, etag=etag)
        else:
            updated = self.controller.write_loaded(task, patch)

        self.activity_log.record(ActivityEvent(
            project_id=project_id,
            entity_type="task",
            entity_id=task.id,
            action=models.ActivityAction.reordered.value,
            actor=actor,
            timestamp=self.clock.now(),
            before=before,
            after=task_snapshot(updated),
        ))
        return updated

    # ============== Tree read ==============

    def get_tree(self, project_id: int) -> List[schemas.TaskTreeNode]:
        """
        Nested tree of non-deleted tasks ordered by order_index.

        Built from one project listing; nodes below max_depth - 1 are not
        expanded and tasks unreachable from a root (corrupted chains) are left out.
        """
        tasks = self.tasks.list_by_project(project_id)
        children_of: Dict[Optional[int], List[models.Task]] = {}
        for task in tasks:
            children_of.setdefault(task.parent_task_id, []).append(task)

        roots: List[schemas.TaskTreeNode] = []
        stack = [(task, 0, roots) for task in reversed(children_of.get(None, []))]
        while stack:
            task, level, siblings = stack.pop()
            node = schemas.TaskTreeNode(
                id=task.id,
                title=task.title,
                status=task.status.value,
                progress=task.progress,
                order_index=task.order_index,
                level=level,
            )
            siblings.append(node)
            if level < self.max_depth - 1:
                for child in reversed(children_of.get(task.id, [])):
                    stack.append((child, level + 1, node.children))

        return roots
