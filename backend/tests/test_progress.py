"""
Tests for progress roll-up: the leaf rule, weighted averages, propagation
to the root and batch progress updates.
"""

import logging
from types import SimpleNamespace

import pytest

import models
import schemas
from errors import ConflictError, ValidationError
from wbs.concurrency import etag_for
from wbs.progress import weighted_progress
from wbs.service import WBSServices

logger = logging.getLogger(__name__)


def child(progress, estimate=None):
    return SimpleNamespace(progress=progress, estimate_value=estimate)


# ============== Weighted average (4 tests) ==============


def test_weighted_progress_uses_estimates():
    assert weighted_progress([child(50, 4), child(100, 4)]) == 75
    assert weighted_progress([child(0, 1), child(100, 3)]) == 75


def test_missing_or_zero_estimate_weighs_one():
    assert weighted_progress([child(0), child(100, 0), child(30, None)]) == 43


def test_weighted_progress_rounds_half_up():
    """0.5 rounds to 1 and 62.5 rounds to 63, never to even."""
    assert weighted_progress([child(0), child(1)]) == 1
    assert weighted_progress([child(25), child(100)]) == 63
    assert weighted_progress([child(0), child(5)]) == 3


def test_no_children_aggregate_is_zero():
    assert weighted_progress([]) == 0


# ============== Leaf rule & propagation (8 tests) ==============


def test_recompute_parent_example(services: WBSServices, make_task):
    """Parent (estimate 8) with B(4, 50%) and C(4, 100%) aggregates to 75."""
    a = make_task("A", estimate_value=8)
    make_task("B", parent=a, estimate_value=4, progress=50)
    make_task("C", parent=a, estimate_value=4, progress=100)

    assert services.progress.recompute_parent(a.id, "tester") == 75
    assert services.tasks.get_by_id(a.id).progress == 75
    logger.info("✓ Weighted roll-up matches the worked example")


def test_recompute_parent_is_idempotent(services: WBSServices, make_task, activity_log):
    a = make_task("A")
    make_task("B", parent=a, estimate_value=2, progress=10)
    make_task("C", parent=a, estimate_value=6, progress=90)

    first = services.progress.recompute_parent(a.id, "tester")
    version_after_first = services.tasks.get_by_id(a.id).version
    events_after_first = len(activity_log.events)
    second = services.progress.recompute_parent(a.id, "tester")

    assert first == second == 70
    assert services.tasks.get_by_id(a.id).progress == 70
    assert services.tasks.get_by_id(a.id).version == version_after_first + 1, "Each recompute is one versioned write"
    assert len(activity_log.events) == events_after_first + 1


def test_leaf_update_propagates_to_root(services: WBSServices, make_task):
    root = make_task("Root")
    phase = make_task("Phase", parent=root)
    make_task("Sibling phase", parent=root, progress=0)
    leaf = make_task("Leaf", parent=phase)
    make_task("Other leaf", parent=phase, progress=0)

    result = services.progress.update_progress(leaf.id, 100, "tester", etag=etag_for(leaf))

    assert result.previous_progress == 0
    assert result.new_progress == 100
    assert result.recomputed_parents == {phase.id: 50, root.id: 25}
    assert services.tasks.get_by_id(phase.id).progress == 50
    assert services.tasks.get_by_id(root.id).progress == 25
    logger.info("✓ Leaf progress rolls up through every ancestor")


def test_roll_up_writes_every_ancestor_even_when_unchanged(services: WBSServices, make_task):
    """1% on one of three leaves still rounds to 0, yet both ancestors get a versioned write."""
    root = make_task("Root")
    phase = make_task("Phase", parent=root)
    leaf = make_task("Leaf", parent=phase)
    make_task("Second leaf", parent=phase)
    make_task("Third leaf", parent=phase)
    phase_version = services.tasks.get_by_id(phase.id).version
    root_version = services.tasks.get_by_id(root.id).version

    result = services.progress.update_progress(leaf.id, 1, "tester", etag=etag_for(leaf))

    assert result.recomputed_parents == {phase.id: 0, root.id: 0}
    assert services.tasks.get_by_id(phase.id).version == phase_version + 1
    assert services.tasks.get_by_id(root.id).version == root_version + 1


def test_progress_on_parent_is_rejected(services: WBSServices, make_task):
    parent = make_task("Parent")
    make_task("Child", parent=parent)

    with pytest.raises(ValidationError):
        services.progress.update_progress(parent.id, 50, "tester", etag=etag_for(parent))

    assert services.tasks.get_by_id(parent.id).progress == 0


@pytest.mark.parametrize("value", [-1, 101, 150])
def test_out_of_range_progress_is_rejected(services: WBSServices, make_task, value):
    leaf = make_task("Leaf")

    with pytest.raises(ValidationError):
        services.progress.update_progress(leaf.id, value, "tester", etag=etag_for(leaf))


def test_progress_update_with_stale_token_conflicts(services: WBSServices, make_task):
    leaf = make_task("Leaf")
    stale = etag_for(leaf)
    services.progress.update_progress(leaf.id, 10, "tester", etag=stale)

    with pytest.raises(ConflictError):
        services.progress.update_progress(leaf.id, 20, "tester", etag=stale)

    assert services.tasks.get_by_id(leaf.id).progress == 10


def test_parent_keeps_progress_after_last_child_deleted(services: WBSServices, make_task):
    parent = make_task("Parent")
    only_child = make_task("Only child", parent=parent, progress=40)
    assert services.tasks.get_by_id(parent.id).progress == 40

    services.task_service.soft_delete_task(only_child.id, actor="tester", etag=etag_for(only_child))

    assert services.tasks.get_by_id(parent.id).progress == 40
    assert services.progress.recompute_parent(parent.id, "tester") == 0
    assert services.tasks.get_by_id(parent.id).progress == 40, "Empty parent keeps its last value"
    assert services.progress.is_leaf(parent.id) is True


def test_estimate_change_reweights_parent(services: WBSServices, make_task):
    parent = make_task("Parent")
    small = make_task("Small", parent=parent, estimate_value=1, progress=100)
    make_task("Large", parent=parent, estimate_value=1, progress=0)
    assert services.tasks.get_by_id(parent.id).progress == 50

    services.task_service.update_task(
        small.id, schemas.TaskUpdate(estimate_value=3), actor="tester", etag=etag_for(small)
    )

    assert services.tasks.get_by_id(parent.id).progress == 75


# ============== Batch progress (4 tests) ==============


def test_batch_non_atomic_applies_valid_items(services: WBSServices, make_task):
    """Second item is invalid: 2 succeed, 1 fails, items 1 and 3 are persisted."""
    t1 = make_task("T1")
    t2 = make_task("T2")
    t3 = make_task("T3")

    result = services.progress.batch_update_progress([
        schemas.BatchProgressItem(task_id=t1.id, progress=30, etag=etag_for(t1)),
        schemas.BatchProgressItem(task_id=t2.id, progress=150, etag=etag_for(t2)),
        schemas.BatchProgressItem(task_id=t3.id, progress=60, etag=etag_for(t3)),
    ], "tester", atomic=False)

    assert result.success_count == 2
    assert result.error_count == 1
    assert result.errors[0].task_id == t2.id
    assert services.tasks.get_by_id(t1.id).progress == 30
    assert services.tasks.get_by_id(t2.id).progress == 0
    assert services.tasks.get_by_id(t3.id).progress == 60


def test_batch_atomic_applies_nothing_on_failure(services: WBSServices, make_task):
    t1 = make_task("T1")
    t2 = make_task("T2")
    t3 = make_task("T3")

    result = services.progress.batch_update_progress([
        schemas.BatchProgressItem(task_id=t1.id, progress=30, etag=etag_for(t1)),
        schemas.BatchProgressItem(task_id=t2.id, progress=150, etag=etag_for(t2)),
        schemas.BatchProgressItem(task_id=t3.id, progress=60, etag=etag_for(t3)),
    ], "tester", atomic=True)

    assert result.success_count == 0
    assert result.error_count == 3
    assert result.success is False
    for task in (t1, t2, t3):
        stored = services.tasks.get_by_id(task.id)
        assert stored.progress == 0, f"Task {task.id} must be untouched"
        assert stored.version == 1
    logger.info("✓ Atomic batch leaves every task untouched")


def test_batch_recomputes_each_parent_once(services: WBSServices, make_task, activity_log):
    parent = make_task("Parent")
    children = [make_task(f"Child {i}", parent=parent) for i in range(3)]
    activity_log.events.clear()

    result = services.progress.batch_update_progress([
        schemas.BatchProgressItem(task_id=task.id, progress=90, etag=etag_for(task))
        for task in children
    ], "tester", global_comment="sprint close")

    recomputed = [
        event for event in activity_log.events
        if event.action == models.ActivityAction.progress_recomputed.value
    ]
    assert result.success_count == 3
    assert len(recomputed) == 1
    assert recomputed[0].entity_id == parent.id
    assert services.tasks.get_by_id(parent.id).progress == 90
    assert all(
        event.metadata.get("comment") == "sprint close"
        for event in activity_log.events
        if event.action == models.ActivityAction.progress_updated.value
    )


def test_batch_writes_shared_ancestor_once(services: WBSServices, make_task, activity_log):
    root = make_task("Root")
    left = make_task("Left", parent=root)
    right = make_task("Right", parent=root)
    a = make_task("A", parent=left)
    b = make_task("B", parent=right)
    activity_log.events.clear()

    services.progress.batch_update_progress([
        schemas.BatchProgressItem(task_id=a.id, progress=40, etag=etag_for(a)),
        schemas.BatchProgressItem(task_id=b.id, progress=80, etag=etag_for(b)),
    ], "tester")

    recomputed = [
        event.entity_id for event in activity_log.events
        if event.action == models.ActivityAction.progress_recomputed.value
    ]
    assert sorted(recomputed) == sorted([left.id, right.id, root.id])
    assert recomputed[-1] == root.id, "Root is written after both branches"
    assert services.tasks.get_by_id(root.id).progress == 60
