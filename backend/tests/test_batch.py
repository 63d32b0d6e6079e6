"""
Tests for the batch runner and bulk field updates in atomic and
non-atomic modes.
"""

import logging

import pytest
from sqlalchemy.orm import Session

import schemas
from errors import ValidationError
from wbs.batch import run_batch, validate_batch_size
from wbs.concurrency import etag_for
from wbs.service import WBSServices

logger = logging.getLogger(__name__)


def rename(task, title, etag=None):
    return schemas.BulkUpdateItem(
        task_id=task.id,
        etag=etag if etag is not None else etag_for(task),
        changes=schemas.TaskUpdate(title=title),
    )


# ============== Batch size (3 tests) ==============


def test_empty_batch_is_rejected():
    with pytest.raises(ValidationError):
        validate_batch_size([])


def test_oversized_batch_is_rejected():
    with pytest.raises(ValidationError):
        validate_batch_size(list(range(4)), max_items=3)


def test_run_batch_checks_size_before_applying(test_db: Session):
    applied = []

    with pytest.raises(ValidationError):
        run_batch(test_db, [], lambda item, commit: applied.append(item), atomic=True, task_id_of=lambda item: item)

    assert applied == []


# ============== Bulk field update (4 tests) ==============


def test_bulk_update_non_atomic_collects_errors(services: WBSServices, make_task):
    """Three updates, the second with a stale token: 2 succeed, 1 fails."""
    t1 = make_task("T1")
    t2 = make_task("T2")
    t3 = make_task("T3")

    result = services.task_service.bulk_update([
        rename(t1, "T1 renamed"),
        rename(t2, "T2 renamed", etag="v9-0"),
        rename(t3, "T3 renamed"),
    ], actor="tester", atomic=False)

    assert result.success is False
    assert result.success_count == 2
    assert result.error_count == 1
    assert result.errors[0].index == 1
    assert result.errors[0].error_code == "CONFLICT"
    assert result.task_ids == [t1.id, t3.id]
    assert services.tasks.get_by_id(t1.id).title == "T1 renamed"
    assert services.tasks.get_by_id(t2.id).title == "T2"
    assert services.tasks.get_by_id(t3.id).title == "T3 renamed"
    logger.info("✓ Non-atomic bulk update keeps the valid items")


def test_bulk_update_atomic_applies_nothing(services: WBSServices, make_task):
    t1 = make_task("T1")
    t2 = make_task("T2")
    t3 = make_task("T3")

    result = services.task_service.bulk_update([
        rename(t1, "T1 renamed"),
        rename(t2, "T2 renamed", etag="v9-0"),
        rename(t3, "T3 renamed"),
    ], actor="tester", atomic=True)

    assert result.success is False
    assert result.success_count == 0
    assert result.error_count == 3
    assert [error.error_code for error in result.errors] == ["ROLLED_BACK", "CONFLICT", "ROLLED_BACK"]
    for task, title in ((t1, "T1"), (t2, "T2"), (t3, "T3")):
        stored = services.tasks.get_by_id(task.id)
        assert stored.title == title
        assert stored.version == 1
    logger.info("✓ Atomic bulk update rolled back completely")


def test_bulk_update_atomic_success_commits_all(services: WBSServices, make_task):
    t1 = make_task("T1")
    t2 = make_task("T2")

    result = services.task_service.bulk_update([
        rename(t1, "First"),
        rename(t2, "Second"),
    ], actor="tester", atomic=True)

    assert result.success is True
    assert result.success_count == 2
    assert services.tasks.get_by_id(t1.id).version == 2
    assert services.tasks.get_by_id(t2.id).version == 2


def test_bulk_update_missing_token_is_reported_per_item(services: WBSServices, make_task):
    t1 = make_task("T1")
    item = schemas.BulkUpdateItem(task_id=t1.id, changes=schemas.TaskUpdate(title="No token"))

    result = services.task_service.bulk_update([item], actor="tester")

    assert result.error_count == 1
    assert result.errors[0].error_code == "PRECONDITION_REQUIRED"
