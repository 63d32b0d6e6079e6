"""
Batch execution in two modes.

Non-atomic: every item runs in its own unit of work; failures are collected
per item and the remaining items still run.

Atomic: all items share one transaction; the first failure rolls everything
back and the batch reports zero applied changes.
"""

import logging
from typing import Any, Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

import schemas
from config import MAX_BATCH_SIZE
from errors import ValidationError, WBSError

logger = logging.getLogger(__name__)


def _item_error(index: int, task_id: Optional[int], error: WBSError) -> schemas.BulkOperationError:
    return schemas.BulkOperationError(
        task_id=task_id,
        index=index,
        error=error.message,
        error_code=error.code
    )


def validate_batch_size(items: Sequence[Any], max_items: int = MAX_BATCH_SIZE) -> None:
    if not items:
        logger.info("Rejected empty batch")
        raise ValidationError("Batch must contain at least one item")
    if len(items) > max_items:
        logger.info(f"Batch size {len(items)} exceeds limit of {max_items}")
        raise ValidationError(f"Maximum {max_items} items per batch operation")


def run_batch(
    db: Session,
    items: Sequence[Any],
    apply_item: Callable[[Any, bool], Any],
    atomic: bool,
    task_id_of: Callable[[Any], Optional[int]],
    finalize: Optional[Callable[[List[Any], bool], None]] = None,
    max_items: int = MAX_BATCH_SIZE,
) -> schemas.BulkOperationResult:
    """
    Run ``apply_item(item, commit)`` for every item.

    Args:
        db: Session shared by all items
        items: Batch items, applied in order
        apply_item: Mutator for one item; must honour its ``commit`` flag
        atomic: All-or-nothing when True, independent items when False
        task_id_of: Extracts the task id reported for an item
        finalize: Called once with the successful item results, e.g. to run
            the parent progress roll-up once per distinct parent
        max_items: Batch size limit

    Returns:
        BulkOperationResult with per-item errors
    """
    validate_batch_size(items, max_items)
    logger.info(f"Running {'atomic' if atomic else 'non-atomic'} batch of {len(items)} item(s)")

    if atomic:
        return _run_atomic(db, items, apply_item, task_id_of, finalize)
    return _run_independent(db, items, apply_item, task_id_of, finalize)


def _run_atomic(db, items, apply_item, task_id_of, finalize) -> schemas.BulkOperationResult:
    results = []
    failed_index = None
    failure = None

    try:
        for index, item in enumerate(items):
            try:
                results.append(apply_item(item, False))
            except WBSError as e:
                failed_index, failure = index, e
                break

        if failure is None and finalize is not None:
            try:
                finalize(results, False)
            except WBSError as e:
                failure = e

        if failure is None:
            db.commit()
    except Exception:
        db.rollback()
        raise

    if failure is None:
        task_ids = [task_id_of(item) for item in items]
        logger.info(f"Atomic batch committed: {len(items)} item(s)")
        return schemas.BulkOperationResult(
            success=True,
            atomic=True,
            success_count=len(items),
            error_count=0,
            task_ids=[task_id for task_id in task_ids if task_id is not None],
        )

    db.rollback()
    errors = []
    for index, item in enumerate(items):
        if failed_index is None or index == failed_index:
            errors.append(_item_error(index, task_id_of(item), failure))
        else:
            errors.append(schemas.BulkOperationError(
                task_id=task_id_of(item),
                index=index,
                error="Not applied: the batch was rolled back",
                error_code="ROLLED_BACK"
            ))

    logger.info(
        f"Atomic batch rolled back"
        f"{'' if failed_index is None else f' at item {failed_index}'}: {failure.code} {failure.message}"
    )
    return schemas.BulkOperationResult(
        success=False,
        atomic=True,
        success_count=0,
        error_count=len(items),
        errors=errors,
    )


def _run_independent(db, items, apply_item, task_id_of, finalize) -> schemas.BulkOperationResult:
    results = []
    task_ids = []
    errors = []

    for index, item in enumerate(items):
        try:
            results.append(apply_item(item, True))
            task_id = task_id_of(item)
            if task_id is not None:
                task_ids.append(task_id)
        except WBSError as e:
            logger.debug(f"Batch item {index} failed: {e.code} {e.message}")
            errors.append(_item_error(index, task_id_of(item), e))

    if finalize is not None and results:
        finalize(results, True)

    logger.info(f"Non-atomic batch done: {len(results)} succeeded, {len(errors)} failed")
    return schemas.BulkOperationResult(
        success=not errors,
        atomic=False,
        success_count=len(results),
        error_count=len(errors),
        task_ids=task_ids,
        errors=errors,
    )
