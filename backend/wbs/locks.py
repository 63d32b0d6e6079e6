"""
Project-scoped mutual exclusion and unit-of-work helpers.

Tree-shape mutations (reparent, reorder, dependency create/delete, task
create/delete) validate and write under ``project_scope`` so no other
mutation of the same project's hierarchy or dependency graph can run
between the check and the commit.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

import models
from errors import NotFoundError

logger = logging.getLogger(__name__)


class ProjectLockRegistry:
    """One re-entrant lock per project id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.RLock)

    def lock_for(self, project_id: int) -> threading.RLock:
        with self._guard:
            return self._locks[project_id]

    @contextmanager
    def hold(self, project_id: int) -> Iterator[None]:
        lock = self.lock_for(project_id)
        logger.debug(f"Acquiring project lock {project_id}")
        with lock:
            yield
        logger.debug(f"Released project lock {project_id}")


project_locks = ProjectLockRegistry()


@contextmanager
def project_scope(db: Session, project_id: int, registry: ProjectLockRegistry = None) -> Iterator[None]:
    """
    Exclusive scope over one project's hierarchy and dependency graph.

    Takes the in-process lock, then locks the project row (SELECT ... FOR
    UPDATE) so other processes sharing the database serialize as well. The
    row lock lasts until the surrounding transaction ends, so callers must
    commit inside this scope.
    """
    registry = registry or project_locks
    with registry.hold(project_id):
        row = db.query(models.Project.id)\
            .filter(models.Project.id == project_id)\
            .with_for_update()\
            .first()
        if row is None:
            logger.info(f"Project {project_id} not found")
            raise NotFoundError(f"Project {project_id} not found")
        yield


@contextmanager
def unit_of_work(db: Session, commit: bool = True) -> Iterator[None]:
    """
    Commit on success and roll back on any exception.

    With commit=False the caller owns the transaction (atomic batches); the
    block then neither commits nor rolls back.
    """
    try:
        yield
        if commit:
            db.commit()
    except Exception:
        if commit:
            db.rollback()
        raise
