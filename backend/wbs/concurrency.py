"""
Optimistic concurrency control for task writes.

Clients hold an opaque token ``v{version}-{updatedAtEpochMillis}`` (the
ETag). Every write names the version it expects; the stored version must
still match, and a successful write moves it forward by exactly one.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

import models
from errors import PreconditionRequiredError, ValidationError
from repositories import TaskRepository
from time_utils import epoch_millis

logger = logging.getLogger(__name__)

ETAG_PATTERN = re.compile(r"^v(\d+)-(\d+)$")


def format_etag(version: int, updated_at: Optional[datetime]) -> str:
    return f"v{version}-{epoch_millis(updated_at)}"


def etag_for(task: models.Task) -> str:
    return format_etag(task.version, task.updated_at)


def parse_etag(token: Optional[str]) -> int:
    """
    Extract the version from an ETag.

    Accepts ``v3-1736187600000``, the quoted form and the weak ``W/"..."`` form.

    Raises:
        PreconditionRequiredError: token missing or blank
        ValidationError: token present but malformed
    """
    if token is None or not token.strip():
        raise PreconditionRequiredError("An expected-version token (If-Match / etag) is required")

    value = token.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')

    match = ETAG_PATTERN.match(value)
    if not match:
        logger.info(f"Malformed version token: {token!r}")
        raise ValidationError(f"Malformed version token: {token}")

    version = int(match.group(1))
    if version < 1:
        raise ValidationError(f"Malformed version token: {token}")
    return version


class ConcurrencyController:
    """Compare-and-swap wrapper used by every task mutator."""

    def __init__(self, tasks: TaskRepository, clock):
        self.tasks = tasks
        self.clock = clock

    def expected_version(self, etag: Optional[str] = None, expected_version: Optional[int] = None) -> int:
        """
        Resolve the caller's expected version from an explicit number or a token.
        """
        if expected_version is not None:
            if expected_version < 1:
                raise ValidationError(f"Expected version must be >= 1, got {expected_version}")
            return expected_version
        return parse_etag(etag)

    def write(
        self,
        task_id: int,
        patch: Dict[str, Any],
        etag: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> models.Task:
        """
        Apply ``patch`` if the stored version matches; return the refreshed task.

        Raises:
            PreconditionRequiredError: neither etag nor expected_version given
            ConflictError: stored version differs
            NotFoundError: task missing or soft-deleted
        """
        version = self.expected_version(etag, expected_version)
        logger.debug(f"CAS write on task {task_id} at v{version}: {list(patch.keys())}")
        self.tasks.update_with_version_check(task_id, patch, version, self.clock.now())
        return self.tasks.get_by_id(task_id, include_deleted=True)

    def write_loaded(self, task: models.Task, patch: Dict[str, Any]) -> models.Task:
        """
        CAS write against the version the engine itself just loaded.

        Used for internal writes (roll-ups, tokenless reorder items) where a
        concurrent writer must still be detected rather than overwritten.
        """
        return self.write(task.id, patch, expected_version=task.version)

    def soft_delete(
        self,
        task_id: int,
        etag: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> models.Task:
        version = self.expected_version(etag, expected_version)
        logger.debug(f"CAS soft delete on task {task_id} at v{version}")
        self.tasks.soft_delete(task_id, version, self.clock.now())
        return self.tasks.get_by_id(task_id, include_deleted=True)
