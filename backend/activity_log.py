"""
Activity log sinks.

Recording is fire-and-forget from the engine's point of view: a sink that
fails to record logs the failure and returns, the mutation that produced
the event still commits.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)

TASK_SNAPSHOT_FIELDS = (
    "id", "project_id", "parent_task_id", "title", "status", "estimate_value",
    "estimate_unit", "start_date", "due_date", "progress", "order_index",
    "version", "deleted_at",
)

DEPENDENCY_SNAPSHOT_FIELDS = (
    "id", "project_id", "predecessor_id", "successor_id", "type", "lag", "lag_unit",
)


def task_snapshot(task: Optional[models.Task]) -> Optional[Dict[str, Any]]:
    if task is None:
        return None
    return jsonable_encoder({name: getattr(task, name) for name in TASK_SNAPSHOT_FIELDS})


def dependency_snapshot(dependency: Optional[models.Dependency]) -> Optional[Dict[str, Any]]:
    if dependency is None:
        return None
    return jsonable_encoder({name: getattr(dependency, name) for name in DEPENDENCY_SNAPSHOT_FIELDS})


@dataclass
class ActivityEvent:
    project_id: int
    entity_type: str
    entity_id: int
    action: str
    actor: Optional[str]
    timestamp: datetime
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ActivityLog:
    """
    Base sink. Subclasses implement ``_write``; ``record`` never raises.
    """

    def record(self, event: ActivityEvent) -> None:
        logger.debug(
            f"Recording activity: {event.entity_type} {event.entity_id} {event.action} "
            f"(project {event.project_id}, actor {event.actor})"
        )
        try:
            self._write(event)
        except Exception as e:
            logger.warning(
                f"Failed to record activity {event.action} for {event.entity_type} {event.entity_id}: {e}"
            )

    def _write(self, event: ActivityEvent) -> None:
        raise NotImplementedError


class DatabaseActivityLog(ActivityLog):
    """
    Stores events in the ``activity_log`` table of the caller's session.

    The row joins the caller's unit of work, so a rolled-back mutation leaves
    no event behind. It is flushed inside a savepoint: a row the database
    rejects rolls back only the savepoint, never the mutation.
    """

    def __init__(self, db: Session):
        self.db = db

    def _write(self, event: ActivityEvent) -> None:
        row = models.ActivityLog(
            project_id=event.project_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            action=event.action,
            actor=event.actor,
            before=jsonable_encoder(event.before),
            after=jsonable_encoder(event.after),
            event_metadata=jsonable_encoder(event.metadata),
            created_at=event.timestamp,
        )
        with self.db.begin_nested():
            self.db.add(row)
            self.db.flush()


class MemoryActivityLog(ActivityLog):
    """Keeps events in a list; used by tests and ad-hoc tooling."""

    def __init__(self):
        self.events: List[ActivityEvent] = []

    def _write(self, event: ActivityEvent) -> None:
        self.events.append(event)


def list_project_activity(db: Session, project_id: int, limit: int = 100, offset: int = 0):
    """Newest-first activity for a project, with the total count."""
    query = db.query(models.ActivityLog).filter(models.ActivityLog.project_id == project_id)
    total = query.count()
    events = query.order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())\
        .offset(offset)\
        .limit(limit)\
        .all()
    return events, total
