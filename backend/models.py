from sqlalchemy import (
    Column, Integer, String, Text, ForeignKey, DateTime, Enum, Numeric,
    CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
import enum
from database import Base


class TaskStatus(str, enum.Enum):
    todo = "todo"
    doing = "doing"
    blocked = "blocked"
    review = "review"
    done = "done"


class EstimateUnit(str, enum.Enum):
    hours = "hours"
    days = "days"


class DependencyType(str, enum.Enum):
    FS = "FS"  # Finish-Start
    SS = "SS"  # Start-Start
    FF = "FF"  # Finish-Finish
    SF = "SF"  # Start-Finish


class ActivityAction(str, enum.Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"
    reparented = "reparented"
    reordered = "reordered"
    progress_updated = "progress_updated"
    progress_recomputed = "progress_recomputed"
    dependency_added = "dependency_added"
    dependency_removed = "dependency_removed"


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    tasks = relationship("Task", back_populates="project", cascade="all, delete-orphan")
    dependencies = relationship("Dependency", back_populates="project", cascade="all, delete-orphan")


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="task_progress_range"),
        CheckConstraint("order_index >= 0", name="task_order_index_non_negative"),
        CheckConstraint("version >= 1", name="task_version_positive"),
        Index("ix_tasks_project_parent", "project_id", "parent_task_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    # Owning edge of the hierarchy; NULL for roots
    parent_task_id = Column(Integer, ForeignKey("tasks.id", ondelete="RESTRICT"), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(Enum(TaskStatus, name="task_status"), nullable=False, default=TaskStatus.todo)

    estimate_value = Column(Numeric(10, 2), nullable=True)
    estimate_unit = Column(Enum(EstimateUnit, name="estimate_unit"), nullable=False, default=EstimateUnit.hours)
    start_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)

    progress = Column(Integer, nullable=False, default=0)
    order_index = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    project = relationship("Project", back_populates="tasks")
    parent_task = relationship("Task", remote_side=[id], back_populates="subtasks", foreign_keys=[parent_task_id])
    subtasks = relationship("Task", back_populates="parent_task", foreign_keys=[parent_task_id])


class Dependency(Base):
    __tablename__ = "dependencies"
    __table_args__ = (
        UniqueConstraint("project_id", "predecessor_id", "successor_id", "type", name="uq_dependency_tuple"),
        CheckConstraint("predecessor_id != successor_id", name="no_self_dependency"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    predecessor_id = Column(Integer, ForeignKey("tasks.id", ondelete="RESTRICT"), nullable=False)
    successor_id = Column(Integer, ForeignKey("tasks.id", ondelete="RESTRICT"), nullable=False)
    type = Column(Enum(DependencyType, name="dependency_type"), nullable=False, default=DependencyType.FS)
    # Signed offset, negative values are lead time
    lag = Column(Numeric(10, 2), nullable=False, default=0)
    lag_unit = Column(Enum(EstimateUnit, name="lag_unit"), nullable=False, default=EstimateUnit.days)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    project = relationship("Project", back_populates="dependencies")
    predecessor = relationship("Task", foreign_keys=[predecessor_id])
    successor = relationship("Task", foreign_keys=[successor_id])


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)

    # action stored as VARCHAR(50) so new actions need no migration;
    # ActivityAction lists the ones the engine emits.
    action = Column(String(50), nullable=False)
    actor = Column(String(255))
    before = Column(JSONB)
    after = Column(JSONB)
    event_metadata = Column("metadata", JSONB)
    created_at = Column(DateTime(timezone=True), nullable=False)
