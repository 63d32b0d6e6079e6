"""
Test configuration and fixtures for the WBS engine tests.

Provides:
- Test database with SQLite in-memory for speed
- Engine services wired with a fixed clock, an in-memory activity log,
  a private lock registry and a private schedule cache
- FastAPI test client with database and service dependency overrides
- Project and task factory helpers
"""

import os
import sys
import logging
from datetime import datetime, timezone
from typing import Callable, Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import JSONB

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app, get_services
import models
import schemas
from activity_log import MemoryActivityLog
from time_utils import FixedClock
from wbs.locks import ProjectLockRegistry
from wbs.scheduler import ScheduleCache
from wbs.service import WBSServices, build_services

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

# A Monday morning, so offsets in days read naturally
PROJECT_START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Replace PostgreSQL-specific types with SQLite-compatible types
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def clock() -> FixedClock:
    return FixedClock(PROJECT_START)


@pytest.fixture(scope="function")
def activity_log() -> MemoryActivityLog:
    return MemoryActivityLog()


@pytest.fixture(scope="function")
def locks() -> ProjectLockRegistry:
    return ProjectLockRegistry()


@pytest.fixture(scope="function")
def cache() -> ScheduleCache:
    return ScheduleCache()


@pytest.fixture(scope="function")
def services(
    test_db: Session,
    clock: FixedClock,
    activity_log: MemoryActivityLog,
    locks: ProjectLockRegistry,
    cache: ScheduleCache
) -> WBSServices:
    """
    Engine services over the test session, recording activity in memory.
    """
    return build_services(test_db, clock=clock, activity_log=activity_log, locks=locks, cache=cache)


@pytest.fixture(scope="function")
def client(test_db: Session, clock: FixedClock, locks: ProjectLockRegistry, cache: ScheduleCache) -> TestClient:
    """
    Create FastAPI test client with database and service overrides.

    The client's services keep the default database activity log so the
    activity endpoint has rows to return.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    def override_get_services():
        return build_services(test_db, clock=clock, locks=locks, cache=cache)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = override_get_services

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def project(services: WBSServices) -> models.Project:
    """
    Create a test project.
    """
    logger.debug("Creating test project")
    project = services.task_service.create_project(
        schemas.ProjectCreate(name="Test Project", description="A project for testing")
    )
    logger.info(f"Created test project with ID: {project.id}")
    return project


@pytest.fixture(scope="function")
def make_task(services: WBSServices, project: models.Project) -> Callable[..., models.Task]:
    """
    Factory creating tasks in the test project through the engine.

    Usage: make_task("Design", parent=phase, estimate_value=8, progress=50)
    """
    def _make_task(title: str, parent: Optional[models.Task] = None, **kwargs) -> models.Task:
        data = schemas.TaskCreate(
            project_id=kwargs.pop("project_id", project.id),
            parent_task_id=parent.id if parent is not None else None,
            title=title,
            **kwargs
        )
        return services.task_service.create_task(data, actor="tester")

    return _make_task
