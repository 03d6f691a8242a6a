"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus helpers
to seed users, customers, manager edges and assignments.

The code under test commits and rolls back its own transactions (swaps,
task claims, mutations), so every test gets a fresh database instead of
an outer rollback-only transaction.
"""

import os
import tempfile
import uuid
import pytest
import yaml
from pathlib import Path
from typing import Generator, Iterable, Tuple
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

import customer_access.models  # noqa: F401
from customer_access.config.rebuild_settings import RebuildSettings
from customer_access.database.session import normalize_database_url
from customer_access.db_base import Base
from customer_access.hierarchy.graph import AssignmentRecord, ManagerEdgeRecord, TenantGraph
from customer_access.models.hierarchy import Customer, CustomerAssignment, ManagerEdge, User
from customer_access.monitoring.rebuild_alerts import RebuildAlertManager

TEST_DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL") or "sqlite:///:memory:")


@pytest.fixture(scope="function")
def db_engine():
    """
    Fresh schema per test: PostgreSQL when DATABASE_URL is set, else in-memory SQLite.
    """
    if TEST_DATABASE_URL.startswith("postgresql"):
        engine = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError as e:
            pytest.skip(f"PostgreSQL unreachable at DATABASE_URL: {e}")
    else:
        # StaticPool keeps the single in-memory database alive across sessions
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Session bound to the per-test engine."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()


# =============================================================================
# Test Identity Fixtures
# =============================================================================

@pytest.fixture
def tenant_id() -> str:
    """Generate unique tenant ID."""
    return f"tenant-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def other_tenant_id() -> str:
    """Generate unique tenant ID for cross-tenant tests."""
    return f"other-tenant-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def settings() -> RebuildSettings:
    """Rebuild settings with no debounce so enqueued tasks are ready at once."""
    return RebuildSettings(debounce_seconds=0, max_debounce_seconds=900)


@pytest.fixture
def alert_manager():
    """Alert manager whose send_alert is an AsyncMock."""
    manager = MagicMock(spec=RebuildAlertManager)
    manager.send_alert = AsyncMock(return_value=True)
    return manager


# =============================================================================
# Hierarchy seeding
# =============================================================================

class HierarchySeeder:
    """Writes users, customers, edges and assignments straight to the stores."""

    def __init__(self, session: Session):
        self.session = session

    def users(self, tenant_id: str, *user_ids: str) -> None:
        for user_id in user_ids:
            self.session.add(User(id=user_id, tenant_id=tenant_id, email=f"{user_id}@{tenant_id}.test"))
        self.session.commit()

    def customers(self, tenant_id: str, *customer_ids: str) -> None:
        for customer_id in customer_ids:
            self.session.add(Customer(id=customer_id, tenant_id=tenant_id, name=f"Customer {customer_id}"))
        self.session.commit()

    def manages(self, tenant_id: str, *edges: Tuple[str, str]) -> None:
        """Each edge is (report_id, manager_id)."""
        for report_id, manager_id in edges:
            self.session.add(ManagerEdge(tenant_id=tenant_id, report_id=report_id, manager_id=manager_id))
        self.session.commit()

    def assign(self, tenant_id: str, *assignments: Tuple[str, str]) -> None:
        """Each assignment is (user_id, customer_id)."""
        for user_id, customer_id in assignments:
            self.session.add(
                CustomerAssignment(tenant_id=tenant_id, user_id=user_id, customer_id=customer_id)
            )
        self.session.commit()

    def scenario_a(self, tenant_id: str) -> None:
        """C reports to B, B reports to A; X assigned to C, Y assigned to B."""
        self.users(tenant_id, "A", "B", "C")
        self.customers(tenant_id, "X", "Y")
        self.manages(tenant_id, ("C", "B"), ("B", "A"))
        self.assign(tenant_id, ("C", "X"), ("B", "Y"))


@pytest.fixture
def seed(db_session) -> HierarchySeeder:
    return HierarchySeeder(db_session)


@pytest.fixture
def make_graph():
    """
    Factory for in-memory tenant graphs.

    Usage:
        graph = make_graph("t1", edges=[("C", "B")], assignments=[("C", "X")])
    """
    def _make(
        tenant_id: str,
        edges: Iterable[Tuple[str, str]] = (),
        assignments: Iterable[Tuple[str, str]] = (),
        user_ids: Iterable[str] = (),
    ) -> TenantGraph:
        return TenantGraph.from_records(
            tenant_id,
            edges=[ManagerEdgeRecord(tenant_id, report, manager) for report, manager in edges],
            assignments=[AssignmentRecord(tenant_id, user, customer) for user, customer in assignments],
            user_ids=user_ids,
        )
    return _make


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("access_rebuild.yml", {"rebuild": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
