"""Root-level pytest fixtures for all tests.

Provides:
- An in-memory SQLite database shared across sessions (StaticPool)
- Fake installer, inventory and clock
- A fully wired orchestrator over the fakes
"""

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from update_center.config import ReconcilerConfig, UpdateCenterConfig
from update_center.db.models import Base
from update_center.services.batch_orchestrator import BatchOrchestrator
from update_center.services.progress_reconciler import ProgressReconciler
from tests.helpers import FakeClock, FakeInstaller, FakeInventory


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    """Session factory over a fresh in-memory database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """A single session for repository-level tests."""
    session = session_factory()
    yield session
    session.close()


# ============================================================================
# Fakes
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def inventory() -> FakeInventory:
    """Inventory with three packages: core <- reports <- dashboards."""
    inv = FakeInventory()
    inv.add_package("pkg-core", "Core Platform", "1.4.2", target="2.0.0")
    inv.add_package(
        "pkg-reports", "Reports", "3.1.0", target="3.2.0", depends_on=["pkg-core"]
    )
    inv.add_package(
        "pkg-dash", "Dashboards", "1.0.0", target="1.0.1", depends_on=["pkg-reports"]
    )
    return inv


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def config() -> UpdateCenterConfig:
    return UpdateCenterConfig(
        reconciler=ReconcilerConfig(
            max_runtime_seconds=600,
            starting_interval_seconds=3,
            running_interval_seconds=10,
            handle_retry_interval_seconds=3,
            handle_max_attempts=5,
        )
    )


@pytest.fixture
def reconciler(session_factory, installer, inventory, config, clock) -> ProgressReconciler:
    return ProgressReconciler(
        session_factory,
        installer,
        inventory,
        config.reconciler,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def orchestrator(
    session_factory, installer, inventory, reconciler, config
) -> BatchOrchestrator:
    return BatchOrchestrator(
        session_factory, installer, inventory, reconciler=reconciler, config=config
    )
