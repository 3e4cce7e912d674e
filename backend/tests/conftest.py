"""
Pytest configuration and fixtures
"""
import os
import sys
from pathlib import Path

import pytest

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Disable tracing exporters and use an in-memory catalog store during tests
os.environ.setdefault("ENABLE_TRACING", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from record_flags.core.config import Settings
from record_flags.core.database import Base
from record_flags.core.permissions import Permission, UserContext
from record_flags.core.unit_registry import UnitRegistry
from record_flags.services.catalog_service import InMemoryMetadataCatalog


@pytest.fixture
def settings() -> Settings:
    """Orchestration settings without timeouts"""
    return Settings(
        enable_tracing=False,
        flag_unit_timeout_seconds=None,
        flag_run_sync_units_in_thread=True,
        flag_cancel_superseded_runs=True,
    )


@pytest.fixture
def registry() -> UnitRegistry:
    """Fresh unit registry per test"""
    return UnitRegistry()


@pytest.fixture
def user() -> UserContext:
    return UserContext(user_id="user-1", permissions=["case:view"])


@pytest.fixture
def admin() -> UserContext:
    return UserContext(user_id="admin-1", permissions=[Permission.ADMIN_ALL])


@pytest.fixture
def make_catalog():
    """Factory for in-memory catalogs"""
    def _make(*descriptors):
        return InMemoryMetadataCatalog(descriptors)
    return _make


@pytest.fixture
def session_factory():
    """Session factory bound to a private in-memory SQLite database"""
    import record_flags.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
