"""
Root test configuration and fixtures.

Provides:
- NOW: fixed evaluation instant shared by status and engine tests
- db_engine / db_session / session_factory: SQLite in-memory database
- temp_config_dir / make_yaml_config / make_json_config: catalog file factories
- catalog / override_store / engine: wired access engine with in-memory overrides
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine():
    """
    Fresh SQLite in-memory engine per test.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from tenant_access.db_base import Base
    import tenant_access.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Config files
# =============================================================================


@pytest.fixture
def temp_config_dir(tmp_path) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


def _write_config(path: Path, config: dict) -> Path:
    with open(path, "w") as f:
        if path.suffix in (".yml", ".yaml"):
            yaml.safe_dump(config, f)
        else:
            json.dump(config, f)
    return path


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """Write a YAML catalog file: make_yaml_config("tiers.yaml", {...}) -> path."""
    return lambda filename, config: _write_config(temp_config_dir / filename, config)


@pytest.fixture
def make_json_config(temp_config_dir):
    return lambda filename, config: _write_config(temp_config_dir / filename, config)


# =============================================================================
# Engine wiring
# =============================================================================


@pytest.fixture
def catalog():
    """The bundled tier catalog."""
    from tenant_access.entitlements.catalog import load_tier_catalog, DEFAULT_CATALOG_PATH

    return load_tier_catalog(str(DEFAULT_CATALOG_PATH))


@pytest.fixture
def override_store():
    from tenant_access.entitlements.overrides import InMemoryOverrideStore

    return InMemoryOverrideStore(clock=lambda: NOW)


@pytest.fixture
def audit():
    from tenant_access.entitlements.audit import EntitlementAuditLogger

    return EntitlementAuditLogger(aggregation_window_seconds=0)


@pytest.fixture
def engine(catalog, override_store, audit):
    from tenant_access.entitlements.engine import AccessDecisionEngine
    from tenant_access.entitlements.permissions import PermissionResolver

    return AccessDecisionEngine(
        catalog=catalog,
        override_store=override_store,
        permission_resolver=PermissionResolver(),
        audit_logger=audit,
        clock=lambda: NOW,
    )


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset process-wide singletons between tests."""
    yield
    from tenant_access.entitlements.audit import reset_audit_logger
    from tenant_access.entitlements.catalog import reset_tier_catalog
    from tenant_access.entitlements.middleware import reset_access_engine

    reset_tier_catalog()
    reset_audit_logger()
    reset_access_engine()

