"""Fixtures for integration tests that hit a real PostgreSQL instance."""

import uuid
from typing import Generator

import psycopg
import pytest
from psycopg import errors

from egress_probe.cache.postgres import PostgresCache
from egress_probe.config import AppConfig, load_config


@pytest.fixture(scope="session")
def app_config() -> AppConfig:
    try:
        config = load_config()
    except ValueError as exc:
        pytest.skip(f"Configuration unusable for integration tests: {exc}")
    if not config.database_url:
        pytest.skip("DATABASE_URL must be configured in .env to run postgres integration tests.")
    return config


@pytest.fixture(scope="session")
def integration_schema() -> str:
    return f"int_{uuid.uuid4().hex[:8]}"


@pytest.fixture(scope="session")
def ensure_schema(app_config: AppConfig, integration_schema: str) -> Generator[None, None, None]:
    try:
        with psycopg.connect(app_config.database_url, autocommit=True) as conn:
            conn.execute(f"CREATE SCHEMA IF NOT EXISTS {integration_schema};")
    except errors.InsufficientPrivilege:
        pytest.skip("Database user lacks privileges to create schemas for integration tests.")
    except psycopg.OperationalError as exc:
        pytest.skip(f"PostgreSQL is not reachable: {exc}")
    yield
    with psycopg.connect(app_config.database_url, autocommit=True) as conn:
        conn.execute(f"DROP SCHEMA IF EXISTS {integration_schema} CASCADE;")


@pytest.fixture(scope="session")
def postgres_cache(
    app_config: AppConfig, integration_schema: str, ensure_schema: None
) -> Generator[PostgresCache, None, None]:
    cache = PostgresCache(
        app_config.database_url,
        min_size=1,
        max_size=2,
        connection_config={"options": f"-c search_path={integration_schema},public"},
    )
    yield cache
    cache.close()
