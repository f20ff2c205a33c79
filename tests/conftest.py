"""
Pytest configuration and fixtures for claims-pipeline tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
import os
from datetime import date
from typing import Generator

import pytest
from testcontainers.postgres import PostgresContainer

from claims_pipeline.config import PipelineSettings
from claims_pipeline.core.models import (
    ClaimRecord,
    FieldDataType,
    FieldVariation,
    RequirementLevel,
    RuleDefinition,
    StandardField,
)
from claims_pipeline.service import ClaimsPipelineService
from claims_pipeline.warehouse.connection import DatabaseConnectionPool
from claims_pipeline.warehouse.memory_store import InMemoryClaimsStore
from claims_pipeline.warehouse.postgres_store import PostgresClaimsStore

FIXED_TODAY = date(2024, 6, 1)


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test the full pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# CATALOG FIXTURES
# =======================

def build_catalog() -> tuple[list[StandardField], list[FieldVariation]]:
    """Small pharmacy claims catalog used across tests."""
    fields = [
        StandardField(
            field_name="member_id",
            display_name="Member ID",
            requirement_level=RequirementLevel.CRITICAL,
            display_order=1,
        ),
        StandardField(
            field_name="member_dob",
            display_name="DOB",
            data_type=FieldDataType.DATE,
            requirement_level=RequirementLevel.REQUIRED,
            display_order=2,
        ),
        StandardField(
            field_name="fill_date",
            display_name="Fill Date",
            data_type=FieldDataType.DATE,
            requirement_level=RequirementLevel.REQUIRED,
            display_order=3,
        ),
        StandardField(
            field_name="days_supply",
            display_name="Days Supply",
            data_type=FieldDataType.NUMBER,
            display_order=4,
        ),
        StandardField(
            field_name="channel_indicator",
            display_name="Channel Indicator",
            data_type=FieldDataType.ENUM,
            display_order=5,
        ),
    ]
    variations = [
        FieldVariation(field_name="member_dob", variation_name="Birth Date"),
        FieldVariation(field_name="days_supply", variation_name="DS"),
        FieldVariation(field_name="member_id", variation_name="Mbr ID"),
    ]
    return fields, variations


def build_rule_definitions() -> list[RuleDefinition]:
    return [
        RuleDefinition(
            rule_id="age_classification",
            name="Age Classification Rule",
            priority=10,
            processor="age_classification",
            parameters={"age_threshold": 65},
        ),
        RuleDefinition(
            rule_id="channel_classification",
            name="Channel Classification Rule",
            priority=20,
            processor="channel_classification",
            parameters={"retail_max_days": 30, "retail90_max_days": 83},
        ),
    ]


def make_claim(row_number: int = 1, file_id: str = "file-1", **mapped) -> ClaimRecord:
    """Build a claim record with the given mapped fields."""
    return ClaimRecord(
        record_id=f"{file_id}-rec-{row_number}",
        file_id=file_id,
        row_number=row_number,
        mapped_fields=mapped,
    )


class RecordingStore(InMemoryClaimsStore):
    """
    In-memory store that keeps a copy of every run and processing row it saves.

    The log lives on the shared database so transaction handles append to it too.
    """

    def __init__(self, _db=None, _in_transaction=False):
        super().__init__(_db, _in_transaction)
        if not hasattr(self._db, "saved"):
            self._db.saved = []

    @property
    def saved(self) -> list:
        return self._db.saved

    def save_run(self, run):
        stored = super().save_run(run)
        self.saved.append(run.model_copy(deep=True))
        return stored

    def save_processing(self, history):
        stored = super().save_processing(history)
        self.saved.append(history.model_copy(deep=True))
        return stored


@pytest.fixture
def catalog() -> tuple[list[StandardField], list[FieldVariation]]:
    return build_catalog()


@pytest.fixture
def rule_definitions() -> list[RuleDefinition]:
    return build_rule_definitions()


# =======================
# STORE / SERVICE FIXTURES
# =======================

@pytest.fixture
def memory_store() -> InMemoryClaimsStore:
    return InMemoryClaimsStore()


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def seeded_store(memory_store, catalog, rule_definitions) -> InMemoryClaimsStore:
    """In-memory store with the test catalog and both enrichment rules."""
    fields, variations = catalog
    memory_store.upsert_standard_fields(fields)
    memory_store.upsert_field_variations(variations)
    memory_store.upsert_rule_definitions(rule_definitions)
    return memory_store


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(batch_size=2, max_workers=2)


@pytest.fixture
def service(seeded_store, settings) -> Generator[ClaimsPipelineService, None, None]:
    """Service over the seeded in-memory store with a fixed 'today' for the age rule."""
    svc = ClaimsPipelineService(
        seeded_store,
        settings,
        processor_kwargs={"today": lambda: FIXED_TODAY},
    )
    yield svc
    svc.close()


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_pipeline",
        password="test_password",
        dbname="test_claims"
    ) as postgres:
        yield postgres


@pytest.fixture(scope="session")
def pg_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Connection pool against the test container with the schema applied

    Yields:
        Open DatabaseConnectionPool
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_claims",
        user="test_pipeline",
        password="test_password",
        min_size=1,
        max_size=4,
    )
    pool.open(max_retries=5)

    init_sql_path = os.path.join(
        os.path.dirname(os.path.dirname(__file__)),
        "docker",
        "init-db.sql"
    )
    with open(init_sql_path) as f:
        pool.execute_script(f.read())

    yield pool
    pool.close()


@pytest.fixture
def pg_store(pg_pool) -> PostgresClaimsStore:
    """
    PostgreSQL store over freshly truncated tables

    Returns:
        PostgresClaimsStore
    """
    pg_pool.execute_command(
        """
        TRUNCATE TABLE enrichment_failures, enrichment_runs, enrichment_rules,
            claim_processing_history, claim_records, file_field_mappings, mapping_templates,
            claim_field_variations, standard_claim_fields,
            file_status_history, claims_file_registry
        RESTART IDENTITY CASCADE
        """
    )
    return PostgresClaimsStore(pg_pool)


@pytest.fixture
def claim_factory():
    """Factory building claim records from mapped fields."""
    return make_claim


@pytest.fixture
def fixed_today() -> date:
    return FIXED_TODAY
