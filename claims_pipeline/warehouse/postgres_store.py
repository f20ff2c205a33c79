"""
PostgreSQL implementation of the claims store.

Mapped and unmapped fields are stored as JSON (key order kept), dynamic
fields as JSONB so enrichment can merge field groups with ``||``. Dates
inside field payloads use the tagged field-value codec.
"""

import json
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg

from claims_pipeline.core.exceptions import FileNotFound, RunNotFound, TemplateNotFound
from claims_pipeline.core.models import (
    ClaimRecord,
    EnrichmentFailure,
    EnrichmentRun,
    FieldMapping,
    FieldVariation,
    FileRecord,
    FileStatus,
    FileStatusHistory,
    MappingTemplate,
    ProcessingHistory,
    ProcessingStage,
    RuleDefinition,
    StandardField,
)
from claims_pipeline.core.models.field_value import (
    decode_field_value,
    decode_fields,
    encode_field_value,
    encode_fields,
)
from claims_pipeline.observability.logger import get_logger
from claims_pipeline.warehouse.connection import DatabaseConnectionPool
from claims_pipeline.warehouse.store import ClaimsStore

logger = get_logger(__name__)

CLAIM_COLUMNS = """
    record_id, file_id, row_number, mapped_fields, unmapped_fields, dynamic_fields,
    validation_status, processing_status, created_by, created_at, updated_at
"""


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _claim_filters(
    file_id: str,
    validation_status: str | None,
    processing_status: str | None,
    search: str | None,
) -> tuple[str, list[Any]]:
    clauses = ["file_id = %s"]
    params: list[Any] = [file_id]
    if validation_status:
        clauses.append("validation_status = %s")
        params.append(validation_status)
    if processing_status:
        clauses.append("processing_status = %s")
        params.append(processing_status)
    if search:
        clauses.append("(mapped_fields::text ILIKE %s OR unmapped_fields::text ILIKE %s)")
        pattern = f"%{search}%"
        params.extend([pattern, pattern])
    return " AND ".join(clauses), params


class PostgresClaimsStore(ClaimsStore):
    """
    ClaimsStore backed by PostgreSQL through a psycopg connection pool.

    Outside a transaction every call borrows a pooled connection and
    commits on return. ``transaction()`` yields a store bound to a single
    connection whose work commits or rolls back as one unit.
    """

    def __init__(self, pool: DatabaseConnectionPool, _conn: psycopg.Connection | None = None):
        self.pool = pool
        self._conn = _conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresClaimsStore"]:
        if self._conn is not None:
            yield self
            return

        with self.pool.get_connection() as conn:
            with conn.transaction():
                yield type(self)(self.pool, _conn=conn)

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        if self._conn is not None:
            yield self._conn
            return

        with self.pool.get_connection() as conn:
            with conn.transaction():
                yield conn

    def _run(self, sql: str, params: Any = None, fetch: str | None = None) -> Any:
        """
        Execute one statement.

        Args:
            sql: Statement text
            params: Statement parameters
            fetch: None for the row count, "one" or "all" for rows

        Raises:
            psycopg.DatabaseError: Logged and re-raised
        """
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    if fetch == "one":
                        return cur.fetchone()
                    if fetch == "all":
                        return cur.fetchall()
                    return cur.rowcount
        except psycopg.DatabaseError as e:
            logger.error(f"Database error: {e}", extra={"sql": " ".join(sql.split())[:200]})
            raise

    def _run_many(self, sql: str, params_seq: list[Any]) -> int:
        if not params_seq:
            return 0
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.executemany(sql, params_seq)
            return len(params_seq)
        except psycopg.DatabaseError as e:
            logger.error(f"Database error in batch of {len(params_seq)}: {e}")
            raise

    # -- files ---------------------------------------------------------

    @staticmethod
    def _file_from_row(row: dict) -> FileRecord:
        return FileRecord(**row)

    def create_file(self, file: FileRecord) -> FileRecord:
        row = self._run(
            """
            INSERT INTO claims_file_registry (
                file_id, original_filename, product_id, status, processing_stage,
                row_count, original_headers, created_at, updated_at, updated_by
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::json, %s, %s, %s)
            RETURNING *
            """,
            (
                file.file_id,
                file.original_filename,
                file.product_id,
                file.status.value,
                file.processing_stage.value,
                file.row_count,
                _dumps(file.original_headers),
                file.created_at,
                file.updated_at,
                file.updated_by or "system",
            ),
            fetch="one",
        )
        return self._file_from_row(row)

    def get_file(self, file_id: str, for_update: bool = False) -> FileRecord:
        sql = "SELECT * FROM claims_file_registry WHERE file_id = %s"
        if for_update:
            sql += " FOR UPDATE"
        row = self._run(sql, (file_id,), fetch="one")
        if row is None:
            raise FileNotFound(file_id)
        return self._file_from_row(row)

    def update_file_state(
        self,
        file_id: str,
        status: FileStatus,
        stage: ProcessingStage,
        actor: str,
    ) -> FileRecord:
        row = self._run(
            """
            UPDATE claims_file_registry
            SET status = %s, processing_stage = %s, updated_at = NOW(), updated_by = %s
            WHERE file_id = %s
            RETURNING *
            """,
            (FileStatus(status).value, ProcessingStage(stage).value, actor, file_id),
            fetch="one",
        )
        if row is None:
            raise FileNotFound(file_id)
        return self._file_from_row(row)

    def append_status_history(self, entry: FileStatusHistory) -> FileStatusHistory:
        row = self._run(
            """
            INSERT INTO file_status_history (
                file_id, previous_status, new_status, previous_stage, new_stage, actor, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING history_id
            """,
            (
                entry.file_id,
                entry.previous_status.value,
                entry.new_status.value,
                entry.previous_stage.value,
                entry.new_stage.value,
                entry.actor,
                entry.created_at,
            ),
            fetch="one",
        )
        return entry.model_copy(update={"history_id": row["history_id"]})

    def list_status_history(self, file_id: str) -> list[FileStatusHistory]:
        rows = self._run(
            "SELECT * FROM file_status_history WHERE file_id = %s ORDER BY history_id",
            (file_id,),
            fetch="all",
        )
        return [FileStatusHistory(**row) for row in rows]

    # -- field catalog -------------------------------------------------

    def upsert_standard_fields(self, fields: list[StandardField]) -> int:
        return self._run_many(
            """
            INSERT INTO standard_claim_fields (
                field_name, display_name, product_id, description, data_type,
                requirement_level, display_order, is_active
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (field_name) DO UPDATE SET
                display_name = EXCLUDED.display_name,
                product_id = EXCLUDED.product_id,
                description = EXCLUDED.description,
                data_type = EXCLUDED.data_type,
                requirement_level = EXCLUDED.requirement_level,
                display_order = EXCLUDED.display_order,
                is_active = EXCLUDED.is_active
            """,
            [
                (
                    f.field_name,
                    f.display_name,
                    f.product_id,
                    f.description,
                    f.data_type.value,
                    f.requirement_level.value,
                    f.display_order,
                    f.is_active,
                )
                for f in fields
            ],
        )

    def list_standard_fields(self, product_id: str | None = None) -> list[StandardField]:
        sql = """
            SELECT field_name, display_name, product_id, description, data_type,
                   requirement_level, display_order, is_active
            FROM standard_claim_fields
            WHERE is_active
        """
        params: tuple = ()
        if product_id is not None:
            sql += " AND (product_id IS NULL OR product_id = %s)"
            params = (product_id,)
        sql += " ORDER BY display_order, insert_seq"
        return [StandardField(**row) for row in self._run(sql, params, fetch="all")]

    def upsert_field_variations(self, variations: list[FieldVariation]) -> int:
        return self._run_many(
            """
            INSERT INTO claim_field_variations (field_name, variation_name, is_active)
            VALUES (%s, %s, %s)
            ON CONFLICT (field_name, variation_name) DO UPDATE SET
                is_active = EXCLUDED.is_active
            """,
            [(v.field_name, v.variation_name, v.is_active) for v in variations],
        )

    def list_field_variations(self) -> list[FieldVariation]:
        rows = self._run(
            """
            SELECT field_name, variation_name, is_active
            FROM claim_field_variations
            WHERE is_active
            ORDER BY insert_seq
            """,
            fetch="all",
        )
        return [FieldVariation(**row) for row in rows]

    # -- mappings ------------------------------------------------------

    def replace_active_mapping(
        self, file_id: str, columns: dict[str, str], actor: str = "system"
    ) -> FieldMapping:
        mapping = FieldMapping(
            mapping_id=str(uuid.uuid4()),
            file_id=file_id,
            columns=dict(columns),
            created_by=actor,
        )
        with self.transaction() as tx:
            tx._run(
                "UPDATE file_field_mappings SET is_active = FALSE WHERE file_id = %s AND is_active",
                (file_id,),
            )
            tx._run(
                """
                INSERT INTO file_field_mappings (
                    mapping_id, file_id, columns, is_active, created_by, created_at
                ) VALUES (%s, %s, %s::json, TRUE, %s, %s)
                """,
                (mapping.mapping_id, file_id, _dumps(mapping.columns), actor, mapping.created_at),
            )
        return mapping

    def get_active_mapping(self, file_id: str) -> FieldMapping | None:
        row = self._run(
            "SELECT * FROM file_field_mappings WHERE file_id = %s AND is_active",
            (file_id,),
            fetch="one",
        )
        return FieldMapping(**row) if row else None

    # -- mapping templates ---------------------------------------------

    def save_mapping_template(self, template: MappingTemplate) -> MappingTemplate:
        row = self._run(
            """
            INSERT INTO mapping_templates (
                template_id, template_name, product_id, columns, is_active,
                created_by, created_at, updated_by, updated_at
            ) VALUES (%s, %s, %s, %s::json, %s, %s, %s, %s, %s)
            ON CONFLICT (template_id) DO UPDATE SET
                template_name = EXCLUDED.template_name,
                product_id = EXCLUDED.product_id,
                columns = EXCLUDED.columns,
                is_active = EXCLUDED.is_active,
                updated_by = EXCLUDED.updated_by,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            (
                template.template_id,
                template.template_name,
                template.product_id,
                _dumps(template.columns),
                template.is_active,
                template.created_by,
                template.created_at,
                template.updated_by,
                template.updated_at,
            ),
            fetch="one",
        )
        return MappingTemplate(**row)

    def get_mapping_template(self, template_id: str) -> MappingTemplate:
        row = self._run(
            "SELECT * FROM mapping_templates WHERE template_id = %s AND is_active",
            (template_id,),
            fetch="one",
        )
        if row is None:
            raise TemplateNotFound(template_id)
        return MappingTemplate(**row)

    def list_mapping_templates(self, product_id: str | None = None) -> list[MappingTemplate]:
        sql = "SELECT * FROM mapping_templates WHERE is_active"
        params: list[Any] = []
        if product_id is not None:
            sql += " AND (product_id IS NULL OR product_id = %s)"
            params.append(product_id)
        sql += " ORDER BY created_at DESC, template_name"
        return [MappingTemplate(**row) for row in self._run(sql, params, fetch="all")]

    def deactivate_mapping_template(self, template_id: str, actor: str = "system") -> bool:
        updated = self._run(
            """
            UPDATE mapping_templates
            SET is_active = FALSE, updated_by = %s, updated_at = NOW()
            WHERE template_id = %s AND is_active
            """,
            (actor, template_id),
        )
        return updated > 0

    # -- claim records -------------------------------------------------

    @staticmethod
    def _claim_from_row(row: dict) -> ClaimRecord:
        return ClaimRecord(
            **{
                **row,
                "mapped_fields": decode_fields(row["mapped_fields"]),
                "unmapped_fields": decode_fields(row["unmapped_fields"]),
                "dynamic_fields": decode_fields(row["dynamic_fields"]),
            }
        )

    def insert_claim_records(self, records: list[ClaimRecord]) -> int:
        return self._run_many(
            """
            INSERT INTO claim_records (
                record_id, file_id, row_number, mapped_fields, unmapped_fields, dynamic_fields,
                validation_status, processing_status, created_by, created_at, updated_at
            ) VALUES (%s, %s, %s, %s::json, %s::json, %s::jsonb, %s, %s, %s, %s, %s)
            """,
            [
                (
                    r.record_id,
                    r.file_id,
                    r.row_number,
                    _dumps(encode_fields(r.mapped_fields)),
                    _dumps(encode_fields(r.unmapped_fields)),
                    _dumps(encode_fields(r.dynamic_fields)),
                    r.validation_status.value,
                    r.processing_status.value,
                    r.created_by,
                    r.created_at,
                    r.updated_at or r.created_at,
                )
                for r in records
            ],
        )

    def delete_claim_records(self, file_id: str) -> int:
        return self._run("DELETE FROM claim_records WHERE file_id = %s", (file_id,))

    def count_claim_records(
        self,
        file_id: str,
        validation_status: str | None = None,
        processing_status: str | None = None,
        search: str | None = None,
    ) -> int:
        where, params = _claim_filters(file_id, validation_status, processing_status, search)
        row = self._run(f"SELECT COUNT(*) AS n FROM claim_records WHERE {where}", params, fetch="one")
        return row["n"]

    def fetch_claim_records(
        self,
        file_id: str,
        offset: int,
        limit: int,
        validation_status: str | None = None,
        processing_status: str | None = None,
        search: str | None = None,
    ) -> list[ClaimRecord]:
        where, params = _claim_filters(file_id, validation_status, processing_status, search)
        rows = self._run(
            f"""
            SELECT {CLAIM_COLUMNS}
            FROM claim_records
            WHERE {where}
            ORDER BY row_number
            LIMIT %s OFFSET %s
            """,
            params + [limit, offset],
            fetch="all",
        )
        return [self._claim_from_row(row) for row in rows]

    def merge_dynamic_fields(self, record_id: str, groups: dict[str, Any]) -> None:
        updated = self._run(
            """
            UPDATE claim_records
            SET dynamic_fields = dynamic_fields || %s::jsonb, updated_at = NOW()
            WHERE record_id = %s
            """,
            (_dumps(encode_fields(groups)), record_id),
        )
        if updated == 0:
            raise KeyError(f"Claim record not found: {record_id}")

    def claim_status_counts(self, file_id: str) -> dict[str, dict[str, int]]:
        validation = self._run(
            """
            SELECT validation_status AS status, COUNT(*) AS n
            FROM claim_records WHERE file_id = %s
            GROUP BY validation_status
            """,
            (file_id,),
            fetch="all",
        )
        processing = self._run(
            """
            SELECT processing_status AS status, COUNT(*) AS n
            FROM claim_records WHERE file_id = %s
            GROUP BY processing_status
            """,
            (file_id,),
            fetch="all",
        )
        return {
            "validation": {row["status"]: row["n"] for row in validation},
            "processing": {row["status"]: row["n"] for row in processing},
        }

    def dynamic_field_counts(self, file_id: str) -> dict[str, int]:
        rows = self._run(
            """
            SELECT field_group, COUNT(*) AS n
            FROM claim_records, jsonb_object_keys(dynamic_fields) AS field_group
            WHERE file_id = %s
            GROUP BY field_group
            ORDER BY field_group
            """,
            (file_id,),
            fetch="all",
        )
        return {row["field_group"]: row["n"] for row in rows}

    # -- ingestion processing history ------------------------------------

    def create_processing(self, history: ProcessingHistory) -> ProcessingHistory:
        self._run(
            """
            INSERT INTO claim_processing_history (
                processing_id, file_id, status, processed_rows, total_rows,
                started_at, completed_at, error_details, created_by
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            """,
            (
                history.processing_id,
                history.file_id,
                history.status.value,
                history.processed_rows,
                history.total_rows,
                history.started_at,
                history.completed_at,
                _dumps(history.error_details),
                history.created_by,
            ),
        )
        return history

    def save_processing(self, history: ProcessingHistory) -> ProcessingHistory:
        updated = self._run(
            """
            UPDATE claim_processing_history
            SET status = %s, processed_rows = %s, total_rows = %s,
                completed_at = %s, error_details = %s::jsonb
            WHERE processing_id = %s
            """,
            (
                history.status.value,
                history.processed_rows,
                history.total_rows,
                history.completed_at,
                _dumps(history.error_details),
                history.processing_id,
            ),
        )
        if updated == 0:
            raise KeyError(f"Processing run not found: {history.processing_id}")
        return history

    def get_latest_processing(self, file_id: str) -> ProcessingHistory | None:
        row = self._run(
            """
            SELECT * FROM claim_processing_history
            WHERE file_id = %s
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (file_id,),
            fetch="one",
        )
        return ProcessingHistory(**row) if row else None

    # -- enrichment runs -----------------------------------------------

    def create_run(self, run: EnrichmentRun) -> EnrichmentRun:
        self._run(
            """
            INSERT INTO enrichment_runs (
                run_id, file_id, status, total_records, enriched_records, failed_records,
                started_at, completed_at, error_details, created_by
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            """,
            (
                run.run_id,
                run.file_id,
                run.status.value,
                run.total_records,
                run.enriched_records,
                run.failed_records,
                run.started_at,
                run.completed_at,
                _dumps(run.error_details),
                run.created_by,
            ),
        )
        return run

    def save_run(self, run: EnrichmentRun) -> EnrichmentRun:
        updated = self._run(
            """
            UPDATE enrichment_runs
            SET status = %s, total_records = %s, enriched_records = %s, failed_records = %s,
                completed_at = %s, error_details = %s::jsonb
            WHERE run_id = %s
            """,
            (
                run.status.value,
                run.total_records,
                run.enriched_records,
                run.failed_records,
                run.completed_at,
                _dumps(run.error_details),
                run.run_id,
            ),
        )
        if updated == 0:
            raise RunNotFound(run.run_id)
        return run

    def get_run(self, run_id: str) -> EnrichmentRun:
        row = self._run("SELECT * FROM enrichment_runs WHERE run_id = %s", (run_id,), fetch="one")
        if row is None:
            raise RunNotFound(run_id)
        return EnrichmentRun(**row)

    def get_latest_run(self, file_id: str) -> EnrichmentRun | None:
        row = self._run(
            """
            SELECT * FROM enrichment_runs
            WHERE file_id = %s
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (file_id,),
            fetch="one",
        )
        return EnrichmentRun(**row) if row else None

    def insert_enrichment_failures(self, failures: list[EnrichmentFailure]) -> int:
        return self._run_many(
            """
            INSERT INTO enrichment_failures (
                run_id, record_id, rule_id, error_message, raw_value, created_at
            ) VALUES (%s, %s, %s, %s, %s::jsonb, %s)
            """,
            [
                (
                    f.run_id,
                    f.record_id,
                    f.rule_id,
                    f.error_message,
                    _dumps(encode_field_value(f.raw_value)),
                    f.created_at,
                )
                for f in failures
            ],
        )

    def list_enrichment_failures(self, run_id: str) -> list[EnrichmentFailure]:
        rows = self._run(
            "SELECT * FROM enrichment_failures WHERE run_id = %s ORDER BY failure_id",
            (run_id,),
            fetch="all",
        )
        return [
            EnrichmentFailure(**{**row, "raw_value": decode_field_value(row["raw_value"])})
            for row in rows
        ]

    # -- rule definitions ----------------------------------------------

    def load_rule_definitions(self, active_only: bool = True) -> list[RuleDefinition]:
        sql = "SELECT * FROM enrichment_rules"
        if active_only:
            sql += " WHERE is_active"
        sql += " ORDER BY priority, rule_id"
        return [RuleDefinition(**row) for row in self._run(sql, fetch="all")]

    def upsert_rule_definitions(self, definitions: list[RuleDefinition]) -> int:
        return self._run_many(
            """
            INSERT INTO enrichment_rules (
                rule_id, name, rule_type, priority, processor, parameters, is_active
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
            ON CONFLICT (rule_id) DO UPDATE SET
                name = EXCLUDED.name,
                rule_type = EXCLUDED.rule_type,
                priority = EXCLUDED.priority,
                processor = EXCLUDED.processor,
                parameters = EXCLUDED.parameters,
                is_active = EXCLUDED.is_active
            """,
            [
                (
                    d.rule_id,
                    d.name,
                    d.rule_type,
                    d.priority,
                    d.processor,
                    _dumps(d.parameters),
                    d.is_active,
                )
                for d in definitions
            ],
        )
