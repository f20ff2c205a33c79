"""
In-process claims store.

Tables live in plain dicts guarded by one re-entrant lock. A transaction
holds the lock from start to finish and restores a deep-copied snapshot
when it fails, so readers (which take the same lock) never see
uncommitted writes.
"""

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

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
from claims_pipeline.core.models.field_value import encode_fields
from claims_pipeline.observability.logger import get_logger
from claims_pipeline.utils.clock import utc_now
from claims_pipeline.warehouse.store import ClaimsStore

logger = get_logger(__name__)


class _Database:
    def __init__(self) -> None:
        self.tables: dict[str, Any] = {
            "files": {},
            "status_history": [],
            "standard_fields": {},
            "variations": [],
            "mappings": [],
            "templates": {},
            "claims": {},
            "processing": {},
            "runs": {},
            "failures": [],
            "rules": {},
            "sequences": {"status_history": 0, "failures": 0},
        }
        self.lock = threading.RLock()


def _matches_search(record: ClaimRecord, needle: str) -> bool:
    haystack = (
        json.dumps(encode_fields(record.mapped_fields), default=str)
        + json.dumps(encode_fields(record.unmapped_fields), default=str)
    )
    return needle.lower() in haystack.lower()


class InMemoryClaimsStore(ClaimsStore):
    """ClaimsStore kept in process memory, for embedding and tests."""

    def __init__(self, _db: _Database | None = None, _in_transaction: bool = False):
        self._db = _db or _Database()
        self._in_transaction = _in_transaction

    @property
    def _tables(self) -> dict[str, Any]:
        return self._db.tables

    def _next_id(self, sequence: str) -> int:
        self._tables["sequences"][sequence] += 1
        return self._tables["sequences"][sequence]

    @contextmanager
    def transaction(self) -> Iterator["InMemoryClaimsStore"]:
        if self._in_transaction:
            yield self
            return

        with self._db.lock:
            snapshot = copy.deepcopy(self._db.tables)
            try:
                yield type(self)(self._db, _in_transaction=True)
            except BaseException:
                self._db.tables = snapshot
                logger.debug("In-memory transaction rolled back")
                raise

    # -- files ---------------------------------------------------------

    def create_file(self, file: FileRecord) -> FileRecord:
        with self._db.lock:
            self._tables["files"][file.file_id] = file.model_copy(deep=True)
            return file.model_copy(deep=True)

    def get_file(self, file_id: str, for_update: bool = False) -> FileRecord:
        with self._db.lock:
            file = self._tables["files"].get(file_id)
            if file is None:
                raise FileNotFound(file_id)
            return file.model_copy(deep=True)

    def update_file_state(
        self,
        file_id: str,
        status: FileStatus,
        stage: ProcessingStage,
        actor: str,
    ) -> FileRecord:
        with self._db.lock:
            file = self._tables["files"].get(file_id)
            if file is None:
                raise FileNotFound(file_id)
            updated = file.model_copy(
                update={
                    "status": FileStatus(status),
                    "processing_stage": ProcessingStage(stage),
                    "updated_at": utc_now(),
                    "updated_by": actor,
                }
            )
            self._tables["files"][file_id] = updated
            return updated.model_copy(deep=True)

    def append_status_history(self, entry: FileStatusHistory) -> FileStatusHistory:
        with self._db.lock:
            stored = entry.model_copy(update={"history_id": self._next_id("status_history")})
            self._tables["status_history"].append(stored)
            return stored

    def list_status_history(self, file_id: str) -> list[FileStatusHistory]:
        with self._db.lock:
            return [h for h in self._tables["status_history"] if h.file_id == file_id]

    # -- field catalog -------------------------------------------------

    def upsert_standard_fields(self, fields: list[StandardField]) -> int:
        with self._db.lock:
            for field in fields:
                self._tables["standard_fields"][field.field_name] = field.model_copy(deep=True)
            return len(fields)

    def list_standard_fields(self, product_id: str | None = None) -> list[StandardField]:
        with self._db.lock:
            fields = [
                f.model_copy(deep=True)
                for f in self._tables["standard_fields"].values()
                if f.is_active and (product_id is None or f.product_id in (None, product_id))
            ]
        # sorted() is stable, so equal display_order keeps insertion order
        return sorted(fields, key=lambda f: f.display_order)

    def upsert_field_variations(self, variations: list[FieldVariation]) -> int:
        with self._db.lock:
            existing = self._tables["variations"]
            for variation in variations:
                key = (variation.field_name, variation.variation_name)
                existing[:] = [v for v in existing if (v.field_name, v.variation_name) != key]
                existing.append(variation.model_copy(deep=True))
            return len(variations)

    def list_field_variations(self) -> list[FieldVariation]:
        with self._db.lock:
            return [v.model_copy(deep=True) for v in self._tables["variations"] if v.is_active]

    # -- mappings ------------------------------------------------------

    def replace_active_mapping(
        self, file_id: str, columns: dict[str, str], actor: str = "system"
    ) -> FieldMapping:
        with self.transaction() as tx:
            mappings = tx._tables["mappings"]
            mappings[:] = [m for m in mappings if m.file_id != file_id]
            mapping = FieldMapping(
                mapping_id=str(uuid.uuid4()),
                file_id=file_id,
                columns=dict(columns),
                created_by=actor,
            )
            mappings.append(mapping)
            return mapping.model_copy(deep=True)

    def get_active_mapping(self, file_id: str) -> FieldMapping | None:
        with self._db.lock:
            for mapping in self._tables["mappings"]:
                if mapping.file_id == file_id and mapping.is_active:
                    return mapping.model_copy(deep=True)
            return None

    # -- mapping templates ---------------------------------------------

    def save_mapping_template(self, template: MappingTemplate) -> MappingTemplate:
        with self._db.lock:
            templates = self._tables["templates"]
            existing = templates.get(template.template_id)
            if existing is not None:
                template = template.model_copy(
                    update={"created_by": existing.created_by, "created_at": existing.created_at}
                )
            templates[template.template_id] = template.model_copy(deep=True)
            return template.model_copy(deep=True)

    def get_mapping_template(self, template_id: str) -> MappingTemplate:
        with self._db.lock:
            template = self._tables["templates"].get(template_id)
            if template is None or not template.is_active:
                raise TemplateNotFound(template_id)
            return template.model_copy(deep=True)

    def list_mapping_templates(self, product_id: str | None = None) -> list[MappingTemplate]:
        with self._db.lock:
            templates = [
                t for t in self._tables["templates"].values()
                if t.is_active and (product_id is None or t.product_id in (None, product_id))
            ]
            templates.sort(key=lambda t: t.template_name)
            templates.sort(key=lambda t: t.created_at, reverse=True)
            return [t.model_copy(deep=True) for t in templates]

    def deactivate_mapping_template(self, template_id: str, actor: str = "system") -> bool:
        with self._db.lock:
            template = self._tables["templates"].get(template_id)
            if template is None or not template.is_active:
                return False
            self._tables["templates"][template_id] = template.model_copy(
                update={"is_active": False, "updated_by": actor, "updated_at": utc_now()}
            )
            return True

    # -- claim records -------------------------------------------------

    def insert_claim_records(self, records: list[ClaimRecord]) -> int:
        with self.transaction() as tx:
            claims = tx._tables["claims"]
            taken = {(c.file_id, c.row_number) for c in claims.values()}
            for record in records:
                key = (record.file_id, record.row_number)
                if record.record_id in claims or key in taken:
                    raise ValueError(
                        f"Duplicate claim record {record.record_id} "
                        f"(file {record.file_id}, row {record.row_number})"
                    )
                taken.add(key)
                claims[record.record_id] = record.model_copy(deep=True)
            return len(records)

    def delete_claim_records(self, file_id: str) -> int:
        with self._db.lock:
            claims = self._tables["claims"]
            doomed = [rid for rid, c in claims.items() if c.file_id == file_id]
            for rid in doomed:
                del claims[rid]
            return len(doomed)

    def _filtered_claims(
        self,
        file_id: str,
        validation_status: str | None,
        processing_status: str | None,
        search: str | None,
    ) -> list[ClaimRecord]:
        records = [c for c in self._tables["claims"].values() if c.file_id == file_id]
        if validation_status:
            records = [c for c in records if c.validation_status.value == validation_status]
        if processing_status:
            records = [c for c in records if c.processing_status.value == processing_status]
        if search:
            records = [c for c in records if _matches_search(c, search)]
        return sorted(records, key=lambda c: c.row_number)

    def count_claim_records(
        self,
        file_id: str,
        validation_status: str | None = None,
        processing_status: str | None = None,
        search: str | None = None,
    ) -> int:
        with self._db.lock:
            return len(self._filtered_claims(file_id, validation_status, processing_status, search))

    def fetch_claim_records(
        self,
        file_id: str,
        offset: int,
        limit: int,
        validation_status: str | None = None,
        processing_status: str | None = None,
        search: str | None = None,
    ) -> list[ClaimRecord]:
        with self._db.lock:
            records = self._filtered_claims(file_id, validation_status, processing_status, search)
            return [c.model_copy(deep=True) for c in records[offset:offset + limit]]

    def merge_dynamic_fields(self, record_id: str, groups: dict[str, Any]) -> None:
        with self._db.lock:
            record = self._tables["claims"].get(record_id)
            if record is None:
                raise KeyError(f"Claim record not found: {record_id}")
            merged = {**record.dynamic_fields, **copy.deepcopy(groups)}
            self._tables["claims"][record_id] = record.model_copy(
                update={"dynamic_fields": merged, "updated_at": utc_now()}
            )

    def claim_status_counts(self, file_id: str) -> dict[str, dict[str, int]]:
        validation: dict[str, int] = {}
        processing: dict[str, int] = {}
        with self._db.lock:
            for record in self._tables["claims"].values():
                if record.file_id != file_id:
                    continue
                v = record.validation_status.value
                p = record.processing_status.value
                validation[v] = validation.get(v, 0) + 1
                processing[p] = processing.get(p, 0) + 1
        return {"validation": validation, "processing": processing}

    def dynamic_field_counts(self, file_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._db.lock:
            for record in self._tables["claims"].values():
                if record.file_id != file_id:
                    continue
                for group in record.dynamic_fields:
                    counts[group] = counts.get(group, 0) + 1
        return dict(sorted(counts.items()))

    # -- ingestion processing history ------------------------------------

    def create_processing(self, history: ProcessingHistory) -> ProcessingHistory:
        with self._db.lock:
            self._tables["processing"][history.processing_id] = history.model_copy(deep=True)
            return history

    def save_processing(self, history: ProcessingHistory) -> ProcessingHistory:
        with self._db.lock:
            if history.processing_id not in self._tables["processing"]:
                raise KeyError(f"Processing run not found: {history.processing_id}")
            self._tables["processing"][history.processing_id] = history.model_copy(deep=True)
            return history

    def get_latest_processing(self, file_id: str) -> ProcessingHistory | None:
        with self._db.lock:
            latest = None
            for history in self._tables["processing"].values():
                if history.file_id == file_id:
                    latest = history
            return latest.model_copy(deep=True) if latest else None

    # -- enrichment runs -----------------------------------------------

    def create_run(self, run: EnrichmentRun) -> EnrichmentRun:
        with self._db.lock:
            self._tables["runs"][run.run_id] = run.model_copy(deep=True)
            return run

    def save_run(self, run: EnrichmentRun) -> EnrichmentRun:
        with self._db.lock:
            if run.run_id not in self._tables["runs"]:
                raise RunNotFound(run.run_id)
            self._tables["runs"][run.run_id] = run.model_copy(deep=True)
            return run

    def get_run(self, run_id: str) -> EnrichmentRun:
        with self._db.lock:
            run = self._tables["runs"].get(run_id)
            if run is None:
                raise RunNotFound(run_id)
            return run.model_copy(deep=True)

    def get_latest_run(self, file_id: str) -> EnrichmentRun | None:
        with self._db.lock:
            latest = None
            for run in self._tables["runs"].values():
                if run.file_id == file_id:
                    latest = run
            return latest.model_copy(deep=True) if latest else None

    def insert_enrichment_failures(self, failures: list[EnrichmentFailure]) -> int:
        with self._db.lock:
            for failure in failures:
                self._tables["failures"].append(
                    failure.model_copy(update={"failure_id": self._next_id("failures")})
                )
            return len(failures)

    def list_enrichment_failures(self, run_id: str) -> list[EnrichmentFailure]:
        with self._db.lock:
            return [f.model_copy(deep=True) for f in self._tables["failures"] if f.run_id == run_id]

    # -- rule definitions ----------------------------------------------

    def load_rule_definitions(self, active_only: bool = True) -> list[RuleDefinition]:
        with self._db.lock:
            definitions = [
                d.model_copy(deep=True)
                for d in self._tables["rules"].values()
                if d.is_active or not active_only
            ]
        return sorted(definitions, key=lambda d: d.priority)

    def upsert_rule_definitions(self, definitions: list[RuleDefinition]) -> int:
        with self._db.lock:
            for definition in definitions:
                self._tables["rules"][definition.rule_id] = definition.model_copy(deep=True)
            return len(definitions)
