"""
Claims pipeline service.

Composition root for the pipeline. Wires the store, lifecycle, mapper,
rule registry, ingestor, enrichment runner and job supervisor together and
exposes the caller-facing operations:

    create_file -> begin_mapping / auto_map_file -> save_mapping or apply_mapping_template
    -> start_ingestion (background) -> start_enrichment (background)

Status queries always read the store, never the running job.
"""

import math
import uuid
from typing import Any, Callable

from claims_pipeline.config import PipelineSettings
from claims_pipeline.core.exceptions import (
    InvalidMapping,
    MappingNotFound,
    PreconditionFailed,
    TemplateNotFound,
)
from claims_pipeline.core.lifecycle import (
    FileLifecycle,
    can_process_file,
    is_file_available_for_mapping,
    is_file_processing_complete,
)
from claims_pipeline.core.mapping import FieldMapper
from claims_pipeline.core.models import (
    AutoMapResult,
    EnrichmentFailure,
    EnrichmentRun,
    EnrichmentStatus,
    FieldMapping,
    FileRecord,
    FileStatus,
    FileStatusHistory,
    MappingTemplate,
    ProcessingHistory,
    ProcessingStage,
)
from claims_pipeline.core.rules import RuleConfigLoader, RuleRegistry
from claims_pipeline.enrichment import EnrichmentRunner
from claims_pipeline.ingestion import BatchIngestor, RowSource
from claims_pipeline.jobs import CancellationToken, JobSupervisor
from claims_pipeline.observability.logger import get_logger
from claims_pipeline.utils.clock import utc_now
from claims_pipeline.warehouse.store import ClaimsStore

logger = get_logger(__name__)

INGESTION_JOB = "ingestion"
ENRICHMENT_JOB = "enrichment"
MAX_PAGE_SIZE = 1000

RowSourceFactory = Callable[[FileRecord], RowSource]

# Lifecycle steps save_mapping takes to reach (MAPPED, MAPPING_COMPLETE)
_TO_MAPPED = (FileStatus.MAPPED, ProcessingStage.MAPPING_COMPLETE)
_TO_MAPPING = (FileStatus.PROCESSING, ProcessingStage.MAPPING_IN_PROGRESS)
_MAPPING_STEPS = {
    (FileStatus.PENDING, ProcessingStage.READY_FOR_MAPPING): [_TO_MAPPING, _TO_MAPPED],
    (FileStatus.PROCESSING, ProcessingStage.MAPPING_IN_PROGRESS): [_TO_MAPPED],
    (FileStatus.MAPPED, ProcessingStage.MAPPING_COMPLETE): [],
    (FileStatus.ERROR, ProcessingStage.MAPPING_COMPLETE): [_TO_MAPPING, _TO_MAPPED],
}


class ClaimsPipelineService:
    """
    Caller-facing operations of the claims ingestion and enrichment pipeline.
    """

    def __init__(
        self,
        store: ClaimsStore,
        settings: PipelineSettings | None = None,
        registry: RuleRegistry | None = None,
        supervisor: JobSupervisor | None = None,
        row_source_factory: RowSourceFactory | None = None,
        processor_kwargs: dict[str, Any] | None = None,
    ):
        """
        Initialize the service.

        Args:
            store: Claims store
            settings: Pipeline settings (defaults apply when omitted)
            registry: Rule registry; built over rules_config or the store when omitted
            supervisor: Background job pool
            row_source_factory: Resolves a file to its rows when start_ingestion
                is called without an explicit row source
            processor_kwargs: Extra constructor arguments for built-in processors
        """
        self.settings = settings or PipelineSettings()
        self.store = store
        self.lifecycle = FileLifecycle(store)
        self.mapper = FieldMapper(self.settings.similarity_threshold)

        if registry is None:
            source = RuleConfigLoader(self.settings.rules_config) if self.settings.rules_config else store
            registry = RuleRegistry(source)
        self.registry = registry

        self.ingestor = BatchIngestor(store, self.lifecycle, self.settings.batch_size)
        self.runner = EnrichmentRunner(store, self.registry, self.lifecycle, self.settings.batch_size)
        self.supervisor = supervisor or JobSupervisor(self.settings.max_workers)
        self.row_source_factory = row_source_factory
        self.processor_kwargs = dict(processor_kwargs or {})

    # -- files ---------------------------------------------------------

    def create_file(
        self,
        original_filename: str,
        headers: list[str],
        row_count: int = 0,
        product_id: str | None = None,
        file_id: str | None = None,
        actor: str = "system",
    ) -> FileRecord:
        """Register an uploaded file in (PENDING, READY_FOR_MAPPING)."""
        file = self.store.create_file(
            FileRecord(
                file_id=file_id or str(uuid.uuid4()),
                original_filename=original_filename,
                product_id=product_id,
                row_count=row_count,
                original_headers=list(headers),
                updated_by=actor,
            )
        )
        logger.info(
            f"Registered file {file.file_id} ({original_filename}, {row_count} rows)",
            extra={"file_id": file.file_id},
        )
        return file

    def get_file(self, file_id: str) -> FileRecord:
        return self.store.get_file(file_id)

    def file_history(self, file_id: str) -> list[FileStatusHistory]:
        self.store.get_file(file_id)
        return self.store.list_status_history(file_id)

    def update_file_status(
        self,
        file_id: str,
        status: FileStatus | str,
        stage: ProcessingStage | str,
        actor: str = "system",
    ) -> FileRecord:
        """Manual lifecycle move; raises InvalidTransition when either edge is illegal."""
        return self.lifecycle.apply(file_id, FileStatus(status), ProcessingStage(stage), actor)

    # -- mapping -------------------------------------------------------

    def begin_mapping(self, file_id: str, actor: str = "system") -> FileRecord:
        file = self.store.get_file(file_id)
        if not is_file_available_for_mapping(file):
            raise PreconditionFailed(
                f"File {file_id} is {file.processing_stage.value}; mapping can not be started"
            )
        if file.processing_stage == ProcessingStage.MAPPING_IN_PROGRESS:
            return file
        return self.lifecycle.apply(
            file_id, FileStatus.PROCESSING, ProcessingStage.MAPPING_IN_PROGRESS, actor
        )

    def auto_map_file(self, file_id: str, threshold: float | None = None) -> AutoMapResult:
        """Propose a mapping for a file's original headers. Nothing is saved."""
        file = self.store.get_file(file_id)
        fields = self.store.list_standard_fields(file.product_id)
        variations = self.store.list_field_variations()
        return self.mapper.auto_map(file.original_headers, fields, variations, threshold)

    def save_mapping(self, file_id: str, columns: dict[str, str], actor: str = "system") -> FieldMapping:
        """
        Validate and store the active mapping of a file, then move it to MAPPED.

        Args:
            file_id: File to map
            columns: Source column -> canonical field name
            actor: Who saved the mapping

        Raises:
            InvalidMapping: Empty mapping, unknown column, unknown field or a field used twice
            PreconditionFailed: File is not in a state that accepts a mapping
        """
        file = self.store.get_file(file_id)
        self._validate_mapping(file, columns)

        with self.store.transaction() as tx:
            file = tx.get_file(file_id, for_update=True)
            steps = _MAPPING_STEPS.get((file.status, file.processing_stage))
            if steps is None:
                raise PreconditionFailed(
                    f"File {file_id} is {file.status.value}/{file.processing_stage.value}; "
                    f"a mapping can not be saved in this state"
                )
            mapping = tx.replace_active_mapping(file_id, columns, actor)
            for status, stage in steps:
                self.lifecycle.apply_within(tx, file_id, status, stage, actor)

        logger.info(
            f"Saved mapping {mapping.mapping_id} for file {file_id} ({len(columns)} columns)",
            extra={"file_id": file_id, "mapping_id": mapping.mapping_id},
        )
        return mapping

    def get_mapping(self, file_id: str) -> FieldMapping | None:
        return self.store.get_active_mapping(file_id)

    def _validate_mapping(self, file: FileRecord, columns: dict[str, str]) -> None:
        headers = set(file.original_headers)
        for column in columns:
            if headers and column not in headers:
                raise InvalidMapping(f"Column '{column}' is not a header of file {file.file_id}")
        self._validate_columns(columns, file.product_id)

    def _validate_columns(self, columns: dict[str, str], product_id: str | None) -> None:
        if not columns:
            raise InvalidMapping("Mapping must contain at least one column")

        known_fields = {f.field_name for f in self.store.list_standard_fields(product_id)}
        seen: dict[str, str] = {}
        for column, field_name in columns.items():
            if field_name not in known_fields:
                raise InvalidMapping(f"Unknown field '{field_name}' for column '{column}'")
            if field_name in seen:
                raise InvalidMapping(
                    f"Field '{field_name}' is mapped from both '{seen[field_name]}' and '{column}'"
                )
            seen[field_name] = column

    # -- mapping templates ---------------------------------------------

    def save_mapping_template(
        self,
        template_name: str,
        columns: dict[str, str],
        product_id: str | None = None,
        template_id: str | None = None,
        actor: str = "system",
    ) -> MappingTemplate:
        """
        Store a reusable mapping under a name.

        Args:
            template_name: Name shown when picking a template
            columns: Source column -> canonical field name
            product_id: Product whose catalog the fields must belong to
            template_id: Existing template to replace; a new one is created when omitted
            actor: Who saved the template

        Raises:
            InvalidMapping: Empty mapping, unknown field or a field used twice
            TemplateNotFound: template_id is given but no active template has it
        """
        self._validate_columns(columns, product_id)

        if template_id is None:
            template = MappingTemplate(
                template_id=str(uuid.uuid4()),
                template_name=template_name,
                product_id=product_id,
                columns=dict(columns),
                created_by=actor,
            )
        else:
            template = self.store.get_mapping_template(template_id).model_copy(
                update={
                    "template_name": template_name,
                    "product_id": product_id,
                    "columns": dict(columns),
                    "updated_by": actor,
                    "updated_at": utc_now(),
                }
            )

        template = self.store.save_mapping_template(template)
        logger.info(
            f"Saved mapping template {template.template_id} '{template_name}' ({len(columns)} columns)",
            extra={"template_id": template.template_id, "product_id": product_id},
        )
        return template

    def get_mapping_template(self, template_id: str) -> MappingTemplate:
        return self.store.get_mapping_template(template_id)

    def list_mapping_templates(self, product_id: str | None = None) -> list[MappingTemplate]:
        return self.store.list_mapping_templates(product_id)

    def delete_mapping_template(self, template_id: str, actor: str = "system") -> None:
        if not self.store.deactivate_mapping_template(template_id, actor):
            raise TemplateNotFound(template_id)
        logger.info(f"Deleted mapping template {template_id}", extra={"template_id": template_id})

    def apply_mapping_template(self, file_id: str, template_id: str, actor: str = "system") -> FieldMapping:
        """
        Save a file's mapping from a template.

        Template columns that are not headers of the file are left out; the
        rest keep the template's order.

        Raises:
            TemplateNotFound: No active template has this id
            PreconditionFailed: The template belongs to another product than the file
            InvalidMapping: None of the template's columns is a header of the file
        """
        file = self.store.get_file(file_id)
        template = self.store.get_mapping_template(template_id)
        if template.product_id and file.product_id and template.product_id != file.product_id:
            raise PreconditionFailed(
                f"Template {template_id} is for product {template.product_id}, "
                f"file {file_id} is for product {file.product_id}"
            )

        headers = set(file.original_headers)
        columns = {c: name for c, name in template.columns.items() if not headers or c in headers}
        if not columns:
            raise InvalidMapping(
                f"Template '{template.template_name}' matches none of the headers of file {file_id}"
            )
        return self.save_mapping(file_id, columns, actor)

    # -- ingestion -----------------------------------------------------

    def start_ingestion(
        self,
        file_id: str,
        rows: RowSource | None = None,
        actor: str = "system",
    ) -> str:
        """
        Start background ingestion of a mapped file.

        Args:
            file_id: File to ingest
            rows: Row source; resolved through row_source_factory when omitted
            actor: Who started the ingestion

        Returns:
            processing_id of the new processing run

        Raises:
            PreconditionFailed: File is not (MAPPED, MAPPING_COMPLETE), an ingestion
                is already active, or no row source is available
            MappingNotFound: The file has no active mapping
        """
        file = self.store.get_file(file_id)
        if not can_process_file(file):
            raise PreconditionFailed(
                f"File {file_id} is {file.status.value}/{file.processing_stage.value}; "
                f"ingestion requires MAPPED/MAPPING_COMPLETE"
            )
        if self.store.has_active_processing(file_id) or self.supervisor.is_running(INGESTION_JOB, file_id):
            raise PreconditionFailed(f"An ingestion is already active for file {file_id}")

        mapping = self.store.get_active_mapping(file_id)
        if mapping is None:
            raise MappingNotFound(file_id)

        if rows is None:
            if self.row_source_factory is None:
                raise PreconditionFailed(f"No row source available for file {file_id}")
            rows = self.row_source_factory(file)
        total_rows = len(rows)

        with self.store.transaction() as tx:
            history = tx.create_processing(
                ProcessingHistory(
                    processing_id=str(uuid.uuid4()),
                    file_id=file_id,
                    total_rows=total_rows,
                    created_by=actor,
                )
            )
            self.lifecycle.apply_within(
                tx, file_id, FileStatus.PROCESSING_CLAIMS, ProcessingStage.CLAIMS_PROCESSING, actor
            )

        token = CancellationToken()
        try:
            self.supervisor.submit(
                INGESTION_JOB,
                file_id,
                self.ingestor.ingest,
                history,
                rows,
                mapping.columns,
                total_rows=total_rows,
                cancel_token=token,
                token=token,
            )
        except PreconditionFailed as e:
            self.ingestor.fail(history, e)
            raise

        logger.info(
            f"Started ingestion {history.processing_id} for file {file_id} ({total_rows} rows)",
            extra={"file_id": file_id, "processing_id": history.processing_id},
        )
        return history.processing_id

    def ingestion_status(self, file_id: str) -> dict[str, Any]:
        self.store.get_file(file_id)
        history = self.store.get_latest_processing(file_id)
        if history is None:
            return {
                "file_id": file_id,
                "status": "NOT_STARTED",
                "processed_rows": 0,
                "total_rows": 0,
                "percent_complete": 0.0,
            }
        return {
            "file_id": file_id,
            "processing_id": history.processing_id,
            "status": history.status.value,
            "processed_rows": history.processed_rows,
            "total_rows": history.total_rows,
            "percent_complete": history.percent_complete,
            "started_at": history.started_at,
            "completed_at": history.completed_at,
            "error_details": history.error_details,
        }

    def cancel_ingestion(self, file_id: str, reason: str = "cancelled by request") -> bool:
        return self.supervisor.cancel(INGESTION_JOB, file_id, reason)

    # -- enrichment ----------------------------------------------------

    def initialize_rules(self, **processor_kwargs: Any) -> None:
        """Load rule definitions and build the built-in processors for them."""
        self.registry.load_definitions()
        self.registry.register_default_processors(**{**self.processor_kwargs, **processor_kwargs})

    def start_enrichment(self, file_id: str, actor: str = "system") -> str:
        """
        Start a background enrichment run over every claim record of a file.

        Returns:
            run_id of the new enrichment run

        Raises:
            PreconditionFailed: No claim records, ingestion not finished,
                or an enrichment run is already active
            MappingNotFound: The file has no active mapping
        """
        file = self.store.get_file(file_id)
        total_records = self.store.count_claim_records(file_id)
        if total_records == 0:
            raise PreconditionFailed(f"File {file_id} has no claim records to enrich")
        if not is_file_processing_complete(file):
            raise PreconditionFailed(
                f"File {file_id} is {file.status.value}; enrichment requires a processed file"
            )
        if self.store.get_active_mapping(file_id) is None:
            raise MappingNotFound(file_id)
        if self.store.has_active_run(file_id) or self.supervisor.is_running(ENRICHMENT_JOB, file_id):
            raise PreconditionFailed(f"An enrichment run is already active for file {file_id}")

        if not self.registry.initialized:
            self.initialize_rules()

        run = self.store.create_run(
            EnrichmentRun(
                run_id=str(uuid.uuid4()),
                file_id=file_id,
                total_records=total_records,
                created_by=actor,
            )
        )

        token = CancellationToken()
        try:
            self.supervisor.submit(
                ENRICHMENT_JOB,
                file_id,
                self.runner.run,
                run.run_id,
                cancel_token=token,
                token=token,
            )
        except PreconditionFailed as e:
            self.runner.abort(run.run_id, e, e)
            raise

        logger.info(
            f"Started enrichment run {run.run_id} for file {file_id} ({total_records} records)",
            extra={"file_id": file_id, "run_id": run.run_id},
        )
        return run.run_id

    def enrichment_status(self, file_id: str) -> dict[str, Any]:
        self.store.get_file(file_id)
        run = self.store.get_latest_run(file_id)
        if run is None:
            return {
                "file_id": file_id,
                "status": "NOT_STARTED",
                "total_records": 0,
                "enriched_records": 0,
                "failed_records": 0,
                "percent_complete": 0.0,
                "rule_stats": [],
            }
        return {
            "file_id": file_id,
            "run_id": run.run_id,
            "status": run.status.value,
            "total_records": run.total_records,
            "enriched_records": run.enriched_records,
            "failed_records": run.failed_records,
            "percent_complete": run.percent_complete,
            "started_at": run.started_at,
            "completed_at": run.completed_at,
            "rule_stats": [s.model_dump() for s in run.rule_stats()],
            "enriched_fields": self.store.dynamic_field_counts(file_id),
            "error_details": run.error_details if run.status == EnrichmentStatus.ERROR else None,
        }

    def cancel_enrichment(self, file_id: str, reason: str = "cancelled by request") -> bool:
        return self.supervisor.cancel(ENRICHMENT_JOB, file_id, reason)

    def enrichment_failures(self, run_id: str) -> list[EnrichmentFailure]:
        self.store.get_run(run_id)
        return self.store.list_enrichment_failures(run_id)

    def validate_enrichment(self, file_id: str) -> dict[str, Any]:
        """
        Report which active rules can run against a file's current mapping.

        Returns:
            {"file_id", "has_mapping", "can_enrich", "rules": [{rule_id, name,
            can_run, missing_fields, conflicting_fields}, ...]}
        """
        self.store.get_file(file_id)
        mapping = self.store.get_active_mapping(file_id)
        mapped = mapping.mapped_field_names() if mapping else []

        if not self.registry.initialized:
            self.initialize_rules()

        rules = []
        for processor in self.registry.active_processors():
            check = processor.check_mapping(mapped)
            rules.append({"rule_id": processor.rule_id, "name": processor.name, **check})

        return {
            "file_id": file_id,
            "has_mapping": mapping is not None,
            "can_enrich": mapping is not None and any(r["can_run"] for r in rules),
            "rules": rules,
        }

    # -- claims browsing -----------------------------------------------

    def list_claims(
        self,
        file_id: str,
        page: int = 1,
        limit: int = 50,
        validation_status: str | None = None,
        processing_status: str | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        """
        One page of a file's claim records in row order.

        Returns:
            {"records": [ClaimRecord], "pagination": {current_page, total_pages,
            total_records, page_size, has_next, has_previous}}
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be within [1, {MAX_PAGE_SIZE}], got {limit}")

        self.store.get_file(file_id)
        filters = {
            "validation_status": validation_status,
            "processing_status": processing_status,
            "search": search,
        }
        total = self.store.count_claim_records(file_id, **filters)
        records = self.store.fetch_claim_records(file_id, (page - 1) * limit, limit, **filters)
        total_pages = math.ceil(total / limit) if total else 0

        return {
            "records": records,
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_records": total,
                "page_size": limit,
                "has_next": page < total_pages,
                "has_previous": page > 1,
            },
        }

    def claims_summary(self, file_id: str) -> dict[str, Any]:
        self.store.get_file(file_id)
        counts = self.store.claim_status_counts(file_id)
        return {
            "file_id": file_id,
            "total_records": self.store.count_claim_records(file_id),
            "validation": counts["validation"],
            "processing": counts["processing"],
            "enriched_fields": self.store.dynamic_field_counts(file_id),
        }

    # -- lifecycle of the service itself ---------------------------------

    def wait(self, timeout: float | None = None) -> None:
        """Block until every submitted background job has finished."""
        self.supervisor.wait_all(timeout)

    def close(self, wait_for_jobs: bool = True) -> None:
        self.supervisor.shutdown(wait_for_jobs)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
