"""
Persistence contract for the claims pipeline.

A ClaimsStore is used two ways. Called directly, every method runs in its
own short transaction. Inside ``with store.transaction() as tx`` the yielded
view binds every call to one transaction that commits on normal exit and
rolls back when the block raises.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator

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


class ClaimsStore(ABC):
    """Abstract claims store."""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator["ClaimsStore"]:
        """Yield a store view bound to a single transaction."""

    # -- files ---------------------------------------------------------

    @abstractmethod
    def create_file(self, file: FileRecord) -> FileRecord:
        ...

    @abstractmethod
    def get_file(self, file_id: str, for_update: bool = False) -> FileRecord:
        """
        Fetch a file.

        Args:
            file_id: File identifier
            for_update: Lock the row until the surrounding transaction ends

        Raises:
            FileNotFound: If no such file exists
        """

    @abstractmethod
    def update_file_state(
        self,
        file_id: str,
        status: FileStatus,
        stage: ProcessingStage,
        actor: str,
    ) -> FileRecord:
        ...

    @abstractmethod
    def append_status_history(self, entry: FileStatusHistory) -> FileStatusHistory:
        ...

    @abstractmethod
    def list_status_history(self, file_id: str) -> list[FileStatusHistory]:
        """History entries of a file, oldest first."""

    # -- field catalog -------------------------------------------------

    @abstractmethod
    def upsert_standard_fields(self, fields: list[StandardField]) -> int:
        ...

    @abstractmethod
    def list_standard_fields(self, product_id: str | None = None) -> list[StandardField]:
        """Active catalog fields in display order."""

    @abstractmethod
    def upsert_field_variations(self, variations: list[FieldVariation]) -> int:
        ...

    @abstractmethod
    def list_field_variations(self) -> list[FieldVariation]:
        ...

    # -- mappings ------------------------------------------------------

    @abstractmethod
    def replace_active_mapping(
        self, file_id: str, columns: dict[str, str], actor: str = "system"
    ) -> FieldMapping:
        """Deactivate the current mapping of a file and store a new active one."""

    @abstractmethod
    def get_active_mapping(self, file_id: str) -> FieldMapping | None:
        ...

    # -- mapping templates ---------------------------------------------

    @abstractmethod
    def save_mapping_template(self, template: MappingTemplate) -> MappingTemplate:
        """Insert a template, or replace the name, product and columns of an existing one."""

    @abstractmethod
    def get_mapping_template(self, template_id: str) -> MappingTemplate:
        """
        Raises:
            TemplateNotFound: If no active template has this id
        """

    @abstractmethod
    def list_mapping_templates(self, product_id: str | None = None) -> list[MappingTemplate]:
        """Active templates, newest first; given a product_id, that product's templates plus shared ones."""

    @abstractmethod
    def deactivate_mapping_template(self, template_id: str, actor: str = "system") -> bool:
        """Soft-delete a template. Returns False if no active template has this id."""

    # -- claim records -------------------------------------------------

    @abstractmethod
    def insert_claim_records(self, records: list[ClaimRecord]) -> int:
        ...

    @abstractmethod
    def delete_claim_records(self, file_id: str) -> int:
        ...

    @abstractmethod
    def count_claim_records(
        self,
        file_id: str,
        validation_status: str | None = None,
        processing_status: str | None = None,
        search: str | None = None,
    ) -> int:
        ...

    @abstractmethod
    def fetch_claim_records(
        self,
        file_id: str,
        offset: int,
        limit: int,
        validation_status: str | None = None,
        processing_status: str | None = None,
        search: str | None = None,
    ) -> list[ClaimRecord]:
        """A page of records in ascending row_number order."""

    @abstractmethod
    def merge_dynamic_fields(self, record_id: str, groups: dict[str, Any]) -> None:
        """Merge field groups into a record's dynamic fields by group key."""

    @abstractmethod
    def claim_status_counts(self, file_id: str) -> dict[str, dict[str, int]]:
        """Counts per validation status and per processing status."""

    @abstractmethod
    def dynamic_field_counts(self, file_id: str) -> dict[str, int]:
        """Number of records carrying each dynamic field group."""

    # -- ingestion processing history ------------------------------------

    @abstractmethod
    def create_processing(self, history: ProcessingHistory) -> ProcessingHistory:
        ...

    @abstractmethod
    def save_processing(self, history: ProcessingHistory) -> ProcessingHistory:
        ...

    @abstractmethod
    def get_latest_processing(self, file_id: str) -> ProcessingHistory | None:
        ...

    def has_active_processing(self, file_id: str) -> bool:
        latest = self.get_latest_processing(file_id)
        return latest is not None and latest.status.is_active

    # -- enrichment runs -----------------------------------------------

    @abstractmethod
    def create_run(self, run: EnrichmentRun) -> EnrichmentRun:
        ...

    @abstractmethod
    def save_run(self, run: EnrichmentRun) -> EnrichmentRun:
        ...

    @abstractmethod
    def get_run(self, run_id: str) -> EnrichmentRun:
        """
        Raises:
            RunNotFound: If no such run exists
        """

    @abstractmethod
    def get_latest_run(self, file_id: str) -> EnrichmentRun | None:
        ...

    def has_active_run(self, file_id: str) -> bool:
        latest = self.get_latest_run(file_id)
        return latest is not None and not latest.status.is_terminal

    @abstractmethod
    def insert_enrichment_failures(self, failures: list[EnrichmentFailure]) -> int:
        ...

    @abstractmethod
    def list_enrichment_failures(self, run_id: str) -> list[EnrichmentFailure]:
        ...

    # -- rule definitions ----------------------------------------------

    @abstractmethod
    def load_rule_definitions(self, active_only: bool = True) -> list[RuleDefinition]:
        """Rule definitions ordered by ascending priority."""

    @abstractmethod
    def upsert_rule_definitions(self, definitions: list[RuleDefinition]) -> int:
        ...
