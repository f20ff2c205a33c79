"""
Batch ingestion of mapped spreadsheet rows into claim records.

Flow per run: mark the processing run PROCESSING -> write rows in
fixed-size batches (one transaction each, progress saved with the batch)
-> mark COMPLETED and move the file to PROCESSED. The first failed batch
stops the run: the batch rolls back, earlier batches stay, the run and
the file go to ERROR.
"""

import uuid
from itertools import islice
from typing import Any, Iterable, Iterator, Mapping

from claims_pipeline.core.exceptions import BatchFailure
from claims_pipeline.core.lifecycle import FileLifecycle
from claims_pipeline.core.models import (
    ClaimProcessingStatus,
    ClaimRecord,
    ClaimValidationStatus,
    FileStatus,
    ProcessingHistory,
    ProcessingStage,
    ProcessingStatus,
)
from claims_pipeline.core.models.field_value import coerce_field_value
from claims_pipeline.jobs.cancellation import CancellationToken
from claims_pipeline.observability.logger import get_logger, log_operation
from claims_pipeline.observability.metrics import job_duration_seconds, record_batch, track_duration
from claims_pipeline.utils.clock import utc_now
from claims_pipeline.warehouse.store import ClaimsStore

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100


def chunked(rows: Iterable[Mapping[str, Any]], size: int) -> Iterator[list[Mapping[str, Any]]]:
    iterator = iter(rows)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


def transform_row(
    file_id: str,
    row: Mapping[str, Any],
    mapping: Mapping[str, str],
    row_number: int,
) -> ClaimRecord:
    """
    Split one source row into mapped and unmapped fields.

    Columns named in the mapping land in mapped_fields under their canonical
    field name; every other column lands in unmapped_fields under its own name.
    """
    mapped_fields: dict[str, Any] = {}
    unmapped_fields: dict[str, Any] = {}

    for column, value in row.items():
        target = mapping.get(column)
        if target is not None:
            mapped_fields[target] = coerce_field_value(value)
        else:
            unmapped_fields[column] = coerce_field_value(value)

    return ClaimRecord(
        record_id=str(uuid.uuid4()),
        file_id=file_id,
        row_number=row_number,
        mapped_fields=mapped_fields,
        unmapped_fields=unmapped_fields,
        validation_status=ClaimValidationStatus.PENDING_VALIDATION,
        processing_status=ClaimProcessingStatus.PROCESSED,
    )


class BatchIngestor:
    """
    Persists claim records from a row source in transactional batches.
    """

    def __init__(
        self,
        store: ClaimsStore,
        lifecycle: FileLifecycle,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """
        Initialize the ingestor.

        Args:
            store: Claims store
            lifecycle: File lifecycle used for the final PROCESSED / ERROR move
            batch_size: Rows per transaction
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.store = store
        self.lifecycle = lifecycle
        self.batch_size = batch_size

    def ingest(
        self,
        history: ProcessingHistory,
        rows: Iterable[Mapping[str, Any]],
        mapping: Mapping[str, str],
        total_rows: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ProcessingHistory:
        """
        Ingest every row of a source for the file owning ``history``.

        Args:
            history: The PENDING processing run created by start_ingestion
            rows: Ordered rows (column name -> raw value)
            mapping: Source column -> canonical field name
            total_rows: Row count known up front (defaults to len(rows))
            cancel_token: Checked before each batch

        Returns:
            The COMPLETED processing run

        Raises:
            BatchFailure: A batch failed to commit; the file is now ERROR
            JobCancelled: The token was set; the file is now ERROR
        """
        file_id = history.file_id
        if total_rows is None:
            total_rows = len(rows)  # type: ignore[arg-type]

        with log_operation(
            "Claims ingestion", logger=logger, file_id=file_id, processing_id=history.processing_id
        ), track_duration(job_duration_seconds, job="ingestion"):
            try:
                history = self.store.save_processing(
                    history.model_copy(
                        update={"status": ProcessingStatus.PROCESSING, "total_rows": total_rows}
                    )
                )
                history = self._write_batches(history, rows, mapping, cancel_token)
            except Exception as e:
                self.fail(history, e)
                raise

            history = self.store.save_processing(
                history.model_copy(
                    update={"status": ProcessingStatus.COMPLETED, "completed_at": utc_now()}
                )
            )
            self.lifecycle.apply(file_id, FileStatus.PROCESSED, ProcessingStage.CLAIMS_PROCESSED)
            logger.info(
                f"Ingested {history.processed_rows} rows for file {file_id}",
                extra={"file_id": file_id, "processed_rows": history.processed_rows},
            )
            return history

    def _write_batches(
        self,
        history: ProcessingHistory,
        rows: Iterable[Mapping[str, Any]],
        mapping: Mapping[str, str],
        cancel_token: CancellationToken | None,
    ) -> ProcessingHistory:
        file_id = history.file_id

        removed = self.store.delete_claim_records(file_id)
        if removed:
            logger.warning(f"Removed {removed} claim records left by an earlier ingestion of {file_id}")

        offset = 0
        for batch in chunked(rows, self.batch_size):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            records = [
                transform_row(file_id, row, mapping, offset + idx + 1)
                for idx, row in enumerate(batch)
            ]
            processed = offset + len(records)
            progress = history.model_copy(
                update={
                    "processed_rows": processed,
                    "total_rows": max(history.total_rows, processed),
                }
            )

            try:
                with self.store.transaction() as tx:
                    tx.insert_claim_records(records)
                    tx.save_processing(progress)
            except Exception as e:
                record_batch("ingestion", committed=False, row_count=len(records))
                logger.error(
                    f"Ingestion batch at offset {offset} rolled back for file {file_id}: {e}",
                    extra={"file_id": file_id, "offset": offset, "batch_rows": len(records)},
                )
                raise BatchFailure("ingestion", offset, e) from e

            record_batch("ingestion", committed=True, row_count=len(records))
            logger.debug(f"Committed ingestion batch {offset}-{processed} for file {file_id}")
            history = progress
            offset = processed

        return history

    def fail(self, history: ProcessingHistory, error: Exception) -> None:
        """Record a processing run as ERROR and move its file to ERROR/MAPPING_COMPLETE."""
        details: dict[str, Any] = {"type": type(error).__name__}
        if isinstance(error, BatchFailure):
            details.update({"offset": error.offset, "cause": repr(error.cause)})
        else:
            details["cause"] = repr(error)

        try:
            # progress committed by earlier batches lives in the store, not in our copy
            stored = self.store.get_latest_processing(history.file_id)
            if stored is not None and stored.processing_id == history.processing_id:
                history = stored

            failed = history.model_copy(
                update={
                    "status": ProcessingStatus.ERROR,
                    "completed_at": utc_now(),
                    "error_details": {
                        "message": str(error),
                        "timestamp": utc_now().isoformat(),
                        "details": details,
                    },
                }
            )
            self.store.save_processing(failed)
            self.lifecycle.apply(history.file_id, FileStatus.ERROR, ProcessingStage.MAPPING_COMPLETE)
        except Exception as e:
            logger.error(
                f"Could not record ingestion failure for file {history.file_id}: {e}",
                exc_info=True,
            )
