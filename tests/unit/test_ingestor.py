"""
Unit tests for batch ingestion and row sources.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from claims_pipeline.core.exceptions import BatchFailure
from claims_pipeline.core.lifecycle import FileLifecycle
from claims_pipeline.core.models import (
    FileRecord,
    FileStatus,
    ProcessingHistory,
    ProcessingStage,
    ProcessingStatus,
)
from claims_pipeline.ingestion import BatchIngestor, CSVRowSource, ListRowSource, transform_row
from claims_pipeline.jobs import CancellationToken, JobCancelled
from claims_pipeline.warehouse.memory_store import InMemoryClaimsStore

MAPPING = {"DOB": "member_dob", "Fill Date": "fill_date", "DS": "days_supply"}


class FailingStore(InMemoryClaimsStore):
    """Store whose inserts fail once a batch reaches a given row number."""

    fail_from_row = 5

    def insert_claim_records(self, records):
        if any(r.row_number >= self.fail_from_row for r in records):
            raise RuntimeError("disk full")
        return super().insert_claim_records(records)


def make_rows(count):
    return [
        {"DOB": "1960-01-01", "Fill Date": "2024-01-31", "DS": str(10 * (i + 1)), "Notes": f"row {i + 1}"}
        for i in range(count)
    ]


def start_run(store, file_id="file-1"):
    """Register a file already moved to CLAIMS_PROCESSING, plus its PENDING run."""
    store.create_file(
        FileRecord(
            file_id=file_id,
            status=FileStatus.PROCESSING_CLAIMS,
            processing_stage=ProcessingStage.CLAIMS_PROCESSING,
        )
    )
    return store.create_processing(ProcessingHistory(processing_id=f"proc-{file_id}", file_id=file_id))


@pytest.mark.unit
class TestTransformRow:
    """Tests for transform_row"""

    def test_splits_mapped_and_unmapped(self):
        record = transform_row(
            "file-1",
            {"DOB": "1960-01-01", "Notes": "n/a", "DS": "30", "Fill Date": None},
            MAPPING,
            7,
        )

        assert record.row_number == 7
        assert record.mapped_fields == {"member_dob": "1960-01-01", "days_supply": "30", "fill_date": None}
        assert list(record.mapped_fields) == ["member_dob", "days_supply", "fill_date"]
        assert record.unmapped_fields == {"Notes": "n/a"}
        assert record.processing_status.value == "PROCESSED"
        assert record.validation_status.value == "PENDING_VALIDATION"


@pytest.mark.unit
class TestBatchIngestor:
    """Tests for BatchIngestor"""

    def test_ingests_all_rows_in_order(self, memory_store):
        history = start_run(memory_store)
        ingestor = BatchIngestor(memory_store, FileLifecycle(memory_store), batch_size=2)

        result = ingestor.ingest(history, ListRowSource(make_rows(5)), MAPPING)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.processed_rows == 5
        assert result.total_rows == 5
        assert result.completed_at is not None

        records = memory_store.fetch_claim_records("file-1", 0, 100)
        assert [r.row_number for r in records] == [1, 2, 3, 4, 5]
        assert records[2].mapped_fields["days_supply"] == "30"
        assert records[2].unmapped_fields == {"Notes": "row 3"}

        file = memory_store.get_file("file-1")
        assert file.status == FileStatus.PROCESSED
        assert file.processing_stage == ProcessingStage.CLAIMS_PROCESSED

    def test_progress_is_visible_per_batch(self, recording_store):
        history = start_run(recording_store)
        ingestor = BatchIngestor(recording_store, FileLifecycle(recording_store), batch_size=2)

        ingestor.ingest(history, ListRowSource(make_rows(5)), MAPPING)

        saves = recording_store.saved
        assert [s.processed_rows for s in saves] == [0, 2, 4, 5, 5]
        assert [s.status for s in saves][-1] == ProcessingStatus.COMPLETED
        assert all(s.status == ProcessingStatus.PROCESSING for s in saves[:-1])
        assert all(s.processed_rows <= s.total_rows == 5 for s in saves)

    def test_empty_source_completes(self, memory_store):
        history = start_run(memory_store)
        ingestor = BatchIngestor(memory_store, FileLifecycle(memory_store))

        result = ingestor.ingest(history, [], MAPPING)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.processed_rows == 0
        assert memory_store.count_claim_records("file-1") == 0

    def test_batch_failure_keeps_earlier_batches(self):
        store = FailingStore()
        history = start_run(store)
        ingestor = BatchIngestor(store, FileLifecycle(store), batch_size=2)

        with pytest.raises(BatchFailure) as exc_info:
            ingestor.ingest(history, make_rows(6), MAPPING)

        assert exc_info.value.offset == 4
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert store.count_claim_records("file-1") == 4

        stored = store.get_latest_processing("file-1")
        assert stored.status == ProcessingStatus.ERROR
        assert stored.processed_rows == 4
        assert stored.error_details["details"]["offset"] == 4
        assert "disk full" in stored.error_details["message"]

        file = store.get_file("file-1")
        assert file.status == FileStatus.ERROR
        assert file.processing_stage == ProcessingStage.MAPPING_COMPLETE

    def test_cancelled_before_first_batch(self, memory_store):
        history = start_run(memory_store)
        token = CancellationToken()
        token.cancel("operator stop")
        ingestor = BatchIngestor(memory_store, FileLifecycle(memory_store), batch_size=2)

        with pytest.raises(JobCancelled):
            ingestor.ingest(history, make_rows(3), MAPPING, cancel_token=token)

        assert memory_store.count_claim_records("file-1") == 0
        assert memory_store.get_latest_processing("file-1").status == ProcessingStatus.ERROR
        assert memory_store.get_file("file-1").status == FileStatus.ERROR

    def test_reingestion_replaces_old_records(self, memory_store):
        history = start_run(memory_store)
        stale = transform_row("file-1", {"DOB": "1900-01-01"}, MAPPING, 1)
        memory_store.insert_claim_records([stale])
        ingestor = BatchIngestor(memory_store, FileLifecycle(memory_store), batch_size=10)

        ingestor.ingest(history, make_rows(2), MAPPING)

        records = memory_store.fetch_claim_records("file-1", 0, 10)
        assert [r.row_number for r in records] == [1, 2]
        assert stale.record_id not in {r.record_id for r in records}

    def test_invalid_batch_size(self, memory_store):
        with pytest.raises(ValueError):
            BatchIngestor(memory_store, FileLifecycle(memory_store), batch_size=0)

    @settings(max_examples=25, deadline=None)
    @given(st.integers(min_value=0, max_value=23), st.integers(min_value=1, max_value=7))
    def test_property_rows_become_contiguous_records(self, row_count, batch_size):
        """Property test: N rows always yield records numbered 1..N"""
        store = InMemoryClaimsStore()
        history = start_run(store)
        ingestor = BatchIngestor(store, FileLifecycle(store), batch_size=batch_size)

        result = ingestor.ingest(history, make_rows(row_count), MAPPING)

        records = store.fetch_claim_records("file-1", 0, 100)
        assert [r.row_number for r in records] == list(range(1, row_count + 1))
        assert result.processed_rows == row_count


@pytest.mark.unit
class TestRowSources:
    """Tests for ListRowSource and CSVRowSource"""

    def test_list_source_headers_in_first_seen_order(self):
        source = ListRowSource([{"a": 1, "b": 2}, {"b": 3, "c": 4}])

        assert source.headers == ["a", "b", "c"]
        assert len(source) == 2
        assert list(source) == list(source)

    def test_csv_source(self, tmp_path):
        path = tmp_path / "claims.csv"
        path.write_text(
            "\ufeffDOB,Fill Date,DS,Notes\n"
            "1960-01-01,2024-01-31,30,\n"
            ",,,\n"
            "1970-05-05,2024-02-01,90,late refill\n"
            "1980-02-02,2024-02-02\n",
            encoding="utf-8",
        )

        source = CSVRowSource(path)
        rows = list(source)

        assert source.headers == ["DOB", "Fill Date", "DS", "Notes"]
        assert source.row_count == 3
        assert len(rows) == 3
        assert rows[0] == {"DOB": "1960-01-01", "Fill Date": "2024-01-31", "DS": "30", "Notes": None}
        assert rows[1]["Notes"] == "late refill"
        assert rows[2]["DS"] is None

    def test_csv_source_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CSVRowSource(tmp_path / "missing.csv")

    def test_csv_source_feeds_ingestor(self, tmp_path, memory_store):
        path = tmp_path / "claims.csv"
        path.write_text("DOB,Fill Date,DS\n1960-01-01,2024-01-31,30\n1961-01-01,2024-01-31,60\n")
        history = start_run(memory_store)
        source = CSVRowSource(path)

        BatchIngestor(memory_store, FileLifecycle(memory_store), batch_size=1).ingest(
            history, source, MAPPING, total_rows=source.row_count
        )

        records = memory_store.fetch_claim_records("file-1", 0, 10)
        assert [r.mapped_fields["days_supply"] for r in records] == ["30", "60"]
