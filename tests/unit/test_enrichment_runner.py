"""
Unit tests for the enrichment runner.
"""

import pytest

from claims_pipeline.core.exceptions import RunAbort
from claims_pipeline.core.lifecycle import FileLifecycle
from claims_pipeline.core.models import (
    EnrichmentRun,
    EnrichmentStatus,
    FileRecord,
    FileStatus,
    ProcessingStage,
)
from claims_pipeline.core.rules import ChannelRuleProcessor, RuleRegistry
from claims_pipeline.enrichment import EnrichmentRunner
from claims_pipeline.jobs import CancellationToken
from claims_pipeline.observability.metrics import REGISTRY
from claims_pipeline.warehouse.memory_store import InMemoryClaimsStore

from conftest import FIXED_TODAY, build_catalog, build_rule_definitions, make_claim

SKIP_MESSAGE = 'Validation failed: required fields for rule "Age Classification Rule" not available'


class FailingMergeStore(InMemoryClaimsStore):
    """Store that refuses to merge dynamic fields into one record."""

    poisoned_record = "file-1-rec-1"

    def merge_dynamic_fields(self, record_id, groups):
        if record_id == self.poisoned_record:
            raise RuntimeError("deadlock detected")
        return super().merge_dynamic_fields(record_id, groups)


def seed(store):
    fields, variations = build_catalog()
    store.upsert_standard_fields(fields)
    store.upsert_field_variations(variations)
    store.upsert_rule_definitions(build_rule_definitions())
    return store


def prepare(store, records, total_records=None, run_id="run-1"):
    """Register a processed file holding records, plus a PENDING run over it."""
    store.create_file(
        FileRecord(
            file_id="file-1",
            status=FileStatus.PROCESSED,
            processing_stage=ProcessingStage.CLAIMS_PROCESSED,
        )
    )
    store.insert_claim_records(records)
    total = len(records) if total_records is None else total_records
    return store.create_run(EnrichmentRun(run_id=run_id, file_id="file-1", total_records=total))


def build_registry(store, register_defaults=True):
    registry = RuleRegistry(store)
    registry.load_definitions()
    if register_defaults:
        registry.register_default_processors(today=lambda: FIXED_TODAY)
    return registry


def build_runner(store, registry=None, batch_size=2):
    registry = registry or build_registry(store)
    return EnrichmentRunner(store, registry, FileLifecycle(store), batch_size=batch_size)


def mixed_records():
    return [
        make_claim(1, member_dob="1958-04-12", fill_date="2024-01-31", days_supply=90),
        make_claim(2, member_dob="1990-01-01", days_supply="20"),
        make_claim(3, member_dob="not a date", fill_date="2024-01-01", days_supply="x"),
        make_claim(4),
    ]


def complete_records(count):
    return [
        make_claim(i, member_dob="1970-01-01", fill_date="2024-01-31", days_supply=30)
        for i in range(1, count + 1)
    ]


def rule_metric(rule_id, outcome):
    value = REGISTRY.get_sample_value(
        "claims_rule_applications_total", {"rule_id": rule_id, "outcome": outcome}
    )
    return value or 0.0


@pytest.mark.unit
class TestEnrichmentRunner:
    """Tests for EnrichmentRunner.run"""

    def test_mixed_records(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, mixed_records())

        run = build_runner(store).run("run-1")

        assert run.status == EnrichmentStatus.COMPLETED
        assert run.total_records == 4
        assert run.enriched_records == 2
        assert run.failed_records == 2
        assert run.enriched_records + run.failed_records <= run.total_records
        assert run.completed_at is not None

        records = store.fetch_claim_records("file-1", 0, 10)
        assert records[0].dynamic_fields == {
            "ageEnrichment": {
                "currentAge": 66,
                "ageAtFillDate": 65,
                "isUnder65AtFillDate": False,
                "isUnder65AtCurrentDate": False,
            },
            "channelEnrichment": {"channel_indicator": "Mail", "derived_from_days_supply": 90},
        }
        assert records[1].dynamic_fields == {
            "channelEnrichment": {"channel_indicator": "Retail", "derived_from_days_supply": 20}
        }
        assert records[2].dynamic_fields == {}
        assert records[3].dynamic_fields == {}

        stats = {s.rule_id: s for s in store.get_run("run-1").rule_stats()}
        assert (stats["age_classification"].attempted, stats["age_classification"].succeeded) == (4, 1)
        assert (stats["channel_classification"].attempted, stats["channel_classification"].succeeded) == (4, 2)

    def test_failures_are_audited(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, mixed_records())

        build_runner(store).run("run-1")

        failures = store.list_enrichment_failures("run-1")
        by_key = {(f.record_id, f.rule_id): f for f in failures}
        assert len(failures) == 5
        assert by_key[("file-1-rec-2", "age_classification")].error_message.startswith(SKIP_MESSAGE)
        assert "member_dob" in by_key[("file-1-rec-3", "age_classification")].error_message
        assert by_key[("file-1-rec-3", "age_classification")].raw_value == "not a date"
        assert ("file-1-rec-3", "channel_classification") in by_key
        assert ("file-1-rec-1", "age_classification") not in by_key

    def test_file_moves_to_enriched(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, complete_records(3))

        build_runner(store).run("run-1")

        file = store.get_file("file-1")
        assert file.status == FileStatus.ENRICHED
        assert file.processing_stage == ProcessingStage.PROCESSED

    def test_rule_metrics(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, mixed_records())
        skipped_before = rule_metric("age_classification", "skipped")
        succeeded_before = rule_metric("channel_classification", "succeeded")

        build_runner(store).run("run-1")

        assert rule_metric("age_classification", "skipped") - skipped_before == 2
        assert rule_metric("channel_classification", "succeeded") - succeeded_before == 2

    def test_merge_keeps_existing_groups(self):
        store = seed(InMemoryClaimsStore())
        record = make_claim(1, days_supply=45)
        record.dynamic_fields = {"ageEnrichment": {"currentAge": 50}}
        prepare(store, [record])

        registry = build_registry(store, register_defaults=False)
        registry.register_processor(ChannelRuleProcessor())
        run = build_runner(store, registry).run("run-1")

        assert run.status == EnrichmentStatus.COMPLETED
        stored = store.fetch_claim_records("file-1", 0, 1)[0]
        assert stored.dynamic_fields == {
            "ageEnrichment": {"currentAge": 50},
            "channelEnrichment": {"channel_indicator": "Retail90", "derived_from_days_supply": 45},
        }

    def test_no_processors_aborts(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, complete_records(2))
        registry = build_registry(store, register_defaults=False)

        with pytest.raises(RunAbort):
            build_runner(store, registry).run("run-1")

        run = store.get_run("run-1")
        assert run.status == EnrichmentStatus.ERROR
        assert "No active enrichment rules" in run.error_details["message"]
        assert run.error_details["type"] == "RunAbort"
        assert run.completed_at is not None
        assert store.get_file("file-1").status == FileStatus.PROCESSED

    def test_nothing_enriched_ends_in_error(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, [make_claim(1), make_claim(2, member_id="M1")])

        run = build_runner(store).run("run-1")

        assert run.status == EnrichmentStatus.ERROR
        assert run.failed_records == 2
        assert run.error_details["message"] == "No records were enriched"
        assert len(run.error_details["rule_stats"]) == 2
        assert store.get_file("file-1").status == FileStatus.PROCESSED

    def test_failed_batch_is_rolled_back_and_run_continues(self):
        store = seed(FailingMergeStore())
        prepare(store, complete_records(4))

        run = build_runner(store).run("run-1")

        assert run.status == EnrichmentStatus.COMPLETED
        assert run.enriched_records == 2
        assert run.failed_records == 2
        assert run.error_details["batch_errors"] == [{"offset": 0, "message": "deadlock detected"}]

        records = store.fetch_claim_records("file-1", 0, 10)
        assert [bool(r.dynamic_fields) for r in records] == [False, False, True, True]

        stats = {s.rule_id: s for s in store.get_run("run-1").rule_stats()}
        assert stats["age_classification"].attempted == 2

    def test_cancelled_run(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, complete_records(4))
        token = CancellationToken()
        token.cancel("operator stop")

        run = build_runner(store).run("run-1", cancel_token=token)

        assert run.status == EnrichmentStatus.ERROR
        assert run.error_details["cancelled"] is True
        assert run.error_details["message"] == "operator stop"
        assert run.enriched_records == 0
        assert store.count_claim_records("file-1") == 4

    def test_progress_is_saved_per_batch_and_never_decreases(self, recording_store):
        store = seed(recording_store)
        prepare(store, complete_records(5))

        build_runner(store, batch_size=2).run("run-1")

        saves = store.saved
        assert [s.status for s in saves] == [EnrichmentStatus.RUNNING] * 4 + [EnrichmentStatus.COMPLETED]
        assert [s.processed_records for s in saves] == [0, 2, 4, 5, 5]
        for before, after in zip(saves, saves[1:]):
            assert after.enriched_records >= before.enriched_records
            assert after.failed_records >= before.failed_records
        assert all(s.enriched_records + s.failed_records <= s.total_records for s in saves)

    def test_batches_stop_at_snapshotted_total(self, recording_store):
        store = seed(recording_store)
        prepare(store, complete_records(5), total_records=3)

        run = build_runner(store, batch_size=2).run("run-1")

        assert run.status == EnrichmentStatus.COMPLETED
        assert run.enriched_records == 3
        assert run.failed_records == 0
        assert all(s.processed_records <= 3 for s in store.saved)
        records = store.fetch_claim_records("file-1", 0, 10)
        assert [bool(r.dynamic_fields) for r in records] == [True, True, True, False, False]

    def test_missing_records_counted_as_failed(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, complete_records(3), total_records=5)

        run = build_runner(store).run("run-1")

        assert run.status == EnrichmentStatus.COMPLETED
        assert run.enriched_records == 3
        assert run.failed_records == 2
        assert run.error_details["missing_records"] == 2

    def test_terminal_run_cannot_restart(self):
        store = seed(InMemoryClaimsStore())
        prepare(store, complete_records(1))
        runner = build_runner(store)
        runner.run("run-1")

        with pytest.raises(RunAbort):
            runner.run("run-1")

        assert store.get_run("run-1").status == EnrichmentStatus.COMPLETED

    def test_invalid_batch_size(self, memory_store):
        with pytest.raises(ValueError):
            EnrichmentRunner(memory_store, RuleRegistry(memory_store), FileLifecycle(memory_store), batch_size=0)
