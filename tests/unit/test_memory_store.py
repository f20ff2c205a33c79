"""
Unit tests for the in-memory claims store.
"""

from datetime import date, datetime, timezone

import pytest

from claims_pipeline.core.exceptions import FileNotFound, RunNotFound, TemplateNotFound
from claims_pipeline.core.models import (
    EnrichmentFailure,
    EnrichmentRun,
    FileRecord,
    MappingTemplate,
    ProcessingHistory,
    ProcessingStatus,
    StandardField,
)

from conftest import make_claim


@pytest.mark.unit
class TestInMemoryClaimsStore:
    """Tests for InMemoryClaimsStore"""

    def test_transaction_rolls_back_every_write(self, memory_store):
        memory_store.create_file(FileRecord(file_id="file-1"))

        with pytest.raises(RuntimeError):
            with memory_store.transaction() as tx:
                tx.insert_claim_records([make_claim(1), make_claim(2)])
                tx.replace_active_mapping("file-1", {"DS": "days_supply"})
                raise RuntimeError("abort")

        assert memory_store.count_claim_records("file-1") == 0
        assert memory_store.get_active_mapping("file-1") is None

    def test_transaction_commits(self, memory_store):
        memory_store.create_file(FileRecord(file_id="file-1"))

        with memory_store.transaction() as tx:
            tx.insert_claim_records([make_claim(1)])
            with tx.transaction() as nested:
                nested.insert_claim_records([make_claim(2)])

        assert memory_store.count_claim_records("file-1") == 2

    def test_duplicate_row_number_rejected_atomically(self, memory_store):
        memory_store.insert_claim_records([make_claim(1)])
        duplicate = make_claim(1).model_copy(update={"record_id": "other"})

        with pytest.raises(ValueError, match="Duplicate"):
            memory_store.insert_claim_records([make_claim(2), duplicate])

        assert memory_store.count_claim_records("file-1") == 1

    def test_returned_records_are_copies(self, memory_store):
        memory_store.insert_claim_records([make_claim(1, fill_date=date(2024, 1, 31))])

        fetched = memory_store.fetch_claim_records("file-1", 0, 10)[0]
        fetched.mapped_fields["fill_date"] = None

        again = memory_store.fetch_claim_records("file-1", 0, 10)[0]
        assert again.mapped_fields["fill_date"] == date(2024, 1, 31)

    def test_search_is_case_insensitive_over_mapped_and_unmapped(self, memory_store):
        first = make_claim(1, member_id="ABC-1")
        second = make_claim(2, member_id="XYZ-2")
        second.unmapped_fields = {"Notes": "Needs Review"}
        memory_store.insert_claim_records([first, second])

        assert memory_store.count_claim_records("file-1", search="abc") == 1
        assert memory_store.count_claim_records("file-1", search="needs review") == 1
        assert memory_store.count_claim_records("file-1", search="nothing") == 0

    def test_merge_dynamic_fields(self, memory_store):
        memory_store.insert_claim_records([make_claim(1)])
        record_id = "file-1-rec-1"

        memory_store.merge_dynamic_fields(record_id, {"ageEnrichment": {"currentAge": 40}})
        memory_store.merge_dynamic_fields(record_id, {"channelEnrichment": {"channel_indicator": "Mail"}})
        memory_store.merge_dynamic_fields(record_id, {"ageEnrichment": {"currentAge": 41}})

        record = memory_store.fetch_claim_records("file-1", 0, 1)[0]
        assert record.dynamic_fields == {
            "ageEnrichment": {"currentAge": 41},
            "channelEnrichment": {"channel_indicator": "Mail"},
        }
        assert memory_store.dynamic_field_counts("file-1") == {"ageEnrichment": 1, "channelEnrichment": 1}

    def test_merge_unknown_record(self, memory_store):
        with pytest.raises(KeyError):
            memory_store.merge_dynamic_fields("missing", {"g": {}})

    def test_catalog_order_and_product_filter(self, memory_store):
        memory_store.upsert_standard_fields(
            [
                StandardField(field_name="b", display_order=2),
                StandardField(field_name="a", display_order=1, product_id="pbm"),
                StandardField(field_name="c", display_order=2, product_id="medical"),
                StandardField(field_name="d", display_order=0, is_active=False),
            ]
        )

        assert [f.field_name for f in memory_store.list_standard_fields()] == ["a", "b", "c"]
        assert [f.field_name for f in memory_store.list_standard_fields("pbm")] == ["a", "b"]

    def test_one_active_mapping_per_file(self, memory_store):
        memory_store.replace_active_mapping("file-1", {"A": "a"})
        memory_store.replace_active_mapping("file-1", {"B": "b"})

        assert memory_store.get_active_mapping("file-1").columns == {"B": "b"}

    def test_mapping_templates(self, memory_store):
        older = MappingTemplate(
            template_id="t1",
            template_name="PBM export",
            product_id="pbm",
            columns={"DS": "days_supply"},
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        memory_store.save_mapping_template(older)
        memory_store.save_mapping_template(
            MappingTemplate(template_id="t2", template_name="Shared", columns={"DOB": "member_dob"})
        )
        memory_store.save_mapping_template(
            MappingTemplate(template_id="t3", template_name="Medical", product_id="medical")
        )

        assert [t.template_id for t in memory_store.list_mapping_templates("pbm")] == ["t2", "t1"]
        assert len(memory_store.list_mapping_templates()) == 3

        memory_store.save_mapping_template(
            older.model_copy(update={"template_name": "PBM v2", "created_at": datetime.now(timezone.utc)})
        )
        stored = memory_store.get_mapping_template("t1")
        assert stored.template_name == "PBM v2"
        assert stored.created_at == older.created_at

        assert memory_store.deactivate_mapping_template("t1", "analyst") is True
        assert memory_store.deactivate_mapping_template("t1") is False
        with pytest.raises(TemplateNotFound):
            memory_store.get_mapping_template("t1")
        assert [t.template_id for t in memory_store.list_mapping_templates("pbm")] == ["t2"]

    def test_latest_processing_and_active_flag(self, memory_store):
        memory_store.create_processing(ProcessingHistory(processing_id="p1", file_id="file-1"))
        assert memory_store.has_active_processing("file-1")

        memory_store.save_processing(
            ProcessingHistory(processing_id="p1", file_id="file-1", status=ProcessingStatus.COMPLETED)
        )
        assert not memory_store.has_active_processing("file-1")

        memory_store.create_processing(ProcessingHistory(processing_id="p2", file_id="file-1"))
        assert memory_store.get_latest_processing("file-1").processing_id == "p2"

    def test_runs_and_failures(self, memory_store):
        memory_store.create_run(EnrichmentRun(run_id="r1", file_id="file-1"))
        assert memory_store.has_active_run("file-1")

        memory_store.insert_enrichment_failures(
            [
                EnrichmentFailure(run_id="r1", record_id="x", rule_id="age", error_message="bad"),
                EnrichmentFailure(run_id="r1", record_id="y", rule_id="age", error_message="bad"),
            ]
        )
        failures = memory_store.list_enrichment_failures("r1")
        assert [f.failure_id for f in failures] == [1, 2]

        with pytest.raises(RunNotFound):
            memory_store.get_run("missing")
        with pytest.raises(RunNotFound):
            memory_store.save_run(EnrichmentRun(run_id="missing", file_id="file-1"))

    def test_unknown_file(self, memory_store):
        with pytest.raises(FileNotFound):
            memory_store.get_file("missing")

    def test_delete_claim_records_scoped_to_file(self, memory_store):
        memory_store.insert_claim_records([make_claim(1), make_claim(1, file_id="file-2")])

        assert memory_store.delete_claim_records("file-1") == 1
        assert memory_store.count_claim_records("file-2") == 1
