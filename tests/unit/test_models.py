"""
Unit tests for Pydantic data models.

Tests core models for validation, derived properties and the tagged field value codec.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError

from claims_pipeline.core.models import (
    AutoMapResult,
    ClaimRecord,
    EnrichmentResult,
    EnrichmentRun,
    EnrichmentStatus,
    FileRecord,
    FileStatus,
    ProcessingHistory,
    ProcessingStatus,
    RuleDefinition,
    RuleStats,
)
from claims_pipeline.core.models.field_value import (
    coerce_field_value,
    decode_fields,
    encode_fields,
)


@pytest.mark.unit
class TestFileRecord:
    """Tests for FileRecord model"""

    def test_defaults(self):
        file = FileRecord(file_id="f-1", original_filename="claims.xlsx")
        assert file.status == FileStatus.PENDING
        assert file.processing_stage.value == "READY_FOR_MAPPING"
        assert file.row_count == 0
        assert file.original_headers == []
        assert isinstance(file.created_at, datetime)

    def test_empty_file_id(self):
        with pytest.raises(ValidationError) as exc_info:
            FileRecord(file_id="")
        assert "file_id" in str(exc_info.value)

    def test_negative_row_count(self):
        with pytest.raises(ValidationError):
            FileRecord(file_id="f-1", row_count=-1)

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            FileRecord(file_id="f-1", status="UPLOADED")


@pytest.mark.unit
class TestClaimRecord:
    """Tests for ClaimRecord model"""

    def test_row_number_is_one_based(self):
        with pytest.raises(ValidationError):
            ClaimRecord(record_id="r", file_id="f", row_number=0)


@pytest.mark.unit
class TestEnrichmentModels:
    """Tests for enrichment run, rule and stats models"""

    def test_run_percent_complete(self):
        run = EnrichmentRun(run_id="r", file_id="f", total_records=8, enriched_records=5, failed_records=1)
        assert run.processed_records == 6
        assert run.percent_complete == 75.0

    def test_run_percent_complete_without_records(self):
        assert EnrichmentRun(run_id="r", file_id="f").percent_complete == 0.0

    def test_run_rule_stats_from_details(self):
        run = EnrichmentRun(
            run_id="r",
            file_id="f",
            status=EnrichmentStatus.COMPLETED,
            error_details={
                "rule_stats": [
                    {"rule_id": "age", "rule_name": "Age", "attempted": 4, "succeeded": 3}
                ]
            },
        )
        stats = run.rule_stats()
        assert len(stats) == 1
        assert stats[0].success_rate == 75.0

    def test_terminal_statuses(self):
        assert EnrichmentStatus.COMPLETED.is_terminal
        assert EnrichmentStatus.ERROR.is_terminal
        assert not EnrichmentStatus.RUNNING.is_terminal

    def test_rule_stats_success_rate(self):
        assert RuleStats(rule_id="a", rule_name="A").success_rate == 0.0
        assert RuleStats(rule_id="a", rule_name="A", attempted=3, succeeded=1).success_rate == 33.33

    def test_rule_stats_serializes_success_rate(self):
        dumped = RuleStats(rule_id="a", rule_name="A", attempted=2, succeeded=2).model_dump()
        assert dumped["success_rate"] == 100.0

    def test_rule_definition_none_parameters(self):
        rule = RuleDefinition(rule_id="a", name="A", processor="age_classification", parameters=None)
        assert rule.parameters == {}

    def test_rule_definition_requires_processor(self):
        with pytest.raises(ValidationError):
            RuleDefinition(rule_id="a", name="A", processor="")

    def test_enrichment_result_constructors(self):
        ok = EnrichmentResult.ok("ageEnrichment", {"currentAge": 40})
        failed = EnrichmentResult.failed("ageEnrichment", "bad date", raw_value="31/31/2020")

        assert ok.success and ok.error is None
        assert not failed.success
        assert failed.raw_value == "31/31/2020"


@pytest.mark.unit
class TestProcessingHistory:
    """Tests for ProcessingHistory model"""

    def test_percent_complete(self):
        history = ProcessingHistory(processing_id="p", file_id="f", processed_rows=1, total_rows=3)
        assert history.percent_complete == 33.33

    def test_active_statuses(self):
        assert ProcessingStatus.PENDING.is_active
        assert ProcessingStatus.PROCESSING.is_active
        assert not ProcessingStatus.COMPLETED.is_active


@pytest.mark.unit
class TestAutoMapResult:
    def test_total_matches(self):
        result = AutoMapResult(exact_matches=2, variation_matches=1, similarity_matches=1)
        assert result.total_matches == 4


@pytest.mark.unit
class TestFieldValueCodec:
    """Tests for the tagged field value codec"""

    def test_dates_are_tagged(self):
        encoded = encode_fields(
            {"fill_date": date(2024, 1, 31), "loaded_at": datetime(2024, 1, 31, 8, 30)}
        )
        assert encoded == {
            "fill_date": {"$date": "2024-01-31"},
            "loaded_at": {"$datetime": "2024-01-31T08:30:00"},
        }

    def test_decode_restores_types_and_order(self):
        fields = {"b": date(2024, 2, 1), "a": 3, "c": {"nested": date(2020, 1, 1)}, "d": None}

        decoded = decode_fields(encode_fields(fields))

        assert decoded == fields
        assert list(decoded) == ["b", "a", "c", "d"]

    def test_plain_dicts_are_not_dates(self):
        assert decode_fields({"group": {"$date": "2024-01-01", "other": 1}}) == {
            "group": {"$date": "2024-01-01", "other": 1}
        }

    def test_empty_fields(self):
        assert encode_fields(None) == {}
        assert decode_fields({}) == {}

    def test_coerce_field_value(self):
        assert coerce_field_value(Decimal("90")) == 90
        assert coerce_field_value(Decimal("1.5")) == 1.5
        assert coerce_field_value(float("nan")) is None
        assert coerce_field_value(True) is True
        assert coerce_field_value(["a"]) == "['a']"
        assert coerce_field_value({"k": Decimal("2")}) == {"k": 2}
