"""
Enrichment models: rule definitions, rule results, runs and failure audit rows.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field, field_validator

from claims_pipeline.utils.clock import utc_now


class EnrichmentStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (EnrichmentStatus.COMPLETED, EnrichmentStatus.ERROR)


# Legal run status moves; runs never go backward
RUN_STATUS_ORDER = {
    EnrichmentStatus.PENDING: 0,
    EnrichmentStatus.RUNNING: 1,
    EnrichmentStatus.COMPLETED: 2,
    EnrichmentStatus.ERROR: 2,
}


class RuleDefinition(BaseModel):
    """
    Configuration of one enrichment rule.

    Attributes:
        rule_id: Stable rule identifier
        name: Human-readable name
        priority: Lower runs first
        processor: Key into the processor factory table
        parameters: Rule-specific parameters, opaque to the registry
        is_active: Whether the rule takes part in enrichment runs
    """

    rule_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    rule_type: str = "enrichment"
    priority: int = 100
    processor: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True

    @field_validator("parameters", mode="before")
    @classmethod
    def default_parameters(cls, v):
        return v or {}

    class Config:
        json_schema_extra = {
            "example": {
                "rule_id": "channel_classification",
                "name": "Channel Classification Rule",
                "priority": 20,
                "processor": "channel_classification",
                "parameters": {"retail_max_days": 30, "retail90_max_days": 83},
                "is_active": True
            }
        }


class EnrichmentResult(BaseModel):
    """
    Outcome of applying one rule to one record (ephemeral).

    On success field_name is the dynamic field group key and field_value
    the group payload; on failure error carries the message and raw_value
    the offending input, if any.
    """

    success: bool
    field_name: str
    field_value: Any = None
    error: str | None = None
    raw_value: Any = None

    @classmethod
    def ok(cls, field_name: str, field_value: Any) -> "EnrichmentResult":
        return cls(success=True, field_name=field_name, field_value=field_value)

    @classmethod
    def failed(cls, field_name: str, error: str, raw_value: Any = None) -> "EnrichmentResult":
        return cls(success=False, field_name=field_name, error=error, raw_value=raw_value)


class RuleStats(BaseModel):
    """Per-rule application counters for one run."""

    rule_id: str
    rule_name: str
    attempted: int = 0
    succeeded: int = 0

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return round(self.succeeded / self.attempted * 100, 2)


class EnrichmentRun(BaseModel):
    """
    One execution of enrichment over all claim records of a file.

    Invariant: enriched_records + failed_records <= total_records.
    """

    run_id: str
    file_id: str
    status: EnrichmentStatus = EnrichmentStatus.PENDING
    total_records: int = Field(0, ge=0)
    enriched_records: int = Field(0, ge=0)
    failed_records: int = Field(0, ge=0)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    error_details: dict[str, Any] | None = None
    created_by: str = "system"

    @property
    def processed_records(self) -> int:
        return self.enriched_records + self.failed_records

    @property
    def percent_complete(self) -> float:
        if self.total_records <= 0:
            return 0.0
        return round(self.processed_records / self.total_records * 100, 2)

    def rule_stats(self) -> list[RuleStats]:
        """Per-rule statistics stored in error_details, if any."""
        if not self.error_details:
            return []
        return [RuleStats.model_validate(s) for s in self.error_details.get("rule_stats", [])]


class EnrichmentFailure(BaseModel):
    """Append-only audit row for one failed or skipped rule application."""

    failure_id: int | None = None
    run_id: str
    record_id: str
    rule_id: str
    error_message: str
    raw_value: Any = None
    created_at: datetime = Field(default_factory=utc_now)
