"""
ClaimRecord model representing one ingested row of a claims file.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from claims_pipeline.utils.clock import utc_now


class ClaimValidationStatus(str, Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    WARNING = "WARNING"
    PENDING_VALIDATION = "PENDING_VALIDATION"


class ClaimProcessingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class ClaimRecord(BaseModel):
    """
    One normalized row of ingested claims data.

    Attributes:
        record_id: Unique identifier for the record
        file_id: Owning file (FK)
        row_number: 1-based position of the row in the source file
        mapped_fields: Values of mapped columns keyed by canonical field name
        unmapped_fields: Values of the remaining columns keyed by source column name
        dynamic_fields: Field groups written by enrichment rules
        validation_status: Field-level validation outcome (not performed by ingestion)
        processing_status: Ingestion outcome for the row
    """

    record_id: str = Field(..., min_length=1)
    file_id: str
    row_number: int = Field(..., ge=1)
    mapped_fields: dict[str, Any] = Field(default_factory=dict)
    unmapped_fields: dict[str, Any] = Field(default_factory=dict)
    dynamic_fields: dict[str, Any] = Field(default_factory=dict)
    validation_status: ClaimValidationStatus = ClaimValidationStatus.PENDING_VALIDATION
    processing_status: ClaimProcessingStatus = ClaimProcessingStatus.PROCESSED
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None

    class Config:
        json_schema_extra = {
            "example": {
                "record_id": "0b8e2f5c-4c8a-4a53-8f8e-1d0f4c7f1a20",
                "file_id": "7c1f4d1e-0d7b-4c7e-9a59-3f5f0a0b9d11",
                "row_number": 1,
                "mapped_fields": {
                    "member_dob": "1958-04-12",
                    "fill_date": "2024-01-31",
                    "days_supply": 90
                },
                "unmapped_fields": {"Pharmacy Notes": "n/a"},
                "dynamic_fields": {
                    "channelEnrichment": {
                        "channel_indicator": "Mail",
                        "derived_from_days_supply": 90
                    }
                },
                "validation_status": "PENDING_VALIDATION",
                "processing_status": "PROCESSED"
            }
        }
