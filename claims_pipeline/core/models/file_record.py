"""
FileRecord model representing one uploaded claims dataset and its lifecycle state.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from claims_pipeline.utils.clock import utc_now


class FileStatus(str, Enum):
    """Lifecycle status of an uploaded file."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    MAPPED = "MAPPED"
    PROCESSING_CLAIMS = "PROCESSING_CLAIMS"
    PROCESSED = "PROCESSED"
    ENRICHED = "ENRICHED"
    ERROR = "ERROR"


class ProcessingStage(str, Enum):
    """Processing stage of an uploaded file."""

    READY_FOR_MAPPING = "READY_FOR_MAPPING"
    MAPPING_IN_PROGRESS = "MAPPING_IN_PROGRESS"
    MAPPING_COMPLETE = "MAPPING_COMPLETE"
    CLAIMS_PROCESSING = "CLAIMS_PROCESSING"
    CLAIMS_PROCESSED = "CLAIMS_PROCESSED"
    PROCESSED = "PROCESSED"


class FileRecord(BaseModel):
    """
    One uploaded claims dataset.

    Attributes:
        file_id: Unique identifier for the file (PK)
        original_filename: Name of the uploaded spreadsheet
        product_id: Product whose field catalog applies to this file
        status: Lifecycle status
        processing_stage: Lifecycle stage
        row_count: Number of data rows reported at upload
        original_headers: Spreadsheet headers in column order
        created_at: When the file was registered
        updated_at: Last lifecycle change
        updated_by: Actor of the last lifecycle change
    """

    file_id: str = Field(..., min_length=1)
    original_filename: str | None = None
    product_id: str | None = None
    status: FileStatus = FileStatus.PENDING
    processing_stage: ProcessingStage = ProcessingStage.READY_FOR_MAPPING
    row_count: int = Field(0, ge=0)
    original_headers: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    updated_by: str | None = None

    class Config:
        json_schema_extra = {
            "example": {
                "file_id": "7c1f4d1e-0d7b-4c7e-9a59-3f5f0a0b9d11",
                "original_filename": "rx_claims_2024q1.xlsx",
                "product_id": "pbm",
                "status": "MAPPED",
                "processing_stage": "MAPPING_COMPLETE",
                "row_count": 2500,
                "original_headers": ["Member DOB", "Fill Date", "Days Supply", "NDC"],
            }
        }


class FileStatusHistory(BaseModel):
    """
    Immutable audit entry written for every applied lifecycle transition.
    """

    history_id: int | None = None
    file_id: str
    previous_status: FileStatus
    new_status: FileStatus
    previous_stage: ProcessingStage
    new_stage: ProcessingStage
    actor: str = "system"
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True
