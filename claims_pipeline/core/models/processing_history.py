"""
ProcessingHistory model tracking one ingestion run of a file.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from claims_pipeline.utils.clock import utc_now


class ProcessingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"

    @property
    def is_active(self) -> bool:
        return self in (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING)


class ProcessingHistory(BaseModel):
    """
    Durable progress record of one ingestion run.

    Attributes:
        processing_id: Identifier returned by start_ingestion
        file_id: File being ingested
        status: PENDING -> PROCESSING -> COMPLETED | ERROR
        processed_rows: Rows committed so far (non-decreasing)
        total_rows: Rows in the source
        error_details: {message, timestamp, details} when status is ERROR
    """

    processing_id: str
    file_id: str
    status: ProcessingStatus = ProcessingStatus.PENDING
    processed_rows: int = Field(0, ge=0)
    total_rows: int = Field(0, ge=0)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    error_details: dict[str, Any] | None = None
    created_by: str = "system"

    @property
    def percent_complete(self) -> float:
        if self.total_rows <= 0:
            return 0.0
        return round(self.processed_rows / self.total_rows * 100, 2)
