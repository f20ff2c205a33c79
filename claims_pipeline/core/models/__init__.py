"""
Core data models for the claims ingestion and enrichment pipeline.

All models use Pydantic for runtime validation and type safety.
"""

from .claim_record import ClaimProcessingStatus, ClaimRecord, ClaimValidationStatus
from .enrichment import (
    EnrichmentFailure,
    EnrichmentResult,
    EnrichmentRun,
    EnrichmentStatus,
    RuleDefinition,
    RuleStats,
)
from .field_mapping import (
    AutoMapResult,
    FieldDataType,
    FieldMapping,
    FieldVariation,
    MappingTemplate,
    RequirementLevel,
    StandardField,
)
from .file_record import FileRecord, FileStatus, FileStatusHistory, ProcessingStage
from .processing_history import ProcessingHistory, ProcessingStatus

__all__ = [
    "FileRecord",
    "FileStatus",
    "ProcessingStage",
    "FileStatusHistory",
    "StandardField",
    "FieldVariation",
    "FieldDataType",
    "RequirementLevel",
    "FieldMapping",
    "MappingTemplate",
    "AutoMapResult",
    "ClaimRecord",
    "ClaimValidationStatus",
    "ClaimProcessingStatus",
    "ProcessingHistory",
    "ProcessingStatus",
    "EnrichmentStatus",
    "EnrichmentRun",
    "EnrichmentFailure",
    "EnrichmentResult",
    "RuleDefinition",
    "RuleStats",
]
