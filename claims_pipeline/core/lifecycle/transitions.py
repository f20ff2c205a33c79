"""
File lifecycle transition tables.

A file carries two enums, a status and a processing stage. A change of the
(status, stage) pair is legal only when the status edge and the stage edge
both appear in their tables. Neither table holds self edges.
"""

from claims_pipeline.core.models.file_record import FileRecord, FileStatus, ProcessingStage

STATUS_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.PENDING: frozenset({FileStatus.PROCESSING}),
    FileStatus.PROCESSING: frozenset({FileStatus.MAPPED, FileStatus.ERROR}),
    FileStatus.MAPPED: frozenset({FileStatus.PROCESSING_CLAIMS, FileStatus.ERROR}),
    FileStatus.PROCESSING_CLAIMS: frozenset({FileStatus.PROCESSED, FileStatus.ERROR}),
    FileStatus.PROCESSED: frozenset({FileStatus.ENRICHED, FileStatus.ERROR}),
    FileStatus.ENRICHED: frozenset({FileStatus.PROCESSED, FileStatus.ERROR}),
    FileStatus.ERROR: frozenset(
        {FileStatus.PROCESSING, FileStatus.PROCESSING_CLAIMS, FileStatus.PROCESSED}
    ),
}

STAGE_TRANSITIONS: dict[ProcessingStage, frozenset[ProcessingStage]] = {
    ProcessingStage.READY_FOR_MAPPING: frozenset({ProcessingStage.MAPPING_IN_PROGRESS}),
    ProcessingStage.MAPPING_IN_PROGRESS: frozenset(
        {ProcessingStage.MAPPING_COMPLETE, ProcessingStage.READY_FOR_MAPPING}
    ),
    ProcessingStage.MAPPING_COMPLETE: frozenset(
        {ProcessingStage.CLAIMS_PROCESSING, ProcessingStage.MAPPING_IN_PROGRESS}
    ),
    ProcessingStage.CLAIMS_PROCESSING: frozenset(
        {ProcessingStage.CLAIMS_PROCESSED, ProcessingStage.MAPPING_COMPLETE}
    ),
    ProcessingStage.CLAIMS_PROCESSED: frozenset({ProcessingStage.PROCESSED}),
    ProcessingStage.PROCESSED: frozenset(),
}


def is_status_transition_allowed(current: FileStatus, new: FileStatus) -> bool:
    return FileStatus(new) in STATUS_TRANSITIONS.get(FileStatus(current), frozenset())


def is_stage_transition_allowed(current: ProcessingStage, new: ProcessingStage) -> bool:
    return ProcessingStage(new) in STAGE_TRANSITIONS.get(ProcessingStage(current), frozenset())


def can_transition(
    current_status: FileStatus,
    current_stage: ProcessingStage,
    new_status: FileStatus,
    new_stage: ProcessingStage,
) -> bool:
    """True when both the status edge and the stage edge exist."""
    return is_status_transition_allowed(current_status, new_status) and is_stage_transition_allowed(
        current_stage, new_stage
    )


def is_file_available_for_mapping(file: FileRecord) -> bool:
    return file.processing_stage in (
        ProcessingStage.READY_FOR_MAPPING,
        ProcessingStage.MAPPING_IN_PROGRESS,
    )


def can_process_file(file: FileRecord) -> bool:
    return (
        file.status == FileStatus.MAPPED
        and file.processing_stage == ProcessingStage.MAPPING_COMPLETE
    )


def is_file_processing_complete(file: FileRecord) -> bool:
    return file.status in (FileStatus.PROCESSED, FileStatus.ENRICHED)
