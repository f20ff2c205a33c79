"""
FileLifecycle applies (status, stage) changes to files.

The legality check and the write happen in one store transaction with the
file row locked, and each applied change appends a FileStatusHistory entry.
"""

from claims_pipeline.core.exceptions import InvalidTransition
from claims_pipeline.core.lifecycle.transitions import (
    is_stage_transition_allowed,
    is_status_transition_allowed,
)
from claims_pipeline.core.models import FileRecord, FileStatus, FileStatusHistory, ProcessingStage
from claims_pipeline.observability.logger import get_logger
from claims_pipeline.observability.metrics import file_transitions_total, increment_counter
from claims_pipeline.warehouse.store import ClaimsStore

logger = get_logger(__name__)


class FileLifecycle:
    """State machine guarding file status and processing stage."""

    def __init__(self, store: ClaimsStore):
        self.store = store

    def apply(
        self,
        file_id: str,
        new_status: FileStatus,
        new_stage: ProcessingStage,
        actor: str = "system",
    ) -> FileRecord:
        """
        Move a file to (new_status, new_stage) in its own transaction.

        Raises:
            FileNotFound: If the file does not exist
            InvalidTransition: If either edge is missing; the file is left unchanged
        """
        with self.store.transaction() as tx:
            return self.apply_within(tx, file_id, new_status, new_stage, actor)

    def apply_within(
        self,
        tx: ClaimsStore,
        file_id: str,
        new_status: FileStatus,
        new_stage: ProcessingStage,
        actor: str = "system",
    ) -> FileRecord:
        """Same as apply, but joins a transaction the caller already holds."""
        new_status = FileStatus(new_status)
        new_stage = ProcessingStage(new_stage)

        file = tx.get_file(file_id, for_update=True)
        status_ok = is_status_transition_allowed(file.status, new_status)
        stage_ok = is_stage_transition_allowed(file.processing_stage, new_stage)

        if not (status_ok and stage_ok):
            logger.warning(
                f"Rejected transition for file {file_id}: "
                f"{file.status.value}/{file.processing_stage.value} -> "
                f"{new_status.value}/{new_stage.value}",
                extra={"file_id": file_id, "status_allowed": status_ok, "stage_allowed": stage_ok},
            )
            raise InvalidTransition(
                current_status=file.status.value,
                current_stage=file.processing_stage.value,
                new_status=new_status.value,
                new_stage=new_stage.value,
                status_allowed=status_ok,
                stage_allowed=stage_ok,
            )

        updated = tx.update_file_state(file_id, new_status, new_stage, actor)
        tx.append_status_history(
            FileStatusHistory(
                file_id=file_id,
                previous_status=file.status,
                new_status=new_status,
                previous_stage=file.processing_stage,
                new_stage=new_stage,
                actor=actor,
            )
        )

        increment_counter(file_transitions_total, status=new_status.value)
        logger.info(
            f"File {file_id} moved {file.status.value}/{file.processing_stage.value} -> "
            f"{new_status.value}/{new_stage.value}",
            extra={"file_id": file_id, "actor": actor},
        )
        return updated
