"""
Error taxonomy for the claims ingestion and enrichment pipeline.

Every domain error derives from ClaimsPipelineError so callers can catch
the whole family at the service boundary.
"""

from typing import Any


class ClaimsPipelineError(Exception):
    """Base class for all pipeline errors."""


class InvalidTransition(ClaimsPipelineError):
    """
    Raised when a (status, stage) change is not present in the transition tables.

    Both edges are reported, each with a flag telling whether that edge
    on its own would have been accepted.
    """

    def __init__(
        self,
        current_status: str,
        current_stage: str,
        new_status: str,
        new_stage: str,
        status_allowed: bool,
        stage_allowed: bool,
    ):
        self.current_status = current_status
        self.current_stage = current_stage
        self.new_status = new_status
        self.new_stage = new_stage
        self.status_allowed = status_allowed
        self.stage_allowed = stage_allowed

        status_note = "allowed" if status_allowed else "rejected"
        stage_note = "allowed" if stage_allowed else "rejected"
        super().__init__(
            f"Invalid file transition: status {current_status} -> {new_status} ({status_note}), "
            f"stage {current_stage} -> {new_stage} ({stage_note})"
        )


class PreconditionFailed(ClaimsPipelineError):
    """Raised when an operation is requested in a state that does not permit it."""


class FileNotFound(ClaimsPipelineError):
    """Raised when a file id is unknown to the store."""

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"File not found: {file_id}")


class RunNotFound(ClaimsPipelineError):
    """Raised when an enrichment run id is unknown to the store."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Enrichment run not found: {run_id}")


class MappingNotFound(ClaimsPipelineError):
    """Raised when ingestion or enrichment needs an active field mapping and none exists."""

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"No active field mapping found for file {file_id}")


class InvalidMapping(ClaimsPipelineError):
    """Raised when a manually supplied mapping cannot be saved."""


class NotInitialized(ClaimsPipelineError):
    """Raised when the rule registry is queried before its definitions are loaded."""


class BatchFailure(ClaimsPipelineError):
    """
    A single batch transaction failed and was rolled back.

    Attributes:
        job: "ingestion" or "enrichment"
        offset: Zero-based offset of the first row/record in the batch
        cause: The exception that caused the rollback
    """

    def __init__(self, job: str, offset: int, cause: BaseException):
        self.job = job
        self.offset = offset
        self.cause = cause
        super().__init__(f"{job} batch at offset {offset} rolled back: {cause}")


class RuleValidationFailure(ClaimsPipelineError):
    """A rule's validate() rejected a record or raised while checking it."""

    def __init__(self, rule_id: str, record_id: str, message: str):
        self.rule_id = rule_id
        self.record_id = record_id
        self.message = message
        super().__init__(f"[{rule_id}] record {record_id}: {message}")


class RuleProcessError(ClaimsPipelineError):
    """A rule's process() raised or reported a failure for a record."""

    def __init__(self, rule_id: str, record_id: str, message: str, raw_value: Any = None):
        self.rule_id = rule_id
        self.record_id = record_id
        self.message = message
        self.raw_value = raw_value
        super().__init__(f"[{rule_id}] record {record_id}: {message}")


class RunAbort(ClaimsPipelineError):
    """Raised when an enrichment run fails outside the batch loop."""

    def __init__(self, run_id: str, cause: BaseException | str):
        self.run_id = run_id
        self.cause = cause
        super().__init__(f"Enrichment run {run_id} aborted: {cause}")


class TemplateNotFound(ClaimsPipelineError):
    """Raised when a mapping template id is unknown or the template was deleted."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Mapping template not found: {template_id}")
