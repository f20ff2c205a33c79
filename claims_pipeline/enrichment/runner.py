"""
Enrichment run orchestration.

One run walks every claim record of a file in row order, one batch at a
time. For each record every active processor is tried in priority order:

    validate() False   -> skipped, audited as a failure, counted as attempted
    process() raises   -> failed, audited, counted as attempted
    process() fails    -> failed, audited, counted as attempted
    process() succeeds -> field group merged into dynamic_fields

A record is "enriched" when at least one rule succeeded for it, otherwise
"failed". Each batch writes its dynamic fields, failure rows and the run
counters in one transaction. A batch that fails to commit is rolled back,
its records are counted as failed, and the run moves on to the next batch.

The run ends COMPLETED when at least one record was enriched, ERROR
otherwise. Errors outside the batch loop end the run in ERROR and are
re-raised as RunAbort.
"""

import traceback
from typing import Any

from claims_pipeline.core.exceptions import (
    InvalidTransition,
    RuleProcessError,
    RuleValidationFailure,
    RunAbort,
)
from claims_pipeline.core.lifecycle import FileLifecycle
from claims_pipeline.core.models import (
    ClaimRecord,
    EnrichmentFailure,
    EnrichmentResult,
    EnrichmentRun,
    EnrichmentStatus,
    FileStatus,
    ProcessingStage,
    RuleStats,
)
from claims_pipeline.core.models.enrichment import RUN_STATUS_ORDER
from claims_pipeline.core.rules.base_processor import RuleProcessor
from claims_pipeline.core.rules.registry import RuleRegistry
from claims_pipeline.jobs.cancellation import CancellationToken
from claims_pipeline.observability.logger import get_logger, log_operation
from claims_pipeline.observability.metrics import (
    job_duration_seconds,
    record_batch,
    record_rule_application,
    track_duration,
)
from claims_pipeline.utils.clock import utc_now
from claims_pipeline.warehouse.store import ClaimsStore

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100


class _BatchOutcome:
    """Tentative counters of one batch; applied to the run only after commit."""

    def __init__(self) -> None:
        self.enriched = 0
        self.failed = 0
        self.rule_counts: dict[str, list[int]] = {}
        self.rule_outcomes: list[tuple[str, str]] = []
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.failures: list[EnrichmentFailure] = []

    def count(self, rule_id: str, outcome: str) -> None:
        counts = self.rule_counts.setdefault(rule_id, [0, 0])
        counts[0] += 1
        if outcome == "succeeded":
            counts[1] += 1
        self.rule_outcomes.append((rule_id, outcome))


class EnrichmentRunner:
    """
    Executes enrichment runs created by the service layer.
    """

    def __init__(
        self,
        store: ClaimsStore,
        registry: RuleRegistry,
        lifecycle: FileLifecycle,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.store = store
        self.registry = registry
        self.lifecycle = lifecycle
        self.batch_size = batch_size

    def run(self, run_id: str, cancel_token: CancellationToken | None = None) -> EnrichmentRun:
        """
        Execute a PENDING run to completion.

        Args:
            run_id: Run created by start_enrichment
            cancel_token: Checked between batches

        Returns:
            The terminal run (COMPLETED or ERROR)

        Raises:
            RunNotFound: If the run does not exist
            RunAbort: If the run failed outside the batch loop
        """
        run = self.store.get_run(run_id)

        with log_operation(
            "Enrichment run", logger=logger, run_id=run_id, file_id=run.file_id
        ), track_duration(job_duration_seconds, job="enrichment"):
            try:
                return self._execute(run, cancel_token)
            except RunAbort as e:
                self.abort(run_id, e.cause, e)
                raise
            except Exception as e:
                self.abort(run_id, e, e)
                raise RunAbort(run_id, e) from e

    def _execute(self, run: EnrichmentRun, cancel_token: CancellationToken | None) -> EnrichmentRun:
        processors = self.registry.active_processors()
        if not processors:
            logger.warning(f"No active enrichment processors for run {run.run_id}")
            raise RunAbort(run.run_id, "No active enrichment rules with a registered processor")

        run = self._advance(run, EnrichmentStatus.RUNNING)
        parameters = {p.rule_id: self.registry.parameters_for(p.rule_id) for p in processors}
        stats = {p.rule_id: RuleStats(rule_id=p.rule_id, rule_name=p.name) for p in processors}
        batch_errors: list[dict[str, Any]] = []
        cancelled_reason: str | None = None

        offset = 0
        while offset < run.total_records:
            if cancel_token is not None and cancel_token.cancelled:
                cancelled_reason = cancel_token.reason or "cancelled"
                logger.warning(f"Enrichment run {run.run_id} cancelled at offset {offset}")
                break

            limit = min(self.batch_size, run.total_records - offset)
            records = self.store.fetch_claim_records(run.file_id, offset, limit)
            if not records:
                break

            outcome = self._evaluate_batch(run.run_id, records, processors, parameters)
            progress = run.model_copy(
                update={
                    "enriched_records": run.enriched_records + outcome.enriched,
                    "failed_records": run.failed_records + outcome.failed,
                }
            )

            try:
                with self.store.transaction() as tx:
                    for record_id, groups in outcome.updates:
                        tx.merge_dynamic_fields(record_id, groups)
                    if outcome.failures:
                        tx.insert_enrichment_failures(outcome.failures)
                    tx.save_run(progress)
            except Exception as e:
                record_batch("enrichment", committed=False)
                logger.error(
                    f"Enrichment batch at offset {offset} rolled back for run {run.run_id}: {e}",
                    extra={"run_id": run.run_id, "offset": offset, "batch_records": len(records)},
                )
                batch_errors.append({"offset": offset, "message": str(e)})
                run = self.store.save_run(
                    run.model_copy(update={"failed_records": run.failed_records + len(records)})
                )
            else:
                record_batch("enrichment", committed=True)
                run = progress
                for rule_id, (attempted, succeeded) in outcome.rule_counts.items():
                    stats[rule_id].attempted += attempted
                    stats[rule_id].succeeded += succeeded
                for rule_id, rule_outcome in outcome.rule_outcomes:
                    record_rule_application(rule_id, rule_outcome)
                logger.debug(
                    f"Committed enrichment batch at offset {offset} for run {run.run_id}: "
                    f"{outcome.enriched} enriched, {outcome.failed} failed"
                )

            offset += len(records)

        return self._finish(run, list(stats.values()), batch_errors, cancelled_reason)

    def _evaluate_batch(
        self,
        run_id: str,
        records: list[ClaimRecord],
        processors: list[RuleProcessor],
        parameters: dict[str, dict],
    ) -> _BatchOutcome:
        outcome = _BatchOutcome()
        for record in records:
            groups: dict[str, Any] = {}
            for processor in processors:
                result, rule_outcome = self._apply(processor, record, parameters[processor.rule_id])
                outcome.count(processor.rule_id, rule_outcome)
                if result.success:
                    groups[result.field_name] = result.field_value
                else:
                    outcome.failures.append(
                        EnrichmentFailure(
                            run_id=run_id,
                            record_id=record.record_id,
                            rule_id=processor.rule_id,
                            error_message=result.error or "Unknown enrichment failure",
                            raw_value=result.raw_value,
                        )
                    )

            if groups:
                outcome.enriched += 1
                outcome.updates.append((record.record_id, groups))
            else:
                outcome.failed += 1
        return outcome

    def _apply(
        self, processor: RuleProcessor, record: ClaimRecord, parameters: dict
    ) -> tuple[EnrichmentResult, str]:
        """Apply one rule to one record; never raises."""
        skipped_group = f"{processor.field_group or processor.rule_id}_skipped"
        try:
            applicable = processor.validate(record, parameters)
        except Exception as e:
            failure = RuleValidationFailure(processor.rule_id, record.record_id, f"validate() raised: {e}")
            logger.warning(str(failure))
            return EnrichmentResult.failed(skipped_group, failure.message), "failed"

        if not applicable:
            message = (
                f'Validation failed: required fields for rule "{processor.name}" '
                f"not available or not properly formatted"
            )
            logger.debug(f"[{processor.rule_id}] record {record.record_id}: {message}")
            return EnrichmentResult.failed(skipped_group, message), "skipped"

        try:
            result = processor.process(record, parameters)
        except Exception as e:
            failure = RuleProcessError(processor.rule_id, record.record_id, f"process() raised: {e}")
            logger.warning(str(failure))
            return EnrichmentResult.failed(processor.field_group, failure.message), "failed"

        if not result.success:
            failure = RuleProcessError(
                processor.rule_id, record.record_id, result.error or "rule reported failure", result.raw_value
            )
            logger.debug(str(failure))
            return result, "failed"
        return result, "succeeded"

    def _finish(
        self,
        run: EnrichmentRun,
        stats: list[RuleStats],
        batch_errors: list[dict[str, Any]],
        cancelled_reason: str | None,
    ) -> EnrichmentRun:
        details: dict[str, Any] = {
            "rule_stats": [s.model_dump() for s in stats],
            "batch_errors": batch_errors,
        }

        unaccounted = run.total_records - run.processed_records
        if cancelled_reason is None and unaccounted > 0:
            # fewer records than snapshotted at start
            run = self.store.save_run(
                run.model_copy(update={"failed_records": run.failed_records + unaccounted})
            )
            details["missing_records"] = unaccounted

        if cancelled_reason is not None:
            status = EnrichmentStatus.ERROR
            details.update({"cancelled": True, "message": cancelled_reason})
        elif run.enriched_records > 0:
            status = EnrichmentStatus.COMPLETED
        else:
            status = EnrichmentStatus.ERROR
            details["message"] = "No records were enriched"

        run = self._advance(run, status, completed_at=utc_now(), error_details=details)

        for s in stats:
            logger.info(
                f"Rule {s.rule_id} ({s.rule_name}): {s.succeeded}/{s.attempted} succeeded "
                f"({s.success_rate}%)",
                extra={"run_id": run.run_id, "rule_id": s.rule_id},
            )
        logger.info(
            f"Enrichment run {run.run_id} finished {status.value}: "
            f"{run.enriched_records} enriched, {run.failed_records} failed of {run.total_records}"
        )

        if status == EnrichmentStatus.COMPLETED:
            self._mark_file_enriched(run.file_id)
        return run

    def _mark_file_enriched(self, file_id: str) -> None:
        file = self.store.get_file(file_id)
        if file.status == FileStatus.ENRICHED and file.processing_stage == ProcessingStage.PROCESSED:
            return
        try:
            self.lifecycle.apply(file_id, FileStatus.ENRICHED, ProcessingStage.PROCESSED)
        except InvalidTransition as e:
            logger.warning(f"File {file_id} left in place after enrichment: {e}")

    def _advance(self, run: EnrichmentRun, status: EnrichmentStatus, **updates: Any) -> EnrichmentRun:
        """Persist a forward-only status change."""
        if RUN_STATUS_ORDER[status] <= RUN_STATUS_ORDER[run.status]:
            raise ValueError(f"Run {run.run_id} cannot move from {run.status.value} to {status.value}")
        return self.store.save_run(run.model_copy(update={"status": status, **updates}))

    def abort(self, run_id: str, cause: Any, error: BaseException) -> None:
        """Move an unfinished run to ERROR."""
        try:
            run = self.store.get_run(run_id)
            if run.status.is_terminal:
                return
            self._advance(
                run,
                EnrichmentStatus.ERROR,
                completed_at=utc_now(),
                error_details={
                    "message": str(cause),
                    "type": type(error).__name__,
                    "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
                },
            )
        except Exception as e:
            logger.error(f"Could not mark enrichment run {run_id} as ERROR: {e}", exc_info=True)
