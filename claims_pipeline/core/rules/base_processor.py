"""
Base rule processor interface for all enrichment rules.

All processors inherit from RuleProcessor and implement validate() and process().
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable

from claims_pipeline.core.models import ClaimRecord, EnrichmentResult


class RuleProcessor(ABC):
    """
    Abstract base class for enrichment rule processors.

    A processor derives one dynamic field group from a claim record.
    validate() decides applicability without side effects and without
    raising for missing or malformed fields; process() computes the group.

    Subclasses declare the canonical fields they read (required_fields)
    and the fields whose presence makes them inapplicable (excluded_fields).
    """

    processor_key: str = ""
    default_rule_id: str = ""
    default_name: str = ""
    default_priority: int = 100
    field_group: str = ""
    required_fields: tuple[str, ...] = ()
    excluded_fields: tuple[str, ...] = ()

    def __init__(
        self,
        rule_id: str | None = None,
        name: str | None = None,
        priority: int | None = None,
    ):
        self.rule_id = rule_id or self.default_rule_id
        self.name = name or self.default_name
        self.priority = self.default_priority if priority is None else priority

    @abstractmethod
    def validate(self, record: ClaimRecord, parameters: dict[str, Any]) -> bool:
        """
        Check whether the rule applies to a record.

        Args:
            record: Claim record to inspect
            parameters: Rule parameters from the rule definition

        Returns:
            True if process() should run for this record
        """

    @abstractmethod
    def process(self, record: ClaimRecord, parameters: dict[str, Any]) -> EnrichmentResult:
        """Compute the rule's field group for a record."""

    def success(self, field_value: Any) -> EnrichmentResult:
        return EnrichmentResult.ok(self.field_group, field_value)

    def error(self, message: str, raw_value: Any = None) -> EnrichmentResult:
        return EnrichmentResult.failed(self.field_group, message, raw_value)

    def check_mapping(self, mapped_field_names: Iterable[str]) -> dict[str, Any]:
        """
        Decide from a file's mapping alone whether this rule can run.

        Returns:
            {"can_run": bool, "missing_fields": [...], "conflicting_fields": [...]}
        """
        mapped = set(mapped_field_names)
        missing = [f for f in self.required_fields if f not in mapped]
        conflicting = [f for f in self.excluded_fields if f in mapped]
        return {
            "can_run": not missing and not conflicting,
            "missing_fields": missing,
            "conflicting_fields": conflicting,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rule_id={self.rule_id}, priority={self.priority})"
