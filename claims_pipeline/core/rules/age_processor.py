"""
Age classification rule.

Derives member age at the fill date and today, with under-65 flags.
"""

from datetime import date
from typing import Any, Callable

from claims_pipeline.core.models import ClaimRecord, EnrichmentResult
from claims_pipeline.core.rules.base_processor import RuleProcessor
from claims_pipeline.utils import clock
from claims_pipeline.utils.dates import parse_date, years_between

MEDICARE_AGE = 65


class AgeRulesProcessor(RuleProcessor):
    """
    Applies when both member_dob and fill_date are mapped keys; blank values
    fail in process() with the raw value attached.

    Emits the "ageEnrichment" group:
        {currentAge, ageAtFillDate, isUnder65AtFillDate, isUnder65AtCurrentDate}
    """

    processor_key = "age_classification"
    default_rule_id = "age_classification"
    default_name = "Age Classification Rule"
    default_priority = 10
    field_group = "ageEnrichment"
    required_fields = ("member_dob", "fill_date")

    def __init__(
        self,
        rule_id: str | None = None,
        name: str | None = None,
        priority: int | None = None,
        today: Callable[[], date] = clock.today,
    ):
        super().__init__(rule_id, name, priority)
        self.today = today

    def validate(self, record: ClaimRecord, parameters: dict[str, Any]) -> bool:
        return all(f in record.mapped_fields for f in self.required_fields)

    def process(self, record: ClaimRecord, parameters: dict[str, Any]) -> EnrichmentResult:
        threshold = int(parameters.get("age_threshold", MEDICARE_AGE))
        raw_dob = record.mapped_fields.get("member_dob")
        raw_fill = record.mapped_fields.get("fill_date")

        try:
            dob = parse_date(raw_dob)
        except ValueError as e:
            return self.error(f"Invalid member_dob: {e}", raw_value=raw_dob)
        try:
            fill_date = parse_date(raw_fill)
        except ValueError as e:
            return self.error(f"Invalid fill_date: {e}", raw_value=raw_fill)

        age_at_fill = years_between(dob, fill_date)
        current_age = years_between(dob, self.today())

        if age_at_fill < 0:
            return self.error(
                f"Negative age at fill date ({age_at_fill}): member_dob is after fill_date",
                raw_value={"member_dob": raw_dob, "fill_date": raw_fill},
            )
        if current_age < 0:
            return self.error(
                f"Negative current age ({current_age}): member_dob is in the future",
                raw_value=raw_dob,
            )

        return self.success({
            "currentAge": current_age,
            "ageAtFillDate": age_at_fill,
            "isUnder65AtFillDate": age_at_fill < threshold,
            "isUnder65AtCurrentDate": current_age < threshold,
        })
