"""
Channel classification rule.

Derives the dispensing channel from days supply:
    days_supply <= 30        -> "Retail"
    31 <= days_supply <= 83  -> "Retail90"
    days_supply > 83         -> "Mail"
"""

import math
from decimal import Decimal, InvalidOperation
from typing import Any

from claims_pipeline.core.models import ClaimRecord, EnrichmentResult
from claims_pipeline.core.rules.base_processor import RuleProcessor

RETAIL_MAX_DAYS = 30
RETAIL90_MAX_DAYS = 83


def parse_days_supply(value: Any) -> int | float | None:
    """Positive finite number from a cell value, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(Decimal(value.strip().replace(",", "")))
        except (InvalidOperation, ValueError):
            return None
    else:
        return None

    if math.isnan(number) or math.isinf(number) or number <= 0:
        return None
    return int(number) if number.is_integer() else number


class ChannelRuleProcessor(RuleProcessor):
    """
    Applies when days_supply parses to a positive number and the file
    does not already carry a mapped channel_indicator.

    Emits the "channelEnrichment" group:
        {channel_indicator, derived_from_days_supply}
    """

    processor_key = "channel_classification"
    default_rule_id = "channel_classification"
    default_name = "Channel Classification Rule"
    default_priority = 20
    field_group = "channelEnrichment"
    required_fields = ("days_supply",)
    excluded_fields = ("channel_indicator",)

    def validate(self, record: ClaimRecord, parameters: dict[str, Any]) -> bool:
        if "channel_indicator" in record.mapped_fields:
            return False
        return parse_days_supply(record.mapped_fields.get("days_supply")) is not None

    def process(self, record: ClaimRecord, parameters: dict[str, Any]) -> EnrichmentResult:
        raw = record.mapped_fields.get("days_supply")
        days_supply = parse_days_supply(raw)
        if days_supply is None:
            return self.error(f"Invalid days_supply value: {raw}", raw_value=raw)

        retail_max = parameters.get("retail_max_days", RETAIL_MAX_DAYS)
        retail90_max = parameters.get("retail90_max_days", RETAIL90_MAX_DAYS)

        if days_supply > retail90_max:
            channel = "Mail"
        elif days_supply <= retail_max:
            channel = "Retail"
        else:
            channel = "Retail90"

        return self.success({
            "channel_indicator": channel,
            "derived_from_days_supply": days_supply,
        })
