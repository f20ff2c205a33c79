"""
Date parsing for spreadsheet cell values.
"""

from datetime import date, datetime
from typing import Any

DATE_FORMATS = ("%m/%d/%Y", "%Y/%m/%d", "%Y%m%d", "%m-%d-%Y")


def parse_date(value: Any) -> date:
    """
    Parse a cell value into a calendar date.

    Accepts date and datetime objects, ISO-8601 strings and the common
    US spreadsheet formats in DATE_FORMATS.

    Raises:
        ValueError: If the value is not a recognizable date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unsupported date value: {value!r}")

    text = value.strip()
    if not text:
        raise ValueError("Empty date value")

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    raise ValueError(f"Unrecognized date format: {value!r}")


def years_between(born: date, reference: date) -> int:
    """Whole years from born to reference, one less when the anniversary has not arrived yet."""
    age = reference.year - born.year
    if (reference.month, reference.day) < (born.month, born.day):
        age -= 1
    return age
