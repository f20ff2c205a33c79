"""
Row sources for batch ingestion.
"""

from .csv_reader import CSVRowSource
from .row_source import ListRowSource, Row, RowSource

__all__ = [
    "RowSource",
    "Row",
    "ListRowSource",
    "CSVRowSource",
]
