"""
Batch ingestion of claims rows.
"""

from .ingestor import DEFAULT_BATCH_SIZE, BatchIngestor, transform_row
from .readers import CSVRowSource, ListRowSource, RowSource

__all__ = [
    "BatchIngestor",
    "DEFAULT_BATCH_SIZE",
    "transform_row",
    "RowSource",
    "ListRowSource",
    "CSVRowSource",
]
