"""
Rule-based enrichment of ingested claim records.
"""

from .runner import DEFAULT_BATCH_SIZE, EnrichmentRunner

__all__ = [
    "EnrichmentRunner",
    "DEFAULT_BATCH_SIZE",
]
