"""
Header-to-field mapping.
"""

from .auto_mapper import DEFAULT_SIMILARITY_THRESHOLD, FieldMapper
from .catalog import FieldCatalogLoader
from .similarity import levenshtein_distance, normalize_field_name, string_similarity

__all__ = [
    "FieldMapper",
    "DEFAULT_SIMILARITY_THRESHOLD",
    "FieldCatalogLoader",
    "levenshtein_distance",
    "normalize_field_name",
    "string_similarity",
]
