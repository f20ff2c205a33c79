"""
FieldMapper: aligns spreadsheet headers with the canonical field catalog.

Headers are processed in order. Each header tries three tiers and stops at
the first hit:

1. exact: normalized header == normalized field name
2. variation: normalized header == normalized known variation of a field
3. similarity: best max(sim(header, field name), sim(header, display name))
   over fields not yet mapped, accepted at or above the threshold

A field is consumed by the first header that maps to it, so no field is
the target of two headers. Similarity ties keep the earliest field in
catalog order.
"""

from claims_pipeline.core.mapping.similarity import normalize_field_name, string_similarity
from claims_pipeline.core.models import AutoMapResult, FieldVariation, StandardField
from claims_pipeline.observability.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8


class FieldMapper:
    """Best-effort header -> canonical field mapper."""

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Similarity threshold must be within [0, 1], got {threshold}")
        self.threshold = threshold

    def auto_map(
        self,
        source_headers: list[str],
        fields: list[StandardField],
        variations: list[FieldVariation] | None = None,
        threshold: float | None = None,
    ) -> AutoMapResult:
        """
        Map source headers onto canonical field names.

        Args:
            source_headers: Spreadsheet headers in column order
            fields: Canonical fields in catalog order
            variations: Known alternative header names
            threshold: Overrides the mapper's similarity threshold for this call

        Returns:
            AutoMapResult with the mapping (header -> field_name) and per-tier counts
        """
        threshold = self.threshold if threshold is None else threshold
        result = AutoMapResult()

        known = {f.field_name for f in fields}
        normalized_fields = [
            (f, normalize_field_name(f.field_name), normalize_field_name(f.display_name))
            for f in fields
        ]
        normalized_variations = [
            (v.field_name, normalize_field_name(v.variation_name))
            for v in (variations or [])
            if v.field_name in known
        ]
        consumed: set[str] = set()

        for header in source_headers:
            if header in result.mapping or header in result.unmapped_headers:
                logger.debug(f"Skipping duplicate header '{header}'")
                continue

            normalized = normalize_field_name(header)

            exact = next(
                (
                    f.field_name
                    for f, name, _ in normalized_fields
                    if name and name == normalized and f.field_name not in consumed
                ),
                None,
            )
            if exact:
                result.mapping[header] = exact
                result.exact_matches += 1
                consumed.add(exact)
                continue

            variation = next(
                (
                    field_name
                    for field_name, name in normalized_variations
                    if name and name == normalized and field_name not in consumed
                ),
                None,
            )
            if variation:
                result.mapping[header] = variation
                result.variation_matches += 1
                consumed.add(variation)
                continue

            best_field: str | None = None
            best_score = -1.0
            for f, name, display in normalized_fields:
                if f.field_name in consumed:
                    continue
                score = max(string_similarity(normalized, name), string_similarity(normalized, display))
                # strict ">" keeps the earliest field on ties
                if score > best_score:
                    best_field, best_score = f.field_name, score

            if best_field is not None and best_score >= threshold:
                result.mapping[header] = best_field
                result.similarity_matches += 1
                consumed.add(best_field)
                logger.debug(f"Similarity match '{header}' -> {best_field} ({best_score:.2f})")
                continue

            result.unmapped_headers.append(header)

        logger.info(
            f"Auto-mapped {result.total_matches}/{len(source_headers)} headers "
            f"(exact={result.exact_matches}, variation={result.variation_matches}, "
            f"similarity={result.similarity_matches})"
        )
        return result
