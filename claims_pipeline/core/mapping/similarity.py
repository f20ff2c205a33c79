"""
String similarity for header matching.
"""

import re

_SEPARATORS = re.compile(r"[\s\-_]+")


def normalize_field_name(name: str | None) -> str:
    """Uppercase and drop whitespace, hyphens and underscores: "Fill_Date " -> "FILLDATE"."""
    if not name:
        return ""
    return _SEPARATORS.sub("", name.upper())


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate Levenshtein distance between two strings.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Edit distance (number of character changes needed)
    """
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = range(len(s2) + 1)
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def string_similarity(a: str, b: str) -> float:
    """
    Similarity score in [0, 1]: 1 - distance / longer length.

    Two empty strings are identical (1.0); one empty string matches nothing (0.0).
    """
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    distance = levenshtein_distance(a, b)
    return 1.0 - distance / max(len(a), len(b))
