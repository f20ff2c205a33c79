"""
Row sources feeding the batch ingestor.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Iterator, Mapping

Row = Mapping[str, Any]


class RowSource(ABC):
    """
    Ordered, finite, re-iterable sequence of rows.

    Each row maps an original column name to a cell value. The row count
    is known before iteration starts.
    """

    @property
    @abstractmethod
    def headers(self) -> list[str]:
        """Column names in source order."""

    @property
    @abstractmethod
    def row_count(self) -> int:
        ...

    @abstractmethod
    def __iter__(self) -> Iterator[Row]:
        ...

    def __len__(self) -> int:
        return self.row_count


class ListRowSource(RowSource):
    """Rows already held in memory (parsed spreadsheets, tests)."""

    def __init__(self, rows: Iterable[Row], headers: list[str] | None = None):
        self._rows = [dict(row) for row in rows]
        if headers is None:
            headers = []
            for row in self._rows:
                headers.extend(k for k in row if k not in headers)
        self._headers = list(headers)

    @property
    def headers(self) -> list[str]:
        return list(self._headers)

    @property
    def row_count(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self._rows)
