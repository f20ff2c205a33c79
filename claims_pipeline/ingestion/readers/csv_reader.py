"""
CSV row source for batch ingestion.
"""

import csv
from pathlib import Path
from typing import Iterator

from claims_pipeline.ingestion.readers.row_source import Row, RowSource


class CSVRowSource(RowSource):
    """
    Reads a CSV file whose first row holds the column names.

    The file is scanned once up front to count rows; every iteration
    re-opens it. Empty cells come back as None.
    """

    def __init__(self, file_path: str | Path, delimiter: str = ",", encoding: str = "utf-8-sig"):
        """
        Initialize CSV row source.

        Args:
            file_path: Path to CSV file
            delimiter: Field delimiter
            encoding: File encoding (the default strips a UTF-8 BOM)
        """
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"CSV file not found: {file_path}")

        self.delimiter = delimiter
        self.encoding = encoding

        with open(self.file_path, newline="", encoding=self.encoding) as f:
            reader = csv.reader(f, delimiter=self.delimiter)
            self._headers = next(reader, [])
            self._row_count = sum(1 for row in reader if any(cell.strip() for cell in row))

    @property
    def headers(self) -> list[str]:
        return list(self._headers)

    @property
    def row_count(self) -> int:
        return self._row_count

    def __iter__(self) -> Iterator[Row]:
        with open(self.file_path, newline="", encoding=self.encoding) as f:
            reader = csv.reader(f, delimiter=self.delimiter)
            next(reader, None)
            for cells in reader:
                if not any(cell.strip() for cell in cells):
                    continue
                yield {
                    header: (cells[idx] if idx < len(cells) and cells[idx] != "" else None)
                    for idx, header in enumerate(self._headers)
                }
