"""
Workbook loading and header detection.

Reads every sheet of an .xlsx workbook into a raw cell grid. Header rows
are detected heuristically because exported spreadsheets often carry a
title or metadata rows above the real header.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import pandas as pd

from crm_migrator.core.exceptions import AnalysisError
from crm_migrator.core.logging_config import analyzer_logger as logger
from crm_migrator.transform.normalizers import is_empty

MIN_HEADER_CELLS = 3


@dataclass
class SourceRow:
    """One data row, numbered from 1 in sheet order."""

    row_number: int
    values: Dict[str, Any]


@dataclass
class SheetData:
    """Raw cells of one sheet."""

    name: str
    rows: List[List[Any]] = field(default_factory=list)

    def header_row(self, scan_rows: int = 10) -> Optional[int]:
        return detect_header_row(self.rows, scan_rows)

    def table(self, scan_rows: int = 10) -> Tuple[int, List[str], List[List[Any]]]:
        """
        Split the sheet into header and data rows.

        Returns:
            (header row index, headers, data rows padded to header width)

        Raises:
            AnalysisError: If no header row can be found
        """
        header_index = self.header_row(scan_rows)
        if header_index is None:
            raise AnalysisError("no header row found", sheet=self.name)

        raw_headers = self.rows[header_index]
        width = max(len(row) for row in self.rows[header_index:])
        headers = _unique_headers(
            [raw_headers[i] if i < len(raw_headers) else None for i in range(width)]
        )

        data = []
        for row in self.rows[header_index + 1:]:
            if all(is_empty(cell) for cell in row):
                continue
            data.append(list(row) + [None] * (width - len(row)))

        return header_index, headers, data

    def records(self, scan_rows: int = 10) -> List[SourceRow]:
        """Data rows keyed by header."""
        _, headers, data = self.table(scan_rows)
        return [
            SourceRow(row_number=i, values=dict(zip(headers, row)))
            for i, row in enumerate(data, start=1)
        ]


@dataclass
class Workbook:
    """All sheets of a workbook, in workbook order."""

    source: str
    sheets: List[SheetData] = field(default_factory=list)

    def sheet(self, name: str) -> SheetData:
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        raise KeyError(f"Unknown sheet: {name}")

    @classmethod
    def from_rows(cls, sheets: Dict[str, List[List[Any]]], source: str = "<memory>") -> "Workbook":
        """
        Build a workbook from in-memory rows.

        Args:
            sheets: {sheet name: rows}, first row is usually the header
            source: Label used in logs and profiles
        """
        return cls(
            source=source,
            sheets=[SheetData(name=name, rows=[_clean_row(r) for r in rows]) for name, rows in sheets.items()],
        )


def detect_header_row(rows: List[List[Any]], scan_rows: int = 10) -> Optional[int]:
    """
    Find the header row within the first scan_rows rows.

    The header is the first row with at least MIN_HEADER_CELLS non-empty
    cells, or as many as the widest scanned row when sheets are narrower.

    Returns:
        Zero-based row index, or None for an empty sheet
    """
    scanned = rows[:scan_rows]
    counts = [sum(1 for cell in row if not is_empty(cell)) for row in scanned]
    if not counts or max(counts) == 0:
        return None

    needed = min(MIN_HEADER_CELLS, max(counts))
    for index, count in enumerate(counts):
        if count >= needed:
            return index
    return None


def load_workbook(path: Union[str, Path]) -> Workbook:
    """
    Read every sheet of an .xlsx workbook.

    Args:
        path: Workbook file

    Returns:
        Workbook with raw cell grids

    Raises:
        AnalysisError: If the file cannot be opened or parsed
    """
    logger.info(f"Loading workbook: {path}")
    try:
        excel_file = pd.ExcelFile(path, engine="openpyxl")
        sheets = []
        for sheet_name in excel_file.sheet_names:
            df = pd.read_excel(excel_file, sheet_name=sheet_name, header=None, dtype=object)
            df = df.astype(object).where(pd.notna(df), None)
            rows = [_clean_row(row) for row in df.values.tolist()]
            sheets.append(SheetData(name=str(sheet_name), rows=rows))
    except Exception as e:
        logger.error(f"Error loading workbook {path}: {e}")
        raise AnalysisError(f"cannot read workbook {path}: {e}") from e

    logger.info(f"Loaded {len(sheets)} sheets from {path}")
    return Workbook(source=str(path), sheets=sheets)


def _clean_row(row: List[Any]) -> List[Any]:
    cleaned = []
    for cell in row:
        if isinstance(cell, pd.Timestamp):
            cell = cell.to_pydatetime()
        if isinstance(cell, str):
            cell = cell.strip()
        cleaned.append(None if is_empty(cell) else cell)
    return cleaned


def _unique_headers(raw: List[Any]) -> List[str]:
    headers = []
    used = set()
    suffixes: Dict[str, int] = {}
    for index, cell in enumerate(raw):
        base = str(cell).strip() if not is_empty(cell) else f"Column{index + 1}"
        name = base
        # Generated names must not collide with real headers either
        while name in used:
            suffixes[base] = suffixes.get(base, 1) + 1
            name = f"{base}_{suffixes[base]}"
        used.add(name)
        headers.append(name)
    return headers
