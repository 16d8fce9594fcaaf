"""
Workbook Analyzer - profiles every sheet of a workbook.

A sheet that cannot be analyzed is recorded in failed_sheets and skipped;
the remaining sheets are still profiled.
"""
from typing import Dict, List

from crm_migrator.analyzer.column_profiler import ColumnProfiler
from crm_migrator.analyzer.workbook_loader import SheetData, Workbook
from crm_migrator.core.config import settings
from crm_migrator.core.data_structures import SheetProfile, WorkbookProfile
from crm_migrator.core.exceptions import AnalysisError
from crm_migrator.core.logging_config import analyzer_logger as logger


class WorkbookAnalyzer:
    """Profiles sheets into immutable SheetProfile objects."""

    def __init__(
        self,
        sample_size: int = None,
        pattern_threshold: float = None,
        header_scan_rows: int = None,
    ):
        self.profiler = ColumnProfiler(
            sample_size=sample_size or settings.SAMPLE_SIZE,
            pattern_threshold=pattern_threshold or settings.PATTERN_MATCH_RATIO,
        )
        self.header_scan_rows = header_scan_rows or settings.HEADER_SCAN_ROWS

    def analyze(self, workbook: Workbook) -> WorkbookProfile:
        """
        Profile every sheet of a workbook.

        Args:
            workbook: Loaded workbook

        Returns:
            WorkbookProfile with profiled and failed sheets
        """
        logger.info(f"Analyzing workbook {workbook.source} ({len(workbook.sheets)} sheets)")

        sheets: List[SheetProfile] = []
        failed: Dict[str, str] = {}
        for sheet in workbook.sheets:
            try:
                sheets.append(self.analyze_sheet(sheet))
            except AnalysisError as e:
                logger.warning(f"Skipping sheet '{sheet.name}': {e.message}")
                failed[sheet.name] = e.message

        logger.info(f"Analyzed {len(sheets)} sheets, {len(failed)} failed")
        return WorkbookProfile(source=workbook.source, sheets=tuple(sheets), failed_sheets=failed)

    def analyze_sheet(self, sheet: SheetData) -> SheetProfile:
        """
        Profile a single sheet.

        Raises:
            AnalysisError: If the sheet has no header or no data rows
        """
        header_row, headers, data = sheet.table(self.header_scan_rows)
        if not data:
            raise AnalysisError("no data rows below header", sheet=sheet.name)

        columns = []
        empty_columns = []
        for position, header in enumerate(headers):
            values = [row[position] for row in data]
            profile = self.profiler.profile_column(header, values, sheet.name, position)
            if profile is None:
                empty_columns.append(header)
            else:
                columns.append(profile)

        if not columns:
            raise AnalysisError("every column is empty", sheet=sheet.name)

        logger.info(
            f"Sheet '{sheet.name}': header at row {header_row + 1}, "
            f"{len(data)} rows, {len(columns)} columns profiled"
        )
        return SheetProfile(
            name=sheet.name,
            headers=tuple(headers),
            header_row=header_row,
            row_count=len(data),
            columns=tuple(columns),
            empty_columns=tuple(empty_columns),
        )
