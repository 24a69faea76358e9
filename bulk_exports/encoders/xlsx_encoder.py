"""Spreadsheet workbook encoder built on XlsxWriter."""

import logging
import shutil
import tempfile
from decimal import Decimal
from typing import BinaryIO, List, Optional, Sequence, Set

import xlsxwriter

from bulk_exports.encoders.base import RowEncoder
from bulk_exports.encoders.sheet_names import safe_sheet_name
from bulk_exports.errors import EncodingError
from bulk_exports.models import ExportFormat, ExportQuery
from bulk_exports.registry import encoder_registry
from bulk_exports.transform import Row, Scalar

logger = logging.getLogger(__name__)

EXCEL_MAX_ROWS = 1_048_576
EXCEL_MAX_COLUMNS = 16_384
MAX_COLUMN_WIDTH = 50
WIDTH_SAMPLE_ROWS = 100

# Integers beyond this lose precision as spreadsheet numbers.
_MAX_EXACT_INT = 2**53


@encoder_registry.encoder(ExportFormat.XLSX)
class WorkbookEncoder(RowEncoder):
    """
    Streaming XLSX encoder.

    Rows are flushed to temporary files as they are written (XlsxWriter's
    constant memory mode); the zip container is assembled and written to the
    sink on ``close()``. A sheet that reaches the row limit rolls over into a
    new sheet named from the same desired name.

    Strings are always written as text, never as formulas or links.
    """

    content_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    extension = "xlsx"

    def __init__(
        self,
        sink: BinaryIO,
        columns: Optional[Sequence[str]] = None,
        sheet_name: str = "Export",
        max_rows_per_sheet: int = EXCEL_MAX_ROWS,
    ):
        super().__init__(sink)
        if max_rows_per_sheet < 2:
            raise ValueError("max_rows_per_sheet must leave room for a header and a row")
        self._columns: Optional[List[str]] = list(columns) if columns else None
        self._desired_sheet_name = sheet_name
        self._max_rows = max_rows_per_sheet
        self._used_names: Set[str] = set()
        self._sheet_names: List[str] = []
        self._widths: Optional[List[float]] = None
        self._worksheet = None
        self._row = 0
        self._tmpdir = tempfile.mkdtemp(prefix="bulk-exports-xlsx-")
        self._workbook = xlsxwriter.Workbook(
            sink,
            {
                "constant_memory": True,
                "strings_to_formulas": False,
                "strings_to_urls": False,
                "strings_to_numbers": False,
                "nan_inf_to_errors": True,
                "tmpdir": self._tmpdir,
            },
        )
        self._header_format = self._workbook.add_format({"bold": True})

    @classmethod
    def from_query(cls, sink: BinaryIO, query: ExportQuery) -> "WorkbookEncoder":
        return cls(sink, columns=query.columns, sheet_name=query.sheet_name)

    @property
    def sheet_names(self) -> List[str]:
        return list(self._sheet_names)

    def write_rows(self, rows: Sequence[Row]) -> None:
        if not rows:
            return
        if self._columns is None:
            self._columns = list(rows[0].keys())
        if len(self._columns) > EXCEL_MAX_COLUMNS:
            raise EncodingError(
                f"Workbook supports at most {EXCEL_MAX_COLUMNS} columns, got {len(self._columns)}"
            )
        if self._widths is None:
            self._widths = _column_widths(self._columns, rows[:WIDTH_SAMPLE_ROWS])

        for row in rows:
            if self._worksheet is None or self._row >= self._max_rows:
                self._add_sheet()
            for col, column in enumerate(self._columns):
                self._write_cell(self._row, col, row.get(column, ""))
            self._row += 1

    def close(self) -> None:
        if self._worksheet is None:
            if self._columns and self._widths is None:
                self._widths = _column_widths(self._columns, [])
            self._add_sheet()
        try:
            self._workbook.close()
        finally:
            self._cleanup()
        self._sink.flush()

    def abort(self) -> None:
        # Prevents XlsxWriter from complaining about an unclosed workbook.
        self._workbook.fileclosed = True
        self._cleanup()

    def _add_sheet(self) -> None:
        desired = self._desired_sheet_name.strip("'")
        name = safe_sheet_name(desired, self._used_names)
        self._worksheet = self._workbook.add_worksheet(name)
        self._sheet_names.append(name)
        self._row = 0
        if len(self._sheet_names) > 1:
            logger.debug(f"Workbook rolled over to sheet {name}")

        if not self._columns:
            return
        for col, width in enumerate(self._widths or []):
            self._worksheet.set_column(col, col, width)
        for col, column in enumerate(self._columns):
            self._worksheet.write_string(0, col, column, self._header_format)
        self._row = 1

    def _write_cell(self, row: int, col: int, value: Scalar) -> None:
        ws = self._worksheet
        if isinstance(value, bool):
            ws.write_boolean(row, col, value)
        elif isinstance(value, int):
            if abs(value) < _MAX_EXACT_INT:
                ws.write_number(row, col, value)
            else:
                ws.write_string(row, col, str(value))
        elif isinstance(value, (float, Decimal)):
            ws.write_number(row, col, float(value))
        elif value == "":
            ws.write_blank(row, col, None)
        else:
            ws.write_string(row, col, str(value))

    def _cleanup(self) -> None:
        shutil.rmtree(self._tmpdir, ignore_errors=True)


def _column_widths(columns: Sequence[str], sample: Sequence[Row]) -> List[float]:
    """Column widths from header lengths and a sample of rows, capped."""
    widths = []
    for column in columns:
        longest = len(column)
        for row in sample:
            longest = max(longest, len(str(row.get(column, ""))))
        widths.append(min(longest + 2, MAX_COLUMN_WIDTH))
    return widths
