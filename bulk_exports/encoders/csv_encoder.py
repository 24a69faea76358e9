"""Delimited text encoder with formula-injection protection."""

import csv
import io
from typing import BinaryIO, List, Optional, Sequence

from bulk_exports.encoders.base import RowEncoder
from bulk_exports.models import ExportFormat, ExportQuery
from bulk_exports.registry import encoder_registry
from bulk_exports.transform import Row, Scalar

# Cells starting with these can be evaluated as formulas by spreadsheet apps.
CSV_INJECTION_PREFIXES = ("=", "+", "-", "@", "\t", "\r")

UTF8_BOM = b"\xef\xbb\xbf"


def cell_text(value: Scalar) -> str:
    """Render a transformed scalar as cell text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def sanitize_cell(value: Scalar) -> str:
    """Cell text, prefixed with a single quote if it could start a formula."""
    text = cell_text(value)
    if text.startswith(CSV_INJECTION_PREFIXES):
        return "'" + text
    return text


@encoder_registry.encoder(ExportFormat.CSV)
class CsvEncoder(RowEncoder):
    """
    Streaming CSV encoder.

    The header is written once, from ``columns`` when given, otherwise from
    the first row's keys. Rows missing a column get an empty cell and keys
    outside the column list are ignored. Output is emitted per batch.
    """

    content_type = "text/csv; charset=utf-8"
    extension = "csv"

    def __init__(
        self,
        sink: BinaryIO,
        columns: Optional[Sequence[str]] = None,
        delimiter: str = ",",
        include_bom: bool = False,
    ):
        super().__init__(sink)
        self._columns: Optional[List[str]] = list(columns) if columns else None
        self._include_bom = include_bom
        self._started = False
        self._header_written = False
        self._buffer = io.StringIO()
        self._writer = csv.writer(
            self._buffer,
            delimiter=delimiter,
            lineterminator="\n",
            quoting=csv.QUOTE_MINIMAL,
        )

    @classmethod
    def from_query(cls, sink: BinaryIO, query: ExportQuery) -> "CsvEncoder":
        return cls(
            sink,
            columns=query.columns,
            delimiter=query.delimiter,
            include_bom=query.include_bom,
        )

    @property
    def columns(self) -> Optional[List[str]]:
        return self._columns

    def write_rows(self, rows: Sequence[Row]) -> None:
        for row in rows:
            if not self._header_written:
                if self._columns is None:
                    self._columns = list(row.keys())
                self._write_header()
            self._writer.writerow(
                [sanitize_cell(row.get(column, "")) for column in self._columns]
            )
        self._flush()

    def close(self) -> None:
        if not self._header_written and self._columns:
            self._write_header()
        self._flush()
        if not self._started and self._include_bom:
            self._sink.write(UTF8_BOM)
            self._started = True
        self._sink.flush()

    def _write_header(self) -> None:
        self._writer.writerow(self._columns)
        self._header_written = True

    def _flush(self) -> None:
        text = self._buffer.getvalue()
        if not text:
            return
        if not self._started:
            if self._include_bom:
                self._sink.write(UTF8_BOM)
            self._started = True
        self._sink.write(text.encode("utf-8"))
        self._buffer.seek(0)
        self._buffer.truncate()
