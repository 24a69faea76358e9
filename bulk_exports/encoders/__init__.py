"""Output encoders. Importing this package registers every built-in format."""

from typing import BinaryIO

from bulk_exports.encoders.base import RowEncoder
from bulk_exports.encoders.csv_encoder import CsvEncoder, sanitize_cell
from bulk_exports.encoders.json_encoder import JsonArrayEncoder
from bulk_exports.encoders.sheet_names import safe_sheet_name
from bulk_exports.encoders.xlsx_encoder import WorkbookEncoder
from bulk_exports.models import ExportFormat, ExportQuery
from bulk_exports.registry import encoder_registry


def create_encoder(format: ExportFormat, sink: BinaryIO, query: ExportQuery) -> RowEncoder:
    """Instantiate the registered encoder for ``format``."""
    encoder_cls = encoder_registry.get_encoder(format)
    if encoder_cls is None:
        raise ValueError(f"No encoder registered for format: {format}")
    return encoder_cls.from_query(sink, query)


__all__ = [
    "RowEncoder",
    "CsvEncoder",
    "JsonArrayEncoder",
    "WorkbookEncoder",
    "create_encoder",
    "safe_sheet_name",
    "sanitize_cell",
]
