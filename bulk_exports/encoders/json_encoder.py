"""JSON array encoder."""

import json
from typing import BinaryIO, List, Optional, Sequence

from bulk_exports.encoders.base import RowEncoder
from bulk_exports.errors import EncodingError
from bulk_exports.models import ExportFormat, ExportQuery
from bulk_exports.registry import encoder_registry
from bulk_exports.transform import Row


@encoder_registry.encoder(ExportFormat.JSON)
class JsonArrayEncoder(RowEncoder):
    """
    Streams rows as one JSON array.

    Empty input produces ``[]``; otherwise each row is one line between
    ``[`` and ``]`` so the output stays parseable by any JSON reader.
    """

    content_type = "application/json"
    extension = "json"

    def __init__(self, sink: BinaryIO, columns: Optional[Sequence[str]] = None):
        super().__init__(sink)
        self._columns: Optional[List[str]] = list(columns) if columns else None
        self._first = True

    @classmethod
    def from_query(cls, sink: BinaryIO, query: ExportQuery) -> "JsonArrayEncoder":
        return cls(sink, columns=query.columns)

    def write_rows(self, rows: Sequence[Row]) -> None:
        parts = []
        for row in rows:
            if self._columns is not None:
                row = {column: row.get(column, "") for column in self._columns}
            try:
                line = json.dumps(row, ensure_ascii=False, allow_nan=False, default=str)
            except ValueError as e:
                raise EncodingError(f"Cannot encode row as JSON: {e}") from e
            parts.append(("[\n" if self._first else ",\n") + line)
            self._first = False
        if parts:
            self._sink.write("".join(parts).encode("utf-8"))

    def close(self) -> None:
        self._sink.write(b"[]" if self._first else b"\n]")
        self._sink.flush()
