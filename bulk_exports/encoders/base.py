"""Base class for streaming row encoders."""

from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Sequence

from bulk_exports.models import ExportQuery
from bulk_exports.transform import Row


class RowEncoder(ABC):
    """
    Incremental encoder from transformed rows to output bytes.

    Encoders write to ``sink``, a binary writable exposing ``write()`` and
    ``flush()``. Bytes are pushed to the sink as soon as they are produced
    so callers can forward them without buffering the whole file.
    """

    content_type: str = "application/octet-stream"
    extension: str = "bin"

    def __init__(self, sink: BinaryIO):
        self._sink = sink

    @classmethod
    @abstractmethod
    def from_query(cls, sink: BinaryIO, query: ExportQuery) -> "RowEncoder":
        """Build an encoder configured from an export query."""

    @abstractmethod
    def write_rows(self, rows: Sequence[Row]) -> None:
        """Encode a batch of rows, in order."""

    @abstractmethod
    def close(self) -> None:
        """Write any trailing bytes; the output is complete afterwards."""

    def abort(self) -> None:
        """Release resources without completing the output."""

    def __enter__(self) -> "RowEncoder":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()
