"""Paged, forward-only reading of raw records from a record source."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Mapping, NamedTuple, Optional, Sequence

import asyncpg

from bulk_exports.errors import ExportFailure, SourceUnavailable
from bulk_exports.models import IDENTIFIER_RE, ExportQuery

# Selected alongside the requested columns; dropped by the transformer.
CURSOR_FIELD = "_cursor"

DEFAULT_FETCH_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5


class Page(NamedTuple):
    """One fetched page of raw records."""

    records: List[Mapping[str, Any]]
    next_cursor: Any
    has_more: bool


class RecordSource(ABC):
    """
    A queryable origin of raw records.

    ``fetch_page`` is keyed by an opaque cursor (the position after the last
    record already read) so a failed fetch can be retried without skipping or
    repeating records.
    """

    @abstractmethod
    async def fetch_page(self, after: Any, limit: int) -> Page:
        """Fetch up to ``limit`` records positioned after ``after``."""

    async def estimate_total(self) -> Optional[int]:
        """Estimated number of records, or None when unknown."""
        return None


class InlineRecordSource(RecordSource):
    """Records supplied directly with the export request."""

    def __init__(self, records: Sequence[Mapping[str, Any]]):
        self._records = list(records)

    async def fetch_page(self, after: Any, limit: int) -> Page:
        start = after or 0
        batch = self._records[start : start + limit]
        return Page(batch, start + len(batch), len(batch) == limit)

    async def estimate_total(self) -> Optional[int]:
        return len(self._records)


def quote_identifier(name: str) -> str:
    """Quote a Postgres identifier, optionally schema-qualified."""
    parts = name.split(".")
    for part in parts:
        if not IDENTIFIER_RE.match(part):
            raise ValueError(f"Invalid identifier: {name!r}")
    return ".".join(f'"{part}"' for part in parts)


class PostgresRecordSource(RecordSource):
    """
    Keyset-paginated reads of one customer's rows from a Postgres table.

    Pages are ordered by ``query.order_by``, which must be unique per row
    (``id`` by default). Each page is a single short statement, so no
    connection or transaction is held across pages.
    """

    def __init__(
        self,
        db_pool: asyncpg.Pool,
        table: str,
        customer_id: str,
        query: ExportQuery,
        tenant_column: str = "customer_id",
    ):
        self.db_pool = db_pool
        self.customer_id = customer_id
        self._table = quote_identifier(table)
        self._tenant_column = quote_identifier(tenant_column)
        self._key = quote_identifier(query.order_by)
        if query.columns:
            self._select = ", ".join(quote_identifier(c) for c in query.columns)
        else:
            self._select = "*"
        self._where = [f"{self._tenant_column} = $1"]
        self._params: List[Any] = [customer_id]
        for column, value in query.filters.items():
            self._params.append(value)
            self._where.append(f"{quote_identifier(column)} = ${len(self._params)}")

    def page_sql(self, with_cursor: bool) -> str:
        where = list(self._where)
        idx = len(self._params) + 1
        if with_cursor:
            where.append(f"{self._key} > ${idx}")
            idx += 1
        return (
            f"SELECT {self._select}, {self._key} AS \"{CURSOR_FIELD}\" "
            f"FROM {self._table} WHERE {' AND '.join(where)} "
            f"ORDER BY {self._key} LIMIT ${idx}"
        )

    async def fetch_page(self, after: Any, limit: int) -> Page:
        params = list(self._params)
        if after is not None:
            params.append(after)
        params.append(limit)
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(self.page_sql(after is not None), *params)

        records: List[Dict[str, Any]] = [dict(row) for row in rows]
        next_cursor = records[-1][CURSOR_FIELD] if records else after
        return Page(records, next_cursor, len(records) == limit)

    async def estimate_total(self) -> Optional[int]:
        sql = f"SELECT count(*) FROM {self._table} WHERE {' AND '.join(self._where)}"
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(sql, *self._params)


class CursorReader:
    """
    Lazily reads pages from a record source.

    A failing page fetch is retried a few times with a short fixed delay
    before ``SourceUnavailable`` is raised. Reading always starts from the
    beginning of the source.
    """

    def __init__(
        self,
        source: RecordSource,
        page_size: int,
        max_retries: int = DEFAULT_FETCH_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.source = source
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.logger = logger or logging.getLogger(__name__)

    async def estimate_total(self) -> Optional[int]:
        """Total estimate from the source; failures degrade to unknown."""
        try:
            return await self.source.estimate_total()
        except Exception as e:
            self.logger.warning(f"Could not estimate export size: {e}")
            return None

    async def pages(self) -> AsyncIterator[List[Mapping[str, Any]]]:
        """Yield non-empty pages of raw records in source order."""
        cursor = None
        has_more = True
        while has_more:
            page = await self._fetch_with_retry(cursor)
            if page.records:
                yield page.records
            cursor = page.next_cursor
            has_more = page.has_more

    async def records(self) -> AsyncIterator[Mapping[str, Any]]:
        """Yield raw records one at a time."""
        async for page in self.pages():
            for record in page:
                yield record

    async def _fetch_with_retry(self, cursor: Any) -> Page:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.source.fetch_page(cursor, self.page_size)
            except ExportFailure:
                raise
            except Exception as e:
                last_error = e
                self.logger.warning(
                    f"Page fetch failed (attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay_seconds)

        raise SourceUnavailable(
            f"Record source failed after {self.max_retries} attempts: {last_error}"
        ) from last_error
