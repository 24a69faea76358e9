"""Unit tests for the cursor reader and record sources."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from bulk_exports.cursor import (
    CURSOR_FIELD,
    CursorReader,
    InlineRecordSource,
    PostgresRecordSource,
    quote_identifier,
)
from bulk_exports.errors import EncodingError, SourceUnavailable
from bulk_exports.models import ExportQuery


async def collect(reader):
    return [page async for page in reader.pages()]


@pytest.mark.asyncio
async def test_pages_cover_all_records_in_order(make_source):
    source = make_source(25)
    reader = CursorReader(source, page_size=10, retry_delay_seconds=0)

    pages = await collect(reader)

    assert [len(page) for page in pages] == [10, 10, 5]
    ids = [record["id"] for page in pages for record in page]
    assert ids == list(range(1, 26))


@pytest.mark.asyncio
async def test_exact_multiple_of_page_size(make_source):
    source = make_source(20)
    reader = CursorReader(source, page_size=10, retry_delay_seconds=0)

    pages = await collect(reader)

    assert [len(page) for page in pages] == [10, 10]
    # One extra fetch confirms the end of the data
    assert source.fetches == 3


@pytest.mark.asyncio
async def test_empty_source_yields_nothing(make_source):
    reader = CursorReader(make_source(0), page_size=10, retry_delay_seconds=0)
    assert await collect(reader) == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried_without_duplicates(make_source):
    source = make_source(15, fail_first=2)
    reader = CursorReader(source, page_size=10, max_retries=3, retry_delay_seconds=0)

    records = [record async for record in reader.records()]

    assert [record["id"] for record in records] == list(range(1, 16))


@pytest.mark.asyncio
async def test_persistent_failure_raises_source_unavailable(make_source):
    source = make_source(15, fail_always=True)
    reader = CursorReader(source, page_size=10, max_retries=3, retry_delay_seconds=0)

    with pytest.raises(SourceUnavailable) as exc_info:
        await collect(reader)

    assert source.fetches == 3
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_classified_failures_are_not_retried():
    source = MagicMock()
    source.fetch_page = AsyncMock(side_effect=EncodingError("bad row"))
    reader = CursorReader(source, page_size=10, retry_delay_seconds=0)

    with pytest.raises(EncodingError):
        await collect(reader)

    assert source.fetch_page.await_count == 1


@pytest.mark.asyncio
async def test_estimate_failure_degrades_to_unknown():
    source = MagicMock()
    source.estimate_total = AsyncMock(side_effect=RuntimeError("count timed out"))
    reader = CursorReader(source, page_size=10)

    assert await reader.estimate_total() is None


def test_page_size_must_be_positive(make_source):
    with pytest.raises(ValueError):
        CursorReader(make_source(1), page_size=0)


@pytest.mark.asyncio
async def test_inline_source_pages_by_offset():
    source = InlineRecordSource([{"n": i} for i in range(5)])

    first = await source.fetch_page(None, 2)
    second = await source.fetch_page(first.next_cursor, 2)
    third = await source.fetch_page(second.next_cursor, 2)

    assert [r["n"] for r in first.records] == [0, 1]
    assert [r["n"] for r in second.records] == [2, 3]
    assert [r["n"] for r in third.records] == [4]
    assert not third.has_more
    assert await source.estimate_total() == 5


def test_quote_identifier():
    assert quote_identifier("orders") == '"orders"'
    assert quote_identifier("public.orders") == '"public"."orders"'
    with pytest.raises(ValueError):
        quote_identifier('orders"; DROP TABLE x; --')


def make_pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    return pool


def test_postgres_page_sql_uses_keyset_pagination():
    query = ExportQuery(source="orders", columns=["id", "total"], filters={"region": "eu"})
    source = PostgresRecordSource(MagicMock(), "public.orders", "c1", query)

    assert source.page_sql(with_cursor=False) == (
        'SELECT "id", "total", "id" AS "_cursor" FROM "public"."orders" '
        'WHERE "customer_id" = $1 AND "region" = $2 ORDER BY "id" LIMIT $3'
    )
    assert source.page_sql(with_cursor=True) == (
        'SELECT "id", "total", "id" AS "_cursor" FROM "public"."orders" '
        'WHERE "customer_id" = $1 AND "region" = $2 AND "id" > $3 ORDER BY "id" LIMIT $4'
    )


@pytest.mark.asyncio
async def test_postgres_fetch_page_advances_cursor():
    conn = AsyncMock()
    conn.fetch.return_value = [
        {"id": 7, "total": 1, CURSOR_FIELD: 7},
        {"id": 9, "total": 2, CURSOR_FIELD: 9},
    ]
    query = ExportQuery(source="orders")
    source = PostgresRecordSource(make_pool(conn), "orders", "c1", query)

    page = await source.fetch_page(5, 2)

    assert page.next_cursor == 9
    assert page.has_more
    args = conn.fetch.await_args.args
    assert args[1:] == ("c1", 5, 2)
    assert 'SELECT *, "id" AS "_cursor"' in args[0]


@pytest.mark.asyncio
async def test_postgres_estimate_counts_customer_rows():
    conn = AsyncMock()
    conn.fetchval.return_value = 42
    query = ExportQuery(source="orders", filters={"status": "paid"})
    source = PostgresRecordSource(make_pool(conn), "orders", "c1", query)

    assert await source.estimate_total() == 42
    sql, *params = conn.fetchval.await_args.args
    assert sql == 'SELECT count(*) FROM "orders" WHERE "customer_id" = $1 AND "status" = $2'
    assert params == ["c1", "paid"]
