# tests/test_paging.py

import httpx
import pytest

from conftest import paged
from outreach.bloomerang.paging import extract_items, walk_pages

pytestmark = pytest.mark.anyio


def _items(n):
    return [{"Id": i} for i in range(n)]


async def test_walk_stops_on_short_page(fake):
    fake.on("transactions", paged(_items(120)))
    async with fake.client() as client:
        walk = await walk_pages(client, "transactions", {"accountId": 1})

    assert walk.ok
    assert len(walk.items) == 120
    assert [int(r.url.params["skip"]) for r in fake.requests] == [0, 50, 100]
    assert all(r.url.params["take"] == "50" for r in fake.requests)
    assert len(walk.request_urls) == 3


async def test_exact_multiple_needs_one_empty_page(fake):
    fake.on("notes", paged(_items(100)))
    async with fake.client() as client:
        walk = await walk_pages(client, "notes")

    assert walk.ok
    assert len(walk.items) == 100
    assert len(fake.requests) == 3


async def test_failed_page_discards_everything(fake):
    items = _items(120)

    def handler(request):
        if request.url.params["skip"] == "50":
            return httpx.Response(500, text="boom")
        return paged(items)(request)

    fake.on("transactions", handler)
    async with fake.client() as client:
        walk = await walk_pages(client, "transactions")

    assert not walk.ok
    assert walk.items == []
    assert len(walk.request_urls) == 2
    assert walk.failure.status == 500
    detail = walk.failure_detail()
    assert detail["status"] == 500
    assert detail["requestUrls"] == walk.request_urls


@pytest.mark.parametrize("payload", [
    [{"Id": 1}, {"Id": 2}],
    {"Results": [{"Id": 1}, {"Id": 2}]},
    {"Transactions": [{"Id": 1}, {"Id": 2}]},
    {"Data": {"Items": [{"Id": 1}, {"Id": 2}]}},
    {"data": [{"Id": 1}, {"Id": 2}]},
])
def test_envelope_shapes(payload):
    assert [r["Id"] for r in extract_items(payload)] == [1, 2]


@pytest.mark.parametrize("payload", [None, {}, {"Results": []}, "text", [1, 2]])
def test_unrecognized_envelopes_are_empty(payload):
    assert extract_items(payload) == []
