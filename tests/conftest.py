# tests/conftest.py

from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from outreach.bloomerang.client import BloomerangClient
from outreach.outreach_lists.store import MemoryStore

BASE_URL = "https://crm.test/v2"

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeBloomerang:
    """
    Stand-in for the CRM behind httpx.MockTransport.
    Handlers are keyed by path relative to /v2/; every request is kept.
    """

    def __init__(self):
        self.handlers: Dict[str, Handler] = {}
        self.requests: List[httpx.Request] = []

    def on(self, path: str, handler: Optional[Handler] = None, *, json: Any = None, status: int = 200) -> None:
        if handler is None:
            def handler(request, _body=json, _status=status):
                return httpx.Response(_status, json=_body)
        self.handlers[path] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(self.path_of(request))
        if handler is None:
            return httpx.Response(404, text=f"no route for {request.url.path}")
        return handler(request)

    @staticmethod
    def path_of(request: httpx.Request) -> str:
        return request.url.path.split("/v2/", 1)[-1]

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if self.path_of(r) == path]

    def client(self) -> BloomerangClient:
        return BloomerangClient(api_key="test-key", base_url=BASE_URL, transport=httpx.MockTransport(self.handle))


@pytest.fixture
def fake():
    return FakeBloomerang()


@pytest.fixture
def store():
    return MemoryStore()


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep():
    return SleepRecorder()


# ─── Payload builders ─────────────────────────────────────────────────────────

def paged(items: List[Dict[str, Any]]) -> Handler:
    """Serve `items` honoring skip/take, wrapped in a Results envelope."""
    def handler(request: httpx.Request) -> httpx.Response:
        skip = int(request.url.params.get("skip", 0))
        take = int(request.url.params.get("take", 50))
        return httpx.Response(200, json={"Total": len(items), "Results": items[skip:skip + take]})
    return handler


def constituent(cid: int, name: str, household_id: Optional[int] = None, **extra) -> Dict[str, Any]:
    record = {
        "Id": cid,
        "Type": "Individual",
        "FullName": name,
        "PrimaryEmail": {"Value": f"{name.split()[0].lower()}@example.org"},
        "PrimaryPhone": {"Number": f"555-01{cid % 100:02d}"},
        "IsInHousehold": household_id is not None,
    }
    if household_id is not None:
        record["HouseholdId"] = household_id
    record.update(extra)
    return record


def gift(amount, date: str, type_: str = "Donation", **extra) -> Dict[str, Any]:
    return {"Id": extra.pop("Id", None), "Type": type_, "Amount": amount, "Date": date, **extra}
