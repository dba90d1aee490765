# tests/test_routes.py

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import constituent, gift, paged
from outreach.bloomerang.routes import get_bloomerang_client
from outreach.bloomerang.routes import router as bloomerang_router
from outreach.bloomerang.summary import SummaryCache
from outreach.config import settings
from outreach.outreach_lists.routes import router as outreach_lists_router
from outreach.outreach_lists.store import MemoryStore


def build_app(fake=None):
    app = FastAPI()
    app.include_router(bloomerang_router)
    app.include_router(outreach_lists_router)
    app.state.store = MemoryStore()
    app.state.summary_cache = SummaryCache()
    if fake is not None:
        async def override():
            async with fake.client() as client:
                yield client
        app.dependency_overrides[get_bloomerang_client] = override
    return app


@pytest.fixture
def api(fake):
    return TestClient(build_app(fake))


def serve_crm(fake):
    search = {
        "1001": constituent(11, "Ann Smith", household_id=500),
        "1004": constituent(41, "Dee Solo"),
    }

    def search_handler(request):
        hit = search.get(request.url.params["search"])
        return httpx.Response(200, json={"Results": [hit] if hit else []})

    def constituents_handler(request):
        ids = [int(i) for i in request.url.params["id"].split("|")]
        profiles = {12: constituent(12, "Bob Smith", household_id=500)}
        return httpx.Response(200, json={"Results": [profiles[i] for i in ids if i in profiles]})

    fake.on("constituents/search", search_handler)
    fake.on("households/500", json={"Id": 500, "FullName": "The Smith Household", "MemberIds": [11, 12]})
    fake.on("constituents", constituents_handler)


# ─── Bloomerang routes ────────────────────────────────────────────────────────

def test_healthcheck():
    from main import app
    assert TestClient(app).get("/healthz").json() == {"ok": True}


def test_giving_stats(api, fake):
    fake.on("transactions", paged([gift(40, "2024-06-01"), gift(10, "2024-07-01", type_="Pledge")]))
    res = api.get("/bloomerang/giving-stats", params={"constituentId": 11})

    assert res.status_code == 200
    body = res.json()
    assert body["stats"]["lifetimeTotal"] == 40.0
    assert body["debug"]["includedCount"] == 1
    assert len(body["recentTransactions"]) == 1


def test_giving_stats_failure_is_502(api, fake):
    fake.on("transactions", lambda r: httpx.Response(500, text="down"))
    res = api.get("/bloomerang/giving-stats", params={"constituentId": 11})

    assert res.status_code == 502
    detail = res.json()["detail"]
    assert detail["status"] == 500
    assert detail["requestUrls"]


def test_missing_api_key_is_500(monkeypatch):
    monkeypatch.setattr(settings, "BLOOMERANG_API_KEY", None)
    res = TestClient(build_app()).get("/bloomerang/giving-stats", params={"constituentId": 11})

    assert res.status_code == 500
    assert "BLOOMERANG_API_KEY" in res.json()["detail"]["error"]


def test_giving_interests_requires_ids(api):
    assert api.get("/bloomerang/giving-interests", params={"memberIds": "abc"}).status_code == 400


def test_giving_interests(api, fake):
    fake.on("transactions", paged([gift(25, "2024-02-01", Designations=[{"FundName": "Missions"}])]))
    res = api.get("/bloomerang/giving-interests", params={"memberIds": "11|12"})

    assert res.status_code == 200
    assert [i["fund"] for i in res.json()["givingInterests"]] == ["Missions"]
    assert len(fake.calls("transactions")) == 2


def test_search_with_household_not_found(api, fake):
    serve_crm(fake)
    res = api.post("/bloomerang/search-with-household-and-stats", json={"accountNumber": "9999"})
    assert res.status_code == 404


def serve_member_transactions(fake, txns):
    def handler(request):
        value = txns[request.url.params["accountId"]]
        if isinstance(value, int):
            return httpx.Response(value, text="unavailable")
        return paged(value)(request)

    fake.on("transactions", handler)


def test_search_with_household_and_stats(api, fake):
    serve_crm(fake)
    serve_member_transactions(fake, {"11": [gift(30, "2024-05-01")], "12": [gift(20, "2024-08-01")]})
    res = api.post("/bloomerang/search-with-household-and-stats", json={"accountNumber": "1001"})

    assert res.status_code == 200
    body = res.json()
    assert body["household"]["Id"] == 500
    members = {m["constituentId"]: m for m in body["members"]}
    assert members[11]["stats"]["lifetimeTotal"] == 30.0
    assert members[12]["constituent"]["FullName"] == "Bob Smith"
    assert body["householdTotals"]["lifetimeTotal"] == 50.0
    assert body["householdTotals"]["lastGiftAmount"] == 20.0
    assert body["householdTotalsError"] is None


def test_member_walk_failure_voids_household_totals(api, fake):
    serve_crm(fake)
    serve_member_transactions(fake, {"11": [gift(30, "2024-05-01")], "12": 500})
    res = api.post("/bloomerang/search-with-household-and-stats", json={"accountNumber": "1001"})

    assert res.status_code == 200
    body = res.json()
    assert body["household"]["Id"] == 500
    members = {m["constituentId"]: m for m in body["members"]}
    assert members[11]["stats"]["lifetimeTotal"] == 30.0
    assert members[12]["constituent"]["FullName"] == "Bob Smith"
    assert members[12]["statsError"] == "Bloomerang returned status 500"
    assert body["householdTotals"] is None
    assert body["householdTotalsError"]["ok"] is False
    assert "12: Bloomerang returned status 500" in body["householdTotalsError"]["error"]
    assert any("accountId=12" in u for u in body["householdTotalsError"]["requestUrls"])


def test_activity_summary_is_cached(api, fake):
    fake.on("notes", paged([{"Id": 1, "AccountId": 11, "Note": "Lunch", "CreatedDate": "2025-05-01T00:00:00"}]))
    fake.on("interactions", paged([]))
    fake.on("transactions", paged([]))
    calls = []

    async def summarizer(lines):
        calls.append(lines)
        return {"keyPoints": ["Had lunch"]}

    api.app.state.summarizer = summarizer
    payload = {"memberIds": [11, 11], "outreachGoal": "Year-end"}
    first = api.post("/bloomerang/household-activity-summary", json=payload)
    second = api.post("/bloomerang/household-activity-summary", json=payload)

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    assert first.json()["summary"]["keyPoints"] == ["Had lunch"]
    assert len(calls) == 1
    assert fake.calls("notes")[0].url.params["constituent"] == "11"


def test_activity_summary_crm_failure_is_502_and_not_cached(api, fake):
    fake.on("notes", lambda r: httpx.Response(503, text="busy"))
    res = api.post("/bloomerang/household-activity-summary", json={"memberIds": [11]})

    assert res.status_code == 502
    assert res.json()["detail"]["ok"] is False
    assert len(api.app.state.summary_cache) == 0


def test_search_passthrough(api, fake):
    serve_crm(fake)
    res = api.get("/bloomerang/search", params={"accountNumber": " 1001 "})

    assert res.status_code == 200
    body = res.json()
    assert body["status"] == 200
    assert body["data"]["Results"][0]["FullName"] == "Ann Smith"
    assert body["firstMatch"] == {"type": "Individual", "constituentId": 11, "householdId": 500, "memberIds": []}
    request = fake.calls("constituents/search")[0]
    assert request.url.params["search"] == "1001"
    assert request.url.params["take"] == "10"


def test_search_passthrough_miss_and_errors(api, fake):
    serve_crm(fake)
    miss = api.get("/bloomerang/search", params={"accountNumber": "9999"})
    assert miss.status_code == 200
    assert miss.json()["firstMatch"] is None

    assert api.get("/bloomerang/search", params={"accountNumber": "  "}).status_code == 400

    fake.on("constituents/search", lambda r: httpx.Response(500, text="search down"))
    res = api.get("/bloomerang/search", params={"accountNumber": "1001"})
    assert res.status_code == 502
    assert res.json()["detail"]["bodyPreview"] == "search down"


def test_household_detail(api, fake):
    serve_crm(fake)
    res = api.get("/bloomerang/household", params={"householdId": 500})

    assert res.status_code == 200
    body = res.json()
    assert body["household"]["FullName"] == "The Smith Household"
    assert body["memberIds"] == [11, 12]


def test_household_detail_not_found_and_failure(api, fake):
    fake.on("households/77", lambda r: httpx.Response(404, text="missing"))
    fake.on("households/78", lambda r: httpx.Response(503, text="busy"))

    missing = api.get("/bloomerang/household", params={"householdId": 77})
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "Household not found"

    failed = api.get("/bloomerang/household", params={"householdId": 78})
    assert failed.status_code == 502
    assert failed.json()["detail"]["status"] == 503


HOUSEHOLD_NOTES = [
    {"Id": 2, "AccountId": 12, "Note": "Asked about the roof", "CreatedDate": "2025-05-03T00:00:00",
     "AuditTrail": {"CreatedName": "Pat Staff"}},
    {"Id": 1, "AccountId": 11, "Note": "Lunch", "CreatedDate": "2025-04-01T00:00:00"},
]


def test_household_notes(api, fake):
    fake.on("notes", paged(HOUSEHOLD_NOTES))
    res = api.post("/bloomerang/household-notes", json={"memberIds": [11, 12, 11]})

    assert res.status_code == 200
    body = res.json()
    assert [n["id"] for n in body["notes"]] == [2, 1]
    assert body["notes"][0]["createdName"] == "Pat Staff"
    assert body["notesMeta"] == {
        "totalFetched": 2,
        "newestCreatedDate": "2025-05-03T00:00:00",
        "oldestCreatedDate": "2025-04-01T00:00:00",
        "usedCount": 2,
    }
    assert fake.calls("notes")[0].url.params["constituent"] == "11|12"


def test_household_notes_validation_and_failure(api, fake):
    assert api.post("/bloomerang/household-notes", json={"memberIds": []}).status_code == 400

    fake.on("notes", lambda r: httpx.Response(500, text="notes down"))
    res = api.post("/bloomerang/household-notes", json={"memberIds": [11]})
    assert res.status_code == 502
    assert res.json()["detail"]["requestUrls"]


def test_notes_summary_is_cached_separately(api, fake):
    fake.on("notes", paged(HOUSEHOLD_NOTES))
    calls = []

    async def summarizer(lines):
        calls.append(lines)
        return {"keyPoints": ["Roof question"], "suggestedNextSteps": ["Send roof update", 4]}

    api.app.state.summarizer = summarizer
    first = api.post("/bloomerang/household-notes-summary", json={"memberIds": [11, 12]})
    second = api.post("/bloomerang/household-notes-summary", json={"memberIds": [11, 12]})

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    summary = first.json()["summary"]
    assert summary == {"keyPoints": ["Roof question"], "recentTimeline": [], "suggestedNextSteps": ["Send roof update", "4"]}
    assert first.json()["notesMeta"]["usedCount"] == 2
    assert len(calls) == 1
    assert "- 2025-05-03 by Pat Staff: Asked about the roof" in calls[0]
    assert api.app.state.summary_cache.get("notes::11|12::::") is not None


def test_notes_summary_without_notes_and_on_failure(api, fake):
    fake.on("notes", paged([]))
    assert api.post("/bloomerang/household-notes-summary", json={"memberIds": []}).status_code == 400

    empty = api.post("/bloomerang/household-notes-summary", json={"memberIds": [11]})
    assert empty.status_code == 200
    assert empty.json()["summary"]["keyPoints"] == ["No household notes were found to summarize."]
    assert empty.json()["notesMeta"]["usedCount"] == 0

    fake.on("notes", lambda r: httpx.Response(503, text="busy"))
    failed = api.post("/bloomerang/household-notes-summary", json={"memberIds": [12]})
    assert failed.status_code == 502
    assert failed.json()["detail"]["status"] == 503


# ─── Outreach list routes ─────────────────────────────────────────────────────

def import_list(api, accounts):
    res = api.post("/outreach-lists/import", json={"name": "Spring calls", "account_numbers": accounts})
    assert res.status_code == 200
    return res.json()["id"]


def test_import_validates_input(api):
    assert api.post("/outreach-lists/import", json={"name": " ", "account_numbers": ["1"]}).status_code == 400
    assert api.post("/outreach-lists/import", json={"name": "x", "account_numbers": [" "]}).status_code == 400


def test_enhance_unknown_list_is_404(api):
    assert api.post("/outreach-lists/missing/enhance", json={}).status_code == 404


def test_list_lifecycle(api, fake):
    serve_crm(fake)
    list_id = import_list(api, ["1001", " 1004 ", "9999"])

    res = api.post(f"/outreach-lists/{list_id}/enhance", json={"concurrency": 2})
    assert res.status_code == 200
    enhanced = res.json()
    assert enhanced["enhancedHouseholds"] == 2
    assert enhanced["enhancedMembers"] == 3
    assert enhanced["notFound"] == ["9999"]

    listing = api.get(f"/outreach-lists/{list_id}/households").json()
    assert listing["list"]["name"] == "Spring calls"
    assert [h["householdKey"] for h in listing["households"]] == ["c:41", "h:500"]
    smith = listing["households"][1]
    assert smith["status"] == "not_started"
    assert [m["constituentId"] for m in smith["members"]] == [11, 12]
    assert smith["snapshot"]["memberCount"] == 2

    assert api.get(f"/outreach-lists/{list_id}/households/h:999").status_code == 404
    assert api.post(
        f"/outreach-lists/{list_id}/households/h:500/status", json={"status": "bogus"}
    ).status_code == 400
    assert api.post(
        f"/outreach-lists/{list_id}/households/h:999/status", json={"status": "complete"}
    ).status_code == 404

    res = api.post(f"/outreach-lists/{list_id}/households/h:500/status", json={"status": "In_Progress"})
    assert res.json() == {"ok": True, "householdKey": "h:500", "status": "in_progress"}
    detail = api.get(f"/outreach-lists/{list_id}/households/h:500").json()["household"]
    assert detail["status"] == "in_progress"
    assert detail["snapshot"]["displayName"] == "The Smith Household"

    archived = api.post(f"/outreach-lists/{list_id}/archive").json()
    assert archived["archivedAt"]
    listing = api.get(f"/outreach-lists/{list_id}/households").json()
    assert listing["list"]["archivedAt"] == archived["archivedAt"]


def test_enrich_giving_route(api, fake):
    serve_crm(fake)
    fake.on("transactions", paged([gift(20, "2024-03-01")]))
    list_id = import_list(api, ["1001"])
    api.post(f"/outreach-lists/{list_id}/enhance")

    res = api.post(f"/outreach-lists/{list_id}/enrich/giving")
    assert res.json() == {"ok": True, "households": 1, "withStats": 1, "failed": []}

    household = api.get(f"/outreach-lists/{list_id}/households/h:500").json()["household"]
    assert household["giving"]["totals"]["lifetimeTotal"] == 40.0
