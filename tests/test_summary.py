# tests/test_summary.py

from datetime import datetime

import httpx
import pytest

from conftest import gift, paged
from outreach.bloomerang.summary import (
    SummaryCache,
    SummaryError,
    SummaryInputs,
    build_activity_summary,
    build_notes_summary,
    sanitize_summary,
    summarize_with_openai,
)
from outreach.config import settings

NOW = datetime(2025, 6, 1)

NOTES = [{"Id": 1, "AccountId": 11, "Note": "Prefers email updates", "CreatedDate": "2025-05-01T00:00:00"}]
INTERACTIONS = [
    {"Id": 7, "AccountId": 11, "Channel": "Phone", "Note": "Talked about the tile project",
     "AuditTrail": {"CreatedDate": "2025-05-20T00:00:00"}},
    {"Id": 8, "AccountId": 11, "Channel": "MassEmail", "Subject": "Spring newsletter",
     "AuditTrail": {"CreatedDate": "2025-05-25T00:00:00"}},
]
GIFTS = [gift(100, "2024-01-01", Designations=[{"Fund": {"Name": "Building"}}])]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class RecordingSummarizer:
    def __init__(self, reply=None, error=None):
        self.reply = reply or {}
        self.error = error
        self.prompts = []

    async def __call__(self, lines):
        self.prompts.append(lines)
        if self.error:
            raise self.error
        return self.reply


def serve_activity(fake, notes=NOTES, interactions=INTERACTIONS, gifts=GIFTS):
    fake.on("notes", paged(notes))
    fake.on("interactions", paged(interactions))
    fake.on("transactions", paged(gifts))


class TestSummaryCache:
    def test_key_format(self):
        assert SummaryCache.key_for([11, 12], "Year-end", None) == "11|12::Year-end::"

    def test_entries_expire(self):
        clock = FakeClock()
        cache = SummaryCache(ttl_seconds=900, clock=clock)
        cache.set("k", {"ok": True, "summary": {}})

        clock.now += 899
        assert cache.get("k") == {"ok": True, "summary": {}}
        clock.now += 2
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_failures_are_not_cached(self):
        cache = SummaryCache()
        cache.set("k", {"ok": False, "error": "boom"})
        assert cache.get("k") is None


@pytest.mark.anyio
async def test_summary_uses_personal_interactions_and_interests(fake):
    serve_activity(fake)
    summarizer = RecordingSummarizer(reply={
        "keyPoints": ["Loves the building project", 3, True, " "],
        "recentTimeline": "not a list",
        "recommendedOpeningLine": "   ",
    })
    async with fake.client() as client:
        result = await build_activity_summary(client, [11], "Year-end", None, summarizer=summarizer, now=NOW)

    assert result["ok"] is True
    assert result["notesMeta"]["usedCount"] == 1
    assert result["interactionsMeta"] == {
        "totalFetched": 1,
        "newestCreatedDate": "2025-05-20T00:00:00",
        "oldestCreatedDate": "2025-05-20T00:00:00",
        "usedCount": 1,
    }

    prompt = summarizer.prompts[0]
    assert "Outreach goal: Year-end" in prompt
    assert "- Building (Total: $100.00; Last: 2024-01-01)" in prompt
    assert "- 2025-05-20 [Phone] | Note: Talked about the tile project" in prompt
    assert "- 2025-05-01 (Acct 11): Prefers email updates" in prompt
    assert not any("Spring newsletter" in line for line in prompt)

    summary = result["summary"]
    assert summary["keyPoints"] == ["Loves the building project", "3"]
    assert summary["recentTimeline"] == []
    assert summary["givingInterests"] == ["Building: total $100.00, last gift 2024-01-01"]
    assert summary["recommendedOpeningLine"].startswith("Great to reconnect after our phone call on 2025-05-20.")
    assert "tile project" in summary["recommendedOpeningLine"]
    assert "Year-end outreach" in summary["suggestedVoicemailMessage"]


@pytest.mark.anyio
async def test_no_activity_skips_the_summarizer(fake):
    serve_activity(fake, notes=[], interactions=[], gifts=[])
    summarizer = RecordingSummarizer(error=AssertionError("should not be called"))
    async with fake.client() as client:
        result = await build_activity_summary(client, [11], summarizer=summarizer, now=NOW)

    assert result["ok"] is True
    assert summarizer.prompts == []
    assert result["summary"]["keyPoints"] == ["No household activity was found to summarize."]
    assert result["summary"]["recommendedOpeningLine"].startswith("Looking forward to reconnecting")


@pytest.mark.anyio
async def test_summarizer_errors_propagate(fake):
    serve_activity(fake)
    summarizer = RecordingSummarizer(error=SummaryError("model unavailable", status=503))
    async with fake.client() as client:
        with pytest.raises(SummaryError) as exc:
            await build_activity_summary(client, [11], summarizer=summarizer, now=NOW)

    assert exc.value.status == 503


@pytest.mark.anyio
async def test_notes_failure_returns_failure_payload(fake):
    serve_activity(fake)
    fake.on("notes", lambda r: httpx.Response(500, text="notes down"))
    summarizer = RecordingSummarizer()
    async with fake.client() as client:
        result = await build_activity_summary(client, [11, 12], summarizer=summarizer, now=NOW)

    assert result["ok"] is False
    assert result["status"] == 500
    assert result["bodyPreview"] == "notes down"
    assert result["requestUrls"]
    assert fake.calls("interactions") == []
    assert summarizer.prompts == []


@pytest.mark.anyio
async def test_giving_interest_failure_is_tolerated(fake):
    serve_activity(fake)
    fake.on("transactions", lambda r: httpx.Response(500, text="err"))
    summarizer = RecordingSummarizer(reply={})
    async with fake.client() as client:
        result = await build_activity_summary(client, [11], summarizer=summarizer, now=NOW)

    assert result["ok"] is True
    assert result["summary"]["givingInterests"] == []
    assert not any(line.startswith("Giving Interests") for line in summarizer.prompts[0])


def test_sanitize_fills_the_fixed_shape():
    inputs = SummaryInputs(notes=[], interactions=[], last_meaningful=None)
    summary = sanitize_summary({"keyPoints": "x", "lastMeaningfulInteraction": "y"}, inputs)

    assert summary["keyPoints"] == []
    assert summary["lastMeaningfulInteraction"] == {"date": None, "channel": None, "summary": None}
    assert summary["suggestedNextSteps"] == []
    assert summary["suggestedVoicemailMessage"].startswith("Hi there")


@pytest.mark.anyio
async def test_openai_requires_a_key(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
    with pytest.raises(SummaryError) as exc:
        await summarize_with_openai(["hello"])
    assert exc.value.status == 500


@pytest.mark.anyio
async def test_notes_summary_prompt_and_shape(fake):
    fake.on("notes", paged([
        {"Id": 3, "AccountId": 12, "Note": "Prefers a call after 5pm", "CreatedDate": "2025-05-10T00:00:00",
         "AuditTrail": {"CreatedName": "Pat Staff"}},
        *NOTES,
    ]))
    summarizer = RecordingSummarizer(reply={"keyPoints": ["Call after 5pm"], "recentTimeline": None})
    async with fake.client() as client:
        result = await build_notes_summary(client, [11, 12], summarizer=summarizer, now=NOW)

    assert result["ok"] is True
    assert result["notesMeta"]["usedCount"] == 2
    assert result["summary"] == {"keyPoints": ["Call after 5pm"], "recentTimeline": [], "suggestedNextSteps": []}
    prompt = summarizer.prompts[0]
    assert "- 2025-05-10 by Pat Staff: Prefers a call after 5pm" in prompt
    assert "- 2025-05-01: Prefers email updates" in prompt
    assert fake.calls("interactions") == []
