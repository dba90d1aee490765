# tests/test_enrich_list.py

import importlib.util
from pathlib import Path

import pytest
import requests

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "enrich_list.py"


@pytest.fixture(scope="module")
def enrich_list():
    spec = importlib.util.spec_from_file_location("enrich_list", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class FakeResponse:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        return self._body


@pytest.fixture
def sleeps(enrich_list, monkeypatch):
    delays = []
    monkeypatch.setattr(enrich_list.time, "sleep", delays.append)
    return delays


def test_read_account_numbers_skips_header_and_repeats(enrich_list, tmp_path):
    path = tmp_path / "spring.csv"
    path.write_text("Account Number,Name\n1001,Ann\n\n1002,Bob\n1001,Ann again\n", encoding="utf-8")
    assert enrich_list.read_account_numbers(path) == ["1001", "1002"]


def test_post_json_does_not_sleep_after_last_attempt(enrich_list, monkeypatch, sleeps):
    calls = []

    def post(url, json=None, timeout=None):
        calls.append(url)
        return FakeResponse(503, text="busy")

    monkeypatch.setattr(enrich_list.SESSION, "post", post)
    result = enrich_list.post_json("http://api.test", "/outreach-lists/import", {}, timeout=5)

    assert result == {"ok": False, "error": "HTTP 503: busy"}
    assert len(calls) == enrich_list.MAX_RETRIES
    assert sleeps == [enrich_list.RETRY_BACKOFF * n for n in range(1, enrich_list.MAX_RETRIES)]


def test_post_json_client_errors_are_not_retried(enrich_list, monkeypatch, sleeps):
    monkeypatch.setattr(enrich_list.SESSION, "post", lambda url, json=None, timeout=None: FakeResponse(404, text="nope"))
    result = enrich_list.post_json("http://api.test", "/outreach-lists/x/enhance", None, timeout=5)

    assert result["error"] == "HTTP 404: nope"
    assert sleeps == []


def test_post_json_recovers_from_connection_error(enrich_list, monkeypatch, sleeps):
    replies = iter([requests.ConnectionError("refused"), FakeResponse(200, {"ok": True})])

    def post(url, json=None, timeout=None):
        reply = next(replies)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(enrich_list.SESSION, "post", post)
    result = enrich_list.post_json("http://api.test", "/outreach-lists/import", {}, timeout=5)

    assert result["ok"] is True
    assert "_elapsed_s" in result
    assert sleeps == [enrich_list.RETRY_BACKOFF]
