from __future__ import annotations

import json
import sys
import urllib.error
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

src = pytest.importorskip("plan_source")
core = pytest.importorskip("plansheet_core")


PAYLOAD_DIR = Path(__file__).resolve().parent / "test_payloads"
NOW = datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)


def _details() -> dict:
    raw = json.loads((PAYLOAD_DIR / "service_details.json").read_text(encoding="utf-8"))
    return {k: core.decode_service_detail(v) for k, v in raw.items()}


def _candidates() -> list:
    return core.decode_service_list(json.loads((PAYLOAD_DIR / "services_search.json").read_text(encoding="utf-8")))


class ScriptedChooser:
    def __init__(self, answer):
        self.answer = answer
        self.calls = []

    def choose(self, prompt, labels):
        self.calls.append((prompt, list(labels)))
        return self.answer


def test_explicit_service_id_bypasses_search():
    def _fetch(_id):
        raise AssertionError("detail fetch should not happen")

    assert src.select_service(_candidates(), _fetch, explicit_id=" svc-99 ") == "svc-99"


def test_single_eligible_service_is_auto_selected():
    details = _details()
    fetched = []

    def _fetch(service_id):
        fetched.append(service_id)
        return details[service_id]

    candidates = [c for c in _candidates() if c.id in ("svc-1", "svc-3")]
    picked = src.select_service(candidates, _fetch)

    assert picked.id == "svc-1"
    assert fetched == ["svc-1", "svc-3"]


def test_no_eligible_service_raises():
    details = _details()
    candidates = [c for c in _candidates() if c.id == "svc-3"]
    with pytest.raises(core.NoEligibleService, match="svc-3"):
        src.select_service(candidates, details.__getitem__)
    with pytest.raises(core.NoEligibleService) as exc:
        src.select_service([], details.__getitem__, searched="2026-10-25 00:00 CDT to 2026-10-25 23:59 CDT (published)")
    assert "2026-10-25 00:00 CDT" in str(exc.value)
    assert "(published)" in str(exc.value)


def test_ambiguous_services_refuse_to_guess_when_unattended():
    details = _details()
    with pytest.raises(core.AmbiguousSelection) as exc:
        src.select_service(_candidates(), details.__getitem__)

    assert exc.value.candidates == [("Sunday Gathering 9am", "svc-1"), ("Sunday Gathering 11am", "svc-2")]
    assert "svc-1" in str(exc.value) and "svc-2" in str(exc.value)
    assert "svc-3" not in str(exc.value)


def test_interactive_chooser_picks_service_or_cancels():
    details = _details()
    chooser = ScriptedChooser(1)
    picked = src.select_service(_candidates(), details.__getitem__, chooser=chooser)
    assert picked.id == "svc-2"
    assert len(chooser.calls[0][1]) == 2

    with pytest.raises(core.NoSelectionMade):
        src.select_service(_candidates(), details.__getitem__, chooser=ScriptedChooser(None))


def test_select_plan_policy():
    details = _details()
    assert src.select_plan(details["svc-1"]).id == "pl-1042"

    with pytest.raises(core.NoPlanFound, match="svc-3"):
        src.select_plan(details["svc-3"])

    with pytest.raises(core.AmbiguousPlan) as exc:
        src.select_plan(details["svc-2"])
    assert exc.value.candidates == [("Late Morning", "pl-1043"), ("Late Morning (alt)", "pl-1044")]

    assert src.select_plan(details["svc-2"], chooser=ScriptedChooser(1)).id == "pl-1044"
    with pytest.raises(core.NoSelectionMade):
        src.select_plan(details["svc-2"], chooser=ScriptedChooser(None))


@pytest.mark.parametrize("answer", [5, -1, 2])
def test_out_of_range_choice_is_no_selection(answer):
    details = _details()
    with pytest.raises(core.NoSelectionMade):
        src.select_service(_candidates(), details.__getitem__, chooser=ScriptedChooser(answer))
    with pytest.raises(core.NoSelectionMade):
        src.select_plan(details["svc-2"], chooser=ScriptedChooser(answer))


@pytest.mark.parametrize("answer, expected", [("2", 1), ("1", 0), ("", None), ("7", None), ("two", None)])
def test_terminal_chooser_reads_index(answer, expected):
    lines = []
    chooser = src.TerminalChooser(read=lambda _prompt: answer, write=lines.append)
    assert chooser.choose("Pick one:", ["a", "b"]) == expected
    assert lines == ["Pick one:", "  1) a", "  2) b"]


def test_terminal_chooser_eof_is_no_choice():
    def _eof(_prompt):
        raise EOFError

    assert src.TerminalChooser(read=_eof, write=lambda _s: None).choose("Pick:", ["a"]) is None


def test_authenticate_caches_token(tmp_path: Path, monkeypatch):
    calls = []

    def _fake_http(url, method="GET", payload=None, headers=None):
        calls.append((url, method, payload))
        return {"access_token": "tok-1", "expires_in": 3600}

    monkeypatch.setattr(src, "_http_json", _fake_http)
    cache = tmp_path / "cache" / "token.json"

    token = src.authenticate("https://api.example.org/v1/", "ops", "pw", token_cache=cache, now=NOW)
    assert token.token == "tok-1"
    assert token.expires_at == NOW + timedelta(hours=1)
    assert calls == [("https://api.example.org/v1/auth/token", "POST", {"username": "ops", "password": "pw"})]
    stored = json.loads(cache.read_text(encoding="utf-8"))
    assert stored["https://api.example.org/v1|ops"]["token"] == "tok-1"

    again = src.authenticate("https://api.example.org/v1", "ops", "pw", token_cache=cache, now=NOW + timedelta(minutes=30))
    assert again.token == "tok-1"
    assert len(calls) == 1

    src.authenticate("https://api.example.org/v1", "ops", "pw", token_cache=cache, now=NOW + timedelta(minutes=59, seconds=30))
    assert len(calls) == 2


def test_authenticate_failures(monkeypatch):
    def _denied(url, method="GET", payload=None, headers=None):
        raise urllib.error.HTTPError(url, 401, "Unauthorized", None, None)

    monkeypatch.setattr(src, "_http_json", _denied)
    with pytest.raises(core.AuthenticationFailed, match="HTTP 401"):
        src.authenticate("https://api.example.org", "ops", "bad", now=NOW)

    monkeypatch.setattr(src, "_http_json", lambda *a, **k: {"data": {}})
    with pytest.raises(core.AuthenticationFailed, match="no token"):
        src.authenticate("https://api.example.org", "ops", "pw", now=NOW)


def test_authenticate_accepts_expires_at(monkeypatch):
    monkeypatch.setattr(
        src,
        "_http_json",
        lambda *a, **k: {"data": {"token": "tok-2", "expires_at": "2026-10-21T18:00:00Z"}},
    )
    token = src.authenticate("https://api.example.org", "ops", "pw", now=NOW)
    assert token.token == "tok-2"
    assert token.expires_at == datetime(2026, 10, 21, 18, 0, tzinfo=timezone.utc)


def test_content_api_builds_requests(monkeypatch):
    seen = []

    def _fake_http(url, method="GET", payload=None, headers=None):
        seen.append((url, headers))
        if "/services?" in url:
            return json.loads((PAYLOAD_DIR / "services_search.json").read_text(encoding="utf-8"))
        return {"data": {"id": "svc-1", "title": "S", "start": "2026-10-25T14:00:00Z", "end": "2026-10-25T15:00:00Z", "plans": []}}

    monkeypatch.setattr(src, "_http_json", _fake_http)
    api = src.ContentApi("https://api.example.org/v1/", src.AccessToken("tok", NOW + timedelta(hours=1)))

    start = datetime(2026, 10, 25, 5, 0, tzinfo=timezone.utc)
    found = api.search_services(start, start + timedelta(days=1), ["published", "draft"])
    assert len(found) == 3
    url, headers = seen[0]
    assert url.startswith("https://api.example.org/v1/services?")
    assert "start=2026-10-25T05%3A00%3A00%2B00%3A00" in url
    assert "status=published%2Cdraft" in url
    assert "sort=start" in url
    assert headers == {"Authorization": "Bearer tok"}

    detail = api.service_detail("svc 1")
    assert detail.plans == ()
    assert seen[1][0] == "https://api.example.org/v1/services/svc%201"


def test_content_api_wraps_transport_errors(monkeypatch):
    def _boom(url, method="GET", payload=None, headers=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(src, "_http_json", _boom)
    api = src.ContentApi("https://api.example.org", src.AccessToken("tok", NOW))
    with pytest.raises(core.FetchFailed, match="/plans/pl-1"):
        api.plan_payload("pl-1")
