import pytest
import requests

import stalled_queue_cleaner as cleaner
from stalled_queue_cleaner import QueueEntry, TransportError

QUEUE_URL = "http://arr.local/api/v3/queue"


class _FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _record(download_id, size=1000, sizeleft=400, status="downloading", state="downloading"):
    return {
        "downloadId": download_id,
        "size": size,
        "sizeleft": sizeleft,
        "status": status,
        "trackedDownloadState": state,
    }


def _serve_pages(monkeypatch, pages):
    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append(dict(params))
        return _FakeResponse({"records": pages[params["page"] - 1]})

    monkeypatch.setattr(cleaner.requests, "get", fake_get)
    return calls


def test_fetch_follows_pages_until_short_page(monkeypatch) -> None:
    full_page = [_record(f"id-{i}") for i in range(cleaner.PAGE_SIZE)]
    calls = _serve_pages(monkeypatch, [full_page, [_record("last")]])

    entries = cleaner.fetch_active_entries(QUEUE_URL, "key")

    assert [call["page"] for call in calls] == [1, 2]
    assert all(call["pageSize"] == 50 and call["apikey"] == "key" for call in calls)
    assert len(entries) == 51
    assert entries[-1] == QueueEntry("last", 1000, 400)


def test_fetch_stops_on_empty_page(monkeypatch) -> None:
    full_page = [_record(f"id-{i}") for i in range(cleaner.PAGE_SIZE)]
    calls = _serve_pages(monkeypatch, [full_page, []])

    entries = cleaner.fetch_active_entries(QUEUE_URL, "key")

    assert len(calls) == 2
    assert len(entries) == 50


def test_fetch_filters_inactive_entries(monkeypatch) -> None:
    _serve_pages(monkeypatch, [[
        _record("downloading"),
        _record("error", state="error"),
        _record("failed", state="failed"),
        _record("queued", status="queued"),
        _record("importing", state="importPending"),
        _record("done", state="imported"),
    ]])

    entries = cleaner.fetch_active_entries(QUEUE_URL, "key")

    assert {entry.id for entry in entries} == {"downloading", "error", "failed"}


def test_fetch_skips_entries_without_id(monkeypatch, caplog) -> None:
    _serve_pages(monkeypatch, [[_record(None), _record(""), _record("ok")]])

    entries = cleaner.fetch_active_entries(QUEUE_URL, "key")

    assert [entry.id for entry in entries] == ["ok"]
    assert "no download ID" in caplog.text


def test_fetch_keeps_first_record_per_download(monkeypatch) -> None:
    _serve_pages(monkeypatch, [[_record("pack", sizeleft=100), _record("pack", sizeleft=900)]])

    entries = cleaner.fetch_active_entries(QUEUE_URL, "key")

    assert entries == (QueueEntry("pack", 1000, 100),)


def test_progress_is_downloaded_bytes(monkeypatch) -> None:
    _serve_pages(monkeypatch, [[_record("a", size=2048.0, sizeleft=512.0)]])

    (entry,) = cleaner.fetch_active_entries(QUEUE_URL, "key")

    assert entry.progress == 1536


def test_connection_failure_is_transport_error(monkeypatch) -> None:
    def fake_get(url, params=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(cleaner.requests, "get", fake_get)

    with pytest.raises(TransportError):
        cleaner.fetch_active_entries(QUEUE_URL, "key")


def test_http_error_is_transport_error(monkeypatch) -> None:
    monkeypatch.setattr(cleaner.requests, "get", lambda *args, **kwargs: _FakeResponse({}, status_code=401))

    with pytest.raises(TransportError):
        cleaner.fetch_active_entries(QUEUE_URL, "key")


def test_unreadable_payload_is_transport_error(monkeypatch) -> None:
    monkeypatch.setattr(cleaner.requests, "get", lambda *args, **kwargs: _FakeResponse(ValueError("bad json")))
    with pytest.raises(TransportError):
        cleaner.fetch_active_entries(QUEUE_URL, "key")

    monkeypatch.setattr(cleaner.requests, "get", lambda *args, **kwargs: _FakeResponse({"page": 1}))
    with pytest.raises(TransportError):
        cleaner.fetch_active_entries(QUEUE_URL, "key")


def test_delete_entry_targets_item_path(monkeypatch) -> None:
    calls = []

    def fake_delete(url, params=None, timeout=None):
        calls.append((url, params))
        return _FakeResponse()

    monkeypatch.setattr(cleaner.requests, "delete", fake_delete)

    assert cleaner.delete_entry(QUEUE_URL, "key", "abc") is True
    assert calls == [(f"{QUEUE_URL}/abc", {"apikey": "key"})]


def test_delete_entry_failures_return_false(monkeypatch) -> None:
    monkeypatch.setattr(cleaner.requests, "delete", lambda *args, **kwargs: _FakeResponse(status_code=404))
    assert cleaner.delete_entry(QUEUE_URL, "key", "abc") is False

    def refuse(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(cleaner.requests, "delete", refuse)
    assert cleaner.delete_entry(QUEUE_URL, "key", "abc") is False
