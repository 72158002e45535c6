"""Tests for RequestLog."""

import threading

from iflow_bridge.proxy.metrics import RequestLog


def _record(log, n, **kwargs):
    for i in range(n):
        log.record(api="openai", model="glm-5", tier="sync", latency_ms=float(i), chars=i, **kwargs)


def test_record_fields():
    log = RequestLog()
    entry = log.record(
        api="anthropic", model="claude-opus-4", tier="stream", latency_ms=12.345, chars=5,
        request_id="req_1",
    )
    assert entry["id"] == "req_1"
    assert entry["status"] == "success"
    assert entry["latency_ms"] == 12.3
    assert "error" not in entry
    assert entry["timestamp"].endswith("+00:00")


def test_error_entry():
    log = RequestLog()
    entry = log.record(api="openai", model="glm-5", tier="error", latency_ms=1, error="refused")
    assert entry["status"] == "error"
    assert entry["error"] == "refused"
    assert entry["id"].startswith("req_")


def test_ring_buffer_caps_entries():
    log = RequestLog(max_entries=100)
    _record(log, 130)
    assert log.total == 100
    entries = log.entries(limit=1000)
    assert entries[0]["chars"] == 30
    assert entries[-1]["chars"] == 129


def test_limit_returns_newest():
    log = RequestLog()
    _record(log, 10)
    assert [e["chars"] for e in log.entries(limit=3)] == [7, 8, 9]
    assert log.entries(limit=0) == []


def test_status_filter():
    log = RequestLog()
    _record(log, 3)
    log.record(api="openai", model="glm-5", tier="error", latency_ms=1, error="x")
    assert len(log.entries(status="error")) == 1
    assert len(log.entries(status="success")) == 3
    assert len(log.entries(status="bogus")) == 4


def test_tail():
    log = RequestLog()
    _record(log, 25)
    assert len(log.tail()) == 20
    assert log.tail()[-1]["chars"] == 24


def test_entries_are_copies():
    log = RequestLog()
    _record(log, 1)
    log.entries()[0]["model"] = "changed"
    assert log.entries()[0]["model"] == "glm-5"


def test_thread_safe_record():
    log = RequestLog(max_entries=1000)
    threads = [threading.Thread(target=_record, args=(log, 100)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert log.total == 800
