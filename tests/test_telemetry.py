from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from citelink.telemetry import TelemetryClient, build_telemetry_client, strip_url_query


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_telemetry_client_redacts_content_fields() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "links.rewrite.start",
        request_id="req_123",
        text="generated answer text",
        page_body="<html>",
        markdown="# heading",
        count=3,
        values=[1, 2],
    )

    assert len(sink.events) == 1
    event_name, attributes = sink.events[0]
    assert event_name == "links.rewrite.start"
    assert attributes["request_id"] == "req_123"
    assert attributes["count"] == 3
    assert attributes["text"] == "[redacted]"
    assert attributes["page_body"] == "[redacted]"
    assert attributes["markdown"] == "[redacted]"
    assert attributes["values"] == "list"


def test_telemetry_client_strips_url_queries_and_truncates() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "url.resolve.finish",
        url="https://pub.example/a?session=abc#frag",
        resolved_url="https://pub.example/b?sig=1",
        note="x" * 200,
    )

    attributes = sink.events[0][1]
    assert attributes["url"] == "https://pub.example/a"
    assert attributes["resolved_url"] == "https://pub.example/b"
    assert attributes["note"] == f"{'x' * 160}..."


def test_strip_url_query_leaves_non_urls_alone() -> None:
    assert strip_url_query("not a url") == "not a url"
    assert strip_url_query("http://[::1/broken") == "[unparsable-url]"


def test_measure_emits_finish_with_collected_attributes() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with client.measure("answer.prepare", resolve_sources=True) as outcome:
        outcome["source_count"] = 2

    event_name, attributes = sink.events[0]
    assert event_name == "answer.prepare.finish"
    assert attributes["resolve_sources"] is True
    assert attributes["source_count"] == 2
    assert attributes["duration_ms"] >= 0


def test_measure_emits_error_and_reraises() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with pytest.raises(RuntimeError):
        with client.measure("links.rewrite"):
            raise RuntimeError("boom")

    event_name, attributes = sink.events[0]
    assert event_name == "links.rewrite.error"
    assert attributes["error_type"] == "RuntimeError"


def test_disabled_telemetry_client_does_not_emit() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=False, sink=sink)

    client.emit("links.rewrite.finish", request_id="req_1")
    with client.measure("answer.prepare"):
        pass

    assert sink.events == []


def test_build_telemetry_client_none_sink_is_disabled() -> None:
    assert build_telemetry_client(enabled=True, sink="none").enabled is False
    assert build_telemetry_client(enabled=False, sink="log").enabled is False
    assert build_telemetry_client(enabled=True, sink="log").enabled is True
