"""Tests for the WebCite API client (httpx.MockTransport, no network).

Validates:
- Request building and endpoint mapping for every operation
- Non-2xx short-circuit before any frame is parsed (status + body in error)
- Missing-body and network error mapping
- Streaming verification end to end through decoder and aggregator
- Stream response released exactly once on completion, early close, and errors
"""

import asyncio
import json
import os
import sys
from contextlib import aclosing

import httpx
import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from stream_aggregator import ACCUMULATED, FINAL, UNRESOLVED
from webcite import (
    MissingBodyError,
    TransportError,
    WebCiteClient,
    WebCiteError,
    build_verify_request,
    run_command,
)


def run(coro):
    """Run async test in event loop."""
    return asyncio.new_event_loop().run_until_complete(coro)


class TrackingByteStream(httpx.AsyncByteStream):
    """Response body that records how often it is closed."""

    def __init__(self, chunks, fail_after=None):
        self._chunks = list(chunks)
        self._fail_after = fail_after
        self.close_count = 0

    async def __aiter__(self):
        for i, chunk in enumerate(self._chunks):
            if self._fail_after is not None and i == self._fail_after:
                raise httpx.ReadError("connection reset by peer")
            yield chunk

    async def aclose(self):
        self.close_count += 1


def make_client(handler):
    return WebCiteClient(
        "wc_test_key",
        base_url="https://api.webcite.test/",
        transport=httpx.MockTransport(handler),
    )


def sse_handler(stream, requests=None, status=200):
    def handler(request):
        if requests is not None:
            requests.append(request)
        return httpx.Response(
            status,
            headers={"content-type": "text/event-stream"},
            stream=stream,
        )
    return handler


async def drain(client, **kwargs):
    return [event async for event in client.verify_claim_stream("The sky is blue", **kwargs)]


CLAIM_GROUP_FRAME = (
    b'event: claim_group\n'
    b'data: {"claim_id":"a","claim_index":0,"claim":"X","stance_summary":"supported",'
    b'"citation_count":2,"citations":[]}\n\n'
)


# ── Request building ──────────────────────────────────────────────────


class TestBuildVerifyRequest:
    def test_defaults(self):
        assert build_verify_request("claim") == {
            "claim": "claim",
            "include_stance": True,
            "include_verdict": True,
            "decompose_claim": False,
        }

    def test_thread_id_and_flags(self):
        body = build_verify_request(
            "claim", thread_id="t1", include_stance=False,
            include_verdict=False, decompose_claim=True,
        )
        assert body["thread_id"] == "t1"
        assert body["include_stance"] is False
        assert body["include_verdict"] is False
        assert body["decompose_claim"] is True

    def test_none_flags_default_to_true(self):
        body = build_verify_request("claim", include_stance=None, include_verdict=None)
        assert body["include_stance"] is True
        assert body["include_verdict"] is True


# ── Plain request/response operations ─────────────────────────────────


class TestRestOperations:
    def test_verify_claim(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"claim_groups": [], "totalResults": 0, "thread_id": "t"})

        result = run(make_client(handler).verify_claim("Water boils at 100C", thread_id="t"))
        assert result["thread_id"] == "t"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v1/verify"
        assert request.headers["x-api-key"] == "wc_test_key"
        assert json.loads(request.content)["claim"] == "Water boils at 100C"

    def test_debug_log_masks_api_key(self, caplog):
        client = make_client(lambda request: httpx.Response(200, json={"claim_groups": []}))
        with caplog.at_level("DEBUG", logger="webcite.client"):
            run(client.search_sources("q"))
        assert "POST /api/v1/sources/search -> HTTP 200" in caplog.text
        assert "wc_test_key" not in caplog.text
        assert "***REDACTED***" in caplog.text

    def test_non_2xx_raises_transport_error(self):
        def handler(request):
            return httpx.Response(429, text="rate limited")

        with pytest.raises(TransportError) as exc_info:
            run(make_client(handler).verify_claim("x"))
        assert exc_info.value.status_code == 429
        assert "429" in str(exc_info.value)
        assert "rate limited" in str(exc_info.value)
        assert exc_info.value.to_dict()["code"] == "api_error"

    def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(WebCiteError, match="Non-JSON"):
            run(make_client(handler).search_sources("q"))

    def test_connect_error_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(WebCiteError) as exc_info:
            run(make_client(handler).verify_claim("x"))
        assert exc_info.value.code == "network_error"
        assert "Connection failed" in str(exc_info.value)

    def test_timeout_is_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(WebCiteError, match="timed out"):
            run(make_client(handler).verify_claim("x"))

    def test_search_sources(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"claim_groups": [], "totalResults": 0, "thread_id": ""})

        run(make_client(handler).search_sources("eiffel tower height", limit=5))
        assert seen[0].url.path == "/api/v1/sources/search"
        assert json.loads(seen[0].content) == {"query": "eiffel tower height", "limit": 5}

    def test_list_citations_params(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": [], "pagination": {}})

        run(make_client(handler).list_citations(page=2, limit=25, thread_id="t9"))
        params = dict(seen[0].url.params)
        assert params == {"page": "2", "limit": "25", "thread_id": "t9"}

    def test_list_citations_omits_unset(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": [], "pagination": {}})

        run(make_client(handler).list_citations())
        assert seen[0].url.path == "/api/v1/citations"
        assert not seen[0].url.params

    def test_get_citation_quotes_id(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"prompt": "p", "citation": []}})

        run(make_client(handler).get_citation("rec/42 a"))
        assert seen[0].url.raw_path == b"/api/v1/citations/rec%2F42%20a"

    def test_upload_file_multipart(self, tmp_path):
        seen = []
        source = tmp_path / "evidence.txt"
        source.write_text("The Eiffel Tower is 330 metres tall.")

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "success": True, "file_id": "f1", "filename": "evidence.txt",
                "mime_type": "text/plain", "size": 36,
            })

        result = run(make_client(handler).upload_file(str(source)))
        assert result["file_id"] == "f1"
        request = seen[0]
        assert request.url.path == "/api/v1/upload"
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert b'name="file"; filename="evidence.txt"' in request.content
        assert b"330 metres" in request.content


# ── Streaming verification ────────────────────────────────────────────


class TestVerifyStream:
    def test_request_shape(self):
        requests = []
        stream = TrackingByteStream([CLAIM_GROUP_FRAME])
        run(drain(make_client(sse_handler(stream, requests)), decompose_claim=True))
        request = requests[0]
        assert request.url.path == "/api/v1/verify/stream"
        assert request.headers["accept"] == "text/event-stream"
        assert json.loads(request.content)["decompose_claim"] is True

    def test_events_parsed(self):
        stream = TrackingByteStream([CLAIM_GROUP_FRAME, b"data: {invalid json\n\n"])
        events = run(drain(make_client(sse_handler(stream))))
        assert [e.event_kind for e in events] == ["claim_group", "message"]
        assert events[0].data["citation_count"] == 2
        assert events[1].data == "{invalid json"

    def test_non_2xx_fails_before_any_frame(self):
        stream = TrackingByteStream([b"rate limited"])
        client = make_client(sse_handler(stream, status=429))
        received = []

        async def consume():
            async for event in client.verify_claim_stream("x"):
                received.append(event)

        with pytest.raises(TransportError) as exc_info:
            run(consume())
        assert received == []
        assert exc_info.value.status_code == 429
        assert exc_info.value.body == "rate limited"
        assert "(429): rate limited" in str(exc_info.value)
        assert stream.close_count == 1

    def test_204_is_missing_body(self):
        def handler(request):
            return httpx.Response(204)

        with pytest.raises(MissingBodyError):
            run(drain(make_client(handler)))

    def test_zero_content_length_is_missing_body(self):
        def handler(request):
            return httpx.Response(200, headers={"content-length": "0"}, content=b"")

        with pytest.raises(MissingBodyError, match="No response body"):
            run(drain(make_client(handler)))

    def test_connect_error_on_stream(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(WebCiteError) as exc_info:
            run(drain(make_client(handler)))
        assert exc_info.value.code == "network_error"


class TestVerifyCollected:
    def test_accumulated_scenario(self):
        stream = TrackingByteStream([CLAIM_GROUP_FRAME])
        outcome = run(make_client(sse_handler(stream)).verify_claim_collected("X"))
        assert outcome.kind == ACCUMULATED
        assert outcome.result["totalResults"] == 2
        assert outcome.result["thread_id"] == ""
        assert outcome.result["credit_usage"] is None
        assert outcome.result["claim_groups"][0]["claim_id"] == "a"

    def test_complete_event_wins(self):
        stream = TrackingByteStream([
            CLAIM_GROUP_FRAME,
            b'event: complete\ndata: {"claim_groups":[],"totalResults":0,"thread_id":"t1"}\n\n',
        ])
        outcome = run(make_client(sse_handler(stream)).verify_claim_collected("X"))
        assert outcome.kind == FINAL
        assert outcome.result == {"claim_groups": [], "totalResults": 0, "thread_id": "t1"}

    def test_complete_event_without_trailing_blank_line(self):
        stream = TrackingByteStream([
            b'event: complete\ndata: {"claim_groups":[],"totalResults":0,',
            b'"thread_id":"t2"}',
        ])
        outcome = run(make_client(sse_handler(stream)).verify_claim_collected("X"))
        assert outcome.result["thread_id"] == "t2"

    def test_unresolved_keeps_events(self):
        stream = TrackingByteStream([b"event: progress\ndata: searching\n\n"])
        outcome = run(make_client(sse_handler(stream)).verify_claim_collected("X"))
        assert outcome.kind == UNRESOLVED
        assert outcome.fallback_events() == [{"event": "progress", "data": "searching"}]


# ── Resource release ──────────────────────────────────────────────────


class TestStreamRelease:
    def test_released_after_normal_completion(self):
        stream = TrackingByteStream([CLAIM_GROUP_FRAME, CLAIM_GROUP_FRAME])
        events = run(drain(make_client(sse_handler(stream))))
        assert len(events) == 2
        assert stream.close_count == 1

    def test_released_on_early_close(self):
        stream = TrackingByteStream([CLAIM_GROUP_FRAME, CLAIM_GROUP_FRAME, CLAIM_GROUP_FRAME])
        client = make_client(sse_handler(stream))

        async def first_only():
            async with aclosing(client.verify_claim_stream("x")) as events:
                async for event in events:
                    return event

        event = run(first_only())
        assert event.event_kind == "claim_group"
        assert stream.close_count == 1

    def test_released_when_consumer_raises(self):
        stream = TrackingByteStream([CLAIM_GROUP_FRAME, CLAIM_GROUP_FRAME])
        client = make_client(sse_handler(stream))

        async def failing_consumer():
            async with aclosing(client.verify_claim_stream("x")) as events:
                async for _ in events:
                    raise KeyError("presentation failed")

        with pytest.raises(KeyError):
            run(failing_consumer())
        assert stream.close_count == 1

    def test_released_when_read_fails_midway(self):
        stream = TrackingByteStream([CLAIM_GROUP_FRAME, CLAIM_GROUP_FRAME], fail_after=1)
        client = make_client(sse_handler(stream))
        received = []

        async def consume():
            async for event in client.verify_claim_stream("x"):
                received.append(event)

        with pytest.raises(WebCiteError) as exc_info:
            run(consume())
        assert exc_info.value.code == "network_error"
        assert len(received) == 1
        assert stream.close_count == 1


# ── CLI dispatch ──────────────────────────────────────────────────────


class TestRunCommand:
    def test_verify_stream_command(self):
        stream = TrackingByteStream([CLAIM_GROUP_FRAME])
        requests = []
        client = make_client(sse_handler(stream, requests))
        result = run(run_command(client, "verify", ["X", "--stream", "--thread-id", "t5", "--no-stance"]))
        assert result["status"] == "accumulated"
        body = json.loads(requests[0].content)
        assert body["thread_id"] == "t5"
        assert body["include_stance"] is False
        assert body["include_verdict"] is True

    def test_search_command_limit(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"claim_groups": []})

        run(run_command(make_client(handler), "search", ["query text", "--limit", "3"]))
        assert json.loads(seen[0].content)["limit"] == 3

    def test_missing_argument(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ValueError, match="requires <claim>"):
            run(run_command(client, "verify", []))

    def test_unknown_command(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ValueError, match="Unknown command"):
            run(run_command(client, "frobnicate", []))

    def test_claim_after_flags(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"claim_groups": [], "totalResults": 0, "thread_id": "t1"})

        run(run_command(make_client(handler), "verify", ["--thread-id", "t1", "--decompose", "The sky is blue"]))
        body = json.loads(seen[0].content)
        assert body["claim"] == "The sky is blue"
        assert body["thread_id"] == "t1"
        assert body["decompose_claim"] is True

    def test_flag_value_is_not_the_claim(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ValueError, match="requires <claim>"):
            run(run_command(client, "verify", ["--thread-id", "t1"]))
