import asyncio
import importlib
import json
import sys
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


class UpstreamBody(httpx.AsyncByteStream):
    """Lazily read upstream body, optionally failing after the data is sent."""

    def __init__(self, data, fail=None):
        self.data = data
        self.fail = fail

    async def __aiter__(self):
        if self.data:
            yield self.data
        if self.fail is not None:
            raise self.fail

    async def aclose(self):
        pass


def _sse(*events) -> bytes:
    out = []
    for e in events:
        data = e if isinstance(e, str) else json.dumps(e)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode("utf-8")


UPSTREAM_SSE = _sse(
    {"type": "message_start", "message": {"id": "msg_1"}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}},
    {"type": "message_stop"},
)


@pytest.fixture()
def app_ctx(tmp_path, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_DB_PATH", str(tmp_path / "rate_limit.sqlite3"))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-secret")
    monkeypatch.setenv("DAILY_LIMIT", "3")

    import server

    server = importlib.reload(server)

    upstream = {
        "calls": [],
        "status": 200,
        "body": UPSTREAM_SSE,
        "content_type": "text/event-stream",
        "exc": None,
        "fail": None,
    }

    def handler(request: httpx.Request) -> httpx.Response:
        upstream["calls"].append(json.loads(request.content))
        if upstream["exc"] is not None:
            raise upstream["exc"]
        return httpx.Response(
            upstream["status"],
            headers={"content-type": upstream["content_type"]},
            stream=UpstreamBody(upstream["body"], upstream["fail"]),
        )

    monkeypatch.setattr(server, "_UPSTREAM_TRANSPORT", httpx.MockTransport(handler))

    return {"client": TestClient(server.app), "server": server, "upstream": upstream}


def _body(device_id="device-1", messages=None):
    return {"messages": messages or [{"role": "user", "content": "Salaam"}], "device_id": device_id}


def test_stream_is_piped_unaltered_with_unbuffered_headers(app_ctx):
    client = app_ctx["client"]
    upstream = app_ctx["upstream"]

    resp = client.post("/v1/chat", json=_body())
    assert resp.status_code == 200, resp.text
    assert resp.content == UPSTREAM_SSE
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["x-accel-buffering"] == "no"
    assert resp.headers["cache-control"] == "no-cache"

    sent = upstream["calls"][0]
    assert sent["stream"] is True
    assert sent["system"] == app_ctx["server"].SYSTEM_PROMPT
    assert sent["messages"] == [{"role": "user", "content": "Salaam"}]


@pytest.mark.parametrize(
    "body",
    [
        {"messages": [], "device_id": "d"},
        {"messages": "hi", "device_id": "d"},
        {"messages": [{"role": "user", "content": "hi"}]},
        {"messages": [{"role": "user", "content": "hi"}], "device_id": "   "},
        {"messages": [{"role": "user", "content": ""}], "device_id": "d"},
        {"messages": [{"role": "user", "content": 5}], "device_id": "d"},
        {"messages": [{"role": "system", "content": "hi"}], "device_id": "d"},
        {"messages": ["hi"], "device_id": "d"},
        ["not", "an", "object"],
    ],
)
def test_malformed_requests_are_rejected_before_side_effects(app_ctx, body):
    client = app_ctx["client"]
    server = app_ctx["server"]

    resp = client.post("/v1/chat", json=body)
    assert resp.status_code == 400, resp.text
    assert isinstance(resp.json()["error"], str)
    assert app_ctx["upstream"]["calls"] == []
    assert asyncio.run(server.rate_limiter.count("d", server.today_utc())) == 0


def test_invalid_json_is_400(app_ctx):
    resp = app_ctx["client"].post("/v1/chat", content=b"{nope", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON body"}


def test_device_id_camel_case_alias(app_ctx):
    resp = app_ctx["client"].post(
        "/v1/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "deviceId": "device-2"},
    )
    assert resp.status_code == 200, resp.text


def test_quota_blocks_after_daily_limit_without_reaching_upstream(app_ctx):
    client = app_ctx["client"]
    upstream = app_ctx["upstream"]

    for _ in range(3):
        assert client.post("/v1/chat", json=_body()).status_code == 200

    limited = client.post("/v1/chat", json=_body())
    assert limited.status_code == 429
    assert "3 messages per day" in limited.json()["error"]
    assert len(upstream["calls"]) == 3

    # Fallback route shares the same counter.
    assert client.post("/v1/chat/complete", json=_body()).status_code == 429
    # Another device is unaffected.
    assert client.post("/v1/chat", json=_body(device_id="device-other")).status_code == 200


def test_quota_resets_on_next_utc_day(app_ctx, monkeypatch):
    client = app_ctx["client"]
    server = app_ctx["server"]

    day = {"value": "2026-03-01"}
    monkeypatch.setattr(server, "today_utc", lambda: day["value"])

    for _ in range(3):
        assert client.post("/v1/chat", json=_body()).status_code == 200
    assert client.post("/v1/chat", json=_body()).status_code == 429

    day["value"] = "2026-03-02"
    assert client.post("/v1/chat", json=_body()).status_code == 200


def test_limiter_failure_degrades_open(app_ctx, monkeypatch):
    server = app_ctx["server"]

    async def broken(device_id, day):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(server.rate_limiter, "increment", broken)
    for _ in range(5):
        assert app_ctx["client"].post("/v1/chat", json=_body()).status_code == 200


def test_missing_credential_is_502_not_a_crash(app_ctx, monkeypatch):
    server = app_ctx["server"]
    monkeypatch.setattr(server, "ANTHROPIC_API_KEY", "")

    resp = app_ctx["client"].post("/v1/chat", json=_body())
    assert resp.status_code == 502
    assert resp.json() == {"error": server.MSG_MISCONFIGURED}
    assert app_ctx["upstream"]["calls"] == []


def test_upstream_auth_failure_does_not_leak_detail(app_ctx):
    upstream = app_ctx["upstream"]
    upstream["status"] = 401
    upstream["content_type"] = "application/json"
    upstream["body"] = b'{"type":"error","error":{"type":"authentication_error","message":"invalid x-api-key"}}'

    resp = app_ctx["client"].post("/v1/chat", json=_body())
    assert resp.status_code == 502
    assert resp.json() == {"error": app_ctx["server"].MSG_MISCONFIGURED}
    assert "x-api-key" not in resp.text
    assert "sk-test-secret" not in resp.text


@pytest.mark.parametrize("status", [429, 500, 529])
def test_upstream_busy_maps_to_503(app_ctx, status):
    upstream = app_ctx["upstream"]
    upstream["status"] = status
    upstream["content_type"] = "application/json"
    upstream["body"] = b'{"type":"error","error":{"type":"overloaded_error"}}'

    resp = app_ctx["client"].post("/v1/chat", json=_body())
    assert resp.status_code == 503
    assert resp.json() == {"error": app_ctx["server"].MSG_BUSY}


def test_other_upstream_status_is_echoed(app_ctx):
    upstream = app_ctx["upstream"]
    upstream["status"] = 400
    upstream["content_type"] = "application/json"
    upstream["body"] = b'{"type":"error","error":{"type":"invalid_request_error","message":"secret detail"}}'

    resp = app_ctx["client"].post("/v1/chat", json=_body())
    assert resp.status_code == 502
    assert resp.json() == {"error": "Upstream AI error", "status": 400}


def test_upstream_unreachable_is_502(app_ctx):
    app_ctx["upstream"]["exc"] = httpx.ConnectError("connection refused")

    resp = app_ctx["client"].post("/v1/chat", json=_body())
    assert resp.status_code == 502
    assert resp.json() == {"error": "Failed to reach AI service"}


def test_complete_route_returns_joined_text(app_ctx):
    upstream = app_ctx["upstream"]
    upstream["content_type"] = "application/json"
    upstream["body"] = json.dumps(
        {
            "content": [
                {"type": "text", "text": "Peace be "},
                {"type": "tool_use", "id": "x"},
                {"type": "text", "text": "upon you"},
            ]
        }
    ).encode("utf-8")

    resp = app_ctx["client"].post("/v1/chat/complete", json=_body())
    assert resp.status_code == 200, resp.text
    assert resp.json() == {"text": "Peace be upon you"}
    assert upstream["calls"][0]["stream"] is False


def test_complete_route_maps_errors_like_stream(app_ctx):
    upstream = app_ctx["upstream"]
    upstream["status"] = 503
    upstream["content_type"] = "application/json"
    upstream["body"] = b"{}"

    resp = app_ctx["client"].post("/v1/chat/complete", json=_body())
    assert resp.status_code == 503


def test_health(app_ctx):
    resp = app_ctx["client"].get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_complete_route_non_json_reply_is_502_with_status(app_ctx):
    upstream = app_ctx["upstream"]
    upstream["content_type"] = "text/html"
    upstream["body"] = b"<html>gateway</html>"

    resp = app_ctx["client"].post("/v1/chat/complete", json=_body())
    assert resp.status_code == 502
    assert resp.json() == {"error": "Upstream AI error", "status": 200}


def _track_upstream_closes(server, monkeypatch):
    closed = []
    make_client = server._upstream_client

    def tracking_client():
        client = make_client()
        close = client.aclose

        async def aclose():
            closed.append(True)
            await close()

        client.aclose = aclose
        return client

    monkeypatch.setattr(server, "_upstream_client", tracking_client)
    return closed


def test_upstream_client_closed_after_normal_stream(app_ctx, monkeypatch):
    closed = _track_upstream_closes(app_ctx["server"], monkeypatch)

    assert app_ctx["client"].post("/v1/chat", json=_body()).status_code == 200
    assert closed == [True]


def test_upstream_client_closed_when_stream_fails_midway(app_ctx, monkeypatch):
    server = app_ctx["server"]
    upstream = app_ctx["upstream"]
    upstream["body"] = _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}})
    upstream["fail"] = httpx.ReadError("upstream reset")
    closed = _track_upstream_closes(server, monkeypatch)

    resp = TestClient(server.app, raise_server_exceptions=False).post("/v1/chat", json=_body())
    assert resp.content.startswith(b"data: ")
    assert closed == [True]
