import json
import logging
import os
import time
from contextlib import suppress
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from chat_models import ROLES
from rate_limit import RateLimiter, today_utc


load_dotenv()

logger = logging.getLogger("noor.proxy")


# -----------------------------
# Config
# -----------------------------

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "").strip()
ANTHROPIC_BASE_URL = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com").rstrip("/")
ANTHROPIC_VERSION = os.getenv("ANTHROPIC_VERSION", "2023-06-01")
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-6")
MAX_TOKENS = int(os.getenv("MAX_TOKENS", "1024"))
DAILY_LIMIT = int(os.getenv("DAILY_LIMIT", "20"))
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "60"))

RATE_LIMIT_DB_PATH = os.getenv("RATE_LIMIT_DB_PATH", "./data/rate_limit.sqlite3")

LISTEN_HOST = os.getenv("LISTEN_HOST", "127.0.0.1")
LISTEN_PORT = int(os.getenv("LISTEN_PORT", "8080"))

# Tests swap this for an httpx.MockTransport; None means real network.
_UPSTREAM_TRANSPORT: Optional[httpx.AsyncBaseTransport] = None

SYSTEM_PROMPT = (
    "You are Noor, a warm and thoughtful Islamic companion: a knowledgeable friend, "
    "not a sheikh giving a lecture.\n\n"
    "HOW YOU TALK:\n"
    "- Keep responses concise, 2-3 short paragraphs unless someone asks for detail.\n"
    "- Be conversational and real. Never lecture, guilt-trip, or sound preachy.\n"
    "- Lead with empathy. Acknowledge a struggle before offering advice.\n"
    "- One well-chosen reference beats five generic ones.\n\n"
    "WHAT YOU KNOW:\n"
    "- Quran with tafsir (Ibn Kathir, Al-Qurtubi) and context of revelation, shared naturally.\n"
    "- Hadith, primarily Sahih Bukhari and Muslim, mentioning authenticity when relevant.\n"
    "- Fiqh across the four schools; say honestly when scholars differ.\n"
    "- Spiritual wellness: tawakkul, sabr, shukr, dhikr and dua as daily practices.\n\n"
    "WHAT YOU DON'T DO:\n"
    "- Never issue fatwas or definitive rulings; point people to their local imam.\n"
    "- Never dismiss feelings or make someone feel like a bad Muslim.\n"
    "- Never replace professional help; if someone seems in crisis, warmly encourage it.\n\n"
    "Use Arabic terms naturally with transliteration, and use ﷺ after mentioning the "
    "Prophet Muhammad."
)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

MSG_QUOTA = f"Daily limit reached. You can send up to {DAILY_LIMIT} messages per day."
MSG_MISCONFIGURED = "Service misconfigured — contact support"
MSG_UNREACHABLE = "Failed to reach AI service"
MSG_BUSY = "AI service is busy — please try again shortly"
MSG_UPSTREAM = "Upstream AI error"

rate_limiter = RateLimiter(RATE_LIMIT_DB_PATH)


# -----------------------------
# Validation
# -----------------------------


def _error(code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=code, content={"error": message, **extra})


def _validate_chat_body(body: Any) -> Tuple[List[Dict[str, str]], str]:
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise HTTPException(status_code=400, detail="`messages` must be a non-empty array")

    device_id = body.get("device_id", body.get("deviceId"))
    if not isinstance(device_id, str) or not device_id.strip():
        raise HTTPException(status_code=400, detail="`device_id` is required")

    out: List[Dict[str, str]] = []
    for m in messages:
        if not isinstance(m, dict):
            raise HTTPException(status_code=400, detail="Each message must have `role` and `content`")
        role = m.get("role")
        content = m.get("content")
        if not role or not isinstance(content, str) or not content:
            raise HTTPException(status_code=400, detail="Each message must have `role` and `content`")
        if role not in ROLES:
            raise HTTPException(status_code=400, detail='`role` must be "user" or "assistant"')
        out.append({"role": role, "content": content})
    return out, device_id.strip()


async def _read_chat_request(request: Request) -> Tuple[List[Dict[str, str]], str]:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return _validate_chat_body(body)


# -----------------------------
# Quota gate
# -----------------------------


async def _over_quota(device_id: str) -> bool:
    try:
        new_count = await rate_limiter.increment(device_id, today_utc())
    except Exception as e:
        # Availability over strictness: a counter outage must not take chat down.
        logger.error("rate limit increment failed, allowing request: %r", e)
        return False
    return new_count > DAILY_LIMIT


# -----------------------------
# Upstream
# -----------------------------


def _upstream_client() -> httpx.AsyncClient:
    timeout = httpx.Timeout(UPSTREAM_TIMEOUT, connect=10.0, read=None)
    return httpx.AsyncClient(timeout=timeout, transport=_UPSTREAM_TRANSPORT)


def _upstream_request(client: httpx.AsyncClient, messages: List[Dict[str, str]], *, stream: bool) -> httpx.Request:
    return client.build_request(
        "POST",
        f"{ANTHROPIC_BASE_URL}/v1/messages",
        headers={
            "x-api-key": ANTHROPIC_API_KEY,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        },
        json={
            "model": CLAUDE_MODEL,
            "max_tokens": MAX_TOKENS,
            "system": SYSTEM_PROMPT,
            "messages": messages,
            "stream": stream,
        },
    )


def _translate_upstream_error(status: int, detail: str) -> JSONResponse:
    logger.error("upstream returned %s: %.500s", status, detail)
    if status in (401, 403):
        return _error(502, MSG_MISCONFIGURED)
    if status == 429 or status >= 500:
        return _error(503, MSG_BUSY)
    return _error(502, MSG_UPSTREAM, status=status)


async def _gate(request: Request) -> Tuple[List[Dict[str, str]], Optional[JSONResponse]]:
    messages, device_id = await _read_chat_request(request)
    if await _over_quota(device_id):
        return messages, _error(429, MSG_QUOTA)
    if not ANTHROPIC_API_KEY:
        logger.error("ANTHROPIC_API_KEY is not set")
        return messages, _error(502, MSG_MISCONFIGURED)
    return messages, None


def _joined_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    parts: List[str] = []
    for b in payload.get("content") or []:
        if isinstance(b, dict) and b.get("type") == "text":
            t = b.get("text", "")
            if isinstance(t, str):
                parts.append(t)
    return "".join(parts)


app = FastAPI(title="Noor Chat Proxy", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.on_event("startup")
async def _startup() -> None:
    try:
        await rate_limiter.init()
    except Exception as e:
        logger.error("rate limit store unavailable at startup: %r", e)


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"ok": True, "ts": int(time.time())}


@app.post("/v1/chat")
async def chat_stream(request: Request) -> Any:
    messages, rejected = await _gate(request)
    if rejected is not None:
        return rejected

    client = _upstream_client()
    try:
        resp = await client.send(_upstream_request(client, messages, stream=True), stream=True)
    except httpx.HTTPError as e:
        await client.aclose()
        logger.error("upstream request failed: %r", e)
        return _error(502, MSG_UNREACHABLE)

    if not resp.is_success:
        try:
            raw = await resp.aread()
        except httpx.HTTPError:
            raw = b""
        finally:
            await resp.aclose()
            await client.aclose()
        return _translate_upstream_error(resp.status_code, raw.decode("utf-8", errors="replace"))

    async def pipe() -> AsyncIterator[bytes]:
        # Raw bytes, untouched: the client parses the provider's own event framing.
        try:
            async for chunk in resp.aiter_raw():
                yield chunk
        finally:
            with suppress(Exception):
                await resp.aclose()
            await client.aclose()

    return StreamingResponse(pipe(), media_type="text/event-stream", headers=STREAM_HEADERS)


@app.post("/v1/chat/complete")
async def chat_complete(request: Request) -> Any:
    messages, rejected = await _gate(request)
    if rejected is not None:
        return rejected

    async with _upstream_client() as client:
        try:
            resp = await client.send(_upstream_request(client, messages, stream=False))
        except httpx.HTTPError as e:
            logger.error("upstream request failed: %r", e)
            return _error(502, MSG_UNREACHABLE)

    if not resp.is_success:
        return _translate_upstream_error(resp.status_code, resp.text)
    try:
        payload = resp.json()
    except json.JSONDecodeError:
        logger.error("upstream returned non-JSON body: %.200s", resp.text)
        return _error(502, MSG_UPSTREAM, status=resp.status_code)
    return {"text": _joined_text(payload)}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(app, host=LISTEN_HOST, port=LISTEN_PORT)
