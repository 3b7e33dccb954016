"""Client side of the chat pipeline.

``StreamClient.send`` reports every turn through exactly one of two terminal
callbacks: ``on_complete(text)`` (natural end, fallback end, or a user abort
with the partial text) or ``on_error(ChatError)``. ``on_delta`` fires with each
new fragment in arrival order, always before ``on_complete``.

When the proxy's reply cannot be read incrementally the client remembers that
for its lifetime and switches to the non-streaming endpoint, replaying the
complete text word by word so the UI still looks like a stream.
"""

import asyncio
import json
import logging
import os
import re
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set

import httpx

from chat_errors import (
    GENERIC_MESSAGE,
    INTERRUPTED_MESSAGE,
    LOCAL_QUOTA_MESSAGE,
    NETWORK_MESSAGE,
    QUOTA_MESSAGE,
    ChatError,
    NetworkFailure,
    ProxyError,
    QuotaExceeded,
    StreamInterrupted,
)
from chat_models import Message
from device_identity import DeviceIdentity
from event_stream import EventStreamDecoder
from local_quota import LocalQuota
from local_store import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_PROXY_URL = os.getenv("NOOR_PROXY_URL", "http://127.0.0.1:8080")
REVEAL_INTERVAL = 0.022

OnDelta = Callable[[str], None]
OnComplete = Callable[[str], None]
OnError = Callable[[ChatError], None]

_EOF = object()


class Capability(Enum):
    UNKNOWN = "unknown"
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"


class AbortSignal:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class _Aborted(Exception):
    pass


async def _race(aw: Awaitable[Any], signal: AbortSignal) -> Any:
    """Await ``aw`` unless ``signal`` fires first, in which case raise _Aborted."""
    if signal.aborted:
        close = getattr(aw, "close", None)
        if close is not None:
            close()
        raise _Aborted()
    task = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        stopper.cancel()
        raise
    if task in done:
        stopper.cancel()
        return task.result()
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    raise _Aborted()


async def _next_chunk(chunks: Any) -> Any:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return _EOF


def split_tokens(text: str) -> List[str]:
    # Whitespace runs are kept as their own tokens so "".join() gives back text.
    return [t for t in re.split(r"(\s+)", text) if t]


def _is_event_stream(resp: httpx.Response) -> bool:
    ctype = resp.headers.get("content-type", "")
    return ctype.split(";")[0].strip().lower() == "text/event-stream"


class StreamClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        store: Optional[LocalStore] = None,
        identity: Optional[DeviceIdentity] = None,
        quota: Optional[LocalQuota] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        reveal_interval: float = REVEAL_INTERVAL,
        timeout: float = 60.0,
    ):
        self.base_url = (base_url or DEFAULT_PROXY_URL).rstrip("/")
        store = store or LocalStore()
        self.identity = identity or DeviceIdentity(store)
        self.quota = quota or LocalQuota(store)
        self.reveal_interval = reveal_interval
        self.capability = Capability.UNKNOWN
        self._timeout = timeout
        self._http = http_client
        self._owns_http = http_client is None
        self._background: Set["asyncio.Task[None]"] = set()

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=10.0, read=None))
        return self._http

    async def aclose(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def send(
        self,
        messages: Sequence[Message],
        on_delta: OnDelta,
        on_complete: OnComplete,
        on_error: OnError,
        abort_signal: Optional[AbortSignal] = None,
    ) -> None:
        signal = abort_signal or AbortSignal()
        settled = False

        def complete(text: str) -> None:
            nonlocal settled
            settled = True
            on_complete(text)

        try:
            # Fast local refusal only; the proxy's counter is authoritative.
            info = await self.quota.get_count_info()
            if info.is_limit_reached:
                raise QuotaExceeded(LOCAL_QUOTA_MESSAGE.format(limit=self.quota.limit))

            device_id = await self.identity.get()
            self._bump_in_background()

            payload = {"messages": [m.to_dict() for m in messages], "device_id": device_id}
            if self.capability is not Capability.UNSUPPORTED:
                if await self._stream(payload, on_delta, complete, signal):
                    return
            await self._fallback(payload, on_delta, complete, signal)
        except ChatError as e:
            on_error(e)
        except Exception:
            if settled:
                raise
            logger.exception("chat send failed")
            on_error(ChatError(GENERIC_MESSAGE))

    def _bump_in_background(self) -> None:
        task = asyncio.ensure_future(self._bump())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _bump(self) -> None:
        try:
            await self.quota.bump()
        except Exception as e:
            logger.warning("local quota bump failed: %r", e)

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        msg = GENERIC_MESSAGE
        try:
            body = json.loads(await resp.aread())
            if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
                msg = body["error"]
        except (ValueError, httpx.HTTPError):
            pass
        if resp.status_code == 429:
            raise QuotaExceeded(QUOTA_MESSAGE)
        raise ProxyError(msg, status=resp.status_code)

    # ---- incremental ----

    async def _stream(self, payload: dict, on_delta: OnDelta, on_complete: OnComplete, signal: AbortSignal) -> bool:
        """Run the turn over the event stream. False means fall back."""
        client = self._client()
        request = client.build_request(
            "POST",
            f"{self.base_url}/v1/chat",
            json=payload,
            headers={"Accept": "text/event-stream"},
        )
        try:
            resp = await _race(client.send(request, stream=True), signal)
        except _Aborted:
            on_complete("")
            return True
        except httpx.HTTPError as e:
            raise NetworkFailure(NETWORK_MESSAGE) from e

        try:
            if not resp.is_success:
                await self._raise_for_status(resp)
            if not _is_event_stream(resp):
                logger.info(
                    "proxy reply is %r, not an event stream; using non-incremental delivery",
                    resp.headers.get("content-type"),
                )
                self.capability = Capability.UNSUPPORTED
                return False
            self.capability = Capability.SUPPORTED
            await self._consume(resp, on_delta, on_complete, signal)
            return True
        finally:
            await resp.aclose()

    async def _consume(
        self, resp: httpx.Response, on_delta: OnDelta, on_complete: OnComplete, signal: AbortSignal
    ) -> None:
        decoder = EventStreamDecoder()
        parts: List[str] = []
        chunks = resp.aiter_bytes()
        try:
            while True:
                chunk = await _race(_next_chunk(chunks), signal)
                if chunk is _EOF:
                    break
                for frag in decoder.feed(chunk):
                    parts.append(frag)
                    on_delta(frag)
        except _Aborted:
            on_complete("".join(parts))
            return
        except httpx.HTTPError as e:
            logger.warning("stream interrupted after %d fragments: %r", len(parts), e)
            raise StreamInterrupted(INTERRUPTED_MESSAGE) from e

        for frag in decoder.close():
            parts.append(frag)
            on_delta(frag)
        on_complete("".join(parts))

    # ---- non-incremental fallback ----

    async def _fallback(self, payload: dict, on_delta: OnDelta, on_complete: OnComplete, signal: AbortSignal) -> None:
        client = self._client()
        try:
            resp = await _race(client.post(f"{self.base_url}/v1/chat/complete", json=payload), signal)
        except _Aborted:
            on_complete("")
            return
        except httpx.HTTPError as e:
            raise NetworkFailure(NETWORK_MESSAGE) from e

        if not resp.is_success:
            await self._raise_for_status(resp)
        try:
            body = resp.json()
        except ValueError:
            raise ProxyError(GENERIC_MESSAGE, status=resp.status_code)
        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str):
            logger.error("fallback reply has no text: %.200s", resp.text)
            raise ProxyError(GENERIC_MESSAGE, status=resp.status_code)
        await self._reveal(text, on_delta, on_complete, signal)

    async def _reveal(self, text: str, on_delta: OnDelta, on_complete: OnComplete, signal: AbortSignal) -> None:
        revealed: List[str] = []
        try:
            for token in split_tokens(text):
                await _race(asyncio.sleep(self.reveal_interval), signal)
                revealed.append(token)
                on_delta(token)
        except _Aborted:
            on_complete("".join(revealed))
            return
        on_complete(text)
