"""Bridge to the Dart VM Service of the running app.

Speaks JSON-RPC 2.0 over a websocket. Once connected the bridge subscribes to
the Stdout, Stderr and Logging streams and relays each event as a BridgeLine.
Log records reference their strings remotely, so every field is resolved with
a chunked read before the line is formatted.

A failure while handling one event is logged and skipped; the bridge and the
session keep running.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import itertools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from fl.models import BridgeError
from fl.processing.classifier import to_websocket_uri
from fl.session.events import BridgeLine, EventCallback
from fl.sources import BaseSource

logger = logging.getLogger("fl.sources.vm_service")

SUBSCRIBED_STREAMS = ("Stdout", "Stderr", "Logging")
CHUNK_SIZE = 16384
MAX_RESOLVE_DEPTH = 2
CALL_TIMEOUT = 10.0

NotificationHandler = Callable[[str, dict], None]


class VmServiceClient:
    """Minimal JSON-RPC client over an open websocket.

    Responses are matched to callers by request id; stream notifications are
    handed to ``on_notification`` in arrival order.
    """

    def __init__(self, websocket: Any, on_notification: NotificationHandler | None = None) -> None:
        self._ws = websocket
        self.on_notification = on_notification
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._closed = False

    @classmethod
    async def connect(
        cls,
        uri: str,
        on_notification: NotificationHandler | None = None,
    ) -> VmServiceClient:
        websocket = await websockets.connect(uri, max_size=None)
        client = cls(websocket, on_notification)
        client.start()
        return client

    def start(self) -> None:
        self._reader_task = asyncio.create_task(self._reader())

    async def call(self, method: str, **params: Any) -> dict:
        """Send one request and wait for its result.

        Raises:
            BridgeError: On an error response, timeout or closed connection.
        """
        if self._closed:
            raise BridgeError("VM Service connection is closed")

        request_id = str(next(self._ids))
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._pending[request_id] = fut

        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(fut, timeout=CALL_TIMEOUT)
        except asyncio.TimeoutError:
            raise BridgeError(f"Timeout waiting for {method}")
        except (WebSocketException, OSError) as e:
            raise BridgeError(f"{method} failed: {e}")
        finally:
            self._pending.pop(request_id, None)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        try:
            await self._ws.close()
        except (WebSocketException, OSError) as e:
            logger.debug("Error closing VM Service socket: %s", e)
        self._fail_pending("VM Service connection closed")

    async def _reader(self) -> None:
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except (json.JSONDecodeError, TypeError):
                    logger.debug("Ignoring undecodable VM Service message")
                    continue
                if not isinstance(data, dict):
                    continue
                try:
                    self._dispatch(data)
                except Exception as e:
                    logger.debug("Skipping malformed VM Service message: %s", e)
        except asyncio.CancelledError:
            return
        except WebSocketException as e:
            logger.debug("VM Service connection lost: %s", e)
        finally:
            self._fail_pending("VM Service connection closed")

    def _dispatch(self, data: dict) -> None:
        if "id" in data and ("result" in data or "error" in data):
            fut = self._pending.get(str(data["id"]))
            if fut is None or fut.done():
                return
            if "error" in data:
                error = data["error"] if isinstance(data["error"], dict) else {}
                fut.set_exception(BridgeError(error.get("message", "unknown error"), code=error.get("code")))
            else:
                fut.set_result(data["result"])
            return

        if data.get("method") == "streamNotify" and self.on_notification is not None:
            params = data.get("params")
            if not isinstance(params, dict):
                logger.debug("Ignoring streamNotify without params")
                return
            event = params.get("event")
            if not isinstance(event, dict):
                logger.debug("Ignoring streamNotify without an event object")
                return
            self.on_notification(str(params.get("streamId", "")), event)

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(BridgeError(reason))
        self._pending.clear()


# ------------------------------------------------------------------
# Remote string resolution
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedString:
    text: str = ""
    truncated: bool = False


RpcCall = Callable[..., Awaitable[dict]]


def _is_null(ref: dict | None) -> bool:
    return not ref or ref.get("kind") == "Null" or ref.get("type") in ("@Null", "Null")


async def read_chunked(call: RpcCall, isolate_id: str, object_id: str) -> ResolvedString:
    """Read a remote string in fragments until its reported length is reached.

    An empty fragment stops the loop early; the result is then marked
    truncated.
    """
    first = await call("getObject", isolateId=isolate_id, objectId=object_id)
    text = first.get("valueAsString") or ""
    length = first.get("length") or len(text)

    parts = [text]
    got = len(text)
    while got < length:
        count = min(CHUNK_SIZE, length - got)
        chunk = await call(
            "getObject",
            isolateId=isolate_id,
            objectId=object_id,
            offset=got,
            count=count,
        )
        fragment = chunk.get("valueAsString") or ""
        if not fragment:
            break
        parts.append(fragment)
        got += len(fragment)

    return ResolvedString("".join(parts), truncated=got < length)


async def resolve_string(
    call: RpcCall,
    ref: dict | None,
    isolate_id: str,
    optional: bool = False,
) -> ResolvedString:
    """Resolve an InstanceRef to its full string value.

    Strings are read in chunks. Anything else, or a string whose read fails,
    is converted remotely with ``toString`` and the result resolved once more.
    Null values resolve to "". With ``optional`` the literal text "null" does
    too.
    """
    current = ref
    for _ in range(MAX_RESOLVE_DEPTH):
        if _is_null(current):
            return ResolvedString()
        assert current is not None

        object_id = current.get("id")
        kind = current.get("kind")
        if object_id is None:
            return _finish(ResolvedString(current.get("valueAsString") or ""), optional)

        if kind in (None, "String"):
            try:
                return _finish(await read_chunked(call, isolate_id, object_id), optional)
            except BridgeError as e:
                logger.debug("getObject failed for %s: %s", object_id, e)
        elif "valueAsString" in current and not current.get("valueAsStringIsTruncated"):
            return _finish(ResolvedString(current["valueAsString"] or ""), optional)

        try:
            current = await call(
                "invoke",
                isolateId=isolate_id,
                targetId=object_id,
                selector="toString",
                argumentIds=[],
            )
        except BridgeError as e:
            logger.debug("toString failed for %s: %s", object_id, e)
            return ResolvedString()
        if current.get("type") in ("@Error", "Error"):
            return ResolvedString()

    return ResolvedString()


def _finish(result: ResolvedString, optional: bool) -> ResolvedString:
    if optional and result.text == "null":
        return ResolvedString()
    return result


def format_log_record(name: str, message: str, level: str, error: str = "", stack: str = "") -> str:
    if name:
        prefix = f"[{name}]"
    elif level:
        prefix = f"[L{level}]"
    else:
        prefix = ""
    text = f"📝 {prefix} {message}"
    if error:
        text += f"  error: {error}"
    if stack:
        text += f"\n{stack}"
    return text


def decode_write_event(event: dict) -> str:
    """Decode the base64 payload of a Stdout/Stderr WriteEvent."""
    raw = base64.b64decode(event["bytes"], validate=True)
    return raw.decode("utf-8").rstrip()


# ------------------------------------------------------------------
# Source adapter
# ------------------------------------------------------------------


class VmServiceBridge(BaseSource):
    """Relays VM Service stdout, stderr and log records into the session."""

    def __init__(
        self,
        uri: str,
        on_event: EventCallback | None = None,
        connector: Callable[..., Awaitable[VmServiceClient]] = VmServiceClient.connect,
    ) -> None:
        super().__init__(source_id="vm-service", on_event=on_event)
        self.uri = uri
        self.ws_uri = to_websocket_uri(uri)
        self._connector = connector
        self._client: VmServiceClient | None = None
        self._inbox: asyncio.Queue[tuple[str, dict]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._attempted = False

    @property
    def attempted(self) -> bool:
        return self._attempted

    async def start(self) -> None:
        """Connect and subscribe. Only the first call does anything."""
        if self._attempted:
            logger.debug("VM Service connection already attempted")
            return
        self._attempted = True

        logger.debug("Connecting to VM Service at %s", self.ws_uri)
        try:
            self._client = await self._connector(self.ws_uri, self._enqueue)
            for stream_id in SUBSCRIBED_STREAMS:
                await self._client.call("streamListen", streamId=stream_id)
        except (BridgeError, WebSocketException, OSError, asyncio.TimeoutError) as e:
            self._fail(str(e) or type(e).__name__)
            await self._close_client()
            return

        self._worker = asyncio.create_task(self._drain())
        self._running = True
        self.started_at = self._now()

    async def stop(self) -> None:
        self._running = False
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        await self._close_client()

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _enqueue(self, stream_id: str, event: dict) -> None:
        self._inbox.put_nowait((stream_id, event))

    async def _drain(self) -> None:
        while True:
            stream_id, event = await self._inbox.get()
            try:
                await self.handle_event(stream_id, event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("Failed to handle %s event: %s", stream_id, e)

    async def handle_event(self, stream_id: str, event: dict) -> None:
        """Turn one stream notification into at most one BridgeLine."""
        if stream_id in ("Stdout", "Stderr"):
            try:
                text = decode_write_event(event)
            except (KeyError, TypeError, binascii.Error, UnicodeDecodeError) as e:
                logger.debug("Failed to decode %s: %s", stream_id.lower(), e)
                return
            if text:
                self.emit(BridgeLine(text=text, kind=stream_id.lower()))
            return

        if stream_id == "Logging":
            line = await self._format_logging_event(event)
            if line is not None:
                self.emit(BridgeLine(text=line, kind="log"))

    async def _format_logging_event(self, event: dict) -> str | None:
        isolate_id = (event.get("isolate") or {}).get("id")
        record = event.get("logRecord")
        if isolate_id is None or not record or self._client is None:
            return None

        call = self._client.call
        name = await resolve_string(call, record.get("loggerName"), isolate_id)
        message = await resolve_string(call, record.get("message"), isolate_id)
        error = await resolve_string(call, record.get("error"), isolate_id, optional=True)
        stack = await resolve_string(call, record.get("stackTrace"), isolate_id, optional=True)

        level = record.get("level")
        if isinstance(level, dict):
            level = level.get("valueAsString")
        level_text = "" if level is None else str(level)

        return format_log_record(name.text, message.text, level_text, error.text, stack.text)
