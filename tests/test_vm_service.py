"""Tests for the VM Service bridge: JSON-RPC client, string resolution, events."""

from __future__ import annotations

import asyncio
import base64
import json
from unittest.mock import AsyncMock

import pytest

from fl.models import BridgeError
from fl.session.events import BridgeLine
from fl.sources.vm_service import (
    CHUNK_SIZE,
    ResolvedString,
    VmServiceBridge,
    VmServiceClient,
    format_log_record,
    read_chunked,
    resolve_string,
)

ISOLATE = "isolates/1"


class FakeVm:
    """Answers getObject/invoke from an in-memory object table.

    ``strings`` maps object id -> full text. getObject without offset
    returns the first ``first_count`` characters, like the real VM does
    for long strings.
    """

    def __init__(self, strings=None, instances=None, first_count=128, empty_after=None):
        self.strings = strings or {}
        self.instances = instances or {}
        self.first_count = first_count
        self.empty_after = empty_after
        self.calls: list[tuple[str, dict]] = []

    async def call(self, method: str, **params):
        self.calls.append((method, params))
        if method == "getObject":
            object_id = params["objectId"]
            if object_id not in self.strings:
                raise BridgeError("Object not found", code=-32602)
            text = self.strings[object_id]
            offset = params.get("offset", 0)
            count = params.get("count", self.first_count)
            if self.empty_after is not None and offset >= self.empty_after:
                fragment = ""
            else:
                fragment = text[offset:offset + count]
            return {
                "type": "Instance",
                "kind": "String",
                "id": object_id,
                "length": len(text),
                "valueAsString": fragment,
                "valueAsStringIsTruncated": offset + len(fragment) < len(text),
            }
        if method == "invoke":
            result = self.instances.get(params["targetId"])
            if result is None:
                raise BridgeError("invoke failed")
            return result
        raise BridgeError(f"unexpected {method}")


def _string_ref(object_id: str) -> dict:
    return {"type": "@Instance", "kind": "String", "id": object_id}


class TestResolveString:
    async def test_short_string(self):
        vm = FakeVm(strings={"objects/1": "hello"})
        result = await resolve_string(vm.call, _string_ref("objects/1"), ISOLATE)
        assert result == ResolvedString("hello")
        assert len(vm.calls) == 1

    async def test_long_string_reassembled_across_chunks(self):
        text = "x" * (CHUNK_SIZE * 2 + 500)
        vm = FakeVm(strings={"objects/big": text})

        result = await read_chunked(vm.call, ISOLATE, "objects/big")

        assert result.text == text
        assert not result.truncated
        offsets = [c[1].get("offset") for c in vm.calls]
        assert offsets == [None, 128, 128 + CHUNK_SIZE, 128 + 2 * CHUNK_SIZE]
        assert all(c[1].get("count", 0) <= CHUNK_SIZE for c in vm.calls)

    async def test_empty_fragment_halts_without_error(self):
        text = "abcdefghij" * 100
        vm = FakeVm(strings={"objects/2": text}, first_count=10, empty_after=10)

        result = await resolve_string(vm.call, _string_ref("objects/2"), ISOLATE)

        assert result.text == "abcdefghij"
        assert result.truncated

    async def test_null_resolves_to_empty(self):
        vm = FakeVm()
        assert await resolve_string(vm.call, None, ISOLATE) == ResolvedString()
        assert await resolve_string(vm.call, {"type": "@Instance", "kind": "Null"}, ISOLATE) == ResolvedString()
        assert vm.calls == []

    async def test_non_string_falls_back_to_to_string(self):
        vm = FakeVm(
            strings={"objects/str": "StateError: bad state"},
            instances={"objects/err": _string_ref("objects/str")},
        )
        ref = {"type": "@Instance", "kind": "PlainInstance", "id": "objects/err"}

        result = await resolve_string(vm.call, ref, ISOLATE)

        assert result.text == "StateError: bad state"
        assert vm.calls[0] == (
            "invoke",
            {"isolateId": ISOLATE, "targetId": "objects/err", "selector": "toString", "argumentIds": []},
        )

    async def test_failed_read_falls_back_to_to_string(self):
        vm = FakeVm(
            strings={"objects/str": "fallback"},
            instances={"objects/gone": _string_ref("objects/str")},
        )
        result = await resolve_string(vm.call, _string_ref("objects/gone"), ISOLATE)
        assert result.text == "fallback"

    async def test_resolution_depth_is_bounded(self):
        # toString keeps returning non-string instances
        vm = FakeVm(instances={
            "objects/a": {"type": "@Instance", "kind": "PlainInstance", "id": "objects/b"},
            "objects/b": {"type": "@Instance", "kind": "PlainInstance", "id": "objects/a"},
        })
        ref = {"type": "@Instance", "kind": "PlainInstance", "id": "objects/a"}
        assert await resolve_string(vm.call, ref, ISOLATE) == ResolvedString()
        assert len(vm.calls) == 2

    async def test_invoke_failure_is_empty(self):
        vm = FakeVm()
        ref = {"type": "@Instance", "kind": "PlainInstance", "id": "objects/none"}
        assert await resolve_string(vm.call, ref, ISOLATE) == ResolvedString()

    async def test_optional_null_text(self):
        vm = FakeVm(strings={"objects/n": "null"})
        result = await resolve_string(vm.call, _string_ref("objects/n"), ISOLATE, optional=True)
        assert result.text == ""

    async def test_inline_primitive(self):
        vm = FakeVm()
        ref = {"type": "@Instance", "kind": "Int", "valueAsString": "800"}
        assert (await resolve_string(vm.call, ref, ISOLATE)).text == "800"


class TestFormatLogRecord:
    def test_named_logger(self):
        assert format_log_record("auth", "signed in", "800") == "📝 [auth] signed in"

    def test_level_prefix_without_name(self):
        assert format_log_record("", "hi", "1000") == "📝 [L1000] hi"

    def test_error_and_stack(self):
        text = format_log_record("net", "failed", "1000", error="timeout", stack="#0 main")
        assert text == "📝 [net] failed  error: timeout\n#0 main"


class FakeSocket:
    """Websocket stand-in: records sent frames, replays queued inbound ones."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.auto_reply = True

    async def send(self, message: str) -> None:
        data = json.loads(message)
        self.sent.append(data)
        if self.auto_reply:
            await self.inbound.put(json.dumps({"jsonrpc": "2.0", "id": data["id"], "result": {"type": "Success"}}))

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.inbound.get()
        if message is None:
            raise StopAsyncIteration
        return message


class TestVmServiceClient:
    async def test_call_matches_response_by_id(self):
        ws = FakeSocket()
        client = VmServiceClient(ws)
        client.start()

        result = await client.call("streamListen", streamId="Stdout")

        assert result == {"type": "Success"}
        assert ws.sent[0]["method"] == "streamListen"
        assert ws.sent[0]["params"] == {"streamId": "Stdout"}
        await client.close()
        assert ws.closed

    async def test_error_response_raises(self):
        ws = FakeSocket()
        ws.auto_reply = False
        client = VmServiceClient(ws)
        client.start()

        task = asyncio.create_task(client.call("getObject", objectId="x"))
        await asyncio.sleep(0)
        request_id = ws.sent[0]["id"]
        await ws.inbound.put(json.dumps({
            "jsonrpc": "2.0", "id": request_id, "error": {"code": 105, "message": "Isolate must be runnable"},
        }))

        with pytest.raises(BridgeError) as exc_info:
            await task
        assert exc_info.value.code == 105
        await client.close()

    async def test_notifications_dispatched(self):
        ws = FakeSocket()
        seen: list = []
        client = VmServiceClient(ws, on_notification=lambda s, e: seen.append((s, e)))
        client.start()

        await ws.inbound.put(json.dumps({
            "jsonrpc": "2.0", "method": "streamNotify",
            "params": {"streamId": "Stdout", "event": {"kind": "WriteEvent", "bytes": "aGk="}},
        }))
        await asyncio.sleep(0.01)

        assert seen == [("Stdout", {"kind": "WriteEvent", "bytes": "aGk="})]
        await client.close()

    async def test_malformed_frames_do_not_stop_reader(self):
        ws = FakeSocket()
        seen: list = []
        client = VmServiceClient(ws, on_notification=lambda s, e: seen.append((s, e)))
        client.start()

        for frame in (
            {"jsonrpc": "2.0", "method": "streamNotify", "params": "bogus"},
            {"jsonrpc": "2.0", "method": "streamNotify", "params": {"streamId": "Stdout", "event": 7}},
            [1, 2, 3],
        ):
            await ws.inbound.put(json.dumps(frame))
        await ws.inbound.put(json.dumps({
            "jsonrpc": "2.0", "method": "streamNotify",
            "params": {"streamId": "Stdout", "event": {"kind": "WriteEvent", "bytes": "aGk="}},
        }))
        await asyncio.sleep(0.01)

        assert seen == [("Stdout", {"kind": "WriteEvent", "bytes": "aGk="})]
        assert await client.call("getVM") == {"type": "Success"}
        await client.close()

    async def test_non_object_error_still_fails_call(self):
        ws = FakeSocket()
        ws.auto_reply = False
        client = VmServiceClient(ws)
        client.start()

        task = asyncio.create_task(client.call("getVM"))
        await asyncio.sleep(0)
        await ws.inbound.put(json.dumps({"jsonrpc": "2.0", "id": ws.sent[0]["id"], "error": "boom"}))

        with pytest.raises(BridgeError, match="unknown error"):
            await task
        ws.auto_reply = True
        assert await client.call("getVM") == {"type": "Success"}
        await client.close()

    async def test_failing_notification_handler_does_not_stop_reader(self):
        ws = FakeSocket()
        seen: list = []

        def handler(stream_id, event):
            if event.get("kind") == "Bad":
                raise KeyError("bytes")
            seen.append(stream_id)

        client = VmServiceClient(ws, on_notification=handler)
        client.start()
        for kind in ("Bad", "WriteEvent"):
            await ws.inbound.put(json.dumps({
                "jsonrpc": "2.0", "method": "streamNotify",
                "params": {"streamId": "Stderr", "event": {"kind": kind}},
            }))
        await asyncio.sleep(0.01)

        assert seen == ["Stderr"]
        await client.close()

    async def test_closed_connection_fails_pending(self):
        ws = FakeSocket()
        ws.auto_reply = False
        client = VmServiceClient(ws)
        client.start()

        task = asyncio.create_task(client.call("getVM"))
        await asyncio.sleep(0)
        await ws.inbound.put(None)

        with pytest.raises(BridgeError, match="closed"):
            await task


def _write_event(text: str) -> dict:
    return {"kind": "WriteEvent", "bytes": base64.b64encode(text.encode()).decode()}


@pytest.fixture
def connected_bridge():
    """A bridge whose connector hands back a mock client."""
    client = AsyncMock()
    client.call = AsyncMock(return_value={"type": "Success"})
    events: list = []

    async def connector(uri, on_notification):
        connector.uri = uri
        return client

    bridge = VmServiceBridge("http://127.0.0.1:50300/abc=/", on_event=events.append, connector=connector)
    return bridge, client, events, connector


class TestVmServiceBridge:
    async def test_connects_and_subscribes(self, connected_bridge):
        bridge, client, _, connector = connected_bridge
        await bridge.start()

        assert bridge.is_running
        assert connector.uri == "ws://127.0.0.1:50300/abc=/ws"
        streams = [c.kwargs["streamId"] for c in client.call.call_args_list]
        assert streams == ["Stdout", "Stderr", "Logging"]
        await bridge.stop()
        client.close.assert_awaited()

    async def test_second_start_is_noop(self, connected_bridge):
        bridge, client, _, _ = connected_bridge
        await bridge.start()
        await bridge.start()
        assert client.call.await_count == 3
        await bridge.stop()

    async def test_connection_failure_degrades(self):
        async def connector(uri, on_notification):
            raise OSError("Connection refused")

        bridge = VmServiceBridge("http://127.0.0.1:1/x=/", connector=connector)
        await bridge.start()

        assert not bridge.is_running
        assert "Connection refused" in bridge.error
        await bridge.stop()

    async def test_stdout_and_stderr_events(self, connected_bridge):
        bridge, _, events, _ = connected_bridge
        await bridge.start()

        await bridge.handle_event("Stdout", _write_event("hello\n"))
        await bridge.handle_event("Stderr", _write_event("oops\n"))
        await bridge.handle_event("Stdout", _write_event("   \n"))

        assert events == [BridgeLine("hello", "stdout"), BridgeLine("oops", "stderr")]
        await bridge.stop()

    async def test_undecodable_event_is_skipped(self, connected_bridge):
        bridge, _, events, _ = connected_bridge
        await bridge.start()
        await bridge.handle_event("Stdout", {"kind": "WriteEvent", "bytes": "!!not base64!!"})
        await bridge.handle_event("Stdout", {"kind": "WriteEvent"})
        assert events == []
        await bridge.stop()

    async def test_logging_event(self, connected_bridge):
        bridge, client, events, _ = connected_bridge
        vm = FakeVm(strings={"objects/name": "auth", "objects/msg": "token refreshed"})
        client.call = AsyncMock(side_effect=vm.call)
        bridge._client = client

        await bridge.handle_event("Logging", {
            "kind": "Logging",
            "isolate": {"id": ISOLATE},
            "logRecord": {
                "loggerName": _string_ref("objects/name"),
                "message": _string_ref("objects/msg"),
                "level": {"type": "@Instance", "kind": "Int", "valueAsString": "800"},
                "error": {"type": "@Instance", "kind": "Null"},
                "stackTrace": {"type": "@Instance", "kind": "Null"},
            },
        })

        assert events == [BridgeLine("📝 [auth] token refreshed", "log")]

    async def test_logging_event_without_isolate_ignored(self, connected_bridge):
        bridge, client, events, _ = connected_bridge
        bridge._client = client
        await bridge.handle_event("Logging", {"logRecord": {}})
        assert events == []

    async def test_failing_event_does_not_stop_worker(self, connected_bridge):
        bridge, client, events, _ = connected_bridge
        await bridge.start()

        bridge._enqueue("Logging", {"isolate": {"id": ISOLATE}, "logRecord": {"message": 5}})
        bridge._enqueue("Stdout", _write_event("still alive"))
        await asyncio.sleep(0.01)

        assert BridgeLine("still alive", "stdout") in events
        assert bridge.is_running
        await bridge.stop()
