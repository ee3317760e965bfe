"""Tests for the client session and its handshake."""
import asyncio

import pytest

from mcplink.protocol.errors import ProtocolError, StateError, TransportError
from mcplink.protocol.session import (
    CallToolResult,
    ClientOptions,
    ClientSession,
    SessionState,
    ToolDescriptor,
)


class TestHandshake:
    @pytest.mark.asyncio
    async def test_success_reaches_ready(self, connection, pipes):
        session = ClientSession()
        task = asyncio.create_task(session.connect(connection))

        request = await pipes.next_frame(0)
        assert request["id"] == 1
        assert request["method"] == "initialize"
        assert request["params"]["protocolVersion"] == "2024-11-05"
        assert request["params"]["clientInfo"] == {"name": "mcplink", "version": session.options.client_version}
        assert request["params"]["capabilities"] == {"roots": {"listChanged": True}, "sampling": {}}
        assert session.state is SessionState.HANDSHAKING

        pipes.reply({
            "id": 1,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {},
                "serverInfo": {"name": "x", "version": "1"},
            },
        })
        result = await asyncio.wait_for(task, timeout=1.0)

        assert session.state is SessionState.READY
        assert result.server_info == {"name": "x", "version": "1"}
        assert session.protocol_version == "2024-11-05"

        initialized = pipes.stdin.frames[1]
        assert initialized == {"jsonrpc": "2.0", "method": "notifications/initialized"}
        assert "id" not in initialized

    @pytest.mark.asyncio
    async def test_error_response_fails_connect(self, connection, pipes):
        session = ClientSession()
        task = asyncio.create_task(session.connect(connection))

        await pipes.next_frame(0)
        pipes.reply({"id": 1, "error": {"code": -32000, "message": "boom"}})

        with pytest.raises(ProtocolError) as exc_info:
            await asyncio.wait_for(task, timeout=1.0)
        assert exc_info.value.code == -32000
        assert "-32000" in str(exc_info.value)
        assert session.state is SessionState.CLOSED
        assert len(pipes.stdin.frames) == 1

    @pytest.mark.asyncio
    async def test_exit_before_response_fails_connect(self, connection, pipes):
        session = ClientSession()
        task = asyncio.create_task(session.connect(connection))

        await pipes.next_frame(0)
        pipes.exit(1)

        with pytest.raises(TransportError):
            await asyncio.wait_for(task, timeout=1.0)
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_capabilities_do_not_gate_ready(self, connection, pipes):
        session = ClientSession()
        task = asyncio.create_task(session.connect(connection))

        await pipes.next_frame(0)
        pipes.reply({"id": 1, "result": {}})
        result = await asyncio.wait_for(task, timeout=1.0)

        assert session.is_ready
        assert result.protocol_version is None
        assert session.server_capabilities == {}

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, ready_session, connection, pipes):
        with pytest.raises(StateError):
            await ready_session.connect(connection)

        assert ready_session.state is SessionState.READY
        assert len(pipes.stdin.frames) == 2

    @pytest.mark.asyncio
    async def test_connect_while_handshaking_rejected(self, connection, pipes):
        session = ClientSession()
        task = asyncio.create_task(session.connect(connection))
        await pipes.next_frame(0)

        with pytest.raises(StateError):
            await session.connect(connection)
        assert session.state is SessionState.HANDSHAKING

        pipes.reply({"id": 1, "result": {}})
        await asyncio.wait_for(task, timeout=1.0)
        assert len([f for f in pipes.stdin.frames if f.get("method") == "initialize"]) == 1

    @pytest.mark.asyncio
    async def test_custom_client_options(self, connection, pipes):
        options = ClientOptions(client_name="study-client", client_version="1.0.0", capabilities={})
        session = ClientSession(options)
        task = asyncio.create_task(session.connect(connection))

        request = await pipes.next_frame(0)
        pipes.reply({"id": request["id"], "result": {}})
        await asyncio.wait_for(task, timeout=1.0)

        assert request["params"]["clientInfo"] == {"name": "study-client", "version": "1.0.0"}
        assert request["params"]["capabilities"] == {}


class TestCalls:
    @pytest.mark.asyncio
    async def test_call_before_connect_sends_nothing(self, pipes):
        session = ClientSession()

        with pytest.raises(StateError):
            await session.call("tools/list", {})

        assert session.state is SessionState.DISCONNECTED
        assert pipes.stdin.buffer == bytearray()

    @pytest.mark.asyncio
    async def test_application_call_during_handshake_rejected(self, connection, pipes):
        session = ClientSession()
        task = asyncio.create_task(session.connect(connection))
        await pipes.next_frame(0)

        with pytest.raises(StateError):
            await session.call("tools/list", {})
        assert len(pipes.stdin.frames) == 1

        pipes.reply({"id": 1, "result": {}})
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_ids_strictly_increase(self, ready_session, pipes):
        tasks = [asyncio.create_task(ready_session.call("tools/list", {})) for _ in range(3)]
        for index in range(2, 5):
            await pipes.next_frame(index)

        ids = [frame["id"] for frame in pipes.stdin.frames if "id" in frame]
        assert ids == [1, 2, 3, 4]

        for request_id in (2, 3, 4):
            pipes.reply({"id": request_id, "result": {}})
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=1.0)

        task = asyncio.create_task(ready_session.call("tools/list", {}))
        frame = await pipes.next_frame(5)
        assert frame["id"] == 5
        pipes.reply({"id": 5, "result": {}})
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, ready_session, pipes):
        await self._bump_ids(ready_session, pipes, until=3)

        four = asyncio.create_task(ready_session.call("tools/call", {"name": "four"}))
        five = asyncio.create_task(ready_session.call("tools/call", {"name": "five"}))
        assert (await pipes.next_frame(4))["id"] == 4
        assert (await pipes.next_frame(5))["id"] == 5

        pipes.reply({"id": 5, "result": {"answer": "five"}})
        pipes.reply({"id": 4, "result": {"answer": "four"}})

        assert await asyncio.wait_for(four, timeout=1.0) == {"answer": "four"}
        assert await asyncio.wait_for(five, timeout=1.0) == {"answer": "five"}

    @pytest.mark.asyncio
    async def test_unsolicited_response_has_no_effect(self, ready_session, connection, pipes):
        pipes.reply({"id": 42, "result": {"surprise": True}})
        await asyncio.sleep(0.01)

        assert ready_session.state is SessionState.READY
        assert len(connection.registry) == 0
        assert not connection.closed

    @pytest.mark.asyncio
    async def test_error_response_raises_protocol_error(self, ready_session, pipes):
        task = asyncio.create_task(ready_session.call("tools/call", {"name": "missing"}))
        request = await pipes.next_frame(2)
        pipes.reply({"id": request["id"], "error": {"code": -32602, "message": "Unknown tool", "data": "missing"}})

        with pytest.raises(ProtocolError) as exc_info:
            await asyncio.wait_for(task, timeout=1.0)
        assert exc_info.value.code == -32602
        assert exc_info.value.message == "Unknown tool"
        assert exc_info.value.data == "missing"
        assert ready_session.is_ready

    @pytest.mark.asyncio
    async def test_exit_drains_pending_calls(self, ready_session, connection, pipes):
        first = asyncio.create_task(ready_session.call("tools/list", {}))
        second = asyncio.create_task(ready_session.call("tools/list", {}))
        await pipes.next_frame(3)
        assert sorted(connection.registry.pending_ids) == [2, 3]

        pipes.exit(0)

        for task in (first, second):
            with pytest.raises(TransportError):
                await asyncio.wait_for(task, timeout=1.0)
        assert len(connection.registry) == 0
        assert ready_session.state is SessionState.CLOSED

        with pytest.raises(StateError):
            await ready_session.call("tools/list", {})

    @pytest.mark.asyncio
    async def test_cancelled_call_leaves_registry(self, ready_session, connection, pipes):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ready_session.call("tools/list", {}), timeout=0.01)

        assert len(connection.registry) == 0

    @staticmethod
    async def _bump_ids(session, pipes, until):
        for request_id in range(2, until + 1):
            task = asyncio.create_task(session.call("tools/list", {}))
            await pipes.next_frame(request_id)
            pipes.reply({"id": request_id, "result": {}})
            await asyncio.wait_for(task, timeout=1.0)


class TestNotify:
    @pytest.mark.asyncio
    async def test_notify_while_disconnected_is_noop(self, pipes):
        session = ClientSession()

        await session.notify("notifications/progress", {"progress": 1})

        assert pipes.stdin.buffer == bytearray()
        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_notify_when_ready(self, ready_session, pipes):
        await ready_session.notify("notifications/roots/list_changed")

        assert pipes.stdin.frames[-1] == {"jsonrpc": "2.0", "method": "notifications/roots/list_changed"}

    @pytest.mark.asyncio
    async def test_notify_after_close_does_not_raise(self, ready_session, pipes):
        await ready_session.disconnect()
        sent = len(pipes.stdin.frames)

        await ready_session.notify("notifications/progress")

        assert len(pipes.stdin.frames) == sent


class TestTools:
    @pytest.mark.asyncio
    async def test_list_tools(self, ready_session, pipes):
        task = asyncio.create_task(ready_session.list_tools())
        request = await pipes.next_frame(2)
        assert request["method"] == "tools/list"
        assert request["params"] == {}

        pipes.reply({"id": request["id"], "result": {"tools": [{
            "name": "find_instances",
            "description": "List instances",
            "inputSchema": {"type": "object", "properties": {"status": {"type": "string"}}},
        }]}})
        tools = await asyncio.wait_for(task, timeout=1.0)

        assert tools == [ToolDescriptor(
            name="find_instances",
            description="List instances",
            input_schema={"type": "object", "properties": {"status": {"type": "string"}}},
        )]

    @pytest.mark.asyncio
    async def test_list_tools_tolerates_missing_list(self, ready_session, pipes):
        task = asyncio.create_task(ready_session.list_tools())
        request = await pipes.next_frame(2)
        pipes.reply({"id": request["id"], "result": {}})

        assert await asyncio.wait_for(task, timeout=1.0) == []

    @pytest.mark.asyncio
    async def test_call_tool(self, ready_session, pipes):
        task = asyncio.create_task(ready_session.call_tool("echo", {"text": "hi"}))
        request = await pipes.next_frame(2)
        assert request["method"] == "tools/call"
        assert request["params"] == {"name": "echo", "arguments": {"text": "hi"}}

        pipes.reply({"id": request["id"], "result": {
            "content": [{"type": "text", "text": "hi"}, {"type": "text", "text": "there"}],
        }})
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result == CallToolResult(
            content=[{"type": "text", "text": "hi"}, {"type": "text", "text": "there"}],
            is_error=False,
        )
        assert result.text == "hi\nthere"


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_and_closes(self, ready_session, connection, pipes):
        task = asyncio.create_task(ready_session.call("tools/list", {}))
        await pipes.next_frame(2)

        await ready_session.disconnect()

        with pytest.raises(TransportError):
            await asyncio.wait_for(task, timeout=1.0)
        assert ready_session.state is SessionState.CLOSED
        assert connection.closed

    @pytest.mark.asyncio
    async def test_disconnect_without_connect_is_noop(self):
        session = ClientSession()

        await session.disconnect()

        assert session.state is SessionState.DISCONNECTED
