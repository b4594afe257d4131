from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest
from pydantic import BaseModel

from mcp_peer import QUIET_SETTINGS, ScriptedPeer, connected_session
from toolbox.core.config import SessionSettings
from toolbox.core.errors import ErrorCode, McpError, UnexpectedStateError, UserError
from toolbox.core.session import SessionState, ToolboxSession
from toolbox.models.content import ImageContent
from toolbox.tools.registry import (
    CapabilityRegistry,
    PromptArgument,
    PromptSpec,
    RegistrySnapshot,
    ResourceSpec,
    ResourceTemplateSpec,
    ToolSpec,
)
from toolbox.transports.base import create_memory_transport_pair


class AddParams(BaseModel):
    a: int
    b: int


async def _wait_for_state(session: ToolboxSession, state: SessionState, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.state is not state:
        if loop.time() > deadline:
            raise AssertionError(f"session stuck in {session.state}")
        await asyncio.sleep(0.01)


def _tools_snapshot(calls: List[Any]) -> RegistrySnapshot:
    registry = CapabilityRegistry()

    def add(args: AddParams, context: Any) -> str:
        calls.append(args)
        return str(args.a + args.b)

    def fail_for_user(args: Any, context: Any) -> str:
        raise UserError("Nothing to do here")

    async def explode(args: Any, context: Any) -> str:
        raise RuntimeError("boom")

    async def with_progress(args: Any, context: Any) -> Dict[str, Any]:
        await context.report_progress(1, 2)
        await context.report_progress(2, 2)
        return {"content": [{"type": "text", "text": "finished"}]}

    def chatty(args: Any, context: Any) -> str:
        context.log.debug("debug line")
        context.log.info("info line", {"step": 1})
        context.log.warn("warn line")
        return "logged"

    def whoami(args: Any, context: Any) -> str:
        return f"user={context.session['user']}"

    def picture(args: Any, context: Any) -> ImageContent:
        return ImageContent(data="aGVsbG8=", mimeType="image/png")

    registry.add_tool(ToolSpec(name="add", description="Add two integers", parameters=AddParams, execute=add))
    registry.add_tool(ToolSpec(name="user_error", execute=fail_for_user))
    registry.add_tool(ToolSpec(name="explode", execute=explode))
    registry.add_tool(ToolSpec(name="progress", execute=with_progress))
    registry.add_tool(ToolSpec(name="chatty", execute=chatty))
    registry.add_tool(ToolSpec(name="whoami", execute=whoami))
    registry.add_tool(ToolSpec(name="picture", execute=picture))
    return registry.snapshot()


@pytest.mark.asyncio
async def test_initialize_reports_gated_capabilities() -> None:
    snapshot = _tools_snapshot([])
    server_transport, client_transport = create_memory_transport_pair()
    peer = ScriptedPeer(client_transport)
    await peer.start()
    session = ToolboxSession(name="demo", version="1.2.3", snapshot=snapshot, settings=QUIET_SETTINGS)
    connecting = asyncio.create_task(session.connect(server_transport))
    reply = await peer.initialize()
    await connecting
    try:
        result = reply["result"]
        assert result["serverInfo"] == {"name": "demo", "version": "1.2.3"}
        assert "tools" in result["capabilities"]
        assert "logging" in result["capabilities"]
        assert "prompts" not in result["capabilities"]
        assert "resources" not in result["capabilities"]
        assert session.state is SessionState.ACTIVE
        assert session.client_info["name"] == "scripted-peer"

        missing = await peer.request("prompts/list")
        assert missing["error"]["code"] == ErrorCode.METHOD_NOT_FOUND
    finally:
        await session.close()
        await peer.close()


@pytest.mark.asyncio
async def test_negotiation_gives_up_and_still_activates() -> None:
    settings = SessionSettings(heartbeat_interval=60.0, negotiation_attempts=3, negotiation_delay=0.01, request_timeout=1.0)
    server_transport, client_transport = create_memory_transport_pair()
    peer = ScriptedPeer(client_transport)
    await peer.start()
    session = ToolboxSession(name="demo", version="1.0.0", snapshot=RegistrySnapshot(), settings=settings)
    try:
        await session.connect(server_transport)
        assert session.state is SessionState.ACTIVE
        assert session.client_capabilities is None
    finally:
        await session.close()
        await peer.close()


@pytest.mark.asyncio
async def test_second_connect_is_rejected() -> None:
    async with connected_session(RegistrySnapshot()) as (session, _peer):
        other, _ = create_memory_transport_pair()
        with pytest.raises(UnexpectedStateError, match="already connected"):
            await session.connect(other)


@pytest.mark.asyncio
async def test_tools_list_in_registration_order_with_schema() -> None:
    async with connected_session(_tools_snapshot([])) as (_session, peer):
        reply = await peer.request("tools/list")
    tools = reply["result"]["tools"]
    assert [tool["name"] for tool in tools][:3] == ["add", "user_error", "explode"]
    assert tools[0]["inputSchema"]["properties"]["a"]["type"] == "integer"
    assert tools[1]["inputSchema"] == {"type": "object"}


@pytest.mark.asyncio
async def test_tool_call_validates_arguments_before_execution() -> None:
    calls: List[Any] = []
    async with connected_session(_tools_snapshot(calls)) as (_session, peer):
        rejected = await peer.request("tools/call", {"name": "add", "arguments": {"a": "one", "b": 2}})
        accepted = await peer.request("tools/call", {"name": "add", "arguments": {"a": 1, "b": 2}})

    assert rejected["error"]["code"] == ErrorCode.INVALID_PARAMS
    assert rejected["error"]["message"] == "Invalid add parameters"
    assert accepted["result"] == {"content": [{"type": "text", "text": "3"}]}
    assert len(calls) == 1
    assert isinstance(calls[0], AddParams)


@pytest.mark.asyncio
async def test_unknown_tool_is_method_not_found() -> None:
    async with connected_session(_tools_snapshot([])) as (_session, peer):
        reply = await peer.request("tools/call", {"name": "nope", "arguments": {}})
    assert reply["error"]["code"] == ErrorCode.METHOD_NOT_FOUND
    assert reply["error"]["message"] == "Unknown tool: nope"


@pytest.mark.asyncio
async def test_tool_failures_become_error_content() -> None:
    async with connected_session(_tools_snapshot([])) as (_session, peer):
        user_error = await peer.request("tools/call", {"name": "user_error"})
        crash = await peer.request("tools/call", {"name": "explode"})

    assert user_error["result"] == {"content": [{"type": "text", "text": "Nothing to do here"}], "isError": True}
    assert crash["result"] == {"content": [{"type": "text", "text": "Error: boom"}], "isError": True}


@pytest.mark.asyncio
async def test_single_content_block_is_wrapped() -> None:
    async with connected_session(_tools_snapshot([])) as (_session, peer):
        reply = await peer.request("tools/call", {"name": "picture"})
    assert reply["result"]["content"] == [{"type": "image", "data": "aGVsbG8=", "mimeType": "image/png"}]


@pytest.mark.asyncio
async def test_tool_context_carries_auth_payload() -> None:
    async with connected_session(_tools_snapshot([]), auth={"user": "alice"}) as (_session, peer):
        reply = await peer.request("tools/call", {"name": "whoami"})
    assert reply["result"]["content"][0]["text"] == "user=alice"


@pytest.mark.asyncio
async def test_progress_is_sent_only_with_progress_token() -> None:
    async with connected_session(_tools_snapshot([])) as (_session, peer):
        await peer.request("tools/call", {"name": "progress"})
        await asyncio.sleep(0.05)
        assert peer.notifications_for("notifications/progress") == []

        reply = await peer.request("tools/call", {"name": "progress", "_meta": {"progressToken": "tok-1"}})
        await asyncio.sleep(0.05)
        progress = peer.notifications_for("notifications/progress")

    assert reply["result"]["content"][0]["text"] == "finished"
    assert [item["params"] for item in progress] == [
        {"progressToken": "tok-1", "progress": 1, "total": 2},
        {"progressToken": "tok-1", "progress": 2, "total": 2},
    ]


@pytest.mark.asyncio
async def test_tool_log_respects_session_level() -> None:
    async with connected_session(_tools_snapshot([])) as (session, peer):
        await peer.request("tools/call", {"name": "chatty"})
        await asyncio.sleep(0.05)
        first = [item["params"] for item in peer.notifications_for("notifications/message")]

        peer.notifications.clear()
        level_reply = await peer.request("logging/setLevel", {"level": "debug"})
        await peer.request("tools/call", {"name": "chatty"})
        await asyncio.sleep(0.05)
        second = [item["params"]["level"] for item in peer.notifications_for("notifications/message")]
        assert session.logging_level == "debug"

    assert level_reply["result"] == {}
    assert [item["level"] for item in first] == ["info", "warning"]
    assert first[0]["data"] == {"message": "info line", "context": {"step": 1}}
    assert sorted(second) == ["debug", "info", "warning"]


@pytest.mark.asyncio
async def test_set_level_rejects_unknown_level() -> None:
    async with connected_session(RegistrySnapshot()) as (session, peer):
        reply = await peer.request("logging/setLevel", {"level": "loud"})
        assert session.logging_level == "info"
    assert reply["error"]["code"] == ErrorCode.INVALID_PARAMS


@pytest.mark.asyncio
async def test_unknown_method_is_method_not_found() -> None:
    async with connected_session(RegistrySnapshot()) as (_session, peer):
        reply = await peer.request("does/not/exist")
    assert reply["error"] == {
        "code": ErrorCode.METHOD_NOT_FOUND,
        "message": "Method not found",
        "data": {"method": "does/not/exist"},
    }


@pytest.mark.asyncio
async def test_slow_tool_does_not_block_other_requests() -> None:
    release = asyncio.Event()
    registry = CapabilityRegistry()

    async def slow(args: Any, context: Any) -> str:
        await release.wait()
        return "slow done"

    registry.add_tool(ToolSpec(name="slow", execute=slow))
    async with connected_session(registry.snapshot()) as (_session, peer):
        call = asyncio.create_task(peer.request("tools/call", {"name": "slow"}))
        pong = await peer.request("ping")
        assert pong["result"] == {}
        assert not call.done()
        release.set()
        reply = await call
    assert reply["result"]["content"][0]["text"] == "slow done"


@pytest.mark.asyncio
async def test_close_while_tool_in_flight_discards_late_result() -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    finished: List[str] = []
    registry = CapabilityRegistry()

    async def slow(args: Any, context: Any) -> str:
        started.set()
        await release.wait()
        context.log.info("after close")
        finished.append("slow")
        return "too late"

    registry.add_tool(ToolSpec(name="slow", execute=slow))
    async with connected_session(registry.snapshot()) as (session, peer):
        errors: List[Dict[str, Any]] = []
        session.on("error", errors.append)
        call = asyncio.create_task(peer.request("tools/call", {"name": "slow"}))
        await asyncio.wait_for(started.wait(), 1.0)

        await session.close()
        assert session.state is SessionState.CLOSED
        release.set()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 1.0
        while session._tasks and loop.time() < deadline:
            await asyncio.sleep(0.01)

        assert finished == ["slow"]
        assert not session._tasks
        assert errors == []
        assert not call.done()
        call.cancel()
        with pytest.raises(asyncio.CancelledError):
            await call


# --- prompts ---


def _prompt_snapshot(loads: List[Dict[str, Any]]) -> RegistrySnapshot:
    registry = CapabilityRegistry()

    def load_greeting(args: Dict[str, Any]) -> str:
        loads.append(args)
        return f"Hello, {args['name']}!"

    def broken(args: Dict[str, Any]) -> str:
        raise RuntimeError("template missing")

    registry.add_prompt(
        PromptSpec(
            name="greeting",
            description="Greets somebody",
            arguments=[
                PromptArgument(name="name", required=True),
                PromptArgument(name="language", enum=["python", "javascript", "typescript"]),
            ],
            load=load_greeting,
        )
    )
    registry.add_prompt(PromptSpec(name="plain", load=lambda args: "plain text"))
    registry.add_prompt(PromptSpec(name="broken", load=broken))
    registry.add_prompt(
        PromptSpec(
            name="too_many",
            arguments=[PromptArgument(name="value", complete=lambda value: {"values": [str(i) for i in range(101)]})],
            load=lambda args: "",
        )
    )
    return registry.snapshot()


@pytest.mark.asyncio
async def test_prompt_missing_required_argument_skips_loader() -> None:
    loads: List[Dict[str, Any]] = []
    async with connected_session(_prompt_snapshot(loads)) as (_session, peer):
        reply = await peer.request("prompts/get", {"name": "greeting", "arguments": {}})
    assert reply["error"]["code"] == ErrorCode.INVALID_REQUEST
    assert reply["error"]["message"] == "Missing required argument: name"
    assert loads == []


@pytest.mark.asyncio
async def test_prompt_get_returns_single_user_message() -> None:
    loads: List[Dict[str, Any]] = []
    async with connected_session(_prompt_snapshot(loads)) as (_session, peer):
        listing = await peer.request("prompts/list")
        reply = await peer.request("prompts/get", {"name": "greeting", "arguments": {"name": "Ada"}})
        broken = await peer.request("prompts/get", {"name": "broken"})
        unknown = await peer.request("prompts/get", {"name": "ghost"})

    assert listing["result"]["prompts"][0] == {
        "name": "greeting",
        "description": "Greets somebody",
        "arguments": [{"name": "name", "required": True}, {"name": "language", "required": False}],
    }
    assert reply["result"] == {
        "description": "Greets somebody",
        "messages": [{"role": "user", "content": {"type": "text", "text": "Hello, Ada!"}}],
    }
    assert broken["error"]["code"] == ErrorCode.INTERNAL_ERROR
    assert broken["error"]["data"] == {"name": "broken"}
    assert unknown["error"]["code"] == ErrorCode.METHOD_NOT_FOUND


# --- completion ---


@pytest.mark.asyncio
async def test_completion_uses_enum_fuzzy_matching() -> None:
    async with connected_session(_prompt_snapshot([])) as (_session, peer):
        reply = await peer.request(
            "completion/complete",
            {"ref": {"type": "ref/prompt", "name": "greeting"}, "argument": {"name": "language", "value": "py"}},
        )
    completion = reply["result"]["completion"]
    assert completion["values"][0] == "python"
    assert completion["total"] == len(completion["values"])


@pytest.mark.asyncio
async def test_completion_error_cases() -> None:
    async with connected_session(_prompt_snapshot([])) as (_session, peer):
        unknown = await peer.request(
            "completion/complete",
            {"ref": {"type": "ref/prompt", "name": "ghost"}, "argument": {"name": "x", "value": ""}},
        )
        unsupported = await peer.request(
            "completion/complete",
            {"ref": {"type": "ref/prompt", "name": "plain"}, "argument": {"name": "x", "value": ""}},
        )
        odd_ref = await peer.request(
            "completion/complete",
            {"ref": {"type": "ref/tool", "name": "add"}, "argument": {"name": "x", "value": ""}},
        )
        oversized = await peer.request(
            "completion/complete",
            {"ref": {"type": "ref/prompt", "name": "too_many"}, "argument": {"name": "value", "value": ""}},
        )

    assert unknown["error"]["code"] == ErrorCode.INVALID_PARAMS
    assert unsupported["error"]["code"] == ErrorCode.INVALID_REQUEST
    assert odd_ref["error"]["code"] == ErrorCode.INVALID_PARAMS
    assert oversized["error"]["code"] == ErrorCode.INTERNAL_ERROR


# --- resources ---


def _resource_snapshot(template_calls: List[Dict[str, str]]) -> RegistrySnapshot:
    registry = CapabilityRegistry()

    def load_item(variables: Dict[str, str]) -> Dict[str, str]:
        template_calls.append(variables)
        return {"text": f"item #{variables['id']}"}

    def broken() -> str:
        raise OSError("disk gone")

    registry.add_resource(
        ResourceSpec(uri="file:///logs/app.log", name="Application log", mimeType="text/plain",
                     load=lambda: {"text": "started"})
    )
    registry.add_resource(ResourceSpec(uri="file:///raw.bin", name="Raw", load=lambda: b"\x00\x01"))
    registry.add_resource(ResourceSpec(uri="file:///broken", name="Broken", load=broken))
    registry.add_resource_template(
        ResourceTemplateSpec(
            uriTemplate="items/{id}",
            name="Item",
            mimeType="text/plain",
            load=load_item,
            complete=lambda name, value: {"values": [f"{value}1", f"{value}2"]},
        )
    )
    return registry.snapshot()


@pytest.mark.asyncio
async def test_template_read_passes_extracted_variables() -> None:
    calls: List[Dict[str, str]] = []
    async with connected_session(_resource_snapshot(calls)) as (_session, peer):
        reply = await peer.request("resources/read", {"uri": "items/42"})
    assert calls == [{"id": "42"}]
    assert reply["result"]["contents"] == [
        {"uri": "items/42", "name": "Item", "mimeType": "text/plain", "text": "item #42"}
    ]


@pytest.mark.asyncio
async def test_fixed_resources_and_listing() -> None:
    async with connected_session(_resource_snapshot([])) as (_session, peer):
        listing = await peer.request("resources/list")
        templates = await peer.request("resources/templates/list")
        log = await peer.request("resources/read", {"uri": "file:///logs/app.log"})
        raw = await peer.request("resources/read", {"uri": "file:///raw.bin"})

    assert [item["uri"] for item in listing["result"]["resources"]] == [
        "file:///logs/app.log",
        "file:///raw.bin",
        "file:///broken",
    ]
    assert templates["result"]["resourceTemplates"] == [
        {"uriTemplate": "items/{id}", "name": "Item", "mimeType": "text/plain"}
    ]
    assert log["result"]["contents"][0]["text"] == "started"
    assert raw["result"]["contents"][0]["blob"] == "AAE="


@pytest.mark.asyncio
async def test_resource_errors() -> None:
    async with connected_session(_resource_snapshot([])) as (_session, peer):
        unknown = await peer.request("resources/read", {"uri": "file:///nowhere"})
        broken = await peer.request("resources/read", {"uri": "file:///broken"})
        completion = await peer.request(
            "completion/complete",
            {"ref": {"type": "ref/resource", "uri": "items/{id}"}, "argument": {"name": "id", "value": "4"}},
        )

    assert unknown["error"]["code"] == ErrorCode.METHOD_NOT_FOUND
    assert unknown["error"]["message"] == "Unknown resource: file:///nowhere"
    assert broken["error"]["code"] == ErrorCode.INTERNAL_ERROR
    assert broken["error"]["data"] == {"uri": "file:///broken"}
    assert completion["result"]["completion"] == {"values": ["41", "42"]}


# --- roots, sampling, heartbeat, close ---


@pytest.mark.asyncio
async def test_roots_are_fetched_and_refreshed() -> None:
    roots = [{"uri": "file:///workspace", "name": "workspace"}]
    async with connected_session(RegistrySnapshot(), capabilities={"roots": {"listChanged": True}}, roots=roots) as (
        session,
        peer,
    ):
        assert [root.uri for root in session.roots] == ["file:///workspace"]

        changes: List[Dict[str, Any]] = []
        session.on("roots_changed", changes.append)
        peer.roots = [{"uri": "file:///other"}]
        await peer.notify("notifications/roots/list_changed")
        await asyncio.sleep(0.05)

        assert [root.uri for root in session.roots] == ["file:///other"]
        assert [root.uri for root in changes[0]["roots"]] == ["file:///other"]


@pytest.mark.asyncio
async def test_request_sampling_round_trip() -> None:
    async with connected_session(RegistrySnapshot()) as (session, peer):
        response = await session.request_sampling({"messages": [], "maxTokens": 10})
    assert response.model == "stub-model"
    assert response.content.text == "sampled"


@pytest.mark.asyncio
async def test_outbound_request_times_out() -> None:
    settings = SessionSettings(heartbeat_interval=60.0, negotiation_attempts=10, negotiation_delay=0.01, request_timeout=0.05)
    async with connected_session(RegistrySnapshot(), settings=settings) as (session, peer):
        peer.silent.add("roots/list")
        with pytest.raises(McpError) as caught:
            await session.list_roots()
    assert caught.value.code == ErrorCode.REQUEST_TIMEOUT


@pytest.mark.asyncio
async def test_close_fails_pending_requests() -> None:
    async with connected_session(RegistrySnapshot()) as (session, peer):
        peer.silent.add("sampling/createMessage")
        pending = asyncio.create_task(session.request_sampling({"messages": []}))
        await asyncio.sleep(0.05)
        await session.close()
        with pytest.raises(McpError) as caught:
            await pending
    assert caught.value.code == ErrorCode.CONNECTION_CLOSED


@pytest.mark.asyncio
async def test_heartbeat_failure_emits_error_and_keeps_session_active() -> None:
    settings = SessionSettings(heartbeat_interval=0.02, negotiation_attempts=10, negotiation_delay=0.01, request_timeout=0.5)
    async with connected_session(RegistrySnapshot(), settings=settings) as (session, peer):
        errors: List[Dict[str, Any]] = []
        session.on("error", errors.append)
        peer.fail_pings = True
        await asyncio.sleep(0.15)

        assert errors
        assert isinstance(errors[0]["error"], McpError)
        assert session.state is SessionState.ACTIVE

        peer.fail_pings = False
        pong = await peer.request("ping")
        assert pong["result"] == {}


@pytest.mark.asyncio
async def test_close_is_idempotent_and_emits_once() -> None:
    async with connected_session(RegistrySnapshot()) as (session, _peer):
        closed: List[Dict[str, Any]] = []
        session.on("close", closed.append)
        await session.close()
        await session.close()
        assert session.state is SessionState.CLOSED
        assert len(closed) == 1


@pytest.mark.asyncio
async def test_peer_hangup_closes_session() -> None:
    async with connected_session(RegistrySnapshot()) as (session, peer):
        await peer.close()
        await _wait_for_state(session, SessionState.CLOSED)
