from __future__ import annotations

import logging

import pytest

from edgetwin.commands import CommandDispatcher, not_implemented
from edgetwin.models.command import CommandInvocation, CommandResponse


@pytest.mark.asyncio
async def test_show_message_acknowledges_and_logs_payload(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = CommandDispatcher.with_builtin_handlers()

    with caplog.at_level(logging.INFO, logger="edgetwin.commands"):
        response = await dispatcher.dispatch(CommandInvocation(name="showMessage", payload="hi"))

    assert response.status == 200
    assert response.payload == {"response": "Message shown!"}
    assert '"hi"' in caplog.text


@pytest.mark.asyncio
async def test_unregistered_command_returns_404_and_logs_name(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = CommandDispatcher.with_builtin_handlers()
    invocation = CommandInvocation.from_wire("reboot", b"{}")

    with caplog.at_level(logging.WARNING, logger="edgetwin.commands"):
        response = await dispatcher.dispatch(invocation)

    assert response.status == 404
    assert "not implemented" in response.payload["response"]
    assert "reboot" not in response.to_wire().decode()
    assert "reboot" in caplog.text


@pytest.mark.asyncio
async def test_unregistered_dispatch_is_idempotent() -> None:
    dispatcher = CommandDispatcher()
    invocation = CommandInvocation(name="reboot", payload={})

    first = await dispatcher.dispatch(invocation)
    second = await dispatcher.dispatch(invocation)

    assert first == second


@pytest.mark.asyncio
async def test_names_are_case_sensitive() -> None:
    dispatcher = CommandDispatcher.with_builtin_handlers()

    response = await dispatcher.dispatch(CommandInvocation(name="SHOWMESSAGE"))

    assert response.status == 404


@pytest.mark.asyncio
async def test_register_overwrites_previous_handler() -> None:
    dispatcher = CommandDispatcher()
    dispatcher.register("ping", lambda _inv: CommandResponse(status=200, payload="one"))
    dispatcher.register("ping", lambda _inv: CommandResponse(status=200, payload="two"))

    response = await dispatcher.dispatch(CommandInvocation(name="ping"))

    assert response.payload == "two"
    assert dispatcher.names() == ["ping"]


@pytest.mark.asyncio
async def test_async_handlers_are_awaited() -> None:
    async def echo(invocation: CommandInvocation) -> CommandResponse:
        return CommandResponse(status=201, payload=invocation.payload)

    dispatcher = CommandDispatcher()
    dispatcher.register("echo", echo)

    response = await dispatcher.dispatch(CommandInvocation(name="echo", payload={"a": 1}))

    assert response.status == 201
    assert response.payload == {"a": 1}


@pytest.mark.asyncio
async def test_custom_default_handler() -> None:
    dispatcher = CommandDispatcher()
    dispatcher.register_default(lambda inv: CommandResponse(status=501, payload=inv.name))

    response = await dispatcher.dispatch(CommandInvocation(name="anything"))

    assert response.status == 501
    assert response.payload == "anything"


@pytest.mark.asyncio
async def test_failing_handler_yields_500() -> None:
    def boom(_invocation: CommandInvocation) -> CommandResponse:
        raise RuntimeError("boom")

    dispatcher = CommandDispatcher()
    dispatcher.register("boom", boom)

    response = await dispatcher.dispatch(CommandInvocation(name="boom"))

    assert response.status == 500


def test_not_implemented_response_shape() -> None:
    response = not_implemented(CommandInvocation(name="x"))
    assert response.to_wire() == b'{"response":"The method is not implemented"}'


def test_invocation_from_wire_keeps_non_json_text() -> None:
    invocation = CommandInvocation.from_wire("showMessage", b"hello there", request_id="7")

    assert invocation.payload == "hello there"
    assert invocation.request_id == "7"
    assert CommandInvocation.from_wire("x", b"").payload is None
