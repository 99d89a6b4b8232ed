from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import paho.mqtt.client as mqtt
import pytest

from edgetwin._mqtt import (
    MqttTransport,
    decode_desired_patch,
    parse_devicebound_properties,
    parse_method_topic,
    parse_twin_response_topic,
)
from edgetwin.commands import CommandDispatcher, not_implemented
from edgetwin.config import AgentConfig
from edgetwin.exceptions import TransportError
from edgetwin.models.command import CommandInvocation, CommandResponse


@dataclass
class _PublishInfo:
    rc: int


class _FakePahoClient:
    def __init__(self, *, connected: bool = True, rc: int = mqtt.MQTT_ERR_SUCCESS) -> None:
        self.connected = connected
        self.rc = rc
        self.published: list[tuple[str, bytes, int]] = []

    def is_connected(self) -> bool:
        return self.connected

    def publish(self, topic: str, payload: bytes, qos: int = 0) -> _PublishInfo:
        self.published.append((topic, payload, qos))
        return _PublishInfo(rc=self.rc)


def _transport(client: _FakePahoClient, **overrides: Any) -> MqttTransport:
    values: dict[str, Any] = {"device_id": "mock-01", "host": "broker.local", "twin_timeout": 1.0}
    values.update(overrides)
    transport = MqttTransport(AgentConfig(**values))
    transport._loop = asyncio.get_running_loop()  # noqa: SLF001
    transport._client = client  # type: ignore[assignment]  # noqa: SLF001
    return transport


async def _drain(transport: MqttTransport) -> None:
    await asyncio.gather(*list(transport._tasks))  # noqa: SLF001


# ------------------------------------------------------------------
# Topic parsing
# ------------------------------------------------------------------


def test_parse_method_topic() -> None:
    parsed = parse_method_topic("$iothub/methods/POST/showMessage/?$rid=42")
    assert parsed is not None
    assert (parsed.name, parsed.request_id) == ("showMessage", "42")

    assert parse_method_topic("$iothub/methods/POST/showMessage/") is None
    assert parse_method_topic("$iothub/twin/res/200/?$rid=1") is None


def test_parse_twin_response_topic() -> None:
    parsed = parse_twin_response_topic("$iothub/twin/res/204/?$rid=7&$version=12")
    assert parsed is not None
    assert (parsed.status, parsed.request_id, parsed.version) == (204, "7", 12)

    no_version = parse_twin_response_topic("$iothub/twin/res/400/?$rid=8")
    assert no_version is not None and no_version.version is None
    assert parse_twin_response_topic("$iothub/twin/res/abc/?$rid=8") is None


def test_parse_devicebound_properties() -> None:
    prefix = "devices/mock-01/messages/devicebound/"
    props = parse_devicebound_properties(f"{prefix}%24.mid=abc&%24.to=%2Fdevices%2Fmock-01&kind=note", prefix)

    assert props["$.mid"] == "abc"
    assert props["$.to"] == "/devices/mock-01"
    assert props["kind"] == "note"
    assert parse_devicebound_properties(prefix, prefix) == {}


def test_decode_desired_patch_requires_object() -> None:
    assert decode_desired_patch(b'{"firmwareVersion": "2.0", "$version": 4}')["firmwareVersion"] == "2.0"
    with pytest.raises(ValueError):
        decode_desired_patch(b"[1, 2]")
    with pytest.raises(ValueError):
        decode_desired_patch(b"not json")


# ------------------------------------------------------------------
# Routing
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_devicebound_message_lands_in_inbox() -> None:
    transport = _transport(_FakePahoClient())

    transport._route_message("devices/mock-01/messages/devicebound/%24.mid=m-9", b"hello")  # noqa: SLF001
    message = await asyncio.wait_for(transport.receive(), timeout=1.0)

    assert message is not None
    assert message.body == b"hello"
    assert message.message_id == "m-9"


@pytest.mark.asyncio
async def test_method_request_is_dispatched_and_answered() -> None:
    client = _FakePahoClient()
    transport = _transport(client)
    dispatcher = CommandDispatcher.with_builtin_handlers()
    transport.set_default_command_handler(dispatcher.dispatch)
    transport.set_command_handler("showMessage", dispatcher.dispatch)

    transport._route_message("$iothub/methods/POST/showMessage/?$rid=1", b'"hi"')  # noqa: SLF001
    transport._route_message("$iothub/methods/POST/reboot/?$rid=2", b"{}")  # noqa: SLF001
    await _drain(transport)

    responses = {topic: json.loads(body) for topic, body, _qos in client.published}
    assert responses["$iothub/methods/res/200/?$rid=1"] == {"response": "Message shown!"}
    assert responses["$iothub/methods/res/404/?$rid=2"] == {"response": "The method is not implemented"}


@pytest.mark.asyncio
async def test_method_handler_receives_decoded_invocation() -> None:
    client = _FakePahoClient()
    transport = _transport(client)
    seen: list[CommandInvocation] = []

    async def handler(invocation: CommandInvocation) -> CommandResponse:
        seen.append(invocation)
        return CommandResponse(status=200, payload=None)

    transport.set_command_handler("configure", handler)
    transport._route_message("$iothub/methods/POST/configure/?$rid=5", b'{"interval": 10}')  # noqa: SLF001
    await _drain(transport)

    assert seen == [CommandInvocation(name="configure", payload={"interval": 10}, request_id="5")]


@pytest.mark.asyncio
async def test_desired_patch_invokes_callback() -> None:
    transport = _transport(_FakePahoClient())
    received: list[dict[str, Any]] = []

    async def callback(desired: Any) -> None:
        received.append(dict(desired))

    transport.set_desired_state_changed_callback(callback)
    transport._route_message(  # noqa: SLF001
        "$iothub/twin/PATCH/properties/desired/?$version=3",
        b'{"firmwareVersion": "2.0", "$version": 3}',
    )
    transport._route_message("$iothub/twin/PATCH/properties/desired/?$version=4", b"garbage")  # noqa: SLF001
    await _drain(transport)

    assert received == [{"firmwareVersion": "2.0", "$version": 3}]


# ------------------------------------------------------------------
# Reported state
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_publish_reported_state_waits_for_acknowledgement() -> None:
    client = _FakePahoClient()
    transport = _transport(client)

    publish = asyncio.create_task(transport.publish_reported_state({"firmwareVersion": "1.0"}))
    for _ in range(5):
        await asyncio.sleep(0)

    topic, body, _qos = client.published[0]
    assert topic == "$iothub/twin/PATCH/properties/reported/?$rid=1"
    assert json.loads(body) == {"firmwareVersion": "1.0"}
    assert not publish.done()

    transport._route_message("$iothub/twin/res/204/?$rid=1&$version=2", b"")  # noqa: SLF001
    await asyncio.wait_for(publish, timeout=1.0)


@pytest.mark.asyncio
async def test_publish_reported_state_rejected_status_raises() -> None:
    client = _FakePahoClient()
    transport = _transport(client)

    publish = asyncio.create_task(transport.publish_reported_state({"firmwareVersion": "1.0"}))
    for _ in range(5):
        await asyncio.sleep(0)
    transport._route_message("$iothub/twin/res/400/?$rid=1", b"")  # noqa: SLF001

    with pytest.raises(TransportError) as excinfo:
        await publish
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_publish_reported_state_times_out() -> None:
    transport = _transport(_FakePahoClient(), twin_timeout=0.01)

    with pytest.raises(TransportError):
        await transport.publish_reported_state({"firmwareVersion": "1.0"})


@pytest.mark.asyncio
async def test_publish_while_disconnected_raises_connection_error() -> None:
    transport = _transport(_FakePahoClient(connected=False))

    with pytest.raises(ConnectionError):
        await transport.publish_reported_state({"firmwareVersion": "1.0"})
    with pytest.raises(TransportError):
        await transport.send({"status": "happy"})


@pytest.mark.asyncio
async def test_send_publishes_event_json() -> None:
    client = _FakePahoClient()
    transport = _transport(client)

    await transport.send({"latitude": 1, "longitude": 2})

    assert client.published == [("devices/mock-01/messages/events/", b'{"latitude":1,"longitude":2}', 1)]


@pytest.mark.asyncio
async def test_failed_publish_rc_raises() -> None:
    transport = _transport(_FakePahoClient(rc=mqtt.MQTT_ERR_QUEUE_SIZE))

    with pytest.raises(TransportError):
        await transport.send({"status": "happy"})


@pytest.mark.asyncio
async def test_close_fails_pending_waiters_and_ends_receive() -> None:
    transport = _transport(_FakePahoClient())
    transport._client = None  # noqa: SLF001

    await transport.close()

    assert await transport.receive() is None
    assert not transport.is_open


@pytest.mark.asyncio
async def test_method_without_any_handler_gets_not_implemented_body() -> None:
    client = _FakePahoClient()
    transport = _transport(client)

    transport._route_message("$iothub/methods/POST/reboot/?$rid=3", b"{}")  # noqa: SLF001
    await _drain(transport)

    [(topic, body, _qos)] = client.published
    assert topic == "$iothub/methods/res/404/?$rid=3"
    expected = not_implemented(CommandInvocation.from_wire("reboot", b"{}", "3"))
    assert json.loads(body) == expected.payload
