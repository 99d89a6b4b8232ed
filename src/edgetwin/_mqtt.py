"""MQTT transport channel, topic parsing and the threaded paho runtime bridge.

Uses the IoT-hub style topic layout: device-to-cloud events, cloud-to-device
messages, direct methods and twin patches each have their own topic.
paho-mqtt runs its network loop on a background thread; every inbound
PUBLISH is handed to the asyncio loop with ``call_soon_threadsafe`` so the
engine's state is only ever touched from the loop.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import parse_qsl

import paho.mqtt.client as mqtt

from edgetwin._redact import redact_for_log
from edgetwin._transport import CommandHandler, DesiredStateCallback
from edgetwin.commands import not_implemented
from edgetwin.config import AgentConfig
from edgetwin.exceptions import TransportError
from edgetwin.models.command import CommandInvocation
from edgetwin.models.message import InboundMessage

_logger = logging.getLogger(__name__)

METHOD_REQUEST_PREFIX = "$iothub/methods/POST/"
METHOD_RESPONSE_TOPIC = "$iothub/methods/res/{status}/?$rid={rid}"
TWIN_RESPONSE_PREFIX = "$iothub/twin/res/"
TWIN_REPORTED_TOPIC = "$iothub/twin/PATCH/properties/reported/?$rid={rid}"
TWIN_DESIRED_PREFIX = "$iothub/twin/PATCH/properties/desired/"


@dataclass(frozen=True)
class MethodRequestTopic:
    """Direct method name and request id parsed from a method topic."""

    name: str
    request_id: str


@dataclass(frozen=True)
class TwinResponseTopic:
    """Status and request id parsed from a twin response topic."""

    status: int
    request_id: str
    version: int | None


def _split_topic_query(rest: str) -> tuple[str, dict[str, str]]:
    path, _, query = rest.partition("?")
    return path.rstrip("/"), dict(parse_qsl(query, keep_blank_values=True))


def parse_method_topic(topic: str) -> MethodRequestTopic | None:
    """Parse ``$iothub/methods/POST/{name}/?$rid={rid}``."""
    if not topic.startswith(METHOD_REQUEST_PREFIX):
        return None
    name, query = _split_topic_query(topic[len(METHOD_REQUEST_PREFIX) :])
    request_id = query.get("$rid")
    if not name or "/" in name or not request_id:
        return None
    return MethodRequestTopic(name=name, request_id=request_id)


def parse_twin_response_topic(topic: str) -> TwinResponseTopic | None:
    """Parse ``$iothub/twin/res/{status}/?$rid={rid}[&$version={n}]``."""
    if not topic.startswith(TWIN_RESPONSE_PREFIX):
        return None
    status_text, query = _split_topic_query(topic[len(TWIN_RESPONSE_PREFIX) :])
    request_id = query.get("$rid")
    if not status_text.isdigit() or not request_id:
        return None
    version_text = query.get("$version", "")
    return TwinResponseTopic(
        status=int(status_text),
        request_id=request_id,
        version=int(version_text) if version_text.isdigit() else None,
    )


def parse_devicebound_properties(topic: str, prefix: str) -> dict[str, str]:
    """Decode the property bag appended to a cloud-to-device message topic."""
    bag = topic[len(prefix) :].strip("/")
    return dict(parse_qsl(bag, keep_blank_values=True))


def decode_desired_patch(payload: bytes) -> dict[str, Any]:
    """Decode a desired-properties patch into a JSON object.

    Raises
    ------
    ValueError
        If the payload is not a JSON object.
    """
    parsed = json.loads(payload.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError("Desired properties patch is not a JSON object")
    return parsed


class MqttTransport:
    """paho-mqtt implementation of :class:`edgetwin._transport.TransportChannel`."""

    def __init__(self, config: AgentConfig, *, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._inbox: asyncio.Queue[InboundMessage | None] = asyncio.Queue()
        self._twin_waiters: dict[str, asyncio.Future[int]] = {}
        self._request_ids = itertools.count(1)
        self._handlers: dict[str, CommandHandler] = {}
        self._default_handler: CommandHandler | None = None
        self._desired_callback: DesiredStateCallback | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._open = False

        device_id = config.device_id
        self._events_topic = f"devices/{device_id}/messages/events/"
        self._devicebound_prefix = f"devices/{device_id}/messages/devicebound/"
        self._subscriptions = [
            (f"{self._devicebound_prefix}#", 1),
            (f"{METHOD_REQUEST_PREFIX}#", 0),
            (f"{TWIN_RESPONSE_PREFIX}#", 0),
            (f"{TWIN_DESIRED_PREFIX}#", 0),
        ]

    @property
    def is_open(self) -> bool:
        return self._open

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect to the broker and subscribe to the device topics.

        Raises
        ------
        TransportError
            If the broker refuses or does not acknowledge the connection
            within ``connect_timeout``.
        """
        loop = asyncio.get_running_loop()
        self._loop = loop
        connected: asyncio.Future[None] = loop.create_future()
        config = self._config
        self._logger.debug(
            "MQTT open requested host=%s port=%s client_id=%s tls=%s",
            config.host,
            config.port,
            config.device_id,
            config.use_tls,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=config.device_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(self._logger)
        if config.username:
            client.username_pw_set(config.username, config.password)
        if config.use_tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                loop.call_soon_threadsafe(self._resolve_connect, connected, str(reason_code))
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)
            c.subscribe(self._subscriptions)
            loop.call_soon_threadsafe(self._resolve_connect, connected, None)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            loop.call_soon_threadsafe(self._route_message, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._open:
                self._logger.warning("MQTT disconnected: %s", reason_code)
                loop.call_soon_threadsafe(self._fail_twin_waiters, f"link lost: {reason_code}")

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            await loop.run_in_executor(None, client.connect, config.host, config.port, config.keepalive)
        except OSError as exc:
            raise TransportError(f"Cannot reach broker {config.host}:{config.port}: {exc}") from exc
        client.loop_start()
        self._client = client

        try:
            await asyncio.wait_for(connected, config.connect_timeout)
        except (TimeoutError, TransportError) as exc:
            self._client = None
            await loop.run_in_executor(None, self._stop_client, client)
            if isinstance(exc, TransportError):
                raise
            raise TransportError(f"Broker did not acknowledge connection within {config.connect_timeout}s") from exc

        self._open = True
        self._logger.debug("MQTT network loop started")

    async def close(self) -> None:
        was_open = self._open
        self._open = False
        client = self._client
        self._client = None
        for task in list(self._tasks):
            task.cancel()
        self._fail_twin_waiters("transport closed")
        self._inbox.put_nowait(None)
        if client is None:
            return
        loop = self._loop or asyncio.get_running_loop()
        if was_open:
            self._logger.debug("MQTT disconnect requested")
        await loop.run_in_executor(None, self._stop_client, client)

    def _stop_client(self, client: mqtt.Client) -> None:
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    @staticmethod
    def _resolve_connect(future: asyncio.Future[None], error: str | None) -> None:
        if future.done():
            return
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(TransportError(f"Broker refused connection: {error}"))

    def _fail_twin_waiters(self, reason: str) -> None:
        waiters = list(self._twin_waiters.values())
        self._twin_waiters.clear()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(TransportError(f"Reported state not acknowledged: {reason}"))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def set_command_handler(self, name: str, handler: CommandHandler) -> None:
        self._handlers[name] = handler

    def set_default_command_handler(self, handler: CommandHandler) -> None:
        self._default_handler = handler

    def set_desired_state_changed_callback(self, callback: DesiredStateCallback) -> None:
        self._desired_callback = callback

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _publish(self, topic: str, body: bytes, *, qos: int = 0) -> None:
        client = self._client
        if client is None or not client.is_connected():
            raise TransportError("MQTT client is not connected", topic=topic)
        info = client.publish(topic, body, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}", topic=topic)

    async def send(self, payload: Mapping[str, Any]) -> None:
        body = json.dumps(dict(payload), separators=(",", ":")).encode("utf-8")
        self._publish(self._events_topic, body, qos=1)

    async def publish_reported_state(self, document: Mapping[str, str]) -> None:
        """Send a reported-properties patch and wait for its acknowledgement.

        Raises
        ------
        TransportError
            If the client is offline, the patch is rejected with a non-2xx
            status, or no acknowledgement arrives within ``twin_timeout``.
        """
        loop = self._loop or asyncio.get_running_loop()
        request_id = str(next(self._request_ids))
        topic = TWIN_REPORTED_TOPIC.format(rid=request_id)
        waiter: asyncio.Future[int] = loop.create_future()
        self._twin_waiters[request_id] = waiter
        try:
            self._publish(topic, json.dumps(dict(document), separators=(",", ":")).encode("utf-8"))
            status = await asyncio.wait_for(waiter, self._config.twin_timeout)
        except TimeoutError as exc:
            raise TransportError(
                f"Reported state not acknowledged within {self._config.twin_timeout}s",
                topic=topic,
            ) from exc
        finally:
            self._twin_waiters.pop(request_id, None)

        if not 200 <= status < 300:
            raise TransportError(
                f"Reported state rejected with status {status}",
                topic=topic,
                status_code=status,
            )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def receive(self) -> InboundMessage | None:
        return await self._inbox.get()

    async def complete(self, message: InboundMessage) -> None:
        """Mark *message* as handled.

        Cloud-to-device messages are subscribed at QoS 1, and paho sends the
        PUBACK as soon as it receives them, so there is nothing left to
        acknowledge on the wire. This only records the completion.
        """
        self._logger.debug("Completed inbound message id=%s", message.message_id)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _route_message(self, topic: str, payload: bytes) -> None:
        """Dispatch one inbound PUBLISH. Runs on the event loop."""
        if topic.startswith(self._devicebound_prefix):
            properties = parse_devicebound_properties(topic, self._devicebound_prefix)
            self._inbox.put_nowait(
                InboundMessage(
                    body=payload,
                    topic=topic,
                    message_id=properties.get("$.mid"),
                    properties=properties,
                )
            )
            return

        method = parse_method_topic(topic)
        if method is not None:
            self._spawn(self._handle_method(method, payload))
            return

        twin_response = parse_twin_response_topic(topic)
        if twin_response is not None:
            waiter = self._twin_waiters.pop(twin_response.request_id, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(twin_response.status)
            return

        if topic.startswith(TWIN_DESIRED_PREFIX):
            self._spawn(self._handle_desired(payload))
            return

        self._logger.debug("Ignoring PUBLISH on unexpected topic=%s", topic)

    async def _handle_method(self, method: MethodRequestTopic, payload: bytes) -> None:
        invocation = CommandInvocation.from_wire(method.name, payload, method.request_id)
        self._logger.debug(
            "Method request name=%s rid=%s payload=%s",
            method.name,
            method.request_id,
            redact_for_log(invocation.payload),
        )
        handler = self._handlers.get(method.name, self._default_handler)
        if handler is None:
            response = not_implemented(invocation)
        else:
            response = await handler(invocation)

        topic = METHOD_RESPONSE_TOPIC.format(status=response.status, rid=method.request_id)
        try:
            self._publish(topic, response.to_wire())
        except TransportError:
            self._logger.warning("Could not send response for method %s", method.name, exc_info=True)

    async def _handle_desired(self, payload: bytes) -> None:
        try:
            desired = decode_desired_patch(payload)
        except ValueError:
            self._logger.warning("Ignoring malformed desired properties patch", exc_info=True)
            return

        callback = self._desired_callback
        if callback is None:
            self._logger.debug("Desired properties patch received before a callback was registered")
            return
        try:
            await callback(desired)
        except Exception:
            self._logger.exception("Desired state callback failed")
