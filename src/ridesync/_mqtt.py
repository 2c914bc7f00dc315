"""Broker link abstraction and the paho-mqtt implementation.

The connection manager talks to the broker only through :class:`BrokerLink`,
so tests can substitute an in-memory fake. :class:`MqttBrokerLink` runs the
threaded paho network loop and marshals every callback onto the asyncio
loop with ``call_soon_threadsafe``; nothing else in ridesync ever runs on
the paho thread.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from ridesync.config import RideSyncConfig
from ridesync.exceptions import TransportError

MessageCallback = Callable[[bytes], None]
LostCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class LinkSubscription:
    """Opaque transport handle for one subscription."""

    destination: str
    token: int


class BrokerLink(Protocol):
    """Structural interface of a pub/sub broker connection."""

    def set_on_connection_lost(self, callback: LostCallback | None) -> None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def subscribe(self, destination: str, on_message: MessageCallback) -> LinkSubscription: ...

    def unsubscribe(self, handle: LinkSubscription) -> None: ...

    def publish(self, destination: str, payload: bytes) -> None: ...


class MqttBrokerLink:
    """paho-mqtt backed :class:`BrokerLink`.

    paho's own reconnect is disabled; reconnect policy belongs to the
    connection manager.
    """

    def __init__(self, config: RideSyncConfig, *, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_lost: LostCallback | None = None
        self._connected = False
        self._closing = False
        self._routes: dict[str, dict[int, MessageCallback]] = {}
        self._tokens = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_on_connection_lost(self, callback: LostCallback | None) -> None:
        self._on_lost = callback

    def _client_id(self) -> str:
        return f"ridesync-{self._config.role.value}-{self._config.participant_id}-{secrets.token_hex(4)}"

    async def connect(self) -> None:
        """Open the broker connection and wait for CONNACK."""
        if self._client is not None:
            await self.disconnect()

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._closing = False
        ready: asyncio.Future[None] = loop.create_future()

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id(),
            protocol=mqtt.MQTTv5,
            reconnect_on_failure=False,
        )
        client.enable_logger(self._logger)
        if self._config.broker_username:
            client.username_pw_set(self._config.broker_username, self._config.broker_password)
        if self._config.broker_tls:
            client.tls_set()

        def _resolve(exc: Exception | None) -> None:
            if ready.done():
                return
            if exc is None:
                ready.set_result(None)
            else:
                ready.set_exception(exc)

        def on_connect(_c: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
            if reason_code.value != 0:
                loop.call_soon_threadsafe(_resolve, TransportError(f"Broker refused connection: {reason_code}"))
                return
            loop.call_soon_threadsafe(_resolve, None)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            loop.call_soon_threadsafe(self._dispatch, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _c: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            loop.call_soon_threadsafe(self._handle_disconnect, reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        self._logger.debug(
            "MQTT connect host=%s port=%s tls=%s",
            self._config.broker_host,
            self._config.broker_port,
            self._config.broker_tls,
        )
        try:
            await loop.run_in_executor(
                None,
                lambda: client.connect(
                    self._config.broker_host,
                    self._config.broker_port,
                    keepalive=self._config.mqtt_keepalive,
                ),
            )
            client.loop_start()
            self._client = client
            await asyncio.wait_for(ready, self._config.connect_timeout)
        except (TransportError, asyncio.CancelledError):
            self._teardown(client)
            raise
        except (OSError, TimeoutError, ValueError) as exc:
            self._teardown(client)
            raise TransportError(f"Broker connect failed: {exc}") from exc

        self._connected = True
        self._routes.clear()
        self._logger.debug("MQTT connected")

    def _teardown(self, client: mqtt.Client) -> None:
        self._closing = True
        self._connected = False
        self._client = None
        try:
            client.disconnect()
        except Exception:
            self._logger.debug("MQTT disconnect during teardown failed", exc_info=True)
        finally:
            client.loop_stop()

    def _handle_disconnect(self, reason_code: Any) -> None:
        was_connected = self._connected
        self._connected = False
        if self._closing or not was_connected:
            return
        self._logger.debug("MQTT link lost: %s", reason_code)
        callback = self._on_lost
        if callback is not None:
            callback(TransportError(f"Broker link lost: {reason_code}"))

    def _dispatch(self, topic: str, payload: bytes) -> None:
        for callback in list(self._routes.get(topic, {}).values()):
            callback(payload)

    async def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        self._logger.debug("MQTT disconnect requested")
        loop = self._loop or asyncio.get_running_loop()
        await loop.run_in_executor(None, self._teardown, client)
        self._routes.clear()

    def _require_client(self) -> mqtt.Client:
        client = self._client
        if client is None or not self._connected:
            raise TransportError("Broker link is not connected")
        return client

    def subscribe(self, destination: str, on_message: MessageCallback) -> LinkSubscription:
        client = self._require_client()
        routes = self._routes.setdefault(destination, {})
        if not routes:
            result, _mid = client.subscribe(destination, qos=1)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._routes.pop(destination, None)
                raise TransportError(f"Subscribe to {destination} failed: {mqtt.error_string(result)}")
        handle = LinkSubscription(destination=destination, token=next(self._tokens))
        routes[handle.token] = on_message
        self._logger.debug("MQTT subscribed topic=%s token=%s", destination, handle.token)
        return handle

    def unsubscribe(self, handle: LinkSubscription) -> None:
        routes = self._routes.get(handle.destination)
        if routes is None or routes.pop(handle.token, None) is None:
            return
        if routes:
            return
        self._routes.pop(handle.destination, None)
        client = self._client
        if client is not None and self._connected:
            client.unsubscribe(handle.destination)
        self._logger.debug("MQTT unsubscribed topic=%s", handle.destination)

    def publish(self, destination: str, payload: bytes) -> None:
        client = self._require_client()
        info = client.publish(destination, payload, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Publish to {destination} failed: {mqtt.error_string(info.rc)}")
