"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import paho.mqtt.client as mqtt

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client cannot be driven as requested."""


@dataclass(frozen=True, slots=True)
class TlsPolicy:
    """Server-side certificate validation settings for the broker link."""

    verify_server_certificate: bool = False
    enforce_min_tls_version: bool = False
    ca_path: Optional[Path] = None


@dataclass(frozen=True, slots=True)
class BrokerOptions:
    host: str
    port: int
    client_id: str
    certfile: Path
    keyfile: Path
    tls: TlsPolicy = field(default_factory=TlsPolicy)


def build_tls_context(options: BrokerOptions) -> ssl.SSLContext:
    """Create the client-auth TLS context described by ``options``."""

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    policy = options.tls

    if policy.verify_server_certificate:
        if policy.ca_path:
            context.load_verify_locations(cafile=str(policy.ca_path))
        else:
            context.load_default_certs()
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    if policy.enforce_min_tls_version:
        context.minimum_version = ssl.TLSVersion.TLSv1_2
    else:
        context.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED

    context.load_cert_chain(certfile=str(options.certfile), keyfile=str(options.keyfile))
    return context


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    Paho invokes its callbacks on its own network thread. Every handler
    registered here is instead scheduled onto the event loop that called
    :meth:`connect`, in the order paho delivered the events.
    """

    def __init__(self, options: BrokerOptions, *, keepalive: int = 60) -> None:
        self.options = options
        self.keepalive = keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._message_handler: Optional[MessageHandler] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[], None]] = []
        self._attempt_event: Optional[asyncio.Event] = None

    def connect(self) -> None:
        """Start a non-blocking connection attempt.

        The outcome is reported through the connect or disconnect handlers.
        """

        self._loop = asyncio.get_running_loop()

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.options.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(LOGGER)

        if not self.options.tls.verify_server_certificate:
            LOGGER.warning(
                "Broker certificate validation is disabled for %s", self.options.host
            )
        client.tls_set_context(build_tls_context(self.options))

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s", self.options.host, self.options.port
        )
        client.connect_async(self.options.host, self.options.port, self.keepalive)
        rc = client.loop_start()
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"MQTT network loop failed to start (rc={rc})")

    async def reconnect(self, timeout: float = 30.0) -> None:
        """Restart the network loop and wait for the handshake to settle.

        Returns once the broker accepted the session (connect handlers
        already ran) or the attempt ended in a disconnect event (disconnect
        handlers already scheduled).

        Raises:
            MQTTConnectionError: If the attempt could not be started or timed
                out. No disconnect event is reported for such an attempt.
        """

        client = self._client
        if client is None:
            raise MQTTConnectionError("MQTT client not initialised")

        loop = asyncio.get_running_loop()
        # Joins a network thread that is still winding down after the drop.
        await loop.run_in_executor(None, client.loop_stop)

        attempt = asyncio.Event()
        self._attempt_event = attempt
        try:
            LOGGER.info(
                "Reconnecting to MQTT broker %s:%s",
                self.options.host,
                self.options.port,
            )
            client.connect_async(self.options.host, self.options.port, self.keepalive)
            rc = client.loop_start()
            if rc != mqtt.MQTT_ERR_SUCCESS:
                raise MQTTConnectionError(f"MQTT reconnect failed with rc={rc}")

            try:
                await asyncio.wait_for(attempt.wait(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                await loop.run_in_executor(None, client.loop_stop)
                raise MQTTConnectionError(
                    "Timed out reconnecting to MQTT broker"
                ) from exc
        finally:
            if self._attempt_event is attempt:
                self._attempt_event = None

    async def disconnect(self) -> None:
        """Gracefully disconnect from the broker."""

        client = self._client
        if client is None:
            return

        client.disconnect()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, client.loop_stop)
        self._connected = False

    def subscribe(self, topic: str, qos: int = 1) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe to {topic} failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def close(self) -> None:
        """Stop the network loop and drop the paho client.

        Inside a running event loop the network thread is joined on the
        default executor, so the loop is not blocked by a pending TLS
        handshake.
        """

        client, self._client = self._client, None
        self._connect_handlers.clear()
        self._disconnect_handlers.clear()
        self._message_handler = None
        self._connected = False

        attempt, self._attempt_event = self._attempt_event, None
        if attempt is not None:
            attempt.set()

        if client is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            client.loop_stop()
        else:
            loop.run_in_executor(None, client.loop_stop)

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties) -> None:
        if reason_code == 0:
            LOGGER.debug("MQTT CONNACK accepted")
            self._connected = True
            self._dispatch(self._connect_handlers)
            self._settle_attempt()
        else:
            # The broker closes the socket next, which surfaces as a disconnect.
            LOGGER.error("MQTT connection rejected (reason=%s)", reason_code)
            self._connected = False

    def _on_connect_fail(self, client: mqtt.Client, userdata) -> None:
        LOGGER.debug("MQTT connection attempt failed before CONNACK")
        self._connected = False
        # Only the reconnection controller retries; stop paho's own retry loop.
        client.loop_stop()
        self._dispatch(self._disconnect_handlers, -1)
        self._settle_attempt()

    def _on_disconnect(
        self, client: mqtt.Client, userdata, disconnect_flags, reason_code, properties
    ) -> None:
        LOGGER.debug("MQTT socket closed (reason=%s)", reason_code)
        self._connected = False
        client.loop_stop()
        self._dispatch(self._disconnect_handlers, _reason_value(reason_code))
        self._settle_attempt()

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        handler = self._message_handler
        loop = self._loop
        if not handler or not loop:
            return

        loop.call_soon_threadsafe(
            self._invoke_message_handler, handler, message.topic, message.payload
        )

    def _invoke_message_handler(
        self, handler: MessageHandler, topic: str, payload: bytes
    ) -> None:
        try:
            handler(topic, payload)
        except Exception:
            LOGGER.exception("MQTT message handler raised an exception")

    def _dispatch(self, handlers: List[Callable[..., None]], *args: int) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        for handler in list(handlers):
            loop.call_soon_threadsafe(handler, *args)

    def _settle_attempt(self) -> None:
        # Queued behind the handlers dispatched for the same event.
        attempt = self._attempt_event
        loop = self._loop
        if attempt is None or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(attempt.set)


def _reason_value(reason_code) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1
