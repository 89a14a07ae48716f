"""Broker session lifecycle for appliance telemetry.

``ThinqMqttClient`` provisions a client certificate, opens the broker
session and keeps it alive:

- state changes are reported to registered handlers as (previous, new)
- unexpected drops are retried with a doubling delay, one cycle at a time
- every successful handshake re-subscribes the granted topics
- monitoring payloads are routed to attached snapshots by device id

All transport events are handled on the event loop that called
:meth:`ThinqMqttClient.connect`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import (
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
)
from urllib.parse import urlsplit

from .adapters.mqtt import BrokerOptions, MQTTClient, MQTTConnectionError, TlsPolicy
from .certificates import IssuedCertificate, create_csr, generate_key_pair
from .constants import DEFAULT_BROKER_PORT
from .models import ConnectionState, Gateway, Passport, Route
from .provisioning import CertificateProvisioner, ProvisioningError
from .registry import SnapshotRegistry, StateConsumer
from .router import MessageRouter

LOGGER = logging.getLogger(__name__)

StateChangedHandler = Callable[[ConnectionState, ConnectionState], None]
SleepFunc = Callable[[float], Awaitable[None]]


class AlreadyDisposedError(RuntimeError):
    """Raised when the client is used after :meth:`ThinqMqttClient.close`."""


class BrokerTransport(Protocol):
    """Subset of :class:`MQTTClient` the session lifecycle relies on."""

    def connect(self) -> None:
        ...

    async def reconnect(self) -> None:
        """Retry the handshake; returns once its outcome has been reported."""

    async def disconnect(self) -> None:
        ...

    def subscribe(self, topic: str, qos: int = 1) -> None:
        ...

    def set_message_handler(self, handler: Optional[Callable[[str, bytes], None]]) -> None:
        ...

    def register_connect_handler(self, handler: Callable[[], None]) -> None:
        ...

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        ...

    def close(self) -> None:
        ...


TransportFactory = Callable[..., BrokerTransport]


class ReconnectBackoff:
    """Doubling delay between reconnect attempts: 1, 2, 4, 8, 16, 16, ..."""

    def __init__(self, initial: float = 1.0, maximum: float = 16.0) -> None:
        self.initial = initial
        self.maximum = max(initial, maximum)
        self._current = initial

    @property
    def current(self) -> float:
        return self._current

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self._current = self.initial


def parse_broker_uri(uri: str) -> Tuple[str, int]:
    """Split ``ssl://host:port`` into host and port."""

    parts = urlsplit(uri)
    if not parts.hostname:
        raise ValueError(f"MQTT server URI has no host: {uri!r}")
    return parts.hostname, parts.port or DEFAULT_BROKER_PORT


class ThinqMqttClient:
    """Telemetry session against the ThinQ broker.

    Callers must not invoke :meth:`connect` again while a session is live
    without an intervening :meth:`disconnect`.
    """

    def __init__(
        self,
        passport: Passport,
        route: Route,
        gateway: Gateway,
        *,
        client_id: str,
        provisioner: CertificateProvisioner,
        tls_policy: Optional[TlsPolicy] = None,
        backoff: Optional[ReconnectBackoff] = None,
        keepalive: int = 60,
        transport_factory: TransportFactory = MQTTClient,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.client_id = client_id
        self._passport = passport
        self._gateway = gateway
        self._provisioner = provisioner
        self._tls_policy = tls_policy or TlsPolicy()
        self._backoff = backoff or ReconnectBackoff()
        self._keepalive = keepalive
        self._transport_factory = transport_factory
        self._sleep = sleep

        self._broker_uri = route.mqtt_server
        self._broker_host, self._broker_port = parse_broker_uri(route.mqtt_server)

        self._state = ConnectionState.NOT_CONNECTED
        self._state_handlers: List[StateChangedHandler] = []
        self._registry = SnapshotRegistry()
        self._router = MessageRouter(self._registry)

        self._reconnect_gate: Optional[asyncio.Lock] = asyncio.Lock()
        self._disconnect_requested = False
        self._disposed = False

        self._certificate: Optional[IssuedCertificate] = None
        self._options: Optional[BrokerOptions] = None
        self._transport: Optional[BrokerTransport] = None
        self._topics: Tuple[str, ...] = ()
        self._cycles: Set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def topics(self) -> Tuple[str, ...]:
        return self._topics

    @property
    def backoff(self) -> ReconnectBackoff:
        return self._backoff

    @property
    def disconnect_requested(self) -> bool:
        return self._disconnect_requested

    @property
    def disposed(self) -> bool:
        return self._disposed

    def register_state_handler(self, handler: StateChangedHandler) -> None:
        self._state_handlers.append(handler)

    # ------------------------------------------------------------------
    # Public lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Provision a certificate and start connecting to the broker.

        Returns once the connection attempt is under way; the handshake
        result is observed through state changes.

        Raises:
            AlreadyDisposedError: If the client was closed.
            ProvisioningError: If no certificate could be obtained.
        """

        self._ensure_not_disposed()

        private_key = generate_key_pair()
        csr = create_csr(private_key)
        enrollment = await self._provisioner.enroll(
            self.client_id, self._passport, self._gateway, csr
        )
        self._ensure_not_disposed()

        try:
            certificate = IssuedCertificate.bind(
                enrollment.certificate_pem, private_key, enrollment.topics
            )
        except ValueError as exc:
            raise ProvisioningError(
                f"Enrollment returned an unusable certificate: {exc}"
            ) from exc

        self._release_session()

        certfile, keyfile = certificate.materialize()
        self._certificate = certificate
        self._topics = certificate.topics
        self._options = BrokerOptions(
            host=self._broker_host,
            port=self._broker_port,
            client_id=self.client_id,
            certfile=certfile,
            keyfile=keyfile,
            tls=self._tls_policy,
        )

        transport = self._transport_factory(self._options, keepalive=self._keepalive)
        transport.register_connect_handler(
            functools.partial(self._on_connected, transport)
        )
        transport.register_disconnect_handler(
            functools.partial(self._on_disconnected, transport)
        )
        transport.set_message_handler(functools.partial(self._on_message, transport))
        self._transport = transport

        LOGGER.info("Connecting to mqtt broker %s", self._broker_uri)
        transport.connect()

    async def disconnect(self) -> None:
        """Stop reconnecting and close the broker session.

        Waits for an in-flight reconnect cycle, backoff delay included, to
        finish before the session is closed.
        """

        self._ensure_not_disposed()
        self._disconnect_requested = True
        LOGGER.info("Disconnecting mqtt client")

        gate = self._reconnect_gate
        assert gate is not None
        async with gate:
            transport = self._transport
            if transport is not None:
                await transport.disconnect()

        LOGGER.info("Disconnected mqtt client")

    def attach(self, device_id: str, consumer: StateConsumer) -> None:
        self._ensure_not_disposed()
        self._registry.attach(device_id, consumer)

    def detach(self, device_id: str) -> None:
        self._ensure_not_disposed()
        self._registry.detach(device_id)

    def close(self) -> None:
        """Release the certificate, transport and attached snapshots.

        Safe while a reconnect cycle is running; the cycle notices the
        released transport and ends.
        """

        if self._disposed:
            return
        self._disposed = True
        self._release_session()
        self._options = None
        self._reconnect_gate = None
        self._registry.clear()

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------
    def _on_connected(self, transport: BrokerTransport) -> None:
        if self._disposed or transport is not self._transport:
            return
        if self._disconnect_requested:
            LOGGER.debug("Ignoring broker handshake because disconnect is requested")
            return

        self._set_state(ConnectionState.CONNECTED)
        self._backoff.reset()
        LOGGER.info("Connected to mqtt broker %s", self._broker_uri)
        self._subscribe_topics(transport)

    def _on_disconnected(self, transport: BrokerTransport, rc: int) -> None:
        if self._disposed or transport is not self._transport:
            return

        task = asyncio.get_running_loop().create_task(
            self._reconnect_cycle(transport, rc)
        )
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    def _on_message(self, transport: BrokerTransport, topic: str, payload: bytes) -> None:
        if transport is not self._transport:
            return
        self._router.route(topic, payload)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _subscribe_topics(self, transport: BrokerTransport) -> None:
        if not self._topics:
            LOGGER.error("No topics to subscribe to!")
            return

        for topic in self._topics:
            LOGGER.debug("Subscribe to topic %s", topic)
            try:
                transport.subscribe(topic)
            except MQTTConnectionError as exc:
                LOGGER.error("Subscription to %s failed: %s", topic, exc)

    async def _reconnect_cycle(self, origin: BrokerTransport, rc: int) -> None:
        gate = self._reconnect_gate
        if gate is None:
            return

        if await self._attempt_reconnect(gate, rc):
            return

        # The failed attempt reports no disconnect event of its own.
        self._on_disconnected(origin, -1)

    async def _attempt_reconnect(self, gate: asyncio.Lock, rc: int) -> bool:
        """Run one cycle under the gate; False when the attempt itself failed."""

        async with gate:
            previous = self._state
            if previous is ConnectionState.NOT_CONNECTED:
                LOGGER.error(
                    "Initial connection failed to mqtt broker %s", self._broker_uri
                )
            elif previous is ConnectionState.CONNECTED:
                if self._disconnect_requested:
                    LOGGER.info("Disconnected from mqtt broker %s", self._broker_uri)
                else:
                    LOGGER.error(
                        "Disconnected from mqtt broker %s (rc=%s)", self._broker_uri, rc
                    )
            self._set_state(ConnectionState.DISCONNECTED)

            if self._disconnect_requested:
                LOGGER.debug("Stopped reconnecting because disconnect is requested")
                return True

            if self._transport is None or self._options is None:
                LOGGER.error("Stopped reconnecting because the mqtt client was released")
                return True

            delay = self._backoff.next_delay()
            LOGGER.info("Reconnecting to mqtt broker in %.0fs", delay)
            try:
                await self._sleep(delay)
                transport = self._transport
                if transport is None:
                    LOGGER.error(
                        "Stopped reconnecting because the mqtt client was released"
                    )
                    return True
                await transport.reconnect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("Reconnect attempt failed: %s", exc)
                return False
            return True

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state is self._state:
            return

        previous, self._state = self._state, new_state
        LOGGER.debug("Connection state %s -> %s", previous.value, new_state.value)
        for handler in list(self._state_handlers):
            try:
                handler(previous, new_state)
            except Exception:
                LOGGER.exception("State change handler raised an exception")

    def _release_session(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()

        certificate, self._certificate = self._certificate, None
        if certificate is not None:
            certificate.release()

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise AlreadyDisposedError("ThinqMqttClient has been closed")
