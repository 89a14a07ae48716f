import asyncio
import datetime
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from thinq_mqtt.connection import ReconnectBackoff, ThinqMqttClient
from thinq_mqtt.models import Gateway, Passport, Route
from thinq_mqtt.provisioning import Enrollment


def _self_signed(common_name: str = "broker-test") -> Tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


@pytest.fixture(scope="session")
def certificate_pem() -> str:
    """A parseable PEM certificate, as a provisioning endpoint would return."""
    cert_pem, _ = _self_signed()
    return cert_pem


@pytest.fixture
def tls_files(tmp_path: Path) -> Tuple[Path, Path]:
    """Matching certificate and key files on disk."""
    cert_pem, key_pem = _self_signed()
    certfile = tmp_path / "client.pem"
    keyfile = tmp_path / "client.key"
    certfile.write_text(cert_pem, encoding="ascii")
    keyfile.write_text(key_pem, encoding="ascii")
    return certfile, keyfile


class FakeProvisioner:
    """Records enrollments and hands back a fixed certificate."""

    def __init__(
        self,
        certificate_pem: str,
        topics: Tuple[str, ...] = ("app/clients/client-1/push",),
        error: Optional[Exception] = None,
    ) -> None:
        self.certificate_pem = certificate_pem
        self.topics = topics
        self.error = error
        self.calls: List[Tuple[str, Passport, Gateway, str]] = []

    async def enroll(
        self, client_id: str, passport: Passport, gateway: Gateway, csr: str
    ) -> Enrollment:
        self.calls.append((client_id, passport, gateway, csr))
        if self.error is not None:
            raise self.error
        return Enrollment(certificate_pem=self.certificate_pem, topics=self.topics)


class FakeTransport:
    """In-memory stand-in for the paho adapter.

    Events are fired by the test; handlers run synchronously on the loop,
    which is where the real adapter schedules them too.
    """

    def __init__(self, options, *, keepalive: int = 60, journal: Optional[list] = None):
        self.options = options
        self.keepalive = keepalive
        self.journal = journal if journal is not None else []
        self.connect_calls = 0
        self.reconnect_calls = 0
        self.disconnect_calls = 0
        self.closed = False
        self.subscribed: List[str] = []
        self.reconnect_errors: List[Exception] = []
        self._connect_handlers: List[Callable[[], None]] = []
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._message_handler = None

    def connect(self) -> None:
        self.connect_calls += 1
        self.journal.append("connect")

    async def reconnect(self) -> None:
        self.reconnect_calls += 1
        self.journal.append("reconnect")
        if self.reconnect_errors:
            raise self.reconnect_errors.pop(0)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.journal.append("disconnect")

    def subscribe(self, topic: str, qos: int = 1) -> None:
        self.subscribed.append(topic)

    def set_message_handler(self, handler) -> None:
        self._message_handler = handler

    def register_connect_handler(self, handler) -> None:
        self._connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self._disconnect_handlers.append(handler)

    def close(self) -> None:
        self.closed = True

    # test helpers -------------------------------------------------
    def fire_connected(self) -> None:
        for handler in list(self._connect_handlers):
            handler()

    def fire_disconnected(self, rc: int = 7) -> None:
        for handler in list(self._disconnect_handlers):
            handler(rc)

    def fire_message(self, payload: bytes, topic: str = "app/clients/client-1/push") -> None:
        if self._message_handler is not None:
            self._message_handler(topic, payload)


@dataclass
class ClientHarness:
    client: ThinqMqttClient
    provisioner: FakeProvisioner
    transports: List[FakeTransport] = field(default_factory=list)
    delays: List[float] = field(default_factory=list)
    journal: list = field(default_factory=list)

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    async def settle(self) -> None:
        """Run every pending reconnect cycle to completion."""
        while self.client._cycles:
            await asyncio.gather(*list(self.client._cycles))


class RecordingConsumer:
    def __init__(self) -> None:
        self.merged: list = []

    def merge(self, reported) -> None:
        self.merged.append(dict(reported))


@pytest.fixture
def recording_consumer() -> RecordingConsumer:
    return RecordingConsumer()


@pytest.fixture
def make_client(certificate_pem):
    """Build a ThinqMqttClient wired to fakes.

    ``sleep`` defaults to a recorder that returns immediately and
    ``transport_factory`` to :class:`FakeTransport`.
    """

    def _create(
        *,
        topics: Tuple[str, ...] = ("app/clients/client-1/push", "app/clients/client-1/event"),
        provisioning_error: Optional[Exception] = None,
        sleep=None,
        mqtt_server: str = "ssl://broker.thinq.test:8883",
        transport_factory=None,
    ) -> ClientHarness:
        provisioner = FakeProvisioner(
            certificate_pem, topics=topics, error=provisioning_error
        )
        harness = ClientHarness(client=None, provisioner=provisioner)  # type: ignore[arg-type]

        def factory(options, *, keepalive: int = 60):
            if transport_factory is not None:
                transport = transport_factory(options, keepalive=keepalive)
            else:
                transport = FakeTransport(
                    options, keepalive=keepalive, journal=harness.journal
                )
            harness.transports.append(transport)
            return transport

        async def recording_sleep(delay: float) -> None:
            harness.delays.append(delay)

        harness.client = ThinqMqttClient(
            Passport(access_token="token-abc", user_number="user-42"),
            Route(mqtt_server=mqtt_server),
            Gateway(
                thinq2_uri="https://thinq.test/v1",
                country_code="US",
                language_code="en-US",
            ),
            client_id="client-1",
            provisioner=provisioner,
            backoff=ReconnectBackoff(initial=1.0, maximum=16.0),
            transport_factory=factory,
            sleep=sleep or recording_sleep,
        )
        return harness

    harnesses: List[ClientHarness] = []

    def _tracked(**kwargs) -> ClientHarness:
        harness = _create(**kwargs)
        harnesses.append(harness)
        return harness

    yield _tracked

    for harness in harnesses:
        harness.client.close()

