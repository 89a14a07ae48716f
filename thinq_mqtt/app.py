"""Main application entry-point for thinq-mqtt."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import uuid
from typing import Any, Dict, Optional

from .adapters import TlsPolicy
from .config import AppConfig, load_config, save_config
from .connection import ReconnectBackoff, ThinqMqttClient
from .logging import configure_logging
from .models import ConnectionState, Gateway, Passport, Route
from .provisioning import ProvisioningError, ThinqCertificateProvisioner
from .snapshot import DeviceSnapshot

LOGGER = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when required configuration values are missing."""


class ThinqMonitorApp:
    """Keeps a telemetry session open and logs appliance state updates."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        client: Optional[ThinqMqttClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._client = client
        self._snapshots: Dict[str, DeviceSnapshot] = {}
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def snapshots(self) -> Dict[str, DeviceSnapshot]:
        return dict(self._snapshots)

    async def run(self) -> None:
        """Connect, attach snapshots and wait for a shutdown signal."""

        self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_shutdown)

        client = self._client or build_client(self._config)
        self._client = client
        client.register_state_handler(self._on_state_changed)

        for device_id in self._config.device_ids:
            snapshot = DeviceSnapshot(device_id)
            snapshot.add_listener(self._on_snapshot_updated)
            self._snapshots[device_id] = snapshot
            client.attach(device_id, snapshot)

        if not self._snapshots:
            LOGGER.warning("No device ids configured; telemetry will be ignored")

        try:
            await client.connect()
            await self._shutdown_event.wait()
        finally:
            await self._stop()

    def request_shutdown(self) -> None:
        LOGGER.info("thinq-mqtt received shutdown signal")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[AppConfig] = None) -> int:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
            secrets=(
                instance._config.account.access_token,
                instance._config.thinq.api_key,
            ),
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("thinq-mqtt received shutdown signal")
        except ConfigurationError as exc:
            LOGGER.error("Invalid configuration: %s", exc)
            return 1
        except ProvisioningError as exc:
            LOGGER.error("Certificate provisioning failed: %s", exc)
            return 1
        return 0

    async def _stop(self) -> None:
        client = self._client
        if client is None or client.disposed:
            return

        try:
            await client.disconnect()
        finally:
            client.close()

    def _on_state_changed(
        self, previous: ConnectionState, current: ConnectionState
    ) -> None:
        LOGGER.info("Broker session %s -> %s", previous.value, current.value)

    def _on_snapshot_updated(
        self, snapshot: DeviceSnapshot, changes: Dict[str, Any]
    ) -> None:
        LOGGER.info("Device %s reported %s", snapshot.device_id, changes)


def ensure_client_id(config: AppConfig) -> str:
    """Return the configured client id, generating and saving one if absent."""

    client_id = config.thinq.client_id
    if client_id:
        return client_id

    client_id = uuid.uuid4().hex
    config.thinq.client_id = client_id
    config.raw.set("thinq", "client_id", client_id)
    save_config(config)
    LOGGER.info("Generated client id %s", client_id)
    return client_id


def build_client(config: AppConfig) -> ThinqMqttClient:
    account = config.account
    if not account.access_token or not account.user_number:
        raise ConfigurationError(
            "[account] access_token and user_number must be configured"
        )

    passport = Passport(
        access_token=account.access_token, user_number=account.user_number
    )
    gateway = Gateway(
        thinq2_uri=config.gateway.thinq2_uri,
        country_code=config.thinq.country_code,
        language_code=config.thinq.language_code,
    )
    route = Route(mqtt_server=config.route.mqtt_server)

    resilience = config.resilience
    return ThinqMqttClient(
        passport,
        route,
        gateway,
        client_id=ensure_client_id(config),
        provisioner=ThinqCertificateProvisioner(
            api_key=config.thinq.api_key,
            timeout=resilience.provisioning_timeout_seconds,
        ),
        tls_policy=TlsPolicy(
            verify_server_certificate=config.tls.verify_server_certificate,
            enforce_min_tls_version=config.tls.enforce_min_tls_version,
            ca_path=config.tls.ca_path,
        ),
        backoff=ReconnectBackoff(
            initial=resilience.reconnect_initial_seconds,
            maximum=resilience.reconnect_max_seconds,
        ),
        keepalive=resilience.keepalive_seconds,
    )
