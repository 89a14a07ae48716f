"""LG ThinQ appliance telemetry client over MQTT."""

from .connection import AlreadyDisposedError, ReconnectBackoff, ThinqMqttClient
from .models import ConnectionState, Gateway, Passport, Route
from .provisioning import (
    CertificateProvisioner,
    Enrollment,
    ProvisioningError,
    ThinqCertificateProvisioner,
)
from .registry import SnapshotRegistry, StateConsumer
from .router import MessageRouter
from .snapshot import DeviceSnapshot

__all__ = [
    "AlreadyDisposedError",
    "CertificateProvisioner",
    "ConnectionState",
    "DeviceSnapshot",
    "Enrollment",
    "Gateway",
    "MessageRouter",
    "Passport",
    "ProvisioningError",
    "ReconnectBackoff",
    "Route",
    "SnapshotRegistry",
    "StateConsumer",
    "ThinqCertificateProvisioner",
    "ThinqMqttClient",
]
