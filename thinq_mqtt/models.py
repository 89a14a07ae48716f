"""Value types shared by the MQTT client and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping


class ConnectionState(str, Enum):
    """Lifecycle state of the broker session."""

    NOT_CONNECTED = "not_connected"
    """Initial value; never re-entered once left."""

    CONNECTED = "connected"
    """Broker handshake completed."""

    DISCONNECTED = "disconnected"
    """Session dropped, either on request or unexpectedly."""


@dataclass(frozen=True, slots=True)
class Passport:
    """Account credentials issued by the ThinQ login flow."""

    access_token: str
    user_number: str


@dataclass(frozen=True, slots=True)
class Route:
    """Service route handed out by the ThinQ gateway."""

    mqtt_server: str


@dataclass(frozen=True, slots=True)
class Gateway:
    """Regional ThinQ API gateway."""

    thinq2_uri: str
    country_code: str
    language_code: str


class MalformedEnvelopeError(ValueError):
    """Raised when a monitoring payload does not match the envelope shape."""


@dataclass(frozen=True, slots=True)
class MonitoringEnvelope:
    device_id: str
    reported: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MonitoringEnvelope":
        """Decode ``{"deviceId": ..., "data": {"state": {"reported": {...}}}}``."""

        try:
            device_id = payload["deviceId"]
            reported = payload["data"]["state"]["reported"]
        except (KeyError, TypeError) as exc:
            raise MalformedEnvelopeError(
                f"Monitoring payload missing field: {exc}"
            ) from exc

        if not isinstance(device_id, str) or not device_id:
            raise MalformedEnvelopeError("Monitoring payload has no usable deviceId")
        if not isinstance(reported, Mapping):
            raise MalformedEnvelopeError(
                "Monitoring payload reported state is not an object"
            )

        return cls(device_id=device_id, reported=dict(reported))
