"""Routing of inbound broker messages to attached device snapshots."""

from __future__ import annotations

import json
import logging
from typing import Any

from .constants import MONITORING_MESSAGE_TYPE
from .models import MalformedEnvelopeError, MonitoringEnvelope
from .registry import SnapshotRegistry

LOGGER = logging.getLogger(__name__)


class MessageRouter:
    """Decode broker payloads and forward monitoring state by device id.

    Routing is synchronous: a message is merged or discarded before the
    next one is looked at. Nothing raised while handling a payload leaves
    :meth:`route`.
    """

    def __init__(self, registry: SnapshotRegistry) -> None:
        self._registry = registry

    def route(self, topic: str, payload: bytes) -> bool:
        """Return True when the payload was merged into a consumer."""

        try:
            text = payload.decode("utf-8")
            document: Any = json.loads(text)
        except (UnicodeDecodeError, ValueError, RecursionError) as exc:
            LOGGER.error("Discarding undecodable MQTT payload on %s: %s", topic, exc)
            return False

        LOGGER.debug("MQTT message received on %s: %s", topic, text)

        if not isinstance(document, dict):
            LOGGER.debug("Ignoring payload on %s, not a JSON object", topic)
            return False

        if document.get("type") != MONITORING_MESSAGE_TYPE:
            LOGGER.debug("Ignoring payload, not a monitoring message")
            return False

        try:
            envelope = MonitoringEnvelope.from_payload(document)
        except MalformedEnvelopeError as exc:
            LOGGER.error("Failed decoding monitoring payload, message ignored: %s", exc)
            return False

        consumer = self._registry.get(envelope.device_id)
        if consumer is None:
            return False

        try:
            consumer.merge(envelope.reported)
        except Exception:
            LOGGER.exception(
                "Snapshot for device %s failed to merge reported state",
                envelope.device_id,
            )
            return False
        return True
