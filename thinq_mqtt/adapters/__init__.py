"""Adapter modules for external integrations."""

from .mqtt import BrokerOptions, MQTTClient, MQTTConnectionError, TlsPolicy

__all__ = [
    "BrokerOptions",
    "MQTTClient",
    "MQTTConnectionError",
    "TlsPolicy",
]
