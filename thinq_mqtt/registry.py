"""Device id to state-consumer mapping shared with the message path."""

from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Mapping, Optional, Protocol


class StateConsumer(Protocol):
    """Anything that accumulates a device's reported state."""

    def merge(self, reported: Mapping[str, Any]) -> None:
        ...


class SnapshotRegistry:
    """Lock-guarded map of attached consumers.

    Attach and detach may run on any thread while the message path reads
    the map; consumers are referenced, never owned.
    """

    def __init__(self) -> None:
        self._consumers: Dict[str, StateConsumer] = {}
        self._lock = Lock()

    def attach(self, device_id: str, consumer: StateConsumer) -> None:
        with self._lock:
            self._consumers[device_id] = consumer

    def detach(self, device_id: str) -> None:
        with self._lock:
            self._consumers.pop(device_id, None)

    def get(self, device_id: str) -> Optional[StateConsumer]:
        with self._lock:
            return self._consumers.get(device_id)

    def clear(self) -> None:
        with self._lock:
            self._consumers.clear()

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._consumers

    def __len__(self) -> int:
        with self._lock:
            return len(self._consumers)
