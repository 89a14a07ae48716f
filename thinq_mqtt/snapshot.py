"""Reference state consumer accumulating reported device state."""

from __future__ import annotations

import copy
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

SnapshotListener = Callable[["DeviceSnapshot", Dict[str, Any]], None]


class DeviceSnapshot:
    """Last known reported state of one appliance.

    Merges are shallow for scalars and recursive for nested objects, so a
    partial report only overwrites the fields it carries.
    """

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        self.merge_count = 0
        self._state: Dict[str, Any] = {}
        self._lock = Lock()
        self._listeners: List[SnapshotListener] = []

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def merge(self, reported: Mapping[str, Any]) -> None:
        with self._lock:
            _deep_merge(self._state, reported)
            self.merge_count += 1
        changes = dict(reported)
        for listener in list(self._listeners):
            listener(self, changes)

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._state.get(key, default))

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._state)


def _deep_merge(target: Dict[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, Mapping):
            _deep_merge(existing, value)
        else:
            target[key] = copy.deepcopy(value)
