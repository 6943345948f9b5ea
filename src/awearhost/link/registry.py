from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .frames import UNKNOWN_MAC, DeviceType, HandshakeFrame

logger = logging.getLogger(__name__)

Snapshot = Tuple["DeviceRecord", ...]


@dataclass(frozen=True)
class DeviceRecord:
    port_name: str
    type: DeviceType = DeviceType.UNKNOWN
    mac_address: str = UNKNOWN_MAC
    paired_to_mac: Optional[str] = None
    connection: Any = field(default=None, compare=False, repr=False)

    @property
    def classified(self) -> bool:
        return self.type is not DeviceType.UNKNOWN


class DeviceRegistry:
    """
    Authoritative table of active devices keyed by port name.

    Mutations only touch memory and run under one lock. Each mutation is
    followed by delivery of an immutable snapshot to every subscriber, in
    mutation order.

    Liveness (when a port last produced bytes) is kept beside the records and
    is not part of a snapshot, so streaming traffic never publishes.
    """

    def __init__(self) -> None:
        self._records: Dict[str, DeviceRecord] = {}
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()
        # held across mutate+notify so snapshots arrive in order
        self._publish_lock = threading.RLock()
        self._subscribers: List[Callable[[Snapshot], None]] = []

    # -- mutations -------------------------------------------------------

    def add(self, record: DeviceRecord) -> None:
        with self._publish_lock:
            with self._lock:
                if record.port_name in self._records:
                    raise ValueError(f"Port {record.port_name} already registered")
                self._records[record.port_name] = record
                self._last_seen[record.port_name] = time.time()
                snapshot = self._snapshot_locked()
            self._publish(snapshot)

    def remove(self, port_name: str) -> Optional[DeviceRecord]:
        with self._publish_lock:
            with self._lock:
                record = self._records.pop(port_name, None)
                if record is None:
                    return None
                self._last_seen.pop(port_name, None)
                snapshot = self._snapshot_locked()
            self._publish(snapshot)
        return record

    def update(self, port_name: str, **changes: Any) -> Optional[DeviceRecord]:
        if "port_name" in changes:
            raise ValueError("port_name is the registry key and cannot change")
        with self._publish_lock:
            with self._lock:
                current = self._records.get(port_name)
                if current is None:
                    return None
                if "type" in changes and current.classified and changes["type"] != current.type:
                    raise ValueError(f"{port_name} is already classified as {current.type.value}")
                if (
                    "mac_address" in changes
                    and current.mac_address != UNKNOWN_MAC
                    and changes["mac_address"] != current.mac_address
                ):
                    raise ValueError(f"{port_name} already has mac {current.mac_address}")
                updated = dataclasses.replace(current, **changes)
                if updated == current:
                    return current
                self._records[port_name] = updated
                snapshot = self._snapshot_locked()
            self._publish(snapshot)
        return updated

    def apply_handshake(self, port_name: str, frame: HandshakeFrame) -> bool:
        """Fill identity fields that are still unknown; never reclassify."""
        record = self.get(port_name)
        if record is None:
            return False
        changes: Dict[str, Any] = {}
        device_type = frame.device_type
        if not record.classified and device_type is not DeviceType.UNKNOWN:
            changes["type"] = device_type
            if device_type is DeviceType.SENDER and frame.paired_to and record.paired_to_mac is None:
                changes["paired_to_mac"] = frame.paired_to
        if record.mac_address == UNKNOWN_MAC and frame.mac:
            changes["mac_address"] = frame.mac
        if not changes:
            logger.debug("Ignoring handshake on %s (identity already %s/%s)", port_name, record.type.value, record.mac_address)
            return False
        return self.update(port_name, **changes) is not None

    # -- liveness --------------------------------------------------------

    def touch(self, port_name: str, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            if port_name in self._records:
                self._last_seen[port_name] = now

    def last_seen(self, port_name: str) -> Optional[float]:
        with self._lock:
            return self._last_seen.get(port_name)

    def idle_ports(self, max_age_sec: float, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        with self._lock:
            return sorted(port for port, seen in self._last_seen.items() if now - seen > max_age_sec)

    # -- queries ---------------------------------------------------------

    def get(self, port_name: str) -> Optional[DeviceRecord]:
        with self._lock:
            return self._records.get(port_name)

    def __contains__(self, port_name: object) -> bool:
        with self._lock:
            return port_name in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def ports(self) -> frozenset:
        with self._lock:
            return frozenset(self._records)

    def snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot_locked()

    def receiver(self) -> Optional[DeviceRecord]:
        for record in self.snapshot():
            if record.type is DeviceType.RECEIVER:
                return record
        return None

    def senders(self) -> List[DeviceRecord]:
        return [record for record in self.snapshot() if record.type is DeviceType.SENDER]

    # -- subscriptions ---------------------------------------------------

    def subscribe(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        with self._publish_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._publish_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _snapshot_locked(self) -> Snapshot:
        return tuple(self._records.values())

    def _publish(self, snapshot: Snapshot) -> None:
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Device snapshot subscriber failed")
