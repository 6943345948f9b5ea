from __future__ import annotations

import enum
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set

from serial.tools import list_ports

logger = logging.getLogger(__name__)

DEFAULT_IGNORED_PORTS = ("COM1", "COM2")


@dataclass(frozen=True)
class PortDiff:
    added: FrozenSet[str] = frozenset()
    removed: FrozenSet[str] = frozenset()

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


def enumerate_ports() -> Set[str]:
    return {info.device for info in list_ports.comports() if info.device}


class PortMonitor:
    """
    Diff consecutive port enumerations into added/removed sets.

    Enumeration errors count as an empty port list for that tick.
    """

    def __init__(
        self,
        enumerate_fn: Optional[Callable[[], Iterable[str]]] = None,
        ignored: Iterable[str] = DEFAULT_IGNORED_PORTS,
    ):
        self._enumerate = enumerate_fn or enumerate_ports
        self.ignored = frozenset(ignored)
        self._snapshot: FrozenSet[str] = frozenset()

    def available(self) -> FrozenSet[str]:
        try:
            ports = set(self._enumerate())
        except Exception as exc:
            logger.warning("Port enumeration failed: %s", exc)
            ports = set()
        return frozenset(port for port in ports if port not in self.ignored)

    def scan(self) -> PortDiff:
        current = self.available()
        diff = PortDiff(added=current - self._snapshot, removed=self._snapshot - current)
        self._snapshot = current
        if diff:
            logger.debug("Port diff: +%s -%s", sorted(diff.added), sorted(diff.removed))
        return diff

    def snapshot(self) -> FrozenSet[str]:
        return self._snapshot


class SkipReason(str, enum.Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


class Blacklist:
    """Ports the manager must not probe, with the reason they were skipped."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._entries: Dict[str, SkipReason] = {}
        self._lock = threading.Lock()
        if path is not None and path.exists():
            self.load(path)

    def add(self, port: str, reason: SkipReason) -> None:
        with self._lock:
            # never downgrade a permanent entry
            if self._entries.get(port) is SkipReason.PERMANENT:
                return
            self._entries[port] = reason
        if reason is SkipReason.PERMANENT and self.path is not None:
            self.save(self.path)

    def reason_for(self, port: str) -> Optional[SkipReason]:
        with self._lock:
            return self._entries.get(port)

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def discard_temporary(self, port: str) -> bool:
        with self._lock:
            if self._entries.get(port) is SkipReason.TEMPORARY:
                del self._entries[port]
                return True
        return False

    def permanent(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(port for port, reason in self._entries.items() if reason is SkipReason.PERMANENT)

    def load(self, path: Path) -> None:
        try:
            with path.open("r", encoding="utf-8") as fh:
                ports = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read blacklist %s: %s", path, exc)
            return
        if not isinstance(ports, list):
            logger.warning("Ignoring blacklist %s: expected a JSON list", path)
            return
        with self._lock:
            for port in ports:
                self._entries[str(port)] = SkipReason.PERMANENT

    def save(self, path: Path) -> None:
        ports = sorted(self.permanent())
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as fh:
                json.dump(ports, fh, indent=2)
        except OSError as exc:
            logger.warning("Could not write blacklist %s: %s", path, exc)
