from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .bus import PacketBus
from .frames import VitalsFrame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SenderStatus:
    mac_address: str
    rssi: Optional[int]
    last_seen: float
    moving: bool
    online: bool = True


class SenderMonitor:
    """Live view of every sender heard through the receiver, keyed by MAC."""

    def __init__(self, offline_after_sec: float = 10.0):
        self.offline_after_sec = offline_after_sec
        self._senders: Dict[str, SenderStatus] = {}
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[Tuple[SenderStatus, ...]], None]] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, bus: PacketBus) -> None:
        self.detach()
        self._unsubscribe = bus.subscribe(self.on_frame)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_frame(self, frame: VitalsFrame, now: Optional[float] = None) -> None:
        status = SenderStatus(
            mac_address=frame.sender,
            rssi=frame.rssi,
            last_seen=time.time() if now is None else now,
            moving=frame.motion_artifact,
            online=True,
        )
        with self._lock:
            if frame.sender not in self._senders:
                logger.info("New sender heard: %s (rssi=%s)", frame.sender, frame.rssi)
            self._senders[frame.sender] = status
            snapshot = tuple(self._senders.values())
        self._publish(snapshot)

    def check(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        went_offline: List[str] = []
        with self._lock:
            for mac, status in self._senders.items():
                if status.online and now - status.last_seen > self.offline_after_sec:
                    self._senders[mac] = dataclasses.replace(status, online=False)
                    went_offline.append(mac)
            snapshot = tuple(self._senders.values())
        if went_offline:
            logger.info("Senders offline: %s", ", ".join(went_offline))
            self._publish(snapshot)
        return went_offline

    def forget(self, mac: str) -> bool:
        with self._lock:
            removed = self._senders.pop(mac, None)
            snapshot = tuple(self._senders.values())
        if removed is None:
            return False
        self._publish(snapshot)
        return True

    def get(self, mac: str) -> Optional[SenderStatus]:
        with self._lock:
            return self._senders.get(mac)

    def snapshot(self) -> Tuple[SenderStatus, ...]:
        with self._lock:
            return tuple(self._senders.values())

    def subscribe(self, callback: Callable[[Tuple[SenderStatus, ...]], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, snapshot: Tuple[SenderStatus, ...]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Sender status subscriber failed")
