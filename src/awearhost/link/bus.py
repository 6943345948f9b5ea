from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .frames import VitalsFrame

logger = logging.getLogger(__name__)


@dataclass
class _Subscription:
    callback: Callable[[VitalsFrame], None]
    sender: Optional[str] = None

    def wants(self, frame: VitalsFrame) -> bool:
        return self.sender is None or self.sender == frame.sender.upper()


class PacketBus:
    """
    Fan-out of decoded vitals frames.

    `publish` runs on connection reader threads and never blocks: queue
    subscribers that fall behind lose frames, which are counted as dropped.
    """

    def __init__(self, stats_log_every: int = 50):
        self.stats_log_every = stats_log_every
        self._subscriptions: List[_Subscription] = []
        self._lock = threading.Lock()
        self._published = 0
        self._dropped = 0

    def subscribe(
        self, callback: Callable[[VitalsFrame], None], sender: Optional[str] = None
    ) -> Callable[[], None]:
        subscription = _Subscription(callback=callback, sender=sender.upper() if sender else None)
        with self._lock:
            self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def subscribe_queue(
        self, maxsize: int = 512, sender: Optional[str] = None
    ) -> Tuple["queue.Queue[VitalsFrame]", Callable[[], None]]:
        frames: "queue.Queue[VitalsFrame]" = queue.Queue(maxsize=maxsize)

        def enqueue(frame: VitalsFrame) -> None:
            try:
                frames.put_nowait(frame)
            except queue.Full:
                with self._lock:
                    self._dropped += 1
                logger.warning("Vitals queue full (%d), dropping frame from %s", frames.qsize(), frame.sender)

        return frames, self.subscribe(enqueue, sender=sender)

    def publish(self, frame: VitalsFrame) -> None:
        with self._lock:
            self._published += 1
            count = self._published
            targets = [sub for sub in self._subscriptions if sub.wants(frame)]
        for subscription in targets:
            try:
                subscription.callback(frame)
            except Exception:
                logger.exception("Vitals subscriber failed")
        if self.stats_log_every > 0 and count % self.stats_log_every == 0:
            logger.info(
                "%d packets processed. Last: %s | HR: %s", count, frame.sender, frame.heart_rate
            )

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"published": self._published, "dropped": self._dropped}
