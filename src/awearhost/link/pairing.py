from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .errors import PairingError, StreamFault
from .frames import DeviceType
from .registry import DeviceRegistry

logger = logging.getLogger(__name__)

ACK_TOKEN = b"PAIRED_OK"
_MAC_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")


def normalize_mac(mac: str) -> str:
    candidate = mac.strip().upper().replace("-", ":")
    if not _MAC_RE.match(candidate):
        raise PairingError(f"Invalid MAC address '{mac}'")
    return candidate


def pair_command(receiver_mac: str) -> bytes:
    return f"PAIR:{normalize_mac(receiver_mac)}\n".encode("ascii")


@dataclass(frozen=True)
class PairingSuccess:
    sender_port: str
    receiver_mac: Optional[str]
    at: float


class PairingSignal:
    """One-shot success flag that clears itself after `clear_after_sec`."""

    def __init__(self, clear_after_sec: float = 3.0):
        self.clear_after_sec = clear_after_sec
        self._value: Optional[PairingSuccess] = None
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._subscribers: List[Callable[[Optional[PairingSuccess]], None]] = []

    @property
    def value(self) -> Optional[PairingSuccess]:
        with self._lock:
            return self._value

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def fire(self, success: PairingSuccess) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._value = success
            self._event.set()
            self._timer = threading.Timer(self.clear_after_sec, self._expire, args=(success,))
            self._timer.daemon = True
            self._timer.start()
        self._notify(success)

    def clear(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            was_set = self._value is not None
            self._value = None
            self._event.clear()
        if was_set:
            self._notify(None)

    def _expire(self, success: PairingSuccess) -> None:
        with self._lock:
            if self._value is not success:
                return
            self._timer = None
            self._value = None
            self._event.clear()
        self._notify(None)

    def subscribe(self, callback: Callable[[Optional[PairingSuccess]], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, value: Optional[PairingSuccess]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                logger.exception("Pairing signal subscriber failed")


class PairingController:
    """Sends PAIR commands to senders and watches their output for PAIRED_OK."""

    def __init__(
        self,
        registry: DeviceRegistry,
        signal: Optional[PairingSignal] = None,
        clear_after_sec: float = 3.0,
    ):
        self.registry = registry
        self.signal = signal or PairingSignal(clear_after_sec)
        self._pending: Dict[str, str] = {}
        self._tails: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def pair(self, sender_port: str, receiver_mac: str) -> None:
        command = pair_command(receiver_mac)
        record = self.registry.get(sender_port)
        if record is None or record.type is not DeviceType.SENDER:
            raise PairingError(f"No active sender on {sender_port}")
        if record.connection is None:
            raise PairingError(f"Sender on {sender_port} has no open connection")
        with self._lock:
            self._pending[sender_port] = normalize_mac(receiver_mac)
        try:
            record.connection.write(command)
        except StreamFault as exc:
            with self._lock:
                self._pending.pop(sender_port, None)
            raise PairingError(f"Could not send pairing command to {sender_port}: {exc}") from exc
        logger.info("Sent %s to %s", command.decode("ascii").strip(), sender_port)

    def pair_current(self, receiver_mac: Optional[str] = None) -> str:
        senders = self.registry.senders()
        if not senders:
            raise PairingError("No sender connected")
        if receiver_mac is None:
            receiver = self.registry.receiver()
            if receiver is None:
                raise PairingError("No receiver connected and no MAC given")
            receiver_mac = receiver.mac_address
        sender = senders[0]
        self.pair(sender.port_name, receiver_mac)
        return sender.port_name

    def observe(self, port: str, chunk: bytes) -> bool:
        record = self.registry.get(port)
        if record is None or record.type is not DeviceType.SENDER:
            return False
        with self._lock:
            data = self._tails.get(port, b"") + chunk
            hit = ACK_TOKEN in data
            self._tails[port] = b"" if hit else data[-(len(ACK_TOKEN) - 1):]
            target = self._pending.pop(port, None) if hit else None
        if not hit:
            return False
        logger.info("Pairing confirmed by %s", port)
        if target is not None:
            self.registry.update(port, paired_to_mac=target)
        self.signal.fire(PairingSuccess(sender_port=port, receiver_mac=target, at=time.time()))
        return True

    def pending(self, port: str) -> Optional[str]:
        with self._lock:
            return self._pending.get(port)

    def forget(self, port: str) -> None:
        with self._lock:
            self._pending.pop(port, None)
            self._tails.pop(port, None)
