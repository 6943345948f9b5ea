from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import serial

from .config import ProbeSettings, SerialLine
from .errors import ConfigurationFailure, ProbeCancelled, ProbeTimeout, TransientOpenFailure
from .frames import DEFAULT_BUFFER_LIMIT, DeviceType
from .monitor import Blacklist, SkipReason

logger = logging.getLogger(__name__)

IDENTIFY_COMMAND = b"AWEAR_IDENTIFY\n"

_OBJECT_RE = re.compile(rb"\{[^{}]*\}")


@dataclass(frozen=True)
class ProbeResult:
    port_name: str
    type: DeviceType
    mac: str
    paired_to: Optional[str] = None
    handle: Any = field(default=None, compare=False, repr=False)


class ProbeTicket:
    """Cancellation handle for one in-flight probe."""

    def __init__(self, port: str):
        self.port = port
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._handle: Any = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self, timeout: float) -> bool:
        return self._cancelled.wait(timeout)

    def attach(self, handle: Any) -> None:
        with self._lock:
            self._handle = handle
        if self.cancelled:
            _close_quietly(handle)

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            handle = self._handle
        if handle is not None:
            _close_quietly(handle)


def _close_quietly(handle: Any) -> None:
    try:
        handle.close()
    except Exception:
        logger.debug("Ignoring error while closing probe handle", exc_info=True)


def classify_buffer(data: bytes) -> Tuple[Optional[Tuple[DeviceType, str, Optional[str]]], int]:
    """
    Scan `data` for complete `{...}` objects and return the first identity found.

    The second element is how many bytes of `data` have been fully examined and
    may be discarded by the caller.
    """
    consumed = 0
    for match in _OBJECT_RE.finditer(data):
        consumed = match.end()
        try:
            obj = json.loads(match.group(0).decode("utf-8", errors="ignore"))
        except ValueError:
            continue
        if not isinstance(obj, dict) or "device" not in obj or "mac" not in obj:
            continue
        device_type = DeviceType.from_identity(obj["device"])
        if device_type is DeviceType.UNKNOWN:
            continue
        paired_to = obj.get("paired_to") if device_type is DeviceType.SENDER else None
        return (device_type, str(obj["mac"]), str(paired_to) if paired_to else None), consumed
    return None, consumed


class ProbeEngine:
    """
    Open a port, send the identify command and classify the answer.

    `identify` raises the typed probe errors; `probe` applies the skip policy
    and returns None for every failure.
    """

    def __init__(
        self,
        line: Optional[SerialLine] = None,
        settings: Optional[ProbeSettings] = None,
        blacklist: Optional[Blacklist] = None,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
    ):
        self.line = line or SerialLine()
        self.settings = settings or ProbeSettings()
        self.blacklist = blacklist if blacklist is not None else Blacklist()
        self.buffer_limit = buffer_limit

    def probe(self, port: str, ticket: Optional[ProbeTicket] = None) -> Optional[ProbeResult]:
        try:
            result = self.identify(port, ticket)
        except TransientOpenFailure as exc:
            logger.debug("Port %s unavailable, will retry: %s", port, exc)
        except ConfigurationFailure as exc:
            logger.warning("Port %s rejected line settings, blacklisting: %s", port, exc)
            self.blacklist.add(port, SkipReason.PERMANENT)
        except ProbeTimeout:
            logger.info("No handshake from %s within %.1fs, skipping", port, self.settings.timeout_sec)
            self.blacklist.add(port, SkipReason.TEMPORARY)
        except ProbeCancelled:
            logger.info("Probe of %s cancelled", port)
        else:
            logger.info("Identified %s on %s (mac=%s)", result.type.value, port, result.mac)
            return result
        return None

    def identify(self, port: str, ticket: Optional[ProbeTicket] = None) -> ProbeResult:
        ticket = ticket or ProbeTicket(port)
        if ticket.cancelled:
            raise ProbeCancelled(port)
        handle = self._open(port)
        ticket.attach(handle)
        try:
            self._configure(port, handle)
            if ticket.wait(self.settings.settle_sec):
                raise ProbeCancelled(port)
            try:
                handle.reset_input_buffer()
                handle.write(IDENTIFY_COMMAND)
                handle.flush()
            except (serial.SerialException, OSError) as exc:
                if ticket.cancelled:
                    raise ProbeCancelled(port) from exc
                raise TransientOpenFailure(port, f"identify write failed: {exc}") from exc
            device_type, mac, paired_to = self._await_handshake(port, handle, ticket)
        except BaseException:
            _close_quietly(handle)
            raise
        return ProbeResult(port_name=port, type=device_type, mac=mac, paired_to=paired_to, handle=handle)

    def _open(self, port: str) -> Any:
        handle = serial.Serial()
        handle.port = port
        handle.exclusive = True
        handle.timeout = self.settings.read_timeout_sec
        handle.write_timeout = max(self.settings.timeout_sec, 0.5)
        try:
            handle.open()
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransientOpenFailure(port, str(exc)) from exc
        return handle

    def _configure(self, port: str, handle: Any) -> None:
        try:
            handle.baudrate = self.line.baudrate
            handle.bytesize = self.line.bytesize
            handle.parity = self.line.parity
            handle.stopbits = self.line.stopbits
            handle.dtr = True
            handle.rts = True
        except (serial.SerialException, OSError, ValueError) as exc:
            raise ConfigurationFailure(port, str(exc)) from exc

    def _await_handshake(
        self, port: str, handle: Any, ticket: ProbeTicket
    ) -> Tuple[DeviceType, str, Optional[str]]:
        deadline = time.monotonic() + self.settings.timeout_sec
        buffer = bytearray()
        while True:
            if ticket.cancelled:
                raise ProbeCancelled(port)
            if time.monotonic() >= deadline:
                raise ProbeTimeout(port, "no handshake")
            try:
                data = handle.read(handle.in_waiting or 1)
            except (serial.SerialException, OSError) as exc:
                if ticket.cancelled:
                    raise ProbeCancelled(port) from exc
                raise TransientOpenFailure(port, f"read failed: {exc}") from exc
            if not data:
                continue
            buffer.extend(data)
            identity, consumed = classify_buffer(bytes(buffer))
            if identity is not None:
                return identity
            del buffer[:consumed]
            if len(buffer) >= self.buffer_limit:
                buffer.clear()
