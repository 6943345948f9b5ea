from __future__ import annotations

import enum
import errno
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import serial

from .errors import StreamFault

logger = logging.getLogger(__name__)

_UNPLUG_ERRNOS = {errno.ENODEV, errno.ENXIO, errno.ENOENT, errno.EIO}
_UNPLUG_MARKERS = (
    "device disconnected",
    "device does not recognize",
    "no such device",
    "errno = 0",
)


class ConnectionState(str, enum.Enum):
    PROBING = "probing"
    ACTIVE = "active"
    DISCONNECTING = "disconnecting"
    CLOSED = "closed"


class TeardownReason(str, enum.Enum):
    STREAM_ERROR = "stream_error"
    END_OF_STREAM = "end_of_stream"
    UNPLUGGED = "unplugged"
    PORT_REMOVED = "port_removed"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class TeardownEvent:
    port: str
    reason: TeardownReason
    fault: Optional[StreamFault] = None


def is_unplug_error(exc: BaseException) -> bool:
    """True when `exc` (or anything it wraps) looks like the device went away."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, OSError) and current.errno in _UNPLUG_ERRNOS:
            return True
        message = str(current).lower()
        if any(marker in message for marker in _UNPLUG_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


class SerialConnection:
    """
    An admitted serial port and the thread reading from it.

    The reader reports exactly one TeardownEvent when it stops on its own
    (error or end of stream); `close` never triggers one.
    """

    def __init__(
        self,
        port_name: str,
        handle: Any,
        chunk_size: int = 1024,
        release_grace_sec: float = 0.2,
    ):
        self.port_name = port_name
        self.handle = handle
        self.chunk_size = max(chunk_size, 1)
        self.release_grace_sec = release_grace_sec
        self.state = ConnectionState.ACTIVE
        self._stop_event = threading.Event()
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None
        self._on_chunk: Optional[Callable[[bytes], None]] = None
        self._on_teardown: Optional[Callable[[TeardownEvent], None]] = None

    def start(
        self,
        on_chunk: Callable[[bytes], None],
        on_teardown: Callable[[TeardownEvent], None],
    ) -> None:
        if self._reader is not None:
            raise RuntimeError(f"Reader for {self.port_name} already started")
        self._on_chunk = on_chunk
        self._on_teardown = on_teardown
        self._reader = threading.Thread(
            target=self._run, name=f"reader-{self.port_name}", daemon=True
        )
        self._reader.start()

    def write(self, payload: bytes) -> None:
        if self.state is not ConnectionState.ACTIVE:
            raise StreamFault(self.port_name, RuntimeError(f"connection is {self.state.value}"))
        with self._write_lock:
            try:
                self.handle.write(payload)
                self.handle.flush()
            except (serial.SerialException, OSError) as exc:
                raise StreamFault(self.port_name, exc) from exc

    def close(self) -> None:
        with self._state_lock:
            if self.state in (ConnectionState.DISCONNECTING, ConnectionState.CLOSED):
                return
            self.state = ConnectionState.DISCONNECTING
        self._stop_event.set()
        cancel_read = getattr(self.handle, "cancel_read", None)
        if cancel_read is not None:
            try:
                cancel_read()
            except Exception:
                logger.debug("cancel_read failed on %s", self.port_name, exc_info=True)
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=max(self.release_grace_sec * 10, 1.0))
            if reader.is_alive():
                logger.warning("Reader for %s did not stop in time", self.port_name)
        # give the OS a moment to drop driver locks before closing the handle
        time.sleep(self.release_grace_sec)
        try:
            self.handle.close()
        except Exception as exc:
            logger.warning("Error closing %s: %s", self.port_name, exc)
        finally:
            self.state = ConnectionState.CLOSED

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def join(self, timeout: Optional[float] = None) -> None:
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout)

    def _run(self) -> None:
        event: Optional[TeardownEvent] = None
        try:
            while not self._stop_event.is_set():
                waiting = self.handle.in_waiting
                data = self.handle.read(min(max(waiting, 1), self.chunk_size))
                if not data:
                    if not self.handle.is_open:
                        event = TeardownEvent(self.port_name, TeardownReason.END_OF_STREAM, StreamFault(self.port_name))
                        break
                    continue
                if self._stop_event.is_set():
                    break
                try:
                    assert self._on_chunk is not None
                    self._on_chunk(data)
                except Exception:
                    logger.exception("Chunk handler failed on %s", self.port_name)
        except (serial.SerialException, OSError) as exc:
            if not self._stop_event.is_set():
                reason = TeardownReason.UNPLUGGED if is_unplug_error(exc) else TeardownReason.STREAM_ERROR
                event = TeardownEvent(self.port_name, reason, StreamFault(self.port_name, exc))
        except Exception as exc:  # pragma: no cover - unexpected driver failure
            logger.exception("Unexpected error reading %s", self.port_name)
            event = TeardownEvent(self.port_name, TeardownReason.STREAM_ERROR, StreamFault(self.port_name, exc))
        if event is not None and not self._stop_event.is_set() and self._on_teardown is not None:
            self._on_teardown(event)
