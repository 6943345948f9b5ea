from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

import pytest
import serial

from awearhost.link.config import HostConfig, LinkRuntime, ProbeSettings


@dataclass
class FakeDevice:
    busy: bool = False
    reject_config: bool = False
    reply: Optional[bytes] = None
    noise: bytes = b""


class FakePort:
    """Just enough of serial.Serial for the probe engine and reader threads."""

    def __init__(self, module: "FakeSerialModule"):
        object.__setattr__(self, "_module", module)
        object.__setattr__(self, "_device", None)
        self.port = None
        self.exclusive = False
        self.timeout = 0.05
        self.write_timeout = None
        self.baudrate = 9600
        self.bytesize = 8
        self.parity = "N"
        self.stopbits = 1
        self.dtr = False
        self.rts = False
        self.written: List[bytes] = []
        self.close_calls = 0
        self._open = False
        self._eof = False
        self._error: Optional[BaseException] = None
        self._buffer = bytearray()
        self._cond = threading.Condition()

    def __setattr__(self, name, value):
        device = self._device
        if name == "baudrate" and device is not None and device.reject_config and self._open:
            raise ValueError(f"Invalid baud rate: {value!r}")
        object.__setattr__(self, name, value)

    # -- serial.Serial surface ------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open and not self._eof

    @property
    def in_waiting(self) -> int:
        with self._cond:
            return len(self._buffer)

    def open(self) -> None:
        device = self._module.devices.get(self.port)
        if device is None or device.busy:
            raise serial.SerialException(f"could not open port {self.port}: [Errno 16] Device or resource busy")
        object.__setattr__(self, "_device", device)
        self._open = True
        self._module.opened.setdefault(self.port, []).append(self)
        if device.noise:
            self.feed(device.noise)

    def close(self) -> None:
        self.close_calls += 1
        with self._cond:
            self._open = False
            self._cond.notify_all()

    def reset_input_buffer(self) -> None:
        with self._cond:
            self._buffer.clear()

    def write(self, data: bytes) -> int:
        if not self._open:
            raise serial.SerialException("Attempting to use a port that is not open")
        self.written.append(bytes(data))
        if data == b"AWEAR_IDENTIFY\n" and self._device.reply:
            self.feed(self._device.reply)
        return len(data)

    def flush(self) -> None:
        pass

    def cancel_read(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def read(self, size: int = 1) -> bytes:
        deadline = time.monotonic() + (self.timeout or 0)
        with self._cond:
            while True:
                if self._error is not None:
                    raise self._error
                if not self._open:
                    raise serial.SerialException("Attempting to use a port that is not open")
                if self._buffer:
                    data = bytes(self._buffer[:size])
                    del self._buffer[:size]
                    return data
                if self._eof:
                    return b""
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return b""
                self._cond.wait(remaining)

    # -- test helpers ---------------------------------------------------

    def feed(self, data: bytes) -> None:
        with self._cond:
            self._buffer.extend(data)
            self._cond.notify_all()

    def fail(self, exc: BaseException) -> None:
        with self._cond:
            self._error = exc
            self._cond.notify_all()

    def hangup(self) -> None:
        with self._cond:
            self._eof = True
            self._cond.notify_all()


class FakeSerialModule:
    SerialException = serial.SerialException

    def __init__(self) -> None:
        self.devices: Dict[str, FakeDevice] = {}
        self.opened: Dict[str, List[FakePort]] = {}

    def add(self, port: str, **behaviour) -> FakeDevice:
        device = FakeDevice(**behaviour)
        self.devices[port] = device
        return device

    def Serial(self, *args, **kwargs) -> FakePort:
        return FakePort(self)

    def last(self, port: str) -> FakePort:
        return self.opened[port][-1]


class FakePorts:
    """Mutable port list standing in for list_ports.comports()."""

    def __init__(self) -> None:
        self.present: Set[str] = set()
        self.fail = False

    def __call__(self):
        if self.fail:
            raise OSError("enumeration failed")
        return set(self.present)


@pytest.fixture
def fake_serial(monkeypatch) -> FakeSerialModule:
    module = FakeSerialModule()
    monkeypatch.setattr("awearhost.link.probe.serial", module)
    return module


@pytest.fixture
def fake_ports() -> FakePorts:
    return FakePorts()


@pytest.fixture
def fast_config() -> HostConfig:
    return HostConfig(
        probe=ProbeSettings(settle_sec=0.0, timeout_sec=0.3, read_timeout_sec=0.02, max_workers=4),
        link=LinkRuntime(
            scan_interval_sec=0.05,
            read_timeout_sec=0.02,
            release_grace_sec=0.0,
            pairing_signal_sec=0.2,
            ignored_ports=["COM1", "COM2"],
        ),
    )


def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until
