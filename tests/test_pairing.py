from __future__ import annotations

import time

import pytest

from awearhost.link.errors import PairingError, StreamFault
from awearhost.link.frames import DeviceType
from awearhost.link.pairing import PairingController, normalize_mac, pair_command
from awearhost.link.registry import DeviceRecord, DeviceRegistry


class RecordingConnection:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.written = []

    def write(self, payload: bytes) -> None:
        if self.fail:
            raise StreamFault("COM6", OSError("write failed"))
        self.written.append(payload)


def setup_registry(connection=None) -> DeviceRegistry:
    registry = DeviceRegistry()
    registry.add(DeviceRecord("COM5", DeviceType.RECEIVER, "08:92:72:85:83:78", connection=object()))
    registry.add(
        DeviceRecord("COM6", DeviceType.SENDER, "AA:BB:CC:DD:EE:FF", connection=connection or RecordingConnection())
    )
    return registry


def test_pair_command_format() -> None:
    assert pair_command("08:92:72:85:83:78") == b"PAIR:08:92:72:85:83:78\n"
    assert normalize_mac("aa-bb-cc-dd-ee-ff") == "AA:BB:CC:DD:EE:FF"
    with pytest.raises(PairingError):
        normalize_mac("08:92:72:85:83")


def test_pairing_signal_fires_once_and_clears() -> None:
    connection = RecordingConnection()
    registry = setup_registry(connection)
    controller = PairingController(registry, clear_after_sec=0.2)
    events = []
    controller.signal.subscribe(events.append)

    controller.pair("COM6", "08:92:72:85:83:78")
    assert connection.written == [b"PAIR:08:92:72:85:83:78\n"]
    assert not controller.signal.is_set()

    assert controller.observe("COM6", b"some log\r\nPAIRED_OK\r\n") is True
    assert controller.signal.is_set()
    assert controller.signal.value.receiver_mac == "08:92:72:85:83:78"
    assert registry.get("COM6").paired_to_mac == "08:92:72:85:83:78"

    time.sleep(0.5)
    assert not controller.signal.is_set()
    assert controller.signal.value is None
    assert [event is None for event in events] == [False, True]


def test_ack_split_across_chunks() -> None:
    registry = setup_registry()
    controller = PairingController(registry, clear_after_sec=5.0)
    assert controller.observe("COM6", b"...PAIR") is False
    assert controller.observe("COM6", b"ED_OK\n") is True
    assert controller.signal.is_set()
    controller.signal.clear()


def test_ack_ignored_from_receiver() -> None:
    registry = setup_registry()
    controller = PairingController(registry)
    assert controller.observe("COM5", b"PAIRED_OK") is False
    assert not controller.signal.is_set()


def test_pair_current_targets_receiver_mac() -> None:
    connection = RecordingConnection()
    controller = PairingController(setup_registry(connection))
    assert controller.pair_current() == "COM6"
    assert connection.written == [b"PAIR:08:92:72:85:83:78\n"]
    assert controller.pending("COM6") == "08:92:72:85:83:78"


def test_pair_requires_sender() -> None:
    registry = DeviceRegistry()
    controller = PairingController(registry)
    with pytest.raises(PairingError):
        controller.pair_current("08:92:72:85:83:78")
    registry.add(DeviceRecord("COM5", DeviceType.RECEIVER, "08:92:72:85:83:78"))
    with pytest.raises(PairingError):
        controller.pair("COM5", "08:92:72:85:83:78")


def test_write_failure_surfaces_as_pairing_error() -> None:
    controller = PairingController(setup_registry(RecordingConnection(fail=True)))
    with pytest.raises(PairingError):
        controller.pair("COM6", "08:92:72:85:83:78")
    assert controller.pending("COM6") is None
