"""
Discovery and serial link management for AWEAR receivers and senders.

The subpackage covers port scanning, the identify handshake, the
newline-delimited JSON frame parser, the device registry, pairing and the
vitals fan-out used by the host application.
"""

from .bus import PacketBus
from .config import HostConfig, LinkRuntime, ProbeSettings, SerialLine, load_config
from .connection import ConnectionState, SerialConnection, TeardownEvent, TeardownReason
from .errors import (
    ConfigurationFailure,
    LinkError,
    PairingError,
    ProbeCancelled,
    ProbeError,
    ProbeTimeout,
    StreamFault,
    TransientOpenFailure,
)
from .frames import DeviceType, FrameParser, HandshakeFrame, VitalsFrame, append_and_parse, decode_line, encode_vitals
from .manager import DeviceManager, PortState
from .monitor import Blacklist, PortDiff, PortMonitor, SkipReason
from .pairing import PairingController, PairingSignal, PairingSuccess
from .probe import ProbeEngine, ProbeResult, ProbeTicket
from .registry import DeviceRecord, DeviceRegistry
from .senders import SenderMonitor, SenderStatus

__all__ = [
    "PacketBus",
    "HostConfig",
    "LinkRuntime",
    "ProbeSettings",
    "SerialLine",
    "load_config",
    "ConnectionState",
    "SerialConnection",
    "TeardownEvent",
    "TeardownReason",
    "ConfigurationFailure",
    "LinkError",
    "PairingError",
    "ProbeCancelled",
    "ProbeError",
    "ProbeTimeout",
    "StreamFault",
    "TransientOpenFailure",
    "DeviceType",
    "FrameParser",
    "HandshakeFrame",
    "VitalsFrame",
    "append_and_parse",
    "decode_line",
    "encode_vitals",
    "DeviceManager",
    "PortState",
    "Blacklist",
    "PortDiff",
    "PortMonitor",
    "SkipReason",
    "PairingController",
    "PairingSignal",
    "PairingSuccess",
    "ProbeEngine",
    "ProbeResult",
    "ProbeTicket",
    "DeviceRecord",
    "DeviceRegistry",
    "SenderMonitor",
    "SenderStatus",
]
