from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

DEFAULT_BUFFER_LIMIT = 20000

RECEIVER_ID = "AWEAR_RECEIVER"
SENDER_ID = "AWEAR_SENDER"
UNKNOWN_MAC = "Unknown"

logger = logging.getLogger(__name__)


class DeviceType(str, enum.Enum):
    UNKNOWN = "unknown"
    SENDER = "sender"
    RECEIVER = "receiver"

    @classmethod
    def from_identity(cls, device: Any) -> "DeviceType":
        if device == RECEIVER_ID:
            return cls.RECEIVER
        if device == SENDER_ID:
            return cls.SENDER
        return cls.UNKNOWN


@dataclass(frozen=True)
class HandshakeFrame:
    device: str
    mac: str
    paired_to: Optional[str] = None
    status: Optional[str] = None
    channel: Optional[int] = None

    @property
    def device_type(self) -> DeviceType:
        return DeviceType.from_identity(self.device)


@dataclass(frozen=True)
class VitalsFrame:
    sender: str
    rssi: Optional[int] = None
    id: Optional[int] = None
    heart_rate: Optional[float] = None
    spo2: Optional[int] = None
    respiration_rate: Optional[float] = None
    temperature: Optional[float] = None
    stress: Optional[float] = None
    motion_artifact: bool = False


Frame = Union[HandshakeFrame, VitalsFrame]

# wire key -> (attribute, converter)
_VITALS_FIELDS = {
    "rssi": ("rssi", int),
    "id": ("id", int),
    "hr": ("heart_rate", float),
    "oxy": ("spo2", int),
    "rr": ("respiration_rate", float),
    "temp": ("temperature", float),
    "stress": ("stress", float),
}


def _optional(value: Any, convert) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("boolean where a number was expected")
    return convert(value)


def _flag(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"expected a boolean flag, got {value!r}")


def frame_from_mapping(data: Dict[str, Any]) -> Optional[Frame]:
    """Classify a decoded JSON object; returns None for shapes we do not know."""
    if "device" in data and "mac" in data:
        channel = data.get("channel")
        return HandshakeFrame(
            device=str(data["device"]),
            mac=str(data["mac"]),
            paired_to=str(data["paired_to"]) if data.get("paired_to") else None,
            status=str(data["status"]) if data.get("status") is not None else None,
            channel=int(channel) if isinstance(channel, (int, float)) and not isinstance(channel, bool) else None,
        )
    if "sender" in data:
        values: Dict[str, Any] = {}
        for key, (attr, convert) in _VITALS_FIELDS.items():
            values[attr] = _optional(data.get(key), convert)
        return VitalsFrame(
            sender=str(data["sender"]),
            motion_artifact=_flag(data.get("motion")),
            **values,
        )
    return None


def decode_line(line: Union[str, bytes]) -> Optional[Frame]:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="ignore")
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return frame_from_mapping(data)
    except (TypeError, ValueError):
        return None


def encode_vitals(frame: VitalsFrame) -> bytes:
    payload: Dict[str, Any] = {"sender": frame.sender}
    for key, (attr, _) in _VITALS_FIELDS.items():
        value = getattr(frame, attr)
        if value is not None:
            payload[key] = value
    payload["motion"] = frame.motion_artifact
    return (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")


def append_and_parse(
    buffer: bytes, chunk: bytes, limit: int = DEFAULT_BUFFER_LIMIT
) -> Tuple[bytes, List[Frame], Dict[str, int]]:
    """
    Append `chunk` to `buffer`, cut complete lines and decode them.

    Returns the remaining (unterminated) buffer, the decoded frames and a small
    counter dict (`lines`, `malformed`, `overflows`). When the remainder reaches
    `limit` bytes without a newline it is discarded.
    """
    data = bytearray(buffer)
    data.extend(chunk)
    frames: List[Frame] = []
    counts = {"lines": 0, "malformed": 0, "overflows": 0}
    while True:
        index = data.find(b"\n")
        if index < 0:
            break
        raw = bytes(data[:index])
        del data[: index + 1]
        line = raw.strip()
        if not line:
            continue
        counts["lines"] += 1
        frame = decode_line(line)
        if frame is None:
            counts["malformed"] += 1
            continue
        frames.append(frame)
    if len(data) >= limit:
        counts["overflows"] += 1
        data.clear()
    return bytes(data), frames, counts


class FrameParser:
    """
    Incremental newline/JSON frame parser owning one bounded buffer.

    One instance per connection; not thread-safe, feed it from the reader
    thread that owns the connection.
    """

    def __init__(self, limit: int = DEFAULT_BUFFER_LIMIT, name: str = ""):
        if limit <= 0:
            raise ValueError("buffer limit must be positive")
        self.limit = limit
        self.name = name
        self._buffer = b""
        self._stats: Dict[str, int] = {"frames": 0, "handshakes": 0, "malformed": 0, "overflows": 0}

    def feed(self, chunk: bytes) -> List[Frame]:
        if not chunk:
            return []
        self._buffer, frames, counts = append_and_parse(self._buffer, chunk, self.limit)
        self._stats["malformed"] += counts["malformed"]
        if counts["overflows"]:
            self._stats["overflows"] += counts["overflows"]
            logger.warning("Buffer overflow on %s (>= %d bytes without newline), clearing", self.name or "?", self.limit)
        for frame in frames:
            if isinstance(frame, HandshakeFrame):
                self._stats["handshakes"] += 1
            else:
                self._stats["frames"] += 1
        return frames

    def iter_frames(self, chunks: Iterable[bytes]) -> Iterator[Frame]:
        for chunk in chunks:
            yield from self.feed(chunk)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        self._buffer = b""


def iterate_binary_stream(handle: Any, chunk_size: int = 256) -> Iterator[bytes]:
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            break
        yield chunk
