from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class SerialLine:
    baudrate: int = 921600
    bytesize: int = 8
    parity: str = "N"
    stopbits: int = 1


@dataclass
class ProbeSettings:
    settle_sec: float = 1.5
    timeout_sec: float = 1.5
    read_timeout_sec: float = 0.1
    max_workers: int = 8


@dataclass
class LinkRuntime:
    scan_interval_sec: float = 2.0
    buffer_limit: int = 20000
    read_chunk_size: int = 1024
    read_timeout_sec: float = 0.2
    release_grace_sec: float = 0.2
    release_handshake_lines: bool = True
    pairing_signal_sec: float = 3.0
    offline_after_sec: float = 10.0
    sender_offline_sec: float = 10.0
    stats_log_every: int = 50
    ignored_ports: List[str] = field(default_factory=lambda: ["COM1", "COM2"])
    blacklist_path: Optional[Path] = None


@dataclass
class HostConfig:
    serial: SerialLine = field(default_factory=SerialLine)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    link: LinkRuntime = field(default_factory=LinkRuntime)


_SECTIONS = {"serial", "probe", "link"}


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a JSON object")
    return data


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> HostConfig:
    """
    Build a HostConfig from an optional JSON file plus CLI-style overrides.

    Overrides use dotted `key=value` pairs, e.g.:
        ["probe.timeout_sec=3", "link.ignored_ports=[\"COM1\"]"]
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, value = _parse_override(override)
        _assign_nested(override_data, key, value)
    merged = _merge(data, override_data)
    unknown = set(merged) - _SECTIONS
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

    serial_data = merged.get("serial") or {}
    probe_data = merged.get("probe") or {}
    link_data = merged.get("link") or {}
    defaults = LinkRuntime()
    blacklist_path = link_data.get("blacklist_path")
    return HostConfig(
        serial=SerialLine(
            baudrate=int(serial_data.get("baudrate", 921600)),
            bytesize=int(serial_data.get("bytesize", 8)),
            parity=str(serial_data.get("parity", "N")).upper(),
            stopbits=int(serial_data.get("stopbits", 1)),
        ),
        probe=ProbeSettings(
            settle_sec=float(probe_data.get("settle_sec", 1.5)),
            timeout_sec=float(probe_data.get("timeout_sec", 1.5)),
            read_timeout_sec=float(probe_data.get("read_timeout_sec", 0.1)),
            max_workers=int(probe_data.get("max_workers", 8)),
        ),
        link=LinkRuntime(
            scan_interval_sec=float(link_data.get("scan_interval_sec", defaults.scan_interval_sec)),
            buffer_limit=int(link_data.get("buffer_limit", defaults.buffer_limit)),
            read_chunk_size=int(link_data.get("read_chunk_size", defaults.read_chunk_size)),
            read_timeout_sec=float(link_data.get("read_timeout_sec", defaults.read_timeout_sec)),
            release_grace_sec=float(link_data.get("release_grace_sec", defaults.release_grace_sec)),
            release_handshake_lines=bool(
                link_data.get("release_handshake_lines", defaults.release_handshake_lines)
            ),
            pairing_signal_sec=float(link_data.get("pairing_signal_sec", defaults.pairing_signal_sec)),
            offline_after_sec=float(link_data.get("offline_after_sec", defaults.offline_after_sec)),
            sender_offline_sec=float(link_data.get("sender_offline_sec", defaults.sender_offline_sec)),
            stats_log_every=int(link_data.get("stats_log_every", defaults.stats_log_every)),
            ignored_ports=[str(port) for port in link_data.get("ignored_ports", defaults.ignored_ports)],
            blacklist_path=Path(blacklist_path) if blacklist_path else None,
        ),
    )


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    return key, _coerce_value(raw_value.strip())


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if (raw.startswith("[") and raw.endswith("]")) or (raw.startswith("{") and raw.endswith("}")):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
