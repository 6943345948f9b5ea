"""Command line interface for the awearhost package."""
from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from .link.config import HostConfig, load_config
from .link.errors import PairingError, ProbeError
from .link.frames import FrameParser, HandshakeFrame, VitalsFrame, iterate_binary_stream
from .link.manager import DeviceManager
from .link.monitor import Blacklist, PortMonitor
from .link.pairing import PairingSuccess
from .link.probe import ProbeEngine
from .link.registry import DeviceRecord

logger = logging.getLogger(__name__)

app = typer.Typer(
    add_completion=False,
    help="AWEAR host serial link utilities.",
    context_settings={"help_option_names": ["-h", "--help"]},
)

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Optional JSON host config.")
SET_OPTION = typer.Option(None, "--set", help="Override config keys, e.g. --set probe.timeout_sec=3")
LOG_OPTION = typer.Option("INFO", "--log-level", help="Logging level (DEBUG, INFO, WARNING...).")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def _load(config_path: Optional[Path], override: Optional[List[str]]) -> HostConfig:
    try:
        return load_config(config_path, override or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--config/--set") from exc


def _format_device(record: DeviceRecord) -> str:
    paired = f" paired_to={record.paired_to_mac}" if record.paired_to_mac else ""
    return f"{record.port_name}: {record.type.value} mac={record.mac_address}{paired}"


def _format_vitals(frame: VitalsFrame) -> str:
    return (
        f"{frame.sender} rssi={frame.rssi} id={frame.id} hr={frame.heart_rate} spo2={frame.spo2} "
        f"rr={frame.respiration_rate} temp={frame.temperature} stress={frame.stress} "
        f"motion={frame.motion_artifact}"
    )


@app.command()
def run(
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    log_level: str = LOG_OPTION,
    vitals: bool = typer.Option(True, "--vitals/--no-vitals", help="Print decoded vitals frames."),
    sender: Optional[str] = typer.Option(None, "--sender", help="Only print vitals from this MAC."),
) -> None:
    """Scan for devices and stream their data until Ctrl+C."""

    _setup_logging(log_level)
    cfg = _load(config_path, override)
    manager = DeviceManager(cfg)

    def on_devices(snapshot: Tuple[DeviceRecord, ...]) -> None:
        if not snapshot:
            typer.echo("[devices] none")
        for record in snapshot:
            typer.echo(f"[devices] {_format_device(record)}")

    def on_pairing(success: Optional[PairingSuccess]) -> None:
        if success is not None:
            typer.echo(f"[pairing] success on {success.sender_port}")

    manager.registry.subscribe(on_devices)
    manager.pairing.signal.subscribe(on_pairing)
    if vitals:
        manager.bus.subscribe(lambda frame: typer.echo(f"[vitals] {_format_vitals(frame)}"), sender=sender)
    manager.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Stopping host (Ctrl+C)")
    finally:
        manager.stop()
        logger.info("Final stats: %s", manager.stats())


@app.command()
def ports(
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
) -> None:
    """List serial ports the manager would consider."""

    cfg = _load(config_path, override)
    monitor = PortMonitor(ignored=cfg.link.ignored_ports)
    found = sorted(monitor.available())
    if not found:
        typer.echo("No serial ports found")
        return
    for port in found:
        typer.echo(port)


@app.command()
def probe(
    port: str = typer.Argument(..., help="Serial device to identify."),
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    log_level: str = LOG_OPTION,
) -> None:
    """Send the identify command to one port and print the classification."""

    _setup_logging(log_level)
    cfg = _load(config_path, override)
    engine = ProbeEngine(cfg.serial, cfg.probe, Blacklist(), cfg.link.buffer_limit)
    try:
        result = engine.identify(port)
    except ProbeError as exc:
        typer.echo(f"{type(exc).__name__}: {exc}")
        raise typer.Exit(code=1) from exc
    try:
        paired = f" paired_to={result.paired_to}" if result.paired_to else ""
        typer.echo(f"{port}: {result.type.value} mac={result.mac}{paired}")
    finally:
        result.handle.close()


@app.command()
def pair(
    receiver_mac: Optional[str] = typer.Option(
        None, "--receiver-mac", help="Target receiver MAC (defaults to the connected receiver)."
    ),
    wait_sec: float = typer.Option(30.0, "--wait", help="Seconds to wait for the devices to appear."),
    ack_sec: float = typer.Option(10.0, "--ack-timeout", help="Seconds to wait for PAIRED_OK."),
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
    log_level: str = LOG_OPTION,
) -> None:
    """Pair the connected sender with a receiver."""

    _setup_logging(log_level)
    cfg = _load(config_path, override)
    with DeviceManager(cfg) as manager:
        deadline = time.monotonic() + wait_sec
        while time.monotonic() < deadline:
            if manager.registry.senders() and (receiver_mac or manager.registry.receiver()):
                break
            time.sleep(0.2)
        try:
            sender_port = manager.pair(receiver_mac)
        except PairingError as exc:
            typer.echo(f"Pairing failed: {exc}")
            raise typer.Exit(code=1) from exc
        if not manager.pairing.signal.wait(ack_sec):
            typer.echo(f"No PAIRED_OK from {sender_port} within {ack_sec:.0f}s")
            raise typer.Exit(code=1)
        typer.echo(f"Paired {sender_port}")


@app.command()
def replay(
    input_path: str = typer.Option("-", "--in", help="Captured serial log, '-' for stdin."),
    limit: Optional[int] = typer.Option(None, "--buffer-limit", help="Override the parser buffer cap."),
    config_path: Optional[Path] = CONFIG_OPTION,
    override: Optional[List[str]] = SET_OPTION,
) -> None:
    """Decode a captured byte stream and print the frames it contains."""

    cfg = _load(config_path, override)
    parser = FrameParser(limit or cfg.link.buffer_limit, name=input_path)
    if input_path == "-":
        frames = parser.iter_frames(iterate_binary_stream(sys.stdin.buffer))
        _print_frames(frames)
    else:
        path = Path(input_path)
        if not path.exists():
            raise typer.BadParameter(f"{path} does not exist", param_hint="--in")
        with path.open("rb") as handle:
            _print_frames(parser.iter_frames(iterate_binary_stream(handle)))
    stats = parser.stats()
    typer.echo(
        f"frames={stats['frames']} handshakes={stats['handshakes']} "
        f"malformed={stats['malformed']} overflows={stats['overflows']}"
    )


def _print_frames(frames) -> None:
    for frame in frames:
        if isinstance(frame, HandshakeFrame):
            typer.echo(f"[handshake] {frame.device} mac={frame.mac}")
        else:
            typer.echo(f"[vitals] {_format_vitals(frame)}")


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
