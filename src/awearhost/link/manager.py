from __future__ import annotations

import enum
import functools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional, Set

import serial

from .bus import PacketBus
from .config import HostConfig
from .connection import SerialConnection, TeardownEvent, TeardownReason
from .frames import UNKNOWN_MAC, FrameParser, HandshakeFrame
from .monitor import Blacklist, PortDiff, PortMonitor
from .pairing import PairingController
from .probe import ProbeEngine, ProbeResult, ProbeTicket
from .registry import DeviceRecord, DeviceRegistry
from .senders import SenderMonitor

logger = logging.getLogger(__name__)


class PortState(str, enum.Enum):
    UNSEEN = "unseen"
    PROBING = "probing"
    ACTIVE = "active"
    BLACKLISTED = "blacklisted"


class DeviceManager:
    """
    Host-side coordinator: scans ports, probes new ones and owns the lifecycle
    of every admitted connection.

    The scan loop never blocks on port I/O. Probes run on a thread pool and
    each batch is joined on its own thread before the results are applied.
    """

    def __init__(
        self,
        config: Optional[HostConfig] = None,
        *,
        registry: Optional[DeviceRegistry] = None,
        bus: Optional[PacketBus] = None,
        monitor: Optional[PortMonitor] = None,
        engine: Optional[ProbeEngine] = None,
        pairing: Optional[PairingController] = None,
        senders: Optional[SenderMonitor] = None,
        blacklist: Optional[Blacklist] = None,
    ):
        self.config = config or HostConfig()
        link = self.config.link
        self.blacklist = blacklist if blacklist is not None else Blacklist(link.blacklist_path)
        self.registry = registry if registry is not None else DeviceRegistry()
        self.bus = bus if bus is not None else PacketBus(stats_log_every=link.stats_log_every)
        self.monitor = monitor if monitor is not None else PortMonitor(ignored=link.ignored_ports)
        self.engine = engine if engine is not None else ProbeEngine(
            self.config.serial, self.config.probe, self.blacklist, link.buffer_limit
        )
        self.pairing = (
            pairing if pairing is not None else PairingController(self.registry, clear_after_sec=link.pairing_signal_sec)
        )
        self.senders = senders if senders is not None else SenderMonitor(link.sender_offline_sec)
        self.senders.attach(self.bus)

        self._lock = threading.Lock()
        self._probing: Dict[str, ProbeTicket] = {}
        self._closing: Set[str] = set()
        self._parsers: Dict[str, FrameParser] = {}
        self._batches: List[threading.Thread] = []
        self._executor = ThreadPoolExecutor(
            max_workers=max(self.config.probe.max_workers, 1), thread_name_prefix="probe"
        )
        self._stop_event = threading.Event()
        self._scan_thread: Optional[threading.Thread] = None

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self._scan_thread is not None:
            return
        self._scan_thread = threading.Thread(target=self._scan_loop, name="port-scan", daemon=True)
        self._scan_thread.start()
        logger.info("Device manager started (scan every %.1fs)", self.config.link.scan_interval_sec)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._scan_thread is not None:
            self._scan_thread.join(timeout)
            self._scan_thread = None
        with self._lock:
            tickets = list(self._probing.values())
            batches = list(self._batches)
        for ticket in tickets:
            ticket.cancel()
        for batch in batches:
            batch.join(timeout)
        self._executor.shutdown(wait=True)
        for port in self.registry.ports():
            self._teardown(TeardownEvent(port, TeardownReason.SHUTDOWN))
        self.senders.detach()
        self.pairing.signal.clear()
        logger.info("Device manager stopped")

    def __enter__(self) -> "DeviceManager":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _scan_loop(self) -> None:
        interval = max(self.config.link.scan_interval_sec, 0.05)
        while not self._stop_event.is_set():
            try:
                self.scan_once()
            except Exception:
                logger.exception("Port scan failed")
            self._stop_event.wait(interval)

    # -- scanning --------------------------------------------------------

    def scan_once(self) -> PortDiff:
        diff = self.monitor.scan()
        for port in sorted(diff.removed):
            self._handle_removed(port)
        self.senders.check()
        candidates = self._candidates()
        if candidates and not self._stop_event.is_set():
            self._launch_probes(candidates)
        return diff

    def wait_for_probes(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            batches = list(self._batches)
        for batch in batches:
            batch.join(timeout)

    def port_state(self, port: str) -> PortState:
        if port in self.registry:
            return PortState.ACTIVE
        with self._lock:
            if port in self._probing:
                return PortState.PROBING
        if port in self.blacklist:
            return PortState.BLACKLISTED
        return PortState.UNSEEN

    def _candidates(self) -> List[str]:
        available = self.monitor.snapshot()
        active = self.registry.ports()
        with self._lock:
            busy = set(self._probing) | self._closing
        return sorted(
            port for port in available if port not in active and port not in busy and port not in self.blacklist
        )

    def _handle_removed(self, port: str) -> None:
        with self._lock:
            ticket = self._probing.get(port)
        if ticket is not None:
            logger.info("Port %s vanished while probing, cancelling", port)
            ticket.cancel()
        if self.blacklist.discard_temporary(port):
            logger.debug("Cleared session skip for %s", port)
        if port in self.registry:
            self._teardown(TeardownEvent(port, TeardownReason.PORT_REMOVED))

    def _launch_probes(self, ports: List[str]) -> None:
        tickets: Dict[str, ProbeTicket] = {}
        with self._lock:
            for port in ports:
                tickets[port] = self._probing[port] = ProbeTicket(port)
        futures: Dict[str, Future] = {}
        for port, ticket in tickets.items():
            logger.debug("Probing %s", port)
            futures[port] = self._executor.submit(self.engine.probe, port, ticket)
        batch = threading.Thread(
            target=self._join_batch, args=(futures, tickets), name="probe-batch", daemon=True
        )
        with self._lock:
            self._batches = [thread for thread in self._batches if thread.is_alive()]
            self._batches.append(batch)
        batch.start()

    def _join_batch(self, futures: Dict[str, Future], tickets: Dict[str, ProbeTicket]) -> None:
        results: Dict[str, Optional[ProbeResult]] = {}
        for port, future in futures.items():
            try:
                results[port] = future.result()
            except Exception:
                logger.exception("Probe of %s crashed", port)
                results[port] = None
        for port, result in results.items():
            try:
                if result is not None:
                    self._apply_probe(port, tickets[port], result)
            finally:
                with self._lock:
                    if self._probing.get(port) is tickets[port]:
                        del self._probing[port]

    def _apply_probe(self, port: str, ticket: ProbeTicket, result: ProbeResult) -> None:
        if ticket.cancelled or self._stop_event.is_set() or port not in self.monitor.snapshot():
            logger.info("Discarding probe result for %s (port gone)", port)
            try:
                result.handle.close()
            except Exception:
                logger.debug("Error closing stale handle for %s", port, exc_info=True)
            return
        self._admit(result)

    # -- admission & teardown -------------------------------------------

    def _admit(self, result: ProbeResult) -> None:
        link = self.config.link
        port = result.port_name
        handle = result.handle
        try:
            handle.timeout = link.read_timeout_sec
            if link.release_handshake_lines:
                handle.dtr = False
                handle.rts = False
            handle.reset_input_buffer()
        except (serial.SerialException, OSError, ValueError) as exc:
            logger.warning("Could not prepare %s for streaming: %s", port, exc)
            try:
                handle.close()
            except Exception:
                logger.debug("Error closing %s", port, exc_info=True)
            return
        connection = SerialConnection(
            port, handle, chunk_size=link.read_chunk_size, release_grace_sec=link.release_grace_sec
        )
        parser = FrameParser(link.buffer_limit, name=port)
        record = DeviceRecord(
            port_name=port,
            type=result.type,
            mac_address=result.mac or UNKNOWN_MAC,
            paired_to_mac=result.paired_to,
            connection=connection,
        )
        # registered before the reader starts so no frame precedes admission
        self.registry.add(record)
        with self._lock:
            self._parsers[port] = parser
        logger.info("Connected %s on %s (mac=%s)", result.type.value, port, record.mac_address)
        connection.start(
            on_chunk=functools.partial(self._on_chunk, port, parser),
            on_teardown=self._teardown,
        )

    def _on_chunk(self, port: str, parser: FrameParser, chunk: bytes) -> None:
        record = self.registry.get(port)
        if record is None:
            return
        self.registry.touch(port)
        self.pairing.observe(port, chunk)
        for frame in parser.feed(chunk):
            if isinstance(frame, HandshakeFrame):
                self.registry.apply_handshake(port, frame)
            else:
                self.bus.publish(frame)

    def _teardown(self, event: TeardownEvent) -> None:
        with self._lock:
            if event.port in self._closing:
                return
            record = self.registry.get(event.port)
            if record is None:
                return
            self._closing.add(event.port)
        self._log_teardown(event)
        try:
            if record.connection is not None:
                record.connection.close()
        except Exception:
            logger.warning("Error during teardown of %s", event.port, exc_info=True)
        finally:
            self.registry.remove(event.port)
            self.pairing.forget(event.port)
            with self._lock:
                self._closing.discard(event.port)
                self._parsers.pop(event.port, None)
        logger.info("Disconnected %s", event.port)

    @staticmethod
    def _log_teardown(event: TeardownEvent) -> None:
        if event.reason is TeardownReason.STREAM_ERROR:
            logger.warning("Stream error on %s: %s", event.port, event.fault)
        elif event.reason is TeardownReason.UNPLUGGED:
            logger.info("Device unplugged from %s", event.port)
        elif event.reason is TeardownReason.SHUTDOWN:
            logger.debug("Closing %s for shutdown", event.port)
        else:
            logger.info("Closing %s (%s)", event.port, event.reason.value)

    # -- collaborator surface -------------------------------------------

    def pair(self, receiver_mac: Optional[str] = None) -> str:
        return self.pairing.pair_current(receiver_mac)

    def idle_ports(self) -> List[str]:
        """Active ports that have produced no bytes for `link.offline_after_sec`."""
        return self.registry.idle_ports(self.config.link.offline_after_sec)

    def stats(self) -> Dict[str, int]:
        totals: Dict[str, int] = {"frames": 0, "handshakes": 0, "malformed": 0, "overflows": 0}
        with self._lock:
            parsers = list(self._parsers.values())
        for parser in parsers:
            for key, value in parser.stats().items():
                totals[key] = totals.get(key, 0) + value
        totals.update(self.bus.stats())
        totals["devices"] = len(self.registry)
        totals["idle"] = len(self.idle_ports())
        totals["blacklisted"] = len(self.blacklist)
        return totals
