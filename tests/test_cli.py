from __future__ import annotations

import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from awearhost.cli import app, main

runner = CliRunner()

FAST = ["--set", "probe.settle_sec=0", "--set", "probe.timeout_sec=0.2", "--set", "probe.read_timeout_sec=0.02"]


def test_replay_prints_frames(tmp_path: Path) -> None:
    capture = tmp_path / "capture.log"
    capture.write_bytes(
        b'{"status":"Receiver Ready","device":"AWEAR_RECEIVER","channel":1,"mac":"08:92:72:85:83:78"}\n'
        b"not json\n"
        b'{"sender":"AA:BB:CC:DD:EE:FF","rssi":-55,"id":4,"hr":72.5,"oxy":98,"rr":16.2,"temp":36.6,"stress":30.1,"motion":false}\n'
    )
    result = runner.invoke(app, ["replay", "--in", str(capture)])
    assert result.exit_code == 0, result.output
    assert "[handshake] AWEAR_RECEIVER mac=08:92:72:85:83:78" in result.output
    assert "[vitals] AA:BB:CC:DD:EE:FF rssi=-55 id=4 hr=72.5" in result.output
    assert "frames=1 handshakes=1 malformed=1 overflows=0" in result.output


def test_replay_missing_file(tmp_path: Path) -> None:
    result = runner.invoke(app, ["replay", "--in", str(tmp_path / "nope.log")])
    assert result.exit_code != 0


def test_ports_lists_non_ignored(monkeypatch) -> None:
    class Info:
        def __init__(self, device):
            self.device = device

    monkeypatch.setattr(
        "awearhost.link.monitor.list_ports.comports", lambda: [Info("/dev/ttyUSB0"), Info("COM1")]
    )
    result = runner.invoke(app, ["ports"])
    assert result.exit_code == 0
    assert result.output.split() == ["/dev/ttyUSB0"]


def test_probe_reports_classification(fake_serial) -> None:
    fake_serial.add(
        "COM5", reply=b'{"device":"AWEAR_SENDER","mac":"AA:BB:CC:DD:EE:FF","paired_to":"08:92:72:85:83:78"}\n'
    )
    result = runner.invoke(app, ["probe", "COM5", *FAST])
    assert result.exit_code == 0, result.output
    assert "COM5: sender mac=AA:BB:CC:DD:EE:FF paired_to=08:92:72:85:83:78" in result.output
    assert not fake_serial.last("COM5").is_open


def test_probe_timeout_exit_code(fake_serial) -> None:
    fake_serial.add("COM7")
    result = runner.invoke(app, ["probe", "COM7", *FAST])
    assert result.exit_code == 1
    assert "ProbeTimeout" in result.output


def test_bad_override_is_rejected() -> None:
    result = runner.invoke(app, ["ports", "--set", "nonsense"])
    assert result.exit_code == 2


def test_console_entry_point_runs_app(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["awearhost", "--help"])
    with pytest.raises(SystemExit) as excinfo:
        main()
    assert excinfo.value.code == 0
    output = capsys.readouterr().out
    for command in ("run", "ports", "probe", "pair", "replay"):
        assert command in output
