from __future__ import annotations

import pytest

from awearhost.link.frames import (
    DeviceType,
    FrameParser,
    HandshakeFrame,
    VitalsFrame,
    append_and_parse,
    decode_line,
    encode_vitals,
)

RECEIVER_LINE = b'{"status":"Receiver Ready","device":"AWEAR_RECEIVER","channel":1,"mac":"08:92:72:85:83:78"}\n'
VITALS_LINE = (
    b'{"sender":"AA:BB:CC:DD:EE:FF","rssi":-55,"id":4,"hr":72.5,"oxy":98,'
    b'"rr":16.2,"temp":36.6,"stress":30.1,"motion":false}\n'
)


def test_receiver_handshake_frame() -> None:
    parser = FrameParser()
    frames = parser.feed(RECEIVER_LINE)
    assert len(frames) == 1
    frame = frames[0]
    assert isinstance(frame, HandshakeFrame)
    assert frame.device_type is DeviceType.RECEIVER
    assert frame.mac == "08:92:72:85:83:78"
    assert frame.channel == 1
    assert frame.status == "Receiver Ready"


def test_vitals_frame_fields() -> None:
    parser = FrameParser()
    frames = parser.feed(VITALS_LINE)
    assert frames == [
        VitalsFrame(
            sender="AA:BB:CC:DD:EE:FF",
            rssi=-55,
            id=4,
            heart_rate=72.5,
            spo2=98,
            respiration_rate=16.2,
            temperature=36.6,
            stress=30.1,
            motion_artifact=False,
        )
    ]
    assert parser.stats()["frames"] == 1


def test_frames_split_across_chunks() -> None:
    parser = FrameParser()
    assert parser.feed(VITALS_LINE[:20]) == []
    assert parser.pending == 20
    frames = parser.feed(VITALS_LINE[20:] + RECEIVER_LINE)
    assert [type(frame) for frame in frames] == [VitalsFrame, HandshakeFrame]
    assert parser.pending == 0


def test_malformed_lines_are_dropped() -> None:
    parser = FrameParser()
    data = b"garbage\r\n\n  \n[1,2,3]\n{\"other\": 1}\n{broken\n" + VITALS_LINE
    frames = parser.feed(data)
    assert len(frames) == 1
    assert frames[0].sender == "AA:BB:CC:DD:EE:FF"
    assert parser.stats()["malformed"] == 4


def test_wrong_field_types_count_as_malformed() -> None:
    assert decode_line(b'{"sender":"AA:BB:CC:DD:EE:FF","hr":"fast"}') is None
    assert decode_line(b'{"sender":"AA:BB:CC:DD:EE:FF","rssi":true}') is None


@pytest.mark.parametrize("raw", ['"false"', '"true"', "2", "0.5", "[]"])
def test_motion_flag_must_be_boolean(raw: str) -> None:
    assert decode_line('{"sender":"AA:BB:CC:DD:EE:FF","motion":%s}' % raw) is None


def test_motion_flag_accepts_numeric_zero_and_one() -> None:
    assert decode_line('{"sender":"AA:BB:CC:DD:EE:FF","motion":1}').motion_artifact is True
    assert decode_line('{"sender":"AA:BB:CC:DD:EE:FF","motion":0}').motion_artifact is False


def test_missing_vitals_fields_decode_as_none() -> None:
    frame = decode_line('{"sender":"AA:BB:CC:DD:EE:FF","rssi":-70,"extra":"x"}')
    assert isinstance(frame, VitalsFrame)
    assert frame.rssi == -70
    assert frame.heart_rate is None
    assert frame.motion_artifact is False


def test_buffer_overflow_clears_without_error() -> None:
    parser = FrameParser(limit=64)
    assert parser.feed(b"x" * 64) == []
    assert parser.pending == 0
    assert parser.stats()["overflows"] == 1
    # next append starts fresh
    assert len(parser.feed(b'{"sender":"AA:BB:CC:DD:EE:FF"}\n')) == 1


def test_complete_lines_survive_overflowing_remainder() -> None:
    remaining, frames, counts = append_and_parse(b"", VITALS_LINE + b"y" * 200, limit=100)
    assert remaining == b""
    assert len(frames) == 1
    assert counts["overflows"] == 1


def test_below_limit_keeps_partial_line() -> None:
    remaining, frames, counts = append_and_parse(b'{"sen', b'der":', limit=100)
    assert remaining == b'{"sender":'
    assert frames == []
    assert counts == {"lines": 0, "malformed": 0, "overflows": 0}


def test_encode_decode_vitals() -> None:
    original = VitalsFrame(
        sender="AA:BB:CC:DD:EE:FF",
        rssi=-61,
        id=1234,
        heart_rate=88.25,
        spo2=97,
        respiration_rate=14.75,
        temperature=37.05,
        stress=12.5,
        motion_artifact=True,
    )
    decoded = decode_line(encode_vitals(original))
    assert isinstance(decoded, VitalsFrame)
    assert decoded.sender == original.sender
    assert decoded.rssi == original.rssi
    assert decoded.id == original.id
    assert decoded.spo2 == original.spo2
    assert decoded.motion_artifact is True
    assert decoded.heart_rate == pytest.approx(original.heart_rate)
    assert decoded.respiration_rate == pytest.approx(original.respiration_rate)
    assert decoded.temperature == pytest.approx(original.temperature)
    assert decoded.stress == pytest.approx(original.stress)


def test_invalid_limit() -> None:
    with pytest.raises(ValueError):
        FrameParser(limit=0)
