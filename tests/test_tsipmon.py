"""Tests for the tsipmon command line."""

import logging
import math
import struct

import pytest

from tsip import DLE, ETX, PKT_8F20, PKT_8FAB, PKT_8FAC
from tsipmon import LevelFormatter, main, parse_only_arg, replay


def stuff(payload: bytes) -> bytes:
    return payload.replace(bytes([DLE]), bytes([DLE, DLE]))


def frame(id: int, payload: bytes) -> bytes:
    return bytes([DLE, id]) + stuff(payload) + bytes([DLE, ETX])


UTC_PAYLOAD = struct.pack(
    ">BIHhBBBBBBH", 0xAB, 302400, 2345, 18, 0x03, 56, 34, 12, 17, 5, 2024
)
STATUS_PAYLOAD = struct.pack(
    ">BBBBIHHBBBBffIffddd8x",
    0xAC, 4, 0, 100, 0, 0, 0, 0, 0, 0, 0,
    1.0, 1.0, 0, 0.0, 30.0,
    math.radians(10.0), math.radians(20.0), 5.0,
)

CAPTURE = (
    b"\x03\xff"
    + frame(0x8F, UTC_PAYLOAD)
    + frame(0x99, b"\x01\x02")
    + frame(0x8F, STATUS_PAYLOAD)
    + frame(0x8F, UTC_PAYLOAD)
    + frame(0x8F, b"\xab")
)


class TestParseOnlyArg:
    def test_names(self) -> None:
        assert parse_only_arg("8F-AB,8F-AC") == {PKT_8FAB, PKT_8FAC}

    def test_case_and_spacing(self) -> None:
        assert parse_only_arg(" 8f-20 , 8fab ,") == {PKT_8F20, PKT_8FAB}

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown packet"):
            parse_only_arg("8F-AB,4A")


class TestLevelFormatter:
    def make_record(self, level: int) -> logging.LogRecord:
        return logging.LogRecord("tsipmon", level, __file__, 1, "hello", None, None)

    def test_info_plain(self) -> None:
        fmt = LevelFormatter("%(message)s")
        assert fmt.format(self.make_record(logging.INFO)) == "hello"

    def test_other_levels_prefixed(self) -> None:
        fmt = LevelFormatter("%(message)s")
        assert fmt.format(self.make_record(logging.WARNING)) == "warning: hello"
        assert fmt.format(self.make_record(logging.DEBUG)) == "debug: hello"


class TestReplay:
    def test_prints_decoded_records(self, capsys: pytest.CaptureFixture[str]) -> None:
        printed = replay(CAPTURE, None, None, logging.getLogger("tsipmon.test"))
        out = capsys.readouterr().out
        assert printed == 3
        assert out.count("8FAB:") == 2
        assert out.count("8FAC:") == 1

    def test_only_filter(self, capsys: pytest.CaptureFixture[str]) -> None:
        printed = replay(CAPTURE, {PKT_8FAC}, None, logging.getLogger("tsipmon.test"))
        out = capsys.readouterr().out
        assert printed == 1
        assert "8FAB:" not in out
        assert "RecvMode: Full Position (3D)" in out

    def test_count(self, capsys: pytest.CaptureFixture[str]) -> None:
        printed = replay(CAPTURE, None, 1, logging.getLogger("tsipmon.test"))
        assert printed == 1
        assert capsys.readouterr().out.count("8FAB:") == 1

    def test_nothing_decodable(self, capsys: pytest.CaptureFixture[str]) -> None:
        printed = replay(b"\x00\x01" + frame(0x99, b"\x01"), None, None, logging.getLogger("tsipmon.test"))
        assert printed == 0
        assert capsys.readouterr().out == ""

    @pytest.mark.parametrize("lat", [math.nan, math.inf, -math.inf])
    def test_non_finite_position(self, lat: float, capsys: pytest.CaptureFixture[str]) -> None:
        payload = bytearray(STATUS_PAYLOAD)
        struct.pack_into(">d", payload, 36, lat)
        data = frame(0x8F, bytes(payload)) + frame(0x8F, UTC_PAYLOAD)
        printed = replay(data, None, None, logging.getLogger("tsipmon.test"))
        out = capsys.readouterr().out
        assert printed == 2
        assert "Pos:  <Bad angle>   " in out
        assert " E   5.00 m" in out
        assert "8FAB:" in out


class TestMain:
    def test_replay_file(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        capture = tmp_path / "capture.bin"
        capture.write_bytes(CAPTURE)
        monkeypatch.setattr("sys.argv", ["tsipmon", "-f", str(capture), "--only", "8F-AB"])
        assert main() == 0
        captured = capsys.readouterr()
        assert captured.out.count("8FAB:") == 2
        assert "8FAC:" not in captured.out
        assert "2 records decoded" in captured.err

    def test_missing_file(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr("sys.argv", ["tsipmon", "-f", str(tmp_path / "missing.bin")])
        assert main() == 1
        assert "Error:" in capsys.readouterr().err

    def test_bad_only(self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
        monkeypatch.setattr("sys.argv", ["tsipmon", "-f", "x.bin", "--only", "99"])
        assert main() == 1
        assert "Unknown packet: 99" in capsys.readouterr().err

    def test_bad_count(self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
        monkeypatch.setattr("sys.argv", ["tsipmon", "-f", "x.bin", "-n", "0"])
        assert main() == 1
        assert "--count must be positive" in capsys.readouterr().err
