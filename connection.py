"""TSIP serial connection: receive and decode packets from a serial port."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING

import serial

from tsip import PacketFramer, PacketID, Record, decode_packet, packet_id

if TYPE_CHECKING:
    from serial import Serial

# Thunderbolt-style receivers default to 9600 8-O-1
DEFAULT_BAUDRATE = 9600
DEFAULT_PARITY = serial.PARITY_ODD
DEFAULT_TIMEOUT = 2.0

# Largest single read from the port
READ_CHUNK = 300


class TsipConnection:
    """Serial connection with TSIP framing and decoding."""

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        parity: str = DEFAULT_PARITY,
        timeout: float = DEFAULT_TIMEOUT,
        packet_log: str | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self._serial: Serial = serial.Serial(
            port,
            baudrate=baudrate,
            bytesize=serial.EIGHTBITS,
            parity=parity,
            stopbits=serial.STOPBITS_ONE,
            timeout=min(0.1, timeout),
        )
        self._serial.reset_input_buffer()
        self._framer = PacketFramer()
        self._pending: deque[tuple[bytes, float]] = deque()
        self._packet_log: IO[str] | None = None
        if packet_log:
            self._packet_log = open(packet_log, "a")
        self._log = log

    def close(self) -> None:
        if self._packet_log:
            self._packet_log.close()
            self._packet_log = None
        self._serial.close()

    def __enter__(self) -> TsipConnection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    def _log_tsip_packet(self, data: bytes, ts: float, decoded: bool) -> None:
        """Log a TSIP packet to the packet log."""
        if not self._packet_log:
            return
        pkt_id = packet_id(data)
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
        entry = {
            "t": dt.strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z",
            "tag": "TSIP",
            "msg": pkt_id.name if pkt_id else "UNK",
            "bin": data.hex(),
            "decoded": decoded,
        }
        self._packet_log.write(json.dumps(entry) + "\n")
        self._packet_log.flush()

    def _next_packet(self, timeout: float) -> tuple[bytes, Record | None] | None:
        """Return the next framed packet and its decoded record.

        Every packet taken from the framer is written to the packet log.
        """
        start_time = time.monotonic()
        while not self._pending:
            if time.monotonic() - start_time >= timeout:
                return None
            chunk = self._serial.read(max(1, min(self._serial.in_waiting, READ_CHUNK)))
            if not chunk:
                continue
            ts = time.time()  # Timestamp when the chunk arrived
            for packet in self._framer.feed(chunk):
                self._pending.append((packet, ts))

        packet, ts = self._pending.popleft()
        record = decode_packet(packet)
        self._log_tsip_packet(packet, ts, decoded=record is not None)
        if self._log:
            pkt_id = packet_id(packet)
            name = pkt_id.name if pkt_id else "UNK"
            self._log.debug(f"RX {name} ({len(packet)} bytes)")
        return packet, record

    def read_packet(self, timeout: float | None = None) -> bytes | None:
        """Return the next complete framed packet, or None on timeout.

        Framing state is kept across reads, so packets split between reads
        are not lost.
        """
        result = self._next_packet(self.timeout if timeout is None else timeout)
        if result is None:
            return None
        return result[0]

    def receive(self, timeout: float | None = None) -> tuple[PacketID, Record] | None:
        """Receive the next decodable packet.

        Packets with unsupported IDs or bad lengths are skipped. Returns None
        if nothing decodable arrives within timeout.
        """
        if timeout is None:
            timeout = self.timeout

        start_time = time.monotonic()
        while True:
            remaining = timeout - (time.monotonic() - start_time)
            if remaining <= 0:
                return None
            result = self._next_packet(remaining)
            if result is None:
                return None

            packet, record = result
            pkt_id = packet_id(packet)
            if pkt_id is not None and record is not None:
                return pkt_id, record
