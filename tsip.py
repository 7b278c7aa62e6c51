"""TSIP protocol implementation: framing, byte extraction, packet dispatch, and record parsers."""

from __future__ import annotations

import logging
import math
import struct
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

log = logging.getLogger("tsip")

# Framing bytes
DLE = 0x10  # packet start, stuffing escape, first byte of the trailer
ETX = 0x03  # last byte of the trailer

# No legal packet is longer than this (leading DLE and stuffing removed)
MAX_TSIP_PKT_LEN = 300

# Packet IDs
ID_SUPERPACKET = 0x8F

# Superpacket sub-IDs
SUB_PRIMARY_FIX = 0x20
SUB_UTC_TIME = 0xAB
SUB_DISCIPLINE = 0xAC

# Fix info flags (8F-20 byte 27)
INFO_DGPS = 0x02
INFO_2D = 0x04
INFO_FILTERED = 0x10

# Semicircles to radians
SEMICIRCLE = math.pi / 2147483648.0  # pi / 2**31

SECONDS_PER_WEEK = 604800


class PacketID:
    """Packet identifier with optional superpacket sub-identifier."""

    def __init__(self, id: int, sub_id: int | None = None) -> None:
        self.id = id
        self.sub_id = sub_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PacketID):
            return NotImplemented
        return self.id == other.id and self.sub_id == other.sub_id

    def __hash__(self) -> int:
        return hash((self.id, self.sub_id))

    def __repr__(self) -> str:
        if self.sub_id is None:
            return f"PacketID(0x{self.id:02X})"
        return f"PacketID(0x{self.id:02X}, 0x{self.sub_id:02X})"

    @property
    def name(self) -> str:
        return PKT_NAMES.get(self, packet_id_str(self.id, self.sub_id))


def packet_id_str(id: int, sub_id: int | None = None) -> str:
    """Render an identifier pair as '8F-AB' or '4A'."""
    if sub_id is None:
        return f"{id:02X}"
    return f"{id:02X}-{sub_id:02X}"


PKT_8F20 = PacketID(ID_SUPERPACKET, SUB_PRIMARY_FIX)
PKT_8FAB = PacketID(ID_SUPERPACKET, SUB_UTC_TIME)
PKT_8FAC = PacketID(ID_SUPERPACKET, SUB_DISCIPLINE)


def _build_pkt_names() -> dict[PacketID, str]:
    """Build packet name lookup from PacketID constants."""
    names: dict[PacketID, str] = {}
    for name, obj in globals().items():
        if isinstance(obj, PacketID) and name.startswith("PKT_"):
            names[obj] = packet_id_str(obj.id, obj.sub_id)
    return names


PKT_NAMES: dict[PacketID, str] = _build_pkt_names()


# ============================================================================
# Byte Extraction
# ============================================================================

# All multi-byte TSIP fields are big-endian on the wire.


def get_short(buf: bytes, offset: int) -> int:
    return struct.unpack_from(">h", buf, offset)[0]


def get_ushort(buf: bytes, offset: int) -> int:
    return struct.unpack_from(">H", buf, offset)[0]


def get_long(buf: bytes, offset: int) -> int:
    return struct.unpack_from(">i", buf, offset)[0]


def get_ulong(buf: bytes, offset: int) -> int:
    return struct.unpack_from(">I", buf, offset)[0]


def get_single(buf: bytes, offset: int) -> float:
    return struct.unpack_from(">f", buf, offset)[0]


def get_double(buf: bytes, offset: int) -> float:
    return struct.unpack_from(">d", buf, offset)[0]


def get_sbyte(buf: bytes, offset: int) -> int:
    return struct.unpack_from(">b", buf, offset)[0]


# ============================================================================
# Framing
# ============================================================================


class _State(Enum):
    """Framer states."""

    SEEKING = 0  # looking for the DLE that opens a packet
    SAW_DLE = 1  # previous byte was a DLE inside an open packet
    IN_PAYLOAD = 2  # previous byte was ordinary packet data


class PacketFramer:
    """Recover complete, de-stuffed TSIP packets from a byte stream.

    Each emitted packet is the whole frame: leading DLE, packet ID, payload
    with stuffed DLEs collapsed, then DLE ETX. Bytes outside a packet, empty
    frames and frames that grow to MAX_TSIP_PKT_LEN without a terminator are
    dropped without error; the framer resynchronizes on the next DLE.

    State persists between feed() calls, so a packet split across two reads
    is still recovered. Use iter_packets() for one-shot decoding of a single
    buffer.
    """

    def __init__(self) -> None:
        self._state = _State.SEEKING
        self._buf = bytearray()

    def reset(self) -> None:
        """Drop any partial packet and go back to seeking a start byte."""
        self._state = _State.SEEKING
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        """Number of bytes buffered for the packet in progress."""
        return len(self._buf)

    def feed(self, data: Iterable[int]) -> Iterator[bytes]:
        """Consume data, yielding each complete packet as it is found.

        Bytes are consumed as the returned iterator advances.
        """
        for byte in data:
            if self._state is _State.SEEKING:
                if byte == DLE:
                    self._buf = bytearray((DLE,))
                    self._state = _State.SAW_DLE

            elif self._state is _State.SAW_DLE:
                # DLE ETX ends the packet; DLE DLE is a stuffed data byte;
                # DLE <id> right after the start is the packet ID.
                if byte == ETX:
                    if len(self._buf) > 1:
                        self._buf.extend((DLE, ETX))
                        packet = bytes(self._buf)
                        self.reset()
                        yield packet
                        continue
                    # Empty frame
                    self.reset()
                else:
                    self._buf.append(byte)
                    self._state = _State.IN_PAYLOAD

            else:
                if byte == DLE:
                    self._state = _State.SAW_DLE
                else:
                    self._buf.append(byte)

            if len(self._buf) >= MAX_TSIP_PKT_LEN:
                log.debug(f"Dropping unterminated packet after {len(self._buf)} bytes")
                self.reset()


def iter_packets(data: Iterable[int]) -> Iterator[bytes]:
    """Yield complete packets found in data.

    Every call starts from the seeking state, and a packet left incomplete at
    the end of data is discarded.
    """
    return PacketFramer().feed(data)


# ============================================================================
# Enums
# ============================================================================


class ReceiverMode(Enum):
    """Receiver operating mode reported in 8F-AC."""

    AUTOMATIC = "Automatic (2D/3D)"
    SINGLE_SATELLITE = "Single Satellite (Time)"
    UNKNOWN = "Unknown"
    HORIZONTAL = "Horizontal (2D)"
    FULL_POSITION = "Full Position (3D)"
    DGPS_REFERENCE = "DGPS Reference"
    CLOCK_HOLD = "Clock Hold (2D)"
    OVERDETERMINED_CLOCK = "Overdetermined Clock"


_RECEIVER_MODES = list(ReceiverMode)


def receiver_mode(raw: int) -> ReceiverMode:
    """Map a raw receiver mode byte to its label.

    The table is indexed modulo 7, as legacy TSIP monitors do, so raw 7
    reads as AUTOMATIC and OVERDETERMINED_CLOCK is never produced.
    """
    return _RECEIVER_MODES[raw % 7]


class Weekday(Enum):
    """Day of the GPS week; the week starts on Sunday."""

    SUN = 0
    MON = 1
    TUE = 2
    WED = 3
    THU = 4
    FRI = 5
    SAT = 6

    @property
    def label(self) -> str:
        return self.name.title()


def weekday(time_of_week: float) -> Weekday:
    """Day of week for a time of week in seconds, wrapping out-of-range values."""
    return Weekday(int(time_of_week // 86400) % 7)


# ============================================================================
# Formatting Helpers
# ============================================================================


def format_time_of_week(time_of_week: float) -> str:
    """Format seconds into the GPS week as 'Day HH:MM:SS.ss'."""
    if time_of_week == -1.0:
        return "<No time yet>"
    if time_of_week >= SECONDS_PER_WEEK or time_of_week < 0.0:
        return "<Bad time>"
    # Round-off guard for values just below a whole second
    if time_of_week < SECONDS_PER_WEEK - 0.1:
        time_of_week += 0.00000001
    second = math.fmod(time_of_week, 60.0)
    minute = int(math.fmod(time_of_week / 60.0, 60.0))
    hour = int(math.fmod(time_of_week / 3600.0, 24.0))
    day = weekday(time_of_week)
    return f"{day.label} {hour:02d}:{minute:02d}:{second:05.2f}"


def format_angle(angle_rad: float, pos: str, neg: str) -> str:
    """Format an angle in radians as degrees and decimal minutes with hemisphere."""
    if not math.isfinite(angle_rad):
        return "<Bad angle>"
    deg = abs(math.degrees(angle_rad))
    hemi = neg if angle_rad < 0.0 else pos
    return f"{int(deg)}:{math.fmod(deg, 1.0) * 60.0:09.6f} {hemi}"


def format_bits(value: int) -> str:
    """Format the low byte of value as 'dddd.dddd', most significant bit first."""
    bits = f"{value & 0xFF:08b}"
    return f"{bits[:4]}.{bits[4:]}"


# ============================================================================
# Record Dataclasses
# ============================================================================


@dataclass(frozen=True)
class SatelliteSlot:
    """One entry of the 8F-20 satellite table."""

    prn: int
    iode: int


@dataclass(frozen=True)
class PrimaryFix:
    """8F-20: last fix with position, velocity, and time."""

    week: int
    time_of_fix: float  # seconds into the GPS week
    vel_east: float  # m/s
    vel_north: float  # m/s
    vel_up: float  # m/s
    latitude: float  # radians
    longitude: float  # radians, [-pi, pi]
    altitude: float  # meters HAE
    info: int
    datum_index: int  # >0 datum number, 0 unknown, <0 WGS-84
    num_svs: int
    utc_offset: int  # GPS-UTC seconds
    satellites: tuple[SatelliteSlot, ...]

    @property
    def differential(self) -> bool:
        return bool(self.info & INFO_DGPS)

    @property
    def fix_2d(self) -> bool:
        return bool(self.info & INFO_2D)

    @property
    def filtered(self) -> bool:
        return bool(self.info & INFO_FILTERED)

    @property
    def fix_type(self) -> str:
        parts = []
        if self.differential:
            parts.append("Diff")
        parts.append("2D" if self.fix_2d else "3D")
        if self.filtered:
            parts.append("-Filtrd")
        return "".join(parts)

    @property
    def datum(self) -> str:
        if self.datum_index > 0:
            return f"Datum {self.datum_index}"
        if self.datum_index == 0:
            return "Unknown"
        return "WGS-84"

    @property
    def tracked_satellites(self) -> tuple[SatelliteSlot, ...]:
        """Slots in use, bounded by the reported satellite count."""
        return self.satellites[: self.num_svs]

    @property
    def latitude_deg(self) -> float:
        return math.degrees(self.latitude)

    @property
    def longitude_deg(self) -> float:
        return math.degrees(self.longitude)

    def format(self) -> str:
        tracked = self.tracked_satellites
        prns = " ".join(f"{sv.prn:02d}" for sv in tracked)
        iodes = " ".join(f"{sv.iode & 0xFF:02X}" for sv in tracked)
        return "\n".join(
            [
                f"Fix at: {self.week:04d}:{format_time_of_week(self.time_of_fix)} GPS "
                f"(=UTC{self.utc_offset:+d}s)  FixType: {self.fix_type}",
                f"   Pos: {format_angle(self.latitude, 'N', 'S')}  "
                f"{format_angle(self.longitude, 'E', 'W')}  "
                f"{self.altitude:.2f} m HAE ({self.datum})",
                f"   Vel: {self.vel_east:9.3f} E  {self.vel_north:9.3f} N  "
                f"{self.vel_up:9.3f} U  (m/sec)",
                f"   SVs: {prns}  (IODEs: {iodes})",
            ]
        )


@dataclass(frozen=True)
class UtcTime:
    """8F-AB: primary timing packet."""

    time_of_week: int  # seconds
    week: int
    utc_offset: int  # GPS-UTC seconds
    timing_flags: int
    second: int
    minute: int
    hour: int
    day: int
    month: int
    year: int

    @property
    def utc_time(self) -> bool:
        """Time of week and calendar fields are UTC rather than GPS time."""
        return bool(self.timing_flags & 0x01)

    @property
    def utc_pps(self) -> bool:
        """PPS is aligned to UTC rather than GPS time."""
        return bool(self.timing_flags & 0x02)

    @property
    def time_set(self) -> bool:
        return not self.timing_flags & 0x04

    @property
    def have_utc_info(self) -> bool:
        return not self.timing_flags & 0x08

    @property
    def time_from_user(self) -> bool:
        return bool(self.timing_flags & 0x10)

    @property
    def flag_bits(self) -> str:
        return f"{self.timing_flags & 0x1F:08b}"

    @property
    def flag_labels(self) -> list[str]:
        labels = [
            "UTC time" if self.utc_time else "GPS time",
            "UTC PPS" if self.utc_pps else "GPS PPS",
        ]
        if not self.time_set:
            labels.append("time not set")
        if not self.have_utc_info:
            labels.append("no UTC info")
        if self.time_from_user:
            labels.append("time from user")
        return labels

    def format(self) -> str:
        return "\n".join(
            [
                f"8FAB: TOW: {self.time_of_week:06d}  WN: {self.week:04d}",
                f"      {self.year:04d}/{self.month:02d}/{self.day:02d}  "
                f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}",
                f"      UTC Offset: {self.utc_offset} s   Timing flag: {self.flag_bits} "
                f"({', '.join(self.flag_labels)})",
            ]
        )


@dataclass(frozen=True)
class DisciplineStatus:
    """8F-AC: supplemental timing packet (clock discipline and health)."""

    receiver_mode: ReceiverMode
    disciplining_mode: int
    self_survey_progress: int  # percent
    holdover_duration: int  # seconds
    critical_alarms: int
    minor_alarms: int
    gps_decoding_status: int
    disciplining_activity: int
    spare_status1: int
    spare_status2: int
    pps_quality: float  # ns
    freq_quality: float  # ppb, 10 MHz output
    dac_value: int
    dac_voltage: float  # V
    temperature: float  # deg C
    latitude: float  # radians
    longitude: float  # radians
    altitude: float  # meters

    @property
    def disciplining_mode_str(self) -> str:
        modes = {
            0: "Normal",
            1: "Power-Up",
            2: "Auto Holdover",
            3: "Manual Holdover",
            4: "Recovery",
            6: "Disabled",
        }
        return modes.get(self.disciplining_mode, f"Unknown ({self.disciplining_mode})")

    @property
    def gps_decoding_status_str(self) -> str:
        statuses = {
            0x00: "Doing fixes",
            0x01: "Don't have GPS time",
            0x03: "PDOP is too high",
            0x08: "No usable sats",
            0x09: "Only 1 usable sat",
            0x0A: "Only 2 usable sats",
            0x0B: "Only 3 usable sats",
            0x0C: "The chosen sat is unusable",
            0x10: "TRAIM rejected the fix",
        }
        return statuses.get(
            self.gps_decoding_status, f"Unknown ({self.gps_decoding_status})"
        )

    @property
    def disciplining_activity_str(self) -> str:
        activities = {
            0: "Phase locking",
            1: "Oscillator warm-up",
            2: "Frequency locking",
            3: "Placing PPS",
            4: "Initializing loop filter",
            5: "Compensating OCXO",
            6: "Inactive",
            8: "Recovery mode",
            9: "Calibration/control voltage",
        }
        return activities.get(
            self.disciplining_activity, f"Unknown ({self.disciplining_activity})"
        )

    @property
    def latitude_deg(self) -> float:
        return math.degrees(self.latitude)

    @property
    def longitude_deg(self) -> float:
        return math.degrees(self.longitude)

    def format(self) -> str:
        return "\n".join(
            [
                f"8FAC: RecvMode: {self.receiver_mode.value}   "
                f"DiscMode: {self.disciplining_mode} ({self.disciplining_mode_str})   "
                f"SelfSurv: {self.self_survey_progress}   "
                f"Holdover: {self.holdover_duration} s",
                f"      Crit: {format_bits(self.critical_alarms)}   "
                f"Minr: {format_bits(self.minor_alarms)}",
                f"      GPS Status: {self.gps_decoding_status} ({self.gps_decoding_status_str})   "
                f"Discpln Act: {self.disciplining_activity} ({self.disciplining_activity_str})   "
                f"Spare Status: {self.spare_status1} {self.spare_status2}",
                f"      Qual:  PPS: {self.pps_quality:.1f} ns   "
                f"Freq: {self.freq_quality:.3f} PPB",
                f"      DAC:  Value: {self.dac_value}   Voltage: {self.dac_voltage:f}   "
                f"Temp: {self.temperature:f} deg C",
                f"      Pos:  {format_angle(self.latitude, 'N', 'S')}   "
                f"{format_angle(self.longitude, 'E', 'W')}   {self.altitude:.2f} m",
            ]
        )


Record = PrimaryFix | UtcTime | DisciplineStatus


# ============================================================================
# Payload Parsers
# ============================================================================

# Payloads start at the sub-packet ID, so offsets match the TSIP reference.


def parse_8f20(payload: bytes) -> PrimaryFix | None:
    """Parse 8F-20 payload (56 bytes for 8 satellites, 64 bytes for 12)."""
    if len(payload) == 56:
        max_svs = 8
    elif len(payload) == 64:
        max_svs = 12
    else:
        return None

    vel_scale = 0.020 if payload[24] & 1 else 0.005

    longitude = get_ulong(payload, 16) * SEMICIRCLE
    if longitude > math.pi:
        longitude -= 2.0 * math.pi

    satellites = []
    for i in range(max_svs):
        raw = payload[32 + 2 * i]
        prn = raw & 0x3F
        # Upper two bits of the PRN byte extend the IODE
        iode = payload[33 + 2 * i] + 4 * (raw - prn)
        satellites.append(SatelliteSlot(prn=prn, iode=iode))

    return PrimaryFix(
        week=get_short(payload, 30),
        time_of_fix=get_ulong(payload, 8) * 0.001,
        vel_east=get_short(payload, 2) * vel_scale,
        vel_north=get_short(payload, 4) * vel_scale,
        vel_up=get_short(payload, 6) * vel_scale,
        latitude=get_long(payload, 12) * SEMICIRCLE,
        longitude=longitude,
        altitude=get_long(payload, 20) * 0.001,
        info=payload[27],
        datum_index=get_sbyte(payload, 26) - 1,
        num_svs=payload[28],
        utc_offset=get_sbyte(payload, 29),
        satellites=tuple(satellites),
    )


def parse_8fab(payload: bytes) -> UtcTime | None:
    """Parse 8F-AB payload (17 bytes)."""
    if len(payload) != 17:
        return None
    return UtcTime(
        time_of_week=get_ulong(payload, 1),
        week=get_ushort(payload, 5),
        utc_offset=get_short(payload, 7),
        timing_flags=payload[9],
        second=payload[10],
        minute=payload[11],
        hour=payload[12],
        day=payload[13],
        month=payload[14],
        year=get_ushort(payload, 15),
    )


def parse_8fac(payload: bytes) -> DisciplineStatus | None:
    """Parse 8F-AC payload (68 bytes)."""
    if len(payload) != 68:
        return None
    return DisciplineStatus(
        receiver_mode=receiver_mode(payload[1]),
        disciplining_mode=payload[2],
        self_survey_progress=payload[3],
        holdover_duration=get_ulong(payload, 4),
        critical_alarms=get_ushort(payload, 8),
        minor_alarms=get_ushort(payload, 10),
        gps_decoding_status=payload[12],
        disciplining_activity=payload[13],
        spare_status1=payload[14],
        spare_status2=payload[15],
        pps_quality=get_single(payload, 16),
        freq_quality=get_single(payload, 20),
        dac_value=get_ulong(payload, 24),
        dac_voltage=get_single(payload, 28),
        temperature=get_single(payload, 32),
        latitude=get_double(payload, 36),
        longitude=get_double(payload, 44),
        altitude=get_double(payload, 52),
    )


# ============================================================================
# Dispatch
# ============================================================================

DECODERS: dict[PacketID, Callable[[bytes], Record | None]] = {
    PKT_8F20: parse_8f20,
    PKT_8FAB: parse_8fab,
    PKT_8FAC: parse_8fac,
}


def _is_frame(packet: bytes) -> bool:
    return (
        len(packet) >= 4
        and packet[0] == DLE
        and packet[-2] == DLE
        and packet[-1] == ETX
    )


def packet_payload(packet: bytes) -> bytes:
    """Return the data between the packet ID and the DLE ETX trailer."""
    return packet[2:-2]


def packet_id(packet: bytes) -> PacketID | None:
    """Identify a framed packet, or None if it isn't a frame."""
    if not _is_frame(packet):
        return None
    id = packet[1]
    if id != ID_SUPERPACKET:
        return PacketID(id)
    payload = packet_payload(packet)
    if not payload:
        return None
    return PacketID(id, payload[0])


def decode_packet(packet: bytes) -> Record | None:
    """Decode a framed packet from the framer.

    Returns None for unsupported packet IDs and for payloads of the wrong size.
    """
    pkt_id = packet_id(packet)
    if pkt_id is None:
        return None
    decoder = DECODERS.get(pkt_id)
    if decoder is None:
        return None
    record = decoder(packet_payload(packet))
    if record is None:
        log.debug(f"Dropping {pkt_id.name}: bad length {len(packet_payload(packet))}")
    return record


def decode_stream(data: Iterable[int]) -> Iterator[Record]:
    """Yield every record decodable from a single buffer."""
    for packet in iter_packets(data):
        record = decode_packet(packet)
        if record is not None:
            yield record
