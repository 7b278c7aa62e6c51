#!/usr/bin/env python3
"""TSIP GPS receiver monitor: decode and print 8F-20, 8F-AB and 8F-AC packets."""

from __future__ import annotations

import argparse
import logging
import sys

import serial

from connection import DEFAULT_BAUDRATE, TsipConnection
from tsip import PKT_NAMES, PacketID, Record, decode_packet, iter_packets, packet_id

PARITIES = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
}


class LevelFormatter(logging.Formatter):
    """Plain message for INFO, 'level: message' for everything else."""

    def format(self, record: logging.LogRecord) -> str:
        msg = super().format(record)
        if record.levelno == logging.INFO:
            return msg
        return f"{record.levelname.lower()}: {msg}"


def setup_logging(debug: bool, quiet: bool) -> logging.Logger:
    """Send tool and protocol logging to stderr; returns the tool logger."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LevelFormatter("%(message)s"))

    log = logging.getLogger("tsipmon")
    if debug:
        log.setLevel(logging.DEBUG)
    elif quiet:
        log.setLevel(logging.WARNING)
    else:
        log.setLevel(logging.INFO)
    log.handlers = [handler]
    log.propagate = False

    # Protocol logger for lower layers (WARNING level normally, DEBUG if --debug)
    tsip_log = logging.getLogger("tsip")
    tsip_log.setLevel(logging.DEBUG if debug else logging.WARNING)
    tsip_log.handlers = [handler]
    tsip_log.propagate = False

    return log


def parse_only_arg(only_str: str) -> set[PacketID]:
    """Parse --only argument into the set of packets to print.

    Args:
        only_str: Comma-separated packet names (e.g., "8F-AB,8F-AC")
    """
    lookup = {name: pkt for pkt, name in PKT_NAMES.items()}
    selected: set[PacketID] = set()

    for item in only_str.split(","):
        item = item.strip().upper()
        if not item:
            continue
        # Accept 8FAB as well as 8F-AB
        if "-" not in item and len(item) == 4:
            item = f"{item[:2]}-{item[2:]}"
        pkt = lookup.get(item)
        if pkt is None:
            raise ValueError(f"Unknown packet: {item}")
        selected.add(pkt)

    return selected


def print_record(record: Record) -> None:
    print(record.format())
    print()


def replay(data: bytes, only: set[PacketID] | None, count: int | None, log: logging.Logger) -> int:
    """Decode a captured byte stream and print its records.

    Returns the number of records printed.
    """
    printed = 0
    for packet in iter_packets(data):
        pkt_id = packet_id(packet)
        record = decode_packet(packet)
        name = pkt_id.name if pkt_id else "UNK"
        log.debug(f"RX {name} ({len(packet)} bytes)")
        if pkt_id is None or record is None:
            continue
        if only and pkt_id not in only:
            continue
        print_record(record)
        printed += 1
        if count is not None and printed >= count:
            break
    return printed


def monitor(
    conn: TsipConnection, only: set[PacketID] | None, count: int | None, log: logging.Logger
) -> int:
    """Print records from a live receiver until count is reached or interrupted.

    Returns the number of records printed.
    """
    printed = 0
    try:
        while count is None or printed < count:
            result = conn.receive()
            if result is None:
                log.warning(f"no TSIP packets from {conn.port} in {conn.timeout:g} s")
                continue
            pkt_id, record = result
            if only and pkt_id not in only:
                continue
            print_record(record)
            printed += 1
    except KeyboardInterrupt:
        pass
    return printed


def main() -> int:
    """Main entry point for tsipmon CLI."""
    parser = argparse.ArgumentParser(
        description="TSIP GPS receiver monitor",
        prog="tsipmon",
    )

    parser.add_argument(
        "-d", "--device", default="/dev/ttyS0", help="Serial device (default: /dev/ttyS0)"
    )
    parser.add_argument(
        "-s",
        "--speed",
        type=int,
        default=DEFAULT_BAUDRATE,
        help=f"Baud rate (default: {DEFAULT_BAUDRATE})",
    )
    parser.add_argument(
        "--parity",
        choices=sorted(PARITIES),
        default="O",
        help="Serial parity (default: O)",
    )
    parser.add_argument(
        "-f",
        "--file",
        type=str,
        metavar="PATH",
        help="Decode a binary capture file instead of reading the device",
    )
    parser.add_argument(
        "-n",
        "--count",
        type=int,
        metavar="N",
        help="Stop after printing N records",
    )
    parser.add_argument(
        "--only",
        type=str,
        metavar="PKTS",
        help="Comma-separated packets to print (8F-20,8F-AB,8F-AC)",
    )
    parser.add_argument(
        "-l", "--packet-log", type=str, metavar="PATH", help="Log all packets to JSONL file"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress info messages (only show warnings and errors)",
    )

    args = parser.parse_args()
    log = setup_logging(args.debug, args.quiet)

    if args.count is not None and args.count <= 0:
        print("Error: --count must be positive", file=sys.stderr)
        return 1

    only = None
    if args.only:
        try:
            only = parse_only_arg(args.only)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.file:
        try:
            with open(args.file, "rb") as f:
                data = f.read()
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        printed = replay(data, only, args.count, log)
        log.info(f"{printed} records decoded from {args.file}")
        return 0

    try:
        with TsipConnection(
            args.device,
            baudrate=args.speed,
            parity=PARITIES[args.parity],
            packet_log=args.packet_log,
            log=log,
        ) as conn:
            printed = monitor(conn, only, args.count, log)
    except serial.SerialException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    log.info(f"{printed} records decoded")
    return 0


if __name__ == "__main__":
    sys.exit(main())
