"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

import argparse
import sys

from loguru import logger

from serialflash.transport import DEFAULT_BAUDRATE, open_transport


def int_arg(value: str) -> int:
    """argparse type accepting 0x/0o/0b prefixed integers"""
    return int(value, 0)


def add_transport_args(parser: argparse.ArgumentParser):
    """Add the arguments shared by every tool that talks to the bootloader"""
    parser.add_argument(
        "port",
        help="Serial port to the bootloader, or tcp://host:port for a network bridge",
    )
    parser.add_argument(
        "--baud", type=int, default=DEFAULT_BAUDRATE, help="Baud rate of the serial port"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-read deadline in seconds (default: wait forever)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Log every command sent"
    )


def setup(args: argparse.Namespace):
    """Configure logging from parsed arguments and open the transport"""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "INFO")
    return open_transport(args.port, args.baud, args.timeout)
