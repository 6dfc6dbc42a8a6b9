"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

import argparse
from pathlib import Path

from loguru import logger
from tqdm import trange

from serialflash.cli import add_transport_args, int_arg, setup
from serialflash.program import sync
from serialflash.protocol import (
    ChecksumCommand,
    CRCCommand,
    InfoCommand,
    ProtocolError,
    ReadCommand,
    calculate_checksum,
    crc32,
)


def read_region(transport, addr: int, length: int, chunk: int) -> bytes:
    """Read `length` bytes from `addr` using reads of at most `chunk` bytes"""
    data = b""
    for start in trange(0, length, chunk, desc="Reading"):
        cmd = ReadCommand(addr + start, min(chunk, length - start))
        cmd.execute(transport)
        data += cmd.data
    return data


def verify_region(transport, addr: int, data: bytes) -> bool:
    """Check `data` against the device's checksum and CRC of the same region

    :returns: True if both match
    """
    csum = ChecksumCommand(addr, len(data))
    csum.execute(transport)
    crc = CRCCommand(addr, len(data))
    crc.execute(transport)

    ok = True
    if csum.checksum != calculate_checksum(data):
        logger.error(
            f"Checksum mismatch: device 0x{csum.checksum:08x} vs host"
            f" 0x{calculate_checksum(data):08x}"
        )
        ok = False
    if crc.crc != crc32(data):
        logger.error(f"CRC mismatch: device 0x{crc.crc:08x} vs host 0x{crc32(data):08x}")
        ok = False
    return ok


def dump(transport, addr: int, length: int, outfile: Path) -> bool:
    """Read and verify a region, writing it to `outfile` only if it verifies

    :returns: True if the region verified and was written
    """
    sync(transport)
    info = InfoCommand()
    info.execute(transport)
    data = read_region(transport, addr, length, info.info.max_chunk)
    if not verify_region(transport, addr, data):
        return False

    outfile.write_bytes(data)
    logger.success(f"Wrote {len(data)} bytes to {outfile}")
    return True


def main():
    parser = argparse.ArgumentParser(
        prog="serialflash.dump",
        description="Read a region of flash to a file and verify it",
    )
    parser.add_argument("address", type=int_arg, help="Start address of the region")
    parser.add_argument("length", type=int_arg, help="Length of the region in bytes")
    parser.add_argument("outfile", type=Path, help="Path to write the region to")
    add_transport_args(parser)
    args = parser.parse_args()

    try:
        with setup(args) as transport:
            ok = dump(transport, args.address, args.length, args.outfile)
    except (ProtocolError, OSError, ValueError) as e:
        logger.error(f"Dump failed: {e}")
        exit(-1)

    if not ok:
        logger.error(f"Region failed verification, {args.outfile} not written")
        exit(-1)


if __name__ == "__main__":
    main()
