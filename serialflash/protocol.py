"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

from dataclasses import dataclass, field
from enum import Enum
import struct
from typing import ClassVar, Optional
import zlib

from loguru import logger

# Maximum number of bytes drained from the transport while synchronising
SYNC_DRAIN_LEN = 4096

MARKER_LEN = 4


class Opcode(bytes, Enum):
    """Request opcodes, each a 4-byte ASCII tag"""

    SYNC = b"SYNC"
    READ = b"READ"
    CSUM = b"CSUM"
    CRC = b"CRCC"
    ERASE = b"ERAS"
    WRITE = b"WRIT"
    SEAL = b"SEAL"
    GO = b"GOGO"
    INFO = b"INFO"


class Response(bytes, Enum):
    """Response markers, each a 4-byte ASCII tag"""

    SYNC = b"PICO"
    SYNC_WOTA = b"WOTA"
    OK = b"OKOK"
    ERR = b"ERR!"


# rp2040_serial_bootloader answers PICO, picowota answers WOTA
SYNC_RESPONSES = (Response.SYNC, Response.SYNC_WOTA)


class ProtocolError(Exception):
    """Base class for failures talking to the bootloader"""

    pass


class ShortReadError(ProtocolError, OSError):
    """The transport closed (or its read deadline expired) mid-response"""

    pass


class ShortWriteError(ProtocolError):
    """The transport accepted fewer bytes than the request length"""

    pass


class NotSyncedError(ProtocolError):
    """The device did not answer a sync with a recognised marker"""

    pass


class DeviceError(ProtocolError):
    """The device answered with the error marker"""

    def __init__(self, command: str):
        super().__init__(f"{command}: device reported error")
        self.command = command


class UnexpectedResponseError(ProtocolError):
    """The response began with neither the OK nor the error marker"""

    def __init__(self, command: str, marker: bytes):
        super().__init__(f"{command}: unexpected response {marker!r}")
        self.command = command
        self.marker = marker


class CRCMismatchError(ProtocolError):
    """The device's CRC of the stored bytes differs from the sent payload"""

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"CRC mismatch: device 0x{received:08x} vs host 0x{expected:08x}"
        )
        self.expected = expected
        self.received = received


def crc32(data: bytes) -> int:
    """CRC-32 (IEEE) as computed by the device"""
    return zlib.crc32(data) & 0xFFFFFFFF


def calculate_checksum(data: bytes) -> int:
    """Replicate the device-side checksum

    The data is zero-padded to a multiple of 4 bytes and summed as little-endian
    32-bit words, wrapping at 32 bits.
    """
    padded = bytes(data) + b"\x00" * (-len(data) % 4)
    words = struct.unpack(f"<{len(padded) // 4}I", padded)
    return sum(words) & 0xFFFFFFFF


def _read(transport, size: int) -> bytes:
    data = transport.read(size)
    if not data:
        raise ShortReadError(f"stream closed with {size} bytes outstanding")
    return data


def send(transport, request: bytes):
    """Write a full request, failing if the transport takes less than all of it"""
    logger.debug(f"Sending {request[:MARKER_LEN]!r} ({len(request)} bytes)")
    n = transport.write(request)
    if n != len(request):
        raise ShortWriteError(f"unexpected write length: {n} != {len(request)}")


def read_response(transport, length: int, command: str = "command") -> bytes:
    """Read and validate a framed response

    :param transport: Byte stream to read from
    :param length: Total expected response length, including the marker
    :param command: Command name used in error messages

    :returns: The full response, marker included
    :raises DeviceError: The response starts with the error marker. This is
        raised as soon as the marker is seen, without waiting for `length`
    :raises UnexpectedResponseError: The response starts with any other marker
    :raises ShortReadError: The stream ended before the response was complete
    """
    # The marker may arrive split over several reads
    buf = b""
    while len(buf) < MARKER_LEN:
        buf += _read(transport, MARKER_LEN - len(buf))

    marker = buf[:MARKER_LEN]
    if marker == Response.ERR:
        raise DeviceError(command)
    if marker != Response.OK:
        raise UnexpectedResponseError(command, marker)

    while len(buf) < length:
        buf += _read(transport, length - len(buf))

    logger.debug(f"Got {command} response ({len(buf)} bytes)")
    return buf


class Command:
    """A single request/response exchange with the bootloader

    Subclasses define `OPCODE`, `pack()` for the request and `execute()`, which
    sends the request and fills in any decoded response fields.
    """

    OPCODE: ClassVar[Opcode]

    @property
    def name(self) -> str:
        return self.OPCODE.decode()

    def pack(self) -> bytes:
        return self.OPCODE.value

    def execute(self, transport):
        raise NotImplementedError


@dataclass
class SyncCommand(Command):
    """Synchronise with the bootloader

    The device may emit stale bytes before its sync marker, so the response is
    accepted if it ends with any recognised marker.
    """

    OPCODE: ClassVar[Opcode] = Opcode.SYNC

    def execute(self, transport):
        send(transport, self.pack())

        resp = b""
        while len(resp) < MARKER_LEN:
            resp += _read(transport, SYNC_DRAIN_LEN - len(resp))

        if not any(resp.endswith(r) for r in SYNC_RESPONSES):
            logger.debug(f"Sync response {resp[-MARKER_LEN:]!r} not recognised")
            raise NotSyncedError("not synced")


@dataclass(frozen=True)
class DeviceInfo:
    """Flash geometry reported by the device"""

    FORMAT: ClassVar[str] = "<5I"

    flash_base: int
    flash_size: int
    erase_unit: int
    write_unit: int
    max_chunk: int

    @classmethod
    def parse(cls, body: bytes) -> "DeviceInfo":
        """Unpack the five little-endian words following the OK marker"""
        return cls(*struct.unpack(cls.FORMAT, body))

    @property
    def flash_end(self) -> int:
        return self.flash_base + self.flash_size

    def __str__(self):
        return (
            f"flash 0x{self.flash_base:08x}-0x{self.flash_end:08x}, erase unit"
            f" {self.erase_unit}, write unit {self.write_unit}, max chunk"
            f" {self.max_chunk}"
        )


@dataclass
class InfoCommand(Command):
    """Query the device's flash geometry"""

    OPCODE: ClassVar[Opcode] = Opcode.INFO

    info: Optional[DeviceInfo] = None

    def execute(self, transport):
        send(transport, self.pack())
        resp = read_response(
            transport, MARKER_LEN + struct.calcsize(DeviceInfo.FORMAT), self.name
        )
        self.info = DeviceInfo.parse(resp[MARKER_LEN:])
        logger.debug(f"Device info: {self.info}")


@dataclass
class _RegionCommand(Command):
    """Commands whose request is opcode + address + length"""

    addr: int = 0
    length: int = 0

    def pack(self) -> bytes:
        return self.OPCODE.value + struct.pack("<II", self.addr, self.length)


@dataclass
class ReadCommand(_RegionCommand):
    OPCODE: ClassVar[Opcode] = Opcode.READ

    data: bytes = field(default=b"", repr=False)

    def execute(self, transport):
        send(transport, self.pack())
        resp = read_response(transport, MARKER_LEN + self.length, self.name)
        self.data = resp[MARKER_LEN:]


@dataclass
class ChecksumCommand(_RegionCommand):
    """Ask the device for the word-sum checksum of a region

    Compare against `calculate_checksum` over the same bytes.
    """

    OPCODE: ClassVar[Opcode] = Opcode.CSUM

    checksum: int = 0

    def execute(self, transport):
        send(transport, self.pack())
        resp = read_response(transport, MARKER_LEN + 4, self.name)
        (self.checksum,) = struct.unpack("<I", resp[MARKER_LEN:])


@dataclass
class CRCCommand(_RegionCommand):
    """Ask the device for the CRC-32 of a region"""

    OPCODE: ClassVar[Opcode] = Opcode.CRC

    crc: int = 0

    def execute(self, transport):
        send(transport, self.pack())
        resp = read_response(transport, MARKER_LEN + 4, self.name)
        (self.crc,) = struct.unpack("<I", resp[MARKER_LEN:])


@dataclass
class EraseCommand(_RegionCommand):
    """Erase a region. `length` should be a multiple of the erase unit"""

    OPCODE: ClassVar[Opcode] = Opcode.ERASE

    def execute(self, transport):
        send(transport, self.pack())
        read_response(transport, MARKER_LEN, self.name)


@dataclass
class WriteCommand(Command):
    """Write a payload to flash

    The device answers with the CRC-32 of what it stored, which must match the
    CRC-32 of `data`.
    """

    OPCODE: ClassVar[Opcode] = Opcode.WRITE

    addr: int = 0
    data: bytes = field(default=b"", repr=False)

    @property
    def length(self) -> int:
        return len(self.data)

    def pack(self) -> bytes:
        return (
            self.OPCODE.value + struct.pack("<II", self.addr, self.length) + self.data
        )

    def execute(self, transport):
        send(transport, self.pack())
        resp = read_response(transport, MARKER_LEN + 4, self.name)

        (received,) = struct.unpack("<I", resp[MARKER_LEN:])
        expected = crc32(self.data)
        if received != expected:
            raise CRCMismatchError(expected, received)


@dataclass
class SealCommand(Command):
    """Mark a written image as complete"""

    OPCODE: ClassVar[Opcode] = Opcode.SEAL

    addr: int = 0
    length: int = 0
    crc: int = 0

    @classmethod
    def for_image(cls, addr: int, data: bytes) -> "SealCommand":
        """Build a Seal covering `data` written at `addr`"""
        return cls(addr, len(data), crc32(data))

    def pack(self) -> bytes:
        return self.OPCODE.value + struct.pack(
            "<III", self.addr, self.length, self.crc
        )

    def execute(self, transport):
        send(transport, self.pack())
        read_response(transport, MARKER_LEN, self.name)


@dataclass
class GoCommand(Command):
    """Jump to `addr`. No response is read; the bootloader stops answering"""

    OPCODE: ClassVar[Opcode] = Opcode.GO

    addr: int = 0

    def pack(self) -> bytes:
        return self.OPCODE.value + struct.pack("<I", self.addr)

    def execute(self, transport):
        send(transport, self.pack())
