"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

from dataclasses import dataclass, field
from queue import Queue
from typing import Optional

from loguru import logger

from serialflash.protocol import (
    DeviceInfo,
    EraseCommand,
    InfoCommand,
    NotSyncedError,
    SealCommand,
    SyncCommand,
    WriteCommand,
)

MAX_SYNC_ATTEMPTS = 5


@dataclass(frozen=True)
class Image:
    """Firmware payload and the flash address its first byte belongs at"""

    base_address: int
    data: bytes = field(repr=False)

    def __post_init__(self):
        # Take a private immutable copy of the caller's buffer
        object.__setattr__(self, "data", bytes(self.data))

    @property
    def end_address(self) -> int:
        return self.base_address + len(self.data)

    def __str__(self):
        return f"{len(self.data)} bytes at 0x{self.base_address:08x}"


@dataclass(frozen=True)
class ProgressReport:
    stage: str
    progress: int
    max: int


class ProgramError(Exception):
    """Programming failed at `stage`. The cause is chained as __cause__"""

    def __init__(self, stage: str, msg):
        super().__init__(f"{stage}: {msg}")
        self.stage = stage


class BoundsError(ProgramError):
    """The image does not fit in the device's flash"""

    def __init__(self, msg: str, requested: tuple[int, int], available: tuple[int, int]):
        super().__init__("bounds", msg)
        self.requested = requested
        self.available = available


class DeviceInfoError(ProgramError):
    """The device reported a geometry the alignment arithmetic cannot use"""

    def __init__(self, msg: str):
        super().__init__("info", msg)


def report_progress(
    reports: Optional[Queue], stage: str, progress: int, maximum: int
):
    """Send a progress report, doing nothing if there is no consumer"""
    if reports is None:
        return
    reports.put(ProgressReport(stage, progress, maximum))


def align(value: int, to: int) -> int:
    """Round `value` up to a multiple of `to`, which must be a power of two"""
    return (value + (to - 1)) & ~(to - 1)


def is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def sync(transport, reports: Optional[Queue] = None):
    """Synchronise with the bootloader, retrying up to MAX_SYNC_ATTEMPTS times

    Only NotSyncedError is retried; any other failure is raised immediately.

    :raises NotSyncedError: No attempt succeeded
    """
    for attempt in range(MAX_SYNC_ATTEMPTS):
        report_progress(reports, "Synchronising", attempt, MAX_SYNC_ATTEMPTS)
        try:
            SyncCommand().execute(transport)
        except NotSyncedError:
            report_progress(reports, "Synchronising", attempt + 1, MAX_SYNC_ATTEMPTS)
            logger.warning(f"Sync attempt {attempt + 1}/{MAX_SYNC_ATTEMPTS} failed")
            if attempt + 1 == MAX_SYNC_ATTEMPTS:
                raise
            continue
        report_progress(reports, "Synchronising", attempt + 1, MAX_SYNC_ATTEMPTS)
        logger.info("Synchronised with bootloader")
        return


def query_info(transport) -> DeviceInfo:
    """Issue Info and check the geometry is usable"""
    cmd = InfoCommand()
    cmd.execute(transport)
    info = cmd.info

    for name in ("erase_unit", "write_unit"):
        value = getattr(info, name)
        if not is_power_of_two(value):
            raise DeviceInfoError(f"{name} {value} is not a power of two")
    if info.max_chunk == 0:
        raise DeviceInfoError("max_chunk is zero")

    return info


def check_bounds(image: Image, length: int, info: DeviceInfo):
    """Reject an image whose padded extent leaves the device's flash"""
    requested = (image.base_address, image.base_address + length)
    available = (info.flash_base, info.flash_end)

    if image.base_address < info.flash_base:
        raise BoundsError(
            f"image load address too low: 0x{image.base_address:08x} <"
            f" 0x{info.flash_base:08x}",
            requested,
            available,
        )
    if requested[1] > available[1]:
        raise BoundsError(
            f"image of {length} bytes doesn't fit in flash at"
            f" 0x{image.base_address:08x} (0x{requested[0]:08x}-0x{requested[1]:08x}"
            f" outside 0x{available[0]:08x}-0x{available[1]:08x})",
            requested,
            available,
        )


def program(transport, image: Image, reports: Optional[Queue] = None):
    """Erase, write and seal `image` into the device's flash

    Go is not issued; jumping to the new firmware is up to the caller.

    :param transport: Byte stream to the bootloader
    :param image: Image to program
    :param reports: Optional queue receiving ProgressReports. None is put on
        the queue when programming finishes, successfully or not

    :raises ProgramError: Programming failed. The failing stage is in `.stage`
        and the underlying error is chained
    """
    try:
        _program(transport, image, reports)
    finally:
        if reports is not None:
            reports.put(None)


def _program(transport, image: Image, reports: Optional[Queue]):
    try:
        sync(transport, reports)
    except Exception as e:
        raise ProgramError("sync", e) from e

    report_progress(reports, "Querying device info", 0, 1)
    try:
        info = query_info(transport)
    except DeviceInfoError:
        raise
    except Exception as e:
        raise ProgramError("info", e) from e
    report_progress(reports, "Querying device info", 1, 1)
    logger.info(f"Device {info}")

    # Pad the length only; the caller's image is never modified
    padded_len = align(len(image.data), info.write_unit)
    data = image.data + b"\x00" * (padded_len - len(image.data))

    check_bounds(image, padded_len, info)

    # The protocol allows for larger erasures, but erasing one unit at a time
    # keeps each command short enough that transports don't time out
    erase_len = align(padded_len, info.erase_unit)
    logger.info(f"Erasing {erase_len} bytes at 0x{image.base_address:08x}")
    report_progress(reports, "Erasing", 0, erase_len)
    for start in range(0, erase_len, info.erase_unit):
        try:
            EraseCommand(image.base_address + start, info.erase_unit).execute(transport)
        except Exception as e:
            raise ProgramError("erase", e) from e
        report_progress(reports, "Erasing", start + info.erase_unit, erase_len)

    logger.info(f"Writing {padded_len} bytes in chunks of up to {info.max_chunk}")
    report_progress(reports, "Writing", 0, padded_len)
    for start in range(0, padded_len, info.max_chunk):
        end = min(start + info.max_chunk, padded_len)
        try:
            WriteCommand(image.base_address + start, data[start:end]).execute(transport)
        except Exception as e:
            raise ProgramError("write", e) from e
        report_progress(reports, "Writing", end, padded_len)

    report_progress(reports, "Finalising", 0, 1)
    seal = SealCommand.for_image(image.base_address, data)
    try:
        seal.execute(transport)
    except Exception as e:
        raise ProgramError("seal", e) from e
    report_progress(reports, "Finalising", 1, 1)

    logger.success(f"Programmed {padded_len} bytes, CRC 0x{seal.crc:08x}")
