"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

from queue import Queue
import unittest
import zlib

from serialflash.program import (
    MAX_SYNC_ATTEMPTS,
    BoundsError,
    DeviceInfoError,
    Image,
    ProgramError,
    ProgressReport,
    align,
    program,
)
from serialflash.protocol import (
    CRCMismatchError,
    DeviceError,
    NotSyncedError,
    ShortReadError,
)
from tests.fakes import ScriptedTransport, SimulatedBootloader

FLASH_BASE = 0x10000000
FLASH_SIZE = 0x200000


def drain(reports: Queue) -> list:
    items = []
    while not reports.empty():
        items.append(reports.get_nowait())
    return items


class AlignTest(unittest.TestCase):
    def test_align(self):
        self.assertEqual(align(4097, 4096), 8192)
        self.assertEqual(align(4096, 4096), 4096)
        self.assertEqual(align(0, 256), 0)
        self.assertEqual(align(1, 1), 1)
        self.assertEqual(align(5000, 256), 5120)


class ImageTest(unittest.TestCase):
    def test_copies_caller_buffer(self):
        buf = bytearray(b"\x01\x02")
        image = Image(FLASH_BASE, buf)
        buf[0] = 0xFF
        self.assertEqual(image.data, b"\x01\x02")
        self.assertEqual(image.end_address, FLASH_BASE + 2)


class ProgramTest(unittest.TestCase):
    def setUp(self):
        self.device = SimulatedBootloader()

    def test_end_to_end(self):
        payload = bytes(i % 251 for i in range(5000))
        image = Image(FLASH_BASE, payload)

        program(self.device, image)

        padded = payload + b"\x00" * 120
        self.assertEqual(
            self.device.commands,
            [
                (b"SYNC",),
                (b"INFO",),
                (b"ERAS", FLASH_BASE, 4096),
                (b"ERAS", FLASH_BASE + 4096, 4096),
                (b"WRIT", FLASH_BASE, 2048),
                (b"WRIT", FLASH_BASE + 2048, 2048),
                (b"WRIT", FLASH_BASE + 4096, 1024),
                (b"SEAL", FLASH_BASE, 5120, zlib.crc32(padded)),
            ],
        )
        self.assertEqual(bytes(self.device.flash[:5120]), padded)
        # Image itself is left unpadded
        self.assertEqual(len(image.data), 5000)

    def test_progress_reports(self):
        reports = Queue()
        program(self.device, Image(FLASH_BASE, b"\xaa" * 5000), reports)
        items = drain(reports)

        self.assertIsNone(items[-1])
        self.assertEqual(items[0], ProgressReport("Synchronising", 0, MAX_SYNC_ATTEMPTS))
        self.assertEqual(
            [r for r in items if r is not None and r.stage == "Erasing"],
            [
                ProgressReport("Erasing", 0, 8192),
                ProgressReport("Erasing", 4096, 8192),
                ProgressReport("Erasing", 8192, 8192),
            ],
        )
        self.assertEqual(
            [r.progress for r in items if r is not None and r.stage == "Writing"],
            [0, 2048, 4096, 5120],
        )
        self.assertEqual(items[-2], ProgressReport("Finalising", 1, 1))

    def test_sentinel_sent_on_failure(self):
        self.device.fail.add(b"INFO")
        reports = Queue()
        with self.assertRaises(ProgramError):
            program(self.device, Image(FLASH_BASE, b"\x00"), reports)
        self.assertIsNone(drain(reports)[-1])

    def test_does_not_jump(self):
        program(self.device, Image(FLASH_BASE, b"\x00" * 16))
        self.assertNotIn(b"GOGO", self.device.opcodes())

    def test_sync_retries(self):
        self.device.sync_failures = 2
        program(self.device, Image(FLASH_BASE, b"\x00" * 16))
        self.assertEqual(self.device.opcodes()[:4], [b"SYNC"] * 3 + [b"INFO"])

    def test_sync_gives_up(self):
        self.device.sync_failures = MAX_SYNC_ATTEMPTS
        with self.assertRaises(ProgramError) as ctx:
            program(self.device, Image(FLASH_BASE, b"\x00" * 16))
        self.assertEqual(ctx.exception.stage, "sync")
        self.assertIsInstance(ctx.exception.__cause__, NotSyncedError)
        self.assertEqual(self.device.opcodes(), [b"SYNC"] * MAX_SYNC_ATTEMPTS)

    def test_sync_io_error_not_retried(self):
        t = ScriptedTransport()
        with self.assertRaises(ProgramError) as ctx:
            program(t, Image(FLASH_BASE, b"\x00" * 16))
        self.assertIsInstance(ctx.exception.__cause__, ShortReadError)
        self.assertEqual(t.written, b"SYNC")

    def test_image_past_flash_end(self):
        image = Image(FLASH_BASE + FLASH_SIZE - 4095, b"\x00" * 4096)
        with self.assertRaises(BoundsError) as ctx:
            program(self.device, image)
        self.assertEqual(
            ctx.exception.requested,
            (FLASH_BASE + FLASH_SIZE - 4095, FLASH_BASE + FLASH_SIZE + 1),
        )
        self.assertEqual(ctx.exception.available, (FLASH_BASE, FLASH_BASE + FLASH_SIZE))
        self.assertEqual(self.device.opcodes(), [b"SYNC", b"INFO"])

    def test_image_fits_exactly(self):
        program(self.device, Image(FLASH_BASE + FLASH_SIZE - 4096, b"\x00" * 4096))
        self.assertIn(b"SEAL", self.device.opcodes())

    def test_image_below_flash(self):
        with self.assertRaises(BoundsError):
            program(self.device, Image(FLASH_BASE - 256, b"\x00" * 16))
        self.assertNotIn(b"ERAS", self.device.opcodes())

    def test_padding_counts_towards_bounds(self):
        # 1 byte pads to a 256 byte write unit, which overruns the end
        with self.assertRaises(BoundsError):
            program(self.device, Image(FLASH_BASE + FLASH_SIZE - 1, b"\x00"))

    def test_write_crc_mismatch_aborts_before_seal(self):
        self.device.corrupt_writes = True
        with self.assertRaises(ProgramError) as ctx:
            program(self.device, Image(FLASH_BASE, b"\x55" * 5000))
        self.assertEqual(ctx.exception.stage, "write")
        self.assertIsInstance(ctx.exception.__cause__, CRCMismatchError)
        self.assertEqual(self.device.opcodes().count(b"WRIT"), 1)
        self.assertNotIn(b"SEAL", self.device.opcodes())

    def test_erase_device_error(self):
        self.device.fail.add(b"ERAS")
        with self.assertRaises(ProgramError) as ctx:
            program(self.device, Image(FLASH_BASE, b"\x00" * 16))
        self.assertEqual(ctx.exception.stage, "erase")
        self.assertIsInstance(ctx.exception.__cause__, DeviceError)
        self.assertNotIn(b"WRIT", self.device.opcodes())

    def test_seal_device_error(self):
        self.device.fail.add(b"SEAL")
        with self.assertRaises(ProgramError) as ctx:
            program(self.device, Image(FLASH_BASE, b"\x00" * 16))
        self.assertEqual(ctx.exception.stage, "seal")

    def test_rejects_non_power_of_two_units(self):
        device = SimulatedBootloader(erase_unit=3000)
        with self.assertRaises(DeviceInfoError):
            program(device, Image(FLASH_BASE, b"\x00" * 16))
        self.assertEqual(device.opcodes(), [b"SYNC", b"INFO"])

    def test_rejects_zero_max_chunk(self):
        device = SimulatedBootloader(max_chunk=0)
        with self.assertRaises(DeviceInfoError):
            program(device, Image(FLASH_BASE, b"\x00" * 16))


if __name__ == "__main__":
    unittest.main()
