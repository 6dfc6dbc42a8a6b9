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
from queue import Queue
import threading

from elftools.common.exceptions import ELFError
from loguru import logger
from tqdm import tqdm

from serialflash.cli import add_transport_args, int_arg, setup
from serialflash.program import Image, ProgramError, program
from serialflash.program.binary import load_bin
from serialflash.program.elf import FLASH_BASE, EmptyImageError, load_elf
from serialflash.protocol import GoCommand, ProtocolError

ELF_MAGIC = b"\x7fELF"

# Bound on queued progress reports before the programmer waits for the bar
PROGRESS_QUEUE_LEN = 64


def render_progress(reports: Queue):
    """Draw one progress bar per stage until the None sentinel arrives

    If drawing fails the queue is still consumed up to the sentinel, so the
    programmer never blocks on a full queue.
    """
    bar = None
    stage = None
    try:
        while (report := reports.get()) is not None:
            if report.stage != stage:
                if bar is not None:
                    bar.close()
                stage = report.stage
                bar = tqdm(total=report.max, desc=stage)
            bar.total = report.max
            bar.n = report.progress
            bar.refresh()
    except Exception as e:
        logger.warning(f"Progress display failed: {e}")
        while reports.get() is not None:
            pass
    finally:
        if bar is not None:
            bar.close()


def load_image(path: Path, base) -> Image:
    """Load an ELF file, or a raw binary if `base` is given or it isn't ELF"""
    with open(path, "rb") as f:
        is_elf = f.read(len(ELF_MAGIC)) == ELF_MAGIC

    if is_elf and base is None:
        return load_elf(path)
    if is_elf:
        logger.warning(f"{path} is an ELF file but --base was given, loading it raw")
    return load_bin(path, FLASH_BASE if base is None else base)


def flash(transport, image: Image, go: bool = True):
    """Program `image` with a progress bar, then optionally jump to it"""
    reports = Queue(maxsize=PROGRESS_QUEUE_LEN)
    renderer = threading.Thread(target=render_progress, args=(reports,), daemon=True)
    renderer.start()
    try:
        program(transport, image, reports)
    finally:
        renderer.join()

    if go:
        logger.info(f"Jumping to 0x{image.base_address:08x}")
        GoCommand(image.base_address).execute(transport)


def main():
    parser = argparse.ArgumentParser(
        prog="serialflash.flash",
        description="Program an ELF or raw binary image through the bootloader",
    )
    parser.add_argument("image", type=Path, help="Path to the ELF or binary image")
    add_transport_args(parser)
    parser.add_argument(
        "--base",
        type=int_arg,
        default=None,
        help="Load the image as a raw binary at this address"
        f" (default for non-ELF files: 0x{FLASH_BASE:08x})",
    )
    parser.add_argument(
        "--no-go",
        dest="go",
        action="store_false",
        help="Don't jump to the new image after programming",
    )
    args = parser.parse_args()

    try:
        image = load_image(args.image, args.base)
    except (OSError, ELFError, EmptyImageError) as e:
        logger.error(f"Could not load image: {e}")
        exit(-1)

    try:
        with setup(args) as transport:
            flash(transport, image, args.go)
    except ProgramError as e:
        logger.error(f"Programming failed: {e}")
        exit(-1)
    except OSError as e:
        logger.error(f"Transport error: {e}")
        exit(-1)
    except (ProtocolError, ValueError) as e:
        logger.error(f"Could not talk to the bootloader: {e}")
        exit(-1)

    logger.success("Done")


if __name__ == "__main__":
    main()
