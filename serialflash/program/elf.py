"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Union

from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
from loguru import logger

from serialflash.program import Image

# RP2040 XIP flash window
FLASH_BASE = 0x10000000
FLASH_SIZE = 2 * 1024 * 1024

InFlashFunc = Callable[[int, int], bool]


class EmptyImageError(ValueError):
    """The ELF file has no sections in a flash-resident loadable segment"""

    pass


def default_in_flash(addr: int, size: int) -> bool:
    """Whether [addr, addr + size) lies within FLASH_BASE/FLASH_SIZE"""
    return addr >= FLASH_BASE and addr + size <= FLASH_BASE + FLASH_SIZE


@dataclass
class _Chunk:
    paddr: int
    data: bytes


def _in_segment(addr: int, size: int, segment) -> bool:
    return (
        addr >= segment["p_vaddr"]
        and addr + size <= segment["p_vaddr"] + segment["p_memsz"]
    )


def load_elf(path: Union[str, Path], in_flash: InFlashFunc = default_in_flash) -> Image:
    """Merge the flash-resident contents of an ELF file into one Image

    Sections rather than segments are copied, as segments may span alignment
    padding or memory with no file backing. Each section is placed at its
    load (physical) address, and gaps between sections are zero-filled.

    :param path: Path to the ELF file
    :param in_flash: Predicate taking (physical address, size) selecting which
        loadable segments are in flash

    :returns: Image based at the lowest section load address
    :raises EmptyImageError: No sections were found in flash
    """
    chunks = []
    with open(path, "rb") as f:
        elf = ELFFile(f)
        # Only allocated sections occupy memory on the target
        sections = [
            s
            for s in elf.iter_sections()
            if s["sh_size"] > 0 and s["sh_flags"] & SH_FLAGS.SHF_ALLOC
        ]

        for segment in elf.iter_segments():
            if segment["p_type"] != "PT_LOAD":
                continue
            if not in_flash(segment["p_paddr"], segment["p_memsz"]):
                continue

            for section in sections:
                if not _in_segment(section["sh_addr"], section["sh_size"], segment):
                    continue
                paddr = segment["p_paddr"] + (section["sh_addr"] - segment["p_vaddr"])
                logger.debug(
                    f"Section {section.name} 0x{section['sh_addr']:08x} -> load"
                    f" 0x{paddr:08x} ({section['sh_size']} bytes)"
                )
                chunks.append(_Chunk(paddr, section.data()))

    if not chunks:
        raise EmptyImageError(f"{path}: no loadable sections in flash")

    chunks.sort(key=lambda c: c.paddr)
    base = chunks[0].paddr
    end = max(c.paddr + len(c.data) for c in chunks)

    data = bytearray(end - base)
    for c in chunks:
        offset = c.paddr - base
        data[offset : offset + len(c.data)] = c.data

    image = Image(base, bytes(data))
    logger.info(f"Loaded ELF {path}: {image}")
    return image
