"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

from pathlib import Path
from typing import Union

from loguru import logger

from serialflash.program import Image


def load_bin(path: Union[str, Path], base: int) -> Image:
    """Load a raw binary to be programmed at `base`"""
    with open(path, "rb") as f:
        image = Image(base, f.read())
    logger.info(f"Loaded binary {path}: {image}")
    return image
