"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

import argparse

from loguru import logger

from serialflash.cli import add_transport_args, setup
from serialflash.program import sync
from serialflash.protocol import InfoCommand, ProtocolError


def main():
    # Define and parse command line arguments
    parser = argparse.ArgumentParser(
        prog="serialflash.info",
        description="Synchronise with the bootloader and print its flash geometry",
    )
    add_transport_args(parser)
    args = parser.parse_args()

    try:
        with setup(args) as transport:
            sync(transport)
            cmd = InfoCommand()
            cmd.execute(transport)
    except (ProtocolError, OSError) as e:
        logger.error(f"Info failed: {e}")
        exit(-1)

    info = cmd.info
    logger.info(f"Flash base:  0x{info.flash_base:08x}")
    logger.info(f"Flash size:  0x{info.flash_size:x} ({info.flash_size} bytes)")
    logger.info(f"Erase unit:  {info.erase_unit}")
    logger.info(f"Write unit:  {info.write_unit}")
    logger.info(f"Max chunk:   {info.max_chunk}")


if __name__ == "__main__":
    main()
