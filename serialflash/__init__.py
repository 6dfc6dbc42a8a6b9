"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

__version__ = "0.1.0"
