"""
Author: serialflash developers
Date: 2025

This source file is part of serialflash, a host-side client for programming
microcontroller flash through a command/response bootloader over a serial line
or TCP socket.

Copyright: Copyright (c) 2025 The serialflash developers
"""

import socket
from typing import Optional

from loguru import logger
from serial import serial_for_url

DEFAULT_BAUDRATE = 115200

TCP_PREFIX = "tcp://"


class SerialTransport:
    """Byte stream over a serial port

    Reads return whatever is already buffered (at least one byte), so a caller
    asking for more than the device has sent does not stall until the port
    timeout.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: Optional[float] = None,
        **serial_kwargs,
    ):
        """
        :param port: Serial port to the board, or a pyserial URL such as loop://
        :param baudrate: Baud rate of the serial interface
        :param timeout: Per-read deadline in seconds, None to block forever
        :param serial_kwargs: Args to pass to the serial interface construction
        """
        self.ser = serial_for_url(
            port, baudrate=baudrate, timeout=timeout, **serial_kwargs
        )
        self.ser.reset_input_buffer()

    def write(self, data: bytes) -> int:
        return self.ser.write(data)

    def read(self, size: int) -> bytes:
        return self.ser.read(max(1, min(size, self.ser.in_waiting)))

    def close(self):
        self.ser.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class SocketTransport:
    """Byte stream over a TCP connection, e.g. a network serial bridge"""

    def __init__(self, host: str, port: int, timeout: Optional[float] = None):
        """
        :param host: TCP host of the bootloader bridge
        :param port: TCP port of the bootloader bridge
        :param timeout: Per-read deadline in seconds, None to block forever
        """
        self.sock = socket.create_connection((host, port), timeout=timeout)

    def write(self, data: bytes) -> int:
        self.sock.sendall(data)
        return len(data)

    def read(self, size: int) -> bytes:
        try:
            return self.sock.recv(size)
        except socket.timeout:
            return b""

    def close(self):
        self.sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def open_transport(
    port: str, baudrate: int = DEFAULT_BAUDRATE, timeout: Optional[float] = None
):
    """Open a transport to the bootloader

    :param port: Serial port, or `tcp://host:port` for a TCP connection
    :param baudrate: Baud rate, ignored for TCP
    :param timeout: Per-read deadline in seconds, None to block forever
    """
    if port.startswith(TCP_PREFIX):
        host, _, tcp_port = port[len(TCP_PREFIX) :].rpartition(":")
        if not host:
            raise ValueError(f"Bad TCP address {port!r}, expected tcp://host:port")
        logger.info(f"Connecting to {host}:{tcp_port}")
        return SocketTransport(host, int(tcp_port), timeout)

    logger.info(f"Opening {port} at {baudrate} baud")
    return SerialTransport(port, baudrate, timeout)
