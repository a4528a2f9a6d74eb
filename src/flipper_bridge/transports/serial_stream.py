"""Async byte stream over a pyserial port using asyncio.to_thread()."""

import asyncio
import logging
from typing import Optional, Tuple

import serial

from ..constants import FLIPPER_BAUD, SERIAL_READ_TIMEOUT
from ..shared import SharedConnection

logger = logging.getLogger("flipper_bridge.SerialStream")


def _discard_result(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


async def open_serial_stream(
    port: str, baudrate: int = FLIPPER_BAUD, timeout: float = SERIAL_READ_TIMEOUT
) -> "SerialStream":
    """Open ``port`` in a worker thread and wrap it in a SerialStream.

    Raises:
        serial.SerialException: If the port cannot be opened
    """
    def _open_serial():
        logger.debug(f"Opening serial port {port} at {baudrate} baud (timeout={timeout}s)")
        ser = serial.Serial(port, baudrate=baudrate, timeout=timeout)
        # Flipper's CLI only talks once a terminal has asserted DTR
        ser.dtr = True
        return ser

    ser = await asyncio.to_thread(_open_serial)
    logger.info(f"Serial port {port} opened")
    return SerialStream(ser)


class SerialStream:
    """Duplex byte stream on top of a blocking ``serial.Serial``.

    Reads and writes are serialized per direction only, so a read that is
    waiting for the device never holds up a write.

    A worker thread cannot be interrupted, so a cancelled ``read`` leaves its
    thread read pending; whatever it returns is handed to the next ``read``.
    """

    def __init__(self, ser: serial.Serial):
        self._serial = ser
        self._read_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._pending_read: Optional[asyncio.Future] = None
        self._rx_buffer = bytearray()

    @property
    def port(self) -> str:
        return self._serial.port

    async def read(self, size: int) -> bytes:
        """Wait until at least one byte arrives and return up to ``size`` bytes."""
        async with self._read_lock:
            while not self._rx_buffer:
                self._rx_buffer.extend(await self._next_chunk(size))
            data = bytes(self._rx_buffer[:size])
            del self._rx_buffer[:size]
            return data

    async def _next_chunk(self, size: int) -> bytes:
        if self._pending_read is None or self._pending_read.cancelled():
            # Each blocking read is bounded by the port timeout
            self._pending_read = asyncio.ensure_future(
                asyncio.to_thread(self._read_available, size)
            )
        pending = self._pending_read
        try:
            chunk = await asyncio.shield(pending)
        except asyncio.CancelledError:
            # Caller gave up; the thread read stays pending for the next read
            raise
        except BaseException:
            self._pending_read = None
            raise
        self._pending_read = None
        return chunk

    def _read_available(self, size: int) -> bytes:
        waiting = self._serial.in_waiting
        return self._serial.read(min(size, max(1, waiting)))

    async def write(self, data: bytes) -> int:
        async with self._write_lock:
            written = await asyncio.to_thread(self._serial.write, data)
        return len(data) if written is None else written

    async def flush(self) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._serial.flush)

    async def close(self) -> None:
        pending, self._pending_read = self._pending_read, None
        if pending is not None:
            # Nobody is left to await the thread read once the port is closed
            pending.add_done_callback(_discard_result)
        if self._serial.is_open:
            logger.debug(f"Closing serial port {self._serial.port}")
            await asyncio.to_thread(self._serial.close)

    def split(self) -> Tuple["SerialReadHalf", "SerialWriteHalf"]:
        """Split into read and write halves; the port closes once both are closed."""
        shared = SharedConnection(self, SerialStream.close, owners=2)
        return SerialReadHalf(shared), SerialWriteHalf(shared)


class SerialReadHalf:
    def __init__(self, shared: SharedConnection):
        self._shared = shared

    async def read(self, size: int) -> bytes:
        return await self._shared.resource.read(size)

    async def close(self) -> None:
        await self._shared.release()


class SerialWriteHalf:
    def __init__(self, shared: SharedConnection):
        self._shared = shared

    async def write(self, data: bytes) -> int:
        return await self._shared.resource.write(data)

    async def flush(self) -> None:
        await self._shared.resource.flush()

    async def close(self) -> None:
        await self._shared.release()
