"""Serial (USB CDC) transport for Flipper Zero."""

from typing import Optional, Tuple

from ..base import FrameReceiver, FrameSender, FrameTransport, TransportState
from ..constants import (
    FLIPPER_BAUD,
    PATTERN_WINDOW,
    PROMPT_PATTERN,
    RPC_START_COMMAND,
    RPC_START_ECHO,
    SERIAL_READ_CHUNK,
    SERIAL_READ_TIMEOUT,
)
from ..errors import IOFailure
from ..framing import FrameCodec, StreamPacketizer
from .serial_stream import open_serial_stream


async def _read_chunk(stream, logger) -> bytes:
    try:
        chunk = await stream.read(SERIAL_READ_CHUNK)
    except OSError as e:
        raise IOFailure(str(e)) from e
    logger.debug(f"Serial Read - {chunk.hex(' ')}")
    return chunk


async def write_all(stream, data: bytes, logger) -> None:
    """Write every byte of ``data``, looping over partial writes, then flush."""
    logger.debug(f"Serial Write - {data.hex(' ')}")
    pos = 0
    try:
        while pos < len(data):
            pos += await stream.write(data[pos:])
        await stream.flush()
    except OSError as e:
        raise IOFailure(str(e)) from e


async def drain_until_pattern(stream, pattern: bytes, logger) -> bytes:
    """Read and discard shell output until ``pattern`` shows up.

    Only the last PATTERN_WINDOW bytes are kept between reads. The window is
    searched together with each new chunk, so patterns split across reads are
    found.

    Returns:
        Bytes that followed the pattern in the same read
    """
    # TODO: Implement timeout (callers can wrap init() in asyncio.wait_for meanwhile)
    window = b""
    while True:
        data = window + await _read_chunk(stream, logger)
        index = data.find(pattern)
        if index >= 0:
            return data[index + len(pattern):]
        window = data[-PATTERN_WINDOW:]


async def receive_frame(stream, packetizer: StreamPacketizer, logger) -> bytes:
    frame = packetizer.next_frame()
    while frame is None:
        packetizer.feed(await _read_chunk(stream, logger))
        frame = packetizer.next_frame()
    return frame


async def send_frame(stream, codec: FrameCodec, data: bytes, logger) -> None:
    await write_all(stream, codec.encode(data), logger)


class SerialTransport(FrameTransport):
    """Serial transport for Flipper Zero.

    ``init`` waits for the CLI prompt, switches the device into RPC mode with
    ``start_rpc_session`` and waits for the echo. From then on every byte on
    the link is framed.
    """

    def __init__(
        self,
        tty: str,
        baudrate: int = FLIPPER_BAUD,
        *,
        read_timeout: float = SERIAL_READ_TIMEOUT,
        opener=open_serial_stream,
    ):
        """Create SerialTransport for a tty path.

        Args:
            tty: Serial device, for example "/dev/ttyACM0" or "COM1"
            baudrate: Line speed
            read_timeout: Upper bound of a single blocking port read in seconds
            opener: Coroutine function ``(tty, baudrate, timeout)`` returning the byte stream
        """
        super().__init__()
        self.tty = tty
        self.baudrate = baudrate
        self.read_timeout = read_timeout
        self._opener = opener
        self._stream = None
        self._packetizer = StreamPacketizer()

    async def init(self) -> None:
        if self.state is TransportState.READY:
            return
        self._ensure_initializable()

        self.state = TransportState.HANDSHAKING
        try:
            self._stream = await self._opener(self.tty, self.baudrate, self.read_timeout)
        except OSError as e:
            self.state = TransportState.UNINITIALIZED
            raise IOFailure(f"Cannot open {self.tty}: {e}") from e

        try:
            await drain_until_pattern(self._stream, PROMPT_PATTERN, self.logger)
            self.logger.debug("FZShell detected. Running start_rpc_session")

            await write_all(self._stream, RPC_START_COMMAND, self.logger)
            leftover = await drain_until_pattern(self._stream, RPC_START_ECHO, self.logger)
            self.logger.debug("Got command response")

            if leftover:
                self._packetizer.feed(leftover)
        except BaseException:
            await self._abort()
            raise

        self.state = TransportState.READY
        self.logger.info(f"SerialTransport ready on {self.tty}")

    async def _abort(self) -> None:
        stream, self._stream = self._stream, None
        self.state = TransportState.UNINITIALIZED
        if stream is not None:
            await stream.close()

    async def read_frame(self) -> bytes:
        self._ensure_ready()
        return await receive_frame(self._stream, self._packetizer, self.logger)

    async def write_frame(self, data: bytes) -> None:
        self._ensure_ready()
        await send_frame(self._stream, self._packetizer.codec, data, self.logger)

    def split(self) -> Tuple["SerialFrameReceiver", "SerialFrameSender"]:
        """Split into receiver and sender halves. The transport is consumed.

        The receiver keeps any bytes already buffered by this transport.
        """
        self._ensure_ready()
        reader, writer = self._stream.split()
        receiver = SerialFrameReceiver(reader, self._packetizer)
        sender = SerialFrameSender(writer, FrameCodec())
        self._stream = None
        self.state = TransportState.SPLIT
        self.logger.debug("Serial stream split into receiver and sender")
        return receiver, sender

    async def close(self) -> None:
        if self._stream is not None:
            await self._stream.close()
            self._stream = None
            self.state = TransportState.CLOSED
            self.logger.info("SerialTransport disconnected")


class SerialFrameSender(FrameSender):
    def __init__(self, writer, codec: Optional[FrameCodec] = None):
        super().__init__()
        self._writer = writer
        self._codec = codec if codec is not None else FrameCodec()
        self._closed = False

    async def write_frame(self, data: bytes) -> None:
        await send_frame(self._writer, self._codec, data, self.logger)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._writer.close()


class SerialFrameReceiver(FrameReceiver):
    def __init__(self, reader, packetizer: Optional[StreamPacketizer] = None):
        super().__init__()
        self._reader = reader
        self._packetizer = packetizer if packetizer is not None else StreamPacketizer()
        self._closed = False

    async def read_frame(self) -> bytes:
        return await receive_frame(self._reader, self._packetizer, self.logger)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._reader.close()
