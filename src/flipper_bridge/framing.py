"""Length-prefixed framing used on every Flipper RPC link.

Each frame on the wire is an unsigned LEB128 varint holding the body length,
immediately followed by the body bytes::

    +------------------+----------------------+
    |  header          |  body                |
    +------------------+----------------------+
    |  varint(length)  |  DATA ....           |
    +------------------+----------------------+

Bodies longer than MAX_FRAME_LENGTH are rejected on both sides.
"""

from collections import deque
from typing import Deque, Optional, Tuple

from .constants import MAX_FRAME_LENGTH, MAX_VARINT_LENGTH
from .errors import DataTooLarge, MalformedFrame


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must be unsigned")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(buf) -> Optional[Tuple[int, int]]:
    """Parse a varint from the head of ``buf``.

    Returns:
        ``(value, consumed)`` or None if the varint is not complete yet

    Raises:
        MalformedFrame: If more than MAX_VARINT_LENGTH continuation bytes arrive
    """
    value = 0
    shift = 0
    for index, byte in enumerate(buf):
        if index >= MAX_VARINT_LENGTH:
            raise MalformedFrame(f"length prefix longer than {MAX_VARINT_LENGTH} bytes")
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, index + 1
        shift += 7
    return None


class FrameCodec:
    """Stateful frame encoder/decoder.

    Encoding is pure. Decoding keeps one partial-frame buffer across calls, so
    a codec instance must belong to exactly one receive path.
    """

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet returned as a frame."""
        return len(self._buffer)

    def reset(self) -> None:
        """Drop buffered bytes, e.g. after a protocol violation."""
        self._buffer.clear()

    def encode(self, body: bytes) -> bytes:
        """Prefix ``body`` with its varint length.

        Raises:
            DataTooLarge: If body exceeds MAX_FRAME_LENGTH
        """
        if len(body) > MAX_FRAME_LENGTH:
            raise DataTooLarge(len(body))
        return encode_varint(len(body)) + bytes(body)

    def decode(self, chunk: bytes = b"") -> Optional[bytes]:
        """Buffer ``chunk`` and return the next complete frame body, if any.

        At most one frame is returned per call. Call again with an empty chunk
        to drain further frames that are already buffered.

        Raises:
            DataTooLarge: If the buffered header announces an oversized body.
                The buffer is left untouched and must be discarded.
            MalformedFrame: If the header never terminates
        """
        if chunk:
            self._buffer.extend(chunk)

        header = decode_varint(self._buffer)
        if header is None:
            return None

        length, consumed = header
        if length > MAX_FRAME_LENGTH:
            raise DataTooLarge(length)

        end = consumed + length
        if len(self._buffer) < end:
            return None

        body = bytes(self._buffer[consumed:end])
        del self._buffer[:end]
        return body


class StreamPacketizer:
    """Extract frames from a raw byte stream, keeping completed ones queued.

    Each ``feed`` may complete any number of frames; they are handed out in
    arrival order by ``next_frame``.
    """

    def __init__(self, codec: Optional[FrameCodec] = None):
        self.codec = codec if codec is not None else FrameCodec()
        self._ready: Deque[bytes] = deque()

    @property
    def ready(self) -> int:
        return len(self._ready)

    @property
    def pending(self) -> int:
        return self.codec.pending

    def feed(self, chunk: bytes) -> int:
        """Buffer ``chunk`` and queue every frame it completes.

        Returns:
            Number of frames ready to be taken
        """
        frame = self.codec.decode(chunk)
        while frame is not None:
            self._ready.append(frame)
            frame = self.codec.decode()
        return len(self._ready)

    def next_frame(self) -> Optional[bytes]:
        if self._ready:
            return self._ready.popleft()
        return None


def encode_frame(payload: bytes) -> bytes:
    return FrameCodec().encode(payload)


def decode_frame(message: bytes) -> bytes:
    header = decode_varint(message)
    if header is None:
        raise MalformedFrame("Frame too short")
    length, consumed = header
    if length > MAX_FRAME_LENGTH:
        raise DataTooLarge(length)
    payload = message[consumed:]
    if length != len(payload):
        raise MalformedFrame("Length mismatch")
    return bytes(payload)
