"""Flipper Zero RPC transport bridge.

A fully async library for exchanging Flipper Zero RPC frames over Serial or
BLE. Frames are length-prefixed with a varint; their payload is passed through
untouched.
"""

from .base import FrameReceiver, FrameSender, FrameTransport, TransportState
from .constants import MAX_FRAME_LENGTH
from .errors import (
    AdapterUnavailable,
    DataTooLarge,
    FlipperError,
    IOFailure,
    MalformedFrame,
    NoCharacteristics,
    OutOfBounds,
    RadioFailure,
    TransportNotReady,
    Unknown,
)
from .framing import FrameCodec, StreamPacketizer, decode_frame, encode_frame
from .shared import SharedConnection
from .transports import (
    BleFrameReceiver,
    BleFrameSender,
    BleScanner,
    BleTransport,
    SerialFrameReceiver,
    SerialFrameSender,
    SerialTransport,
)

__all__ = [
    # Transports
    "FrameTransport",
    "FrameSender",
    "FrameReceiver",
    "TransportState",
    "SerialTransport",
    "SerialFrameSender",
    "SerialFrameReceiver",
    "BleScanner",
    "BleTransport",
    "BleFrameSender",
    "BleFrameReceiver",
    "SharedConnection",
    # Framing
    "MAX_FRAME_LENGTH",
    "FrameCodec",
    "StreamPacketizer",
    "encode_frame",
    "decode_frame",
    # Errors
    "FlipperError",
    "AdapterUnavailable",
    "RadioFailure",
    "NoCharacteristics",
    "IOFailure",
    "DataTooLarge",
    "OutOfBounds",
    "MalformedFrame",
    "TransportNotReady",
    "Unknown",
]

__version__ = "0.1.0"
