"""Transport modules for flipper_bridge."""

from .serial import SerialFrameReceiver, SerialFrameSender, SerialTransport
from .serial_stream import SerialStream, open_serial_stream
from .ble import (
    BleFrameReceiver,
    BleFrameSender,
    BleScanner,
    BleTransport,
    FlipperCharacteristics,
    RadioAdapter,
    list_adapters,
)

__all__ = [
    "SerialTransport",
    "SerialFrameSender",
    "SerialFrameReceiver",
    "SerialStream",
    "open_serial_stream",
    "BleScanner",
    "BleTransport",
    "BleFrameSender",
    "BleFrameReceiver",
    "FlipperCharacteristics",
    "RadioAdapter",
    "list_adapters",
]
