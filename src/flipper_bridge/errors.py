"""Exception hierarchy for Flipper transports."""

from typing import Optional


class FlipperError(Exception):
    """Base class for every error raised by flipper_bridge."""


class AdapterUnavailable(FlipperError):
    """Raised when no BLE adapter can be used."""

    def __init__(self, cause: str = "Adapter does not exist."):
        self.cause = cause
        super().__init__(f"Failed to fetch adapter list: {cause}")


class RadioFailure(FlipperError):
    """Raised for BLE failures that are not plain I/O (connect, scan, subscribe)."""

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(f"Generic BT error: {cause}")


class NoCharacteristics(FlipperError):
    """Raised when a required GATT characteristic is missing after discovery."""

    def __init__(self, uuid: Optional[str] = None):
        self.uuid = uuid
        message = "BT characteristics does not exist. Maybe invalid device?"
        if uuid:
            message = f"{message} (missing {uuid})"
        super().__init__(message)


class IOFailure(FlipperError):
    """Raised when a serial or BLE read/write fails."""

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(f"Failed to do I/O: {cause}")


class DataTooLarge(FlipperError):
    """Raised when a frame body or a decoded length prefix exceeds the maximum.

    During decode this means the peer violated the protocol; the codec buffer
    must not be fed any further.
    """

    def __init__(self, length: int):
        self.length = length
        super().__init__(f"Data too large to process: {length}")


class OutOfBounds(FlipperError):
    """Raised for an invalid adapter index."""

    def __init__(self, index: Optional[int] = None):
        self.index = index
        super().__init__("Index out of bounds." if index is None else f"Index out of bounds: {index}")


class MalformedFrame(FlipperError):
    """Raised when bytes on the wire cannot be a valid frame header."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Malformed frame: {reason}")


class TransportNotReady(FlipperError):
    """Raised when frame I/O is attempted outside the READY state."""

    def __init__(self, state):
        self.state = state
        super().__init__(f"Transport is not ready (state={state.name})")


class Unknown(FlipperError):
    """Unclassified internal fault. Seeing this means a code path is missing."""

    def __init__(self):
        super().__init__("Unknown internal error. BAD!")
