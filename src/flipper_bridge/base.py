"""Abstract interfaces shared by the serial and BLE transports."""

import enum
import logging
from abc import ABC, abstractmethod
from typing import Tuple

from .errors import TransportNotReady


class TransportState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering_services"
    READY = "ready"
    SPLIT = "split"
    CLOSED = "closed"


class FrameSender(ABC):
    """Sending half of a Flipper RPC link."""

    def __init__(self):
        self.logger = logging.getLogger(f"flipper_bridge.{self.__class__.__name__}")

    @abstractmethod
    async def write_frame(self, data: bytes) -> None:
        """Send one frame. The length header is calculated and prepended.

        Args:
            data: Frame body (at most MAX_FRAME_LENGTH bytes)

        Raises:
            DataTooLarge: If data exceeds MAX_FRAME_LENGTH
            IOFailure: If the underlying write fails
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release this half's share of the connection."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


class FrameReceiver(ABC):
    """Receiving half of a Flipper RPC link."""

    def __init__(self):
        self.logger = logging.getLogger(f"flipper_bridge.{self.__class__.__name__}")

    @abstractmethod
    async def read_frame(self) -> bytes:
        """Wait for the next complete frame.

        Returns:
            Frame body without the length header

        Raises:
            DataTooLarge: If the peer announced an oversized frame
            IOFailure: If the underlying read fails or the link drops
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release this half's share of the connection."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


class FrameTransport(ABC):
    """A physical link that carries Flipper RPC frames.

    ``init`` must complete before any frame I/O. After ``split`` the
    transport is consumed and only the returned halves may be used.
    """

    def __init__(self):
        self.state = TransportState.UNINITIALIZED
        self.logger = logging.getLogger(f"flipper_bridge.{self.__class__.__name__}")

    @abstractmethod
    async def init(self) -> None:
        """Connect and prepare the link for RPC frames.

        Raises:
            FlipperError: If the connection or handshake fails
            TransportNotReady: If the transport was already split or closed
        """
        pass

    @abstractmethod
    async def read_frame(self) -> bytes:
        pass

    @abstractmethod
    async def write_frame(self, data: bytes) -> None:
        pass

    @abstractmethod
    def split(self) -> Tuple[FrameReceiver, FrameSender]:
        """Split the link into independently usable receiver and sender halves."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    def _ensure_ready(self) -> None:
        if self.state is not TransportState.READY:
            raise TransportNotReady(self.state)

    def _ensure_initializable(self) -> None:
        # A split or closed transport no longer owns its link
        if self.state in (TransportState.SPLIT, TransportState.CLOSED):
            raise TransportNotReady(self.state)

    async def __aenter__(self):
        """Async context manager entry - runs init."""
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit - closes connection."""
        await self.close()
        return False
