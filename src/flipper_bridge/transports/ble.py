"""BLE transport for Flipper Zero using its serial GATT service."""

import asyncio
import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from ..base import FrameReceiver, FrameSender, FrameTransport, TransportState
from ..constants import (
    BLE_DEVICE_NAME,
    BLE_OVERFLOW_CHARACTERISTIC_UUID,
    BLE_RX_CHARACTERISTIC_UUID,
    BLE_SCAN_TIMEOUT,
    BLE_SERIAL_SERVICE_UUID,
    BLE_TX_CHARACTERISTIC_UUID,
)
from ..errors import (
    AdapterUnavailable,
    IOFailure,
    NoCharacteristics,
    OutOfBounds,
    RadioFailure,
)
from ..framing import FrameCodec
from ..shared import SharedConnection

SYSFS_BLUETOOTH = "/sys/class/bluetooth"

# Provider exceptions that end up wrapped into FlipperError
_RADIO_ERRORS = (BleakError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class RadioAdapter:
    name: str
    # Value for bleak's ``adapter`` keyword, None for the platform default
    bleak_adapter: Optional[str] = None


def _sysfs_controllers() -> List[str]:
    try:
        entries = os.listdir(SYSFS_BLUETOOTH)
    except FileNotFoundError:
        return []
    return sorted(e for e in entries if re.fullmatch(r"hci\d+", e))


async def list_adapters() -> List[RadioAdapter]:
    """List usable BLE controllers.

    BlueZ exposes every controller under /sys/class/bluetooth. CoreBluetooth
    and WinRT only ever drive the system default adapter.
    """
    if sys.platform.startswith("linux"):
        names = await asyncio.to_thread(_sysfs_controllers)
        return [RadioAdapter(name, name) for name in names]
    return [RadioAdapter("default")]


class BleScanner:
    """Find Flipper devices on one of the system's BLE adapters."""

    def __init__(self, adapters: List[RadioAdapter]):
        self.adapters = list(adapters)
        self.adapter_idx = 0
        self.logger = logging.getLogger(f"flipper_bridge.{self.__class__.__name__}")

    @classmethod
    async def discover(cls, adapter_lister=list_adapters) -> "BleScanner":
        """Enumerate adapters present in the system.

        Raises:
            AdapterUnavailable: If enumeration fails or no adapter exists
        """
        try:
            adapters = await adapter_lister()
        except _RADIO_ERRORS as e:
            raise AdapterUnavailable(str(e)) from e

        if not adapters:
            raise AdapterUnavailable()
        return cls(adapters)

    def adapter_names(self) -> List[str]:
        return [adapter.name for adapter in self.adapters]

    @property
    def adapter(self) -> RadioAdapter:
        return self.adapters[self.adapter_idx]

    def select_adapter(self, index: int) -> None:
        if not 0 <= index < len(self.adapters):
            raise OutOfBounds(index)
        self.adapter_idx = index

    async def find_device_by_name(
        self, name: str = BLE_DEVICE_NAME, timeout: float = BLE_SCAN_TIMEOUT
    ) -> Optional[BLEDevice]:
        """Scan and return the first device whose advertised name contains ``name``.

        Returns:
            The matching device, or None if nothing matched during the scan

        Raises:
            RadioFailure: If the scan itself fails
        """
        kwargs = {}
        if self.adapter.bleak_adapter:
            kwargs["adapter"] = self.adapter.bleak_adapter

        self.logger.info(f"Scanning for BLE device '{name}' on {self.adapter.name}...")
        try:
            found = await BleakScanner.discover(timeout=timeout, return_adv=True, **kwargs)
        except _RADIO_ERRORS as e:
            raise RadioFailure(str(e)) from e

        for device, adv in found.values():
            local_name = device.name or adv.local_name or ""
            if name in local_name:
                self.logger.info(f"Found device: {local_name} ({device.address})")
                return device

        self.logger.info(f"No device matching '{name}' among {len(found)} found")
        return None


@dataclass(frozen=True)
class FlipperCharacteristics:
    tx: BleakGATTCharacteristic
    rx: BleakGATTCharacteristic
    ovf: BleakGATTCharacteristic


def _parse_overflow(value: bytes) -> int:
    if len(value) < 4:
        raise IOFailure(f"Unexpected overflow characteristic value: {bytes(value).hex()}")
    return int.from_bytes(value[:4], "big")


async def read_remaining_buffer(shared: SharedConnection, chars: FlipperCharacteristics) -> int:
    try:
        async with shared.acquire() as client:
            value = await client.read_gatt_char(chars.ovf)
    except _RADIO_ERRORS as e:
        raise IOFailure(str(e)) from e
    return _parse_overflow(value)


async def send_frame(shared: SharedConnection, chars: FlipperCharacteristics,
                     codec: FrameCodec, data: bytes, logger) -> None:
    """Encode ``data`` and write it to the TX characteristic without response.

    The overflow characteristic is read first and a frame larger than the
    free device buffer is only reported, as is a failed read of it: neither
    chunking nor back-pressure is implemented.
    """
    frame = codec.encode(data)
    logger.debug(f"BTLE TX: {frame.hex(' ')}")

    try:
        async with shared.acquire() as client:
            try:
                remaining = _parse_overflow(await client.read_gatt_char(chars.ovf))
            except (IOFailure, *_RADIO_ERRORS) as e:
                logger.warning(f"Could not read free device buffer ({e}), sending anyway")
            else:
                if remaining < len(frame):
                    logger.warning(
                        f"Frame of {len(frame)} bytes exceeds free device buffer "
                        f"({remaining} bytes), sending unchunked"
                    )
            await client.write_gatt_char(chars.tx, frame, response=False)
    except _RADIO_ERRORS as e:
        raise IOFailure(str(e)) from e


async def receive_frame(notifications: asyncio.Queue, codec: FrameCodec, logger) -> bytes:
    """Return a frame already buffered in ``codec`` or wait for notifications."""
    frame = codec.decode()
    while frame is None:
        value = await notifications.get()
        if value is None:
            # Keep the marker so later reads fail too
            notifications.put_nowait(None)
            raise IOFailure("Device disconnected")
        if not value:
            continue
        logger.debug(f"BTLE RX: {value.hex(' ')}")
        frame = codec.decode(value)
    return frame


class BleTransport(FrameTransport):
    """BLE transport for Flipper Zero.

    ``init`` connects, binds the TX/RX/overflow characteristics of the serial
    service and subscribes to RX notifications. Notifications are queued as
    they arrive and reassembled into frames by ``read_frame``.
    """

    def __init__(self, device, *, client_factory=BleakClient, adapter: Optional[str] = None):
        """Initialize BLE transport.

        Args:
            device: BLEDevice from BleScanner, or a device address
            client_factory: Callable building the bleak client
            adapter: Adapter to connect through (BlueZ only), e.g. "hci0"
        """
        super().__init__()
        self.device = device
        self.adapter = adapter
        self.chars: Optional[FlipperCharacteristics] = None
        self._client_factory = client_factory
        self._shared: Optional[SharedConnection] = None
        self._codec = FrameCodec()
        self._notifications: asyncio.Queue = asyncio.Queue()

    @property
    def device_name(self) -> str:
        return getattr(self.device, "name", None) or str(getattr(self.device, "address", self.device))

    async def init(self) -> None:
        if self.state is TransportState.READY:
            return
        self._ensure_initializable()

        self.state = TransportState.CONNECTING
        # A failed attempt may have queued a disconnect marker
        self._codec = FrameCodec()
        self._notifications = asyncio.Queue()
        kwargs = {"disconnected_callback": self._on_disconnect}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        client = self._client_factory(self.device, **kwargs)

        try:
            await client.connect()
        except _RADIO_ERRORS as e:
            self.state = TransportState.UNINITIALIZED
            raise RadioFailure(f"Failed to connect to {self.device_name}: {e}") from e
        self.logger.info(f"Connected to {self.device_name}")

        self.state = TransportState.DISCOVERING_SERVICES
        try:
            chars = self._bind_characteristics(client)
            try:
                await client.start_notify(chars.rx, self._on_notification)
            except _RADIO_ERRORS as e:
                raise RadioFailure(f"Failed to subscribe to notifications: {e}") from e
        except BaseException:
            self.state = TransportState.UNINITIALIZED
            await self._disconnect(client)
            raise

        self.chars = chars
        self._shared = SharedConnection(client, self._close_client)
        self.state = TransportState.READY
        self.logger.info("Subscribed to RX notifications")

    def _bind_characteristics(self, client) -> FlipperCharacteristics:
        found = {}
        try:
            service = client.services.get_service(BLE_SERIAL_SERVICE_UUID)
            if service is None:
                raise NoCharacteristics(BLE_SERIAL_SERVICE_UUID)
            for uuid in (BLE_TX_CHARACTERISTIC_UUID, BLE_RX_CHARACTERISTIC_UUID,
                         BLE_OVERFLOW_CHARACTERISTIC_UUID):
                char = service.get_characteristic(uuid)
                if char is None:
                    raise NoCharacteristics(uuid)
                found[uuid] = char
        except BleakError as e:
            raise RadioFailure(str(e)) from e

        return FlipperCharacteristics(
            tx=found[BLE_TX_CHARACTERISTIC_UUID],
            rx=found[BLE_RX_CHARACTERISTIC_UUID],
            ovf=found[BLE_OVERFLOW_CHARACTERISTIC_UUID],
        )

    async def _disconnect(self, client) -> None:
        try:
            await client.disconnect()
        except _RADIO_ERRORS as e:
            self.logger.warning(f"Error disconnecting: {e}")

    async def _close_client(self, client) -> None:
        if client.is_connected and self.chars is not None:
            try:
                await client.stop_notify(self.chars.rx)
            except _RADIO_ERRORS as e:
                self.logger.warning(f"Error stopping notifications: {e}")
        try:
            await client.disconnect()
        except _RADIO_ERRORS as e:
            raise IOFailure(str(e)) from e
        self.logger.info(f"Disconnected from {self.device_name}")

    def _on_notification(self, characteristic: BleakGATTCharacteristic, data: bytearray):
        """Called by bleak for every RX notification."""
        self._notifications.put_nowait(bytes(data))

    def _on_disconnect(self, client):
        self.logger.warning("BLE device disconnected")
        self._notifications.put_nowait(None)

    async def read_frame(self) -> bytes:
        self._ensure_ready()
        return await receive_frame(self._notifications, self._codec, self.logger)

    async def write_frame(self, data: bytes) -> None:
        self._ensure_ready()
        await send_frame(self._shared, self.chars, self._codec, data, self.logger)

    async def remaining_buffer(self) -> int:
        """Read how many bytes the device can currently accept."""
        self._ensure_ready()
        return await read_remaining_buffer(self._shared, self.chars)

    def split(self) -> Tuple["BleFrameReceiver", "BleFrameSender"]:
        """Split into receiver and sender halves sharing the connection.

        The receiver inherits the notification queue and any partially
        received frame. The connection stays open until both halves close.
        """
        self._ensure_ready()
        shared = self._shared.retain()
        receiver = BleFrameReceiver(shared, self._notifications, self._codec)
        sender = BleFrameSender(shared, self.chars, FrameCodec())
        self._shared = None
        self.state = TransportState.SPLIT
        self.logger.debug("BLE connection split into receiver and sender")
        return receiver, sender

    async def close(self) -> None:
        if self._shared is not None:
            shared, self._shared = self._shared, None
            self.state = TransportState.CLOSED
            await shared.release()


class BleFrameSender(FrameSender):
    def __init__(self, shared: SharedConnection, chars: FlipperCharacteristics,
                 codec: Optional[FrameCodec] = None):
        super().__init__()
        self._shared = shared
        self.chars = chars
        self._codec = codec if codec is not None else FrameCodec()
        self._closed = False

    async def write_frame(self, data: bytes) -> None:
        await send_frame(self._shared, self.chars, self._codec, data, self.logger)

    async def remaining_buffer(self) -> int:
        return await read_remaining_buffer(self._shared, self.chars)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._shared.release()


class BleFrameReceiver(FrameReceiver):
    def __init__(self, shared: SharedConnection, notifications: asyncio.Queue,
                 codec: Optional[FrameCodec] = None):
        super().__init__()
        self._shared = shared
        self._notifications = notifications
        self._codec = codec if codec is not None else FrameCodec()
        self._closed = False

    async def read_frame(self) -> bytes:
        # Notifications are pushed by bleak, no need for the connection lock
        return await receive_frame(self._notifications, self._codec, self.logger)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._shared.release()
