import asyncio
import logging

import pytest
from bleak.exc import BleakError

from fakes import FakeBleakClient, FakeServices, client_factory
from flipper_bridge import (
    BleFrameReceiver,
    BleFrameSender,
    BleTransport,
    DataTooLarge,
    IOFailure,
    NoCharacteristics,
    RadioFailure,
    TransportNotReady,
    TransportState,
    encode_frame,
)
from flipper_bridge.constants import (
    BLE_OVERFLOW_CHARACTERISTIC_UUID,
    BLE_RX_CHARACTERISTIC_UUID,
    BLE_SERIAL_SERVICE_UUID,
    BLE_TX_CHARACTERISTIC_UUID,
)

log = logging.getLogger("test.ble")

DEVICE = "AA:BB:CC:DD:EE:FF"


async def _ready_transport(**overrides):
    factory = client_factory(**overrides)
    transport = BleTransport(DEVICE, client_factory=factory)
    await transport.init()
    return transport, factory.built[0]


@pytest.mark.asyncio
async def test_init_binds_characteristics_and_subscribes():
    transport, client = await _ready_transport()

    assert transport.state is TransportState.READY
    assert client.is_connected
    assert client.device == DEVICE
    assert transport.chars.tx.uuid == BLE_TX_CHARACTERISTIC_UUID
    assert transport.chars.rx.uuid == BLE_RX_CHARACTERISTIC_UUID
    assert transport.chars.ovf.uuid == BLE_OVERFLOW_CHARACTERISTIC_UUID
    assert client.notify_callback is not None


@pytest.mark.asyncio
async def test_adapter_is_forwarded_to_client():
    factory = client_factory()
    transport = BleTransport(DEVICE, client_factory=factory, adapter="hci1")
    await transport.init()
    assert factory.built[0].kwargs == {"adapter": "hci1"}


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", [
    BLE_TX_CHARACTERISTIC_UUID,
    BLE_RX_CHARACTERISTIC_UUID,
    BLE_OVERFLOW_CHARACTERISTIC_UUID,
])
async def test_missing_characteristic_is_fatal(missing):
    uuids = tuple(u for u in FakeBleakClient.ALL_UUIDS if u != missing)
    factory = client_factory(uuids=uuids)
    transport = BleTransport(DEVICE, client_factory=factory)

    with pytest.raises(NoCharacteristics) as exc_info:
        await transport.init()

    assert exc_info.value.uuid == missing
    assert transport.state is TransportState.UNINITIALIZED
    assert factory.built[0].disconnects == 1


@pytest.mark.asyncio
async def test_connect_failure_is_radio_failure():
    factory = client_factory(connect_error=BleakError("Device with address AA:BB was not found"))
    transport = BleTransport(DEVICE, client_factory=factory)

    with pytest.raises(RadioFailure) as exc_info:
        await transport.init()
    assert "not found" in str(exc_info.value)
    assert transport.state is TransportState.UNINITIALIZED


@pytest.mark.asyncio
async def test_subscribe_failure_is_fatal():
    factory = client_factory(notify_error=BleakError("Notify acquired"))
    transport = BleTransport(DEVICE, client_factory=factory)

    with pytest.raises(RadioFailure):
        await transport.init()
    assert transport.state is TransportState.UNINITIALIZED
    assert not factory.built[0].is_connected


@pytest.mark.asyncio
async def test_frame_io_before_init_is_rejected():
    transport = BleTransport(DEVICE, client_factory=client_factory())
    with pytest.raises(TransportNotReady):
        await transport.read_frame()
    with pytest.raises(TransportNotReady):
        await transport.write_frame(b"x")


@pytest.mark.asyncio
async def test_read_frame_across_notifications():
    transport, client = await _ready_transport()
    encoded = encode_frame(bytes(range(40)))

    task = asyncio.ensure_future(transport.read_frame())
    client.notify(encoded[:20])
    await asyncio.sleep(0)
    assert not task.done()

    client.notify(encoded[20:])
    assert await asyncio.wait_for(task, timeout=1.0) == bytes(range(40))


@pytest.mark.asyncio
async def test_read_frame_drains_buffered_frames_first():
    transport, client = await _ready_transport()
    client.notify(encode_frame(b"one") + encode_frame(b"two"))

    assert await asyncio.wait_for(transport.read_frame(), timeout=1.0) == b"one"
    # Second frame is already in the codec, no new notification needed
    assert await asyncio.wait_for(transport.read_frame(), timeout=1.0) == b"two"


@pytest.mark.asyncio
async def test_empty_notifications_are_ignored():
    transport, client = await _ready_transport()
    client.notify(b"")
    client.notify(encode_frame(b"after-empty"))
    assert await asyncio.wait_for(transport.read_frame(), timeout=1.0) == b"after-empty"


@pytest.mark.asyncio
async def test_oversized_notification_header():
    transport, client = await _ready_transport()
    client.notify(bytes([0xFE, 0xFF, 0x03]))
    with pytest.raises(DataTooLarge) as exc_info:
        await asyncio.wait_for(transport.read_frame(), timeout=1.0)
    assert exc_info.value.length == 65534


@pytest.mark.asyncio
async def test_disconnect_fails_pending_and_later_reads():
    transport, client = await _ready_transport()

    task = asyncio.ensure_future(transport.read_frame())
    await asyncio.sleep(0)
    client.drop()

    with pytest.raises(IOFailure):
        await asyncio.wait_for(task, timeout=1.0)
    with pytest.raises(IOFailure):
        await asyncio.wait_for(transport.read_frame(), timeout=1.0)


@pytest.mark.asyncio
async def test_write_frame_reads_overflow_then_writes_without_response():
    transport, client = await _ready_transport()

    await transport.write_frame(bytes([0x08, 0x02, 0x82, 0x02, 0x00]))

    assert client.ovf_reads == 1
    assert client.writes == [
        (BLE_TX_CHARACTERISTIC_UUID, bytes([0x05, 0x08, 0x02, 0x82, 0x02, 0x00]), False)
    ]


@pytest.mark.asyncio
async def test_write_larger_than_device_buffer_is_sent_with_warning(caplog):
    transport, client = await _ready_transport()
    client.ovf_value = (4).to_bytes(4, "big")

    with caplog.at_level(logging.WARNING, logger="flipper_bridge"):
        await transport.write_frame(b"0123456789")

    assert len(client.writes) == 1
    assert "exceeds free device buffer" in caplog.text


@pytest.mark.asyncio
async def test_remaining_buffer():
    transport, client = await _ready_transport()
    client.ovf_value = bytes([0x00, 0x00, 0x04, 0x00])
    assert await transport.remaining_buffer() == 1024


@pytest.mark.asyncio
async def test_malformed_overflow_value():
    transport, client = await _ready_transport()
    client.ovf_value = b"\x01"
    with pytest.raises(IOFailure):
        await transport.remaining_buffer()


@pytest.mark.asyncio
@pytest.mark.parametrize("ovf_value, ovf_error", [
    (b"\x01", None),
    ((1024).to_bytes(4, "big"), BleakError("Read not permitted")),
])
async def test_bad_overflow_read_still_sends_frame(caplog, ovf_value, ovf_error):
    transport, client = await _ready_transport()
    client.ovf_value = ovf_value
    client.ovf_error = ovf_error

    with caplog.at_level(logging.WARNING, logger="flipper_bridge"):
        await transport.write_frame(b"x")

    assert client.writes == [(BLE_TX_CHARACTERISTIC_UUID, encode_frame(b"x"), False)]
    assert "Could not read free device buffer" in caplog.text


@pytest.mark.asyncio
async def test_write_failure_is_io_failure():
    transport, client = await _ready_transport()
    client.write_error = BleakError("Not connected")
    with pytest.raises(IOFailure):
        await transport.write_frame(b"x")


@pytest.mark.asyncio
async def test_write_frame_rejects_oversized_body():
    transport, client = await _ready_transport()
    with pytest.raises(DataTooLarge):
        await transport.write_frame(bytes(1537))
    assert client.writes == []


@pytest.mark.asyncio
async def test_split_returns_halves_and_consumes_transport():
    transport, client = await _ready_transport()
    receiver, sender = transport.split()

    assert isinstance(receiver, BleFrameReceiver)
    assert isinstance(sender, BleFrameSender)
    assert transport.state is TransportState.SPLIT
    with pytest.raises(TransportNotReady):
        await transport.read_frame()


@pytest.mark.asyncio
async def test_split_halves_do_not_block_each_other():
    log.info("=== Starting test_split_halves_do_not_block_each_other ===")
    transport, client = await _ready_transport()
    receiver, sender = transport.split()

    # A write stuck on the link holds the connection lock
    client.write_gate = asyncio.Event()
    write_task = asyncio.ensure_future(sender.write_frame(b"ping"))
    await asyncio.sleep(0)

    client.notify(encode_frame(b"pong"))
    assert await asyncio.wait_for(receiver.read_frame(), timeout=1.0) == b"pong"
    assert not write_task.done()

    # A read waiting for notifications does not hold up the writer either
    read_task = asyncio.ensure_future(receiver.read_frame())
    client.write_gate.set()
    await asyncio.wait_for(write_task, timeout=1.0)
    await asyncio.wait_for(sender.write_frame(b"again"), timeout=1.0)
    assert not read_task.done()
    assert [data for _, data, _ in client.writes] == [encode_frame(b"ping"), encode_frame(b"again")]

    client.notify(encode_frame(b"late"))
    assert await asyncio.wait_for(read_task, timeout=1.0) == b"late"
    log.info("✓ test_split_halves_do_not_block_each_other passed")


@pytest.mark.asyncio
async def test_split_receiver_keeps_partial_frame():
    transport, client = await _ready_transport()
    encoded = encode_frame(b"straddling")
    client.notify(encoded[:3])

    read_task = asyncio.ensure_future(transport.read_frame())
    await asyncio.sleep(0)
    read_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await read_task

    receiver, _sender = transport.split()
    client.notify(encoded[3:])
    assert await asyncio.wait_for(receiver.read_frame(), timeout=1.0) == b"straddling"


@pytest.mark.asyncio
async def test_connection_closes_with_last_half():
    transport, client = await _ready_transport()
    receiver, sender = transport.split()

    await receiver.close()
    assert client.is_connected
    await sender.write_frame(b"still-open")

    await sender.close()
    assert not client.is_connected
    assert client.stopped


@pytest.mark.asyncio
async def test_close_unsplit_transport():
    transport, client = await _ready_transport()
    await transport.close()
    assert transport.state is TransportState.CLOSED
    assert client.stopped
    assert client.disconnects == 1

    await transport.close()
    assert client.disconnects == 1


@pytest.mark.asyncio
async def test_missing_serial_service_is_fatal():
    factory = client_factory(services=FakeServices(FakeBleakClient.ALL_UUIDS, has_service=False))
    transport = BleTransport(DEVICE, client_factory=factory)

    with pytest.raises(NoCharacteristics) as exc_info:
        await transport.init()
    assert exc_info.value.uuid == BLE_SERIAL_SERVICE_UUID


@pytest.mark.asyncio
async def test_init_after_split_or_close_is_rejected():
    factory = client_factory()
    transport = BleTransport(DEVICE, client_factory=factory)
    await transport.init()
    receiver, sender = transport.split()

    with pytest.raises(TransportNotReady):
        await transport.init()
    assert len(factory.built) == 1

    other, client = await _ready_transport()
    await other.close()
    with pytest.raises(TransportNotReady):
        await other.init()
    assert client.disconnects == 1


@pytest.mark.asyncio
async def test_retry_after_failed_init_starts_with_empty_queue():
    built = []

    def _factory(device, **kwargs):
        client = FakeBleakClient(device, **kwargs)
        if not built:
            client.notify_error = BleakError("Notify acquired")
        built.append(client)
        return client

    transport = BleTransport(DEVICE, client_factory=_factory)
    with pytest.raises(RadioFailure):
        await transport.init()
    # The failed link reports its disconnect after the attempt
    built[0].drop()

    await transport.init()
    built[1].notify(encode_frame(b"fresh"))
    assert await asyncio.wait_for(transport.read_frame(), timeout=1.0) == b"fresh"
