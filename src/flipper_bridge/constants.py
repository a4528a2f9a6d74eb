"""Protocol constants for the Flipper Zero RPC link."""

import logging
import os

# Package logger - enable debug output via FLIPPER_DEBUG env var
logger = logging.getLogger("flipper_bridge")
_debug_enabled = os.getenv("FLIPPER_DEBUG", "").lower() in ("1", "true", "yes")

# Set log level based on FLIPPER_DEBUG, but let pytest/application handle output
if _debug_enabled:
    logger.setLevel(logging.DEBUG)
else:
    logger.setLevel(logging.INFO)

# Value from flipper firmware applications/rpc/rpc.h
MAX_FRAME_LENGTH = 1536

# Longest LEB128 prefix accepted before the header is treated as garbage (u64)
MAX_VARINT_LENGTH = 10

# Serial link
FLIPPER_BAUD = 115200
SERIAL_READ_TIMEOUT = 0.1
SERIAL_READ_CHUNK = 1024
# Rolling window used while waiting for shell output
PATTERN_WINDOW = 32
# Human readable representation: '\n>: '
PROMPT_PATTERN = bytes([0x0A, 0x3E, 0x3A, 0x20])
RPC_START_COMMAND = b"start_rpc_session\r"
RPC_START_ECHO = b"start_rpc_session\r\n"

# BLE serial service
BLE_SERIAL_SERVICE_UUID = "8fe5b3d5-2e7f-4a98-2a48-7acc60fe0000"
BLE_TX_CHARACTERISTIC_UUID = "19ed82ae-ed21-4c9d-4145-228e62fe0000"  # Write to device
BLE_RX_CHARACTERISTIC_UUID = "19ed82ae-ed21-4c9d-4145-228e61fe0000"  # Notify from device
BLE_OVERFLOW_CHARACTERISTIC_UUID = "19ed82ae-ed21-4c9d-4145-228e63fe0000"
BLE_SCAN_TIMEOUT = 5.0
BLE_DEVICE_NAME = "Flipper"
