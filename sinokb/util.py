"""Verification, payload conversion and small helpers shared by the tool."""

from __future__ import annotations

import sys

from .device_spec import DeviceSpec

_LJMP = 0x02
_MAX_MAIN_FW_ADDRESS = 0xEFFF

_EXPECTED_MESSAGES = {
    "darwin": "IOHIDDeviceSetReport failed: (0xE0005000) unknown error code",
    "linux": "hid_error is not implemented yet",
    "win32": "HidD_SetFeature: (0x0000001F) A device attached to the system is not functioning.",
}


class HidError(Exception):
    """Raised when communication with a HID device fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class VerificationError(Exception):
    """Raised when flash contents read back differ from what was written."""


class LengthMismatchError(VerificationError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Length Mismatch {expected} {actual}")
        self.expected = expected
        self.actual = actual


class ByteMismatchError(VerificationError):
    def __init__(self, addr: int, expected: int, actual: int) -> None:
        super().__init__(
            f"Firmware Mismatch @ {addr:#06x} --- {expected:#04x} != {actual:#04x}"
        )
        self.addr = addr
        self.expected = expected
        self.actual = actual


class PayloadConversionError(Exception):
    """Raised when a firmware image cannot be converted between ISP and JTAG layouts."""


class LJMPNotFoundError(PayloadConversionError):
    def __init__(self, addr: int) -> None:
        super().__init__(f"Expected LJMP not found at {addr:#06x}")
        self.addr = addr


class UnexpectedAddressError(PayloadConversionError):
    def __init__(self, source_addr: int, target_addr: int) -> None:
        super().__init__(
            f"Unexpected addr at {source_addr:#06x} pointing to {target_addr:#06x}"
        )
        self.source_addr = source_addr
        self.target_addr = target_addr


def verify(expected: bytes, actual: bytes) -> None:
    """Raise a VerificationError unless both images are identical."""
    if len(expected) != len(actual):
        raise LengthMismatchError(len(expected), len(actual))
    mismatch = next(
        ((addr, e, a) for addr, (e, a) in enumerate(zip(expected, actual)) if e != a),
        None,
    )
    if mismatch is not None:
        raise ByteMismatchError(*mismatch)


def _ljmp_address(device_spec: DeviceSpec) -> int:
    return device_spec.platform.firmware_size - 5


def _check_length(firmware: bytes, ljmp_addr: int) -> None:
    if len(firmware) < max(3, ljmp_addr + 3):
        raise ValueError(
            f"Firmware of {len(firmware)} bytes is too short for this platform"
        )


def convert_to_jtag_payload(firmware: bytes, device_spec: DeviceSpec) -> bytes:
    """Turn an ISP image into one whose reset vector jumps to the bootloader.

    The original reset target is moved into an LJMP placed just below the bootloader.
    """
    ljmp_addr = _ljmp_address(device_spec)
    _check_length(firmware, ljmp_addr)
    if firmware[0] != _LJMP:
        raise LJMPNotFoundError(0x0000)

    main_fw_address = int.from_bytes(firmware[1:3], "big")
    if main_fw_address > _MAX_MAIN_FW_ADDRESS:
        raise UnexpectedAddressError(0x0001, main_fw_address)

    result = bytearray(firmware)
    result[1:3] = (device_spec.platform.firmware_size & 0xFFFF).to_bytes(2, "big")
    result[ljmp_addr] = _LJMP
    result[ljmp_addr + 1 : ljmp_addr + 3] = main_fw_address.to_bytes(2, "big")
    return bytes(result)


def convert_to_isp_payload(firmware: bytes, device_spec: DeviceSpec) -> bytes:
    """Turn a JTAG image back into an ISP image with the reset vector restored."""
    ljmp_addr = _ljmp_address(device_spec)
    _check_length(firmware, ljmp_addr)
    if firmware[0] != _LJMP:
        raise LJMPNotFoundError(0x0000)
    if firmware[ljmp_addr] != _LJMP:
        raise LJMPNotFoundError(0x0000)

    main_fw_address = int.from_bytes(firmware[ljmp_addr + 1 : ljmp_addr + 3], "big")
    if main_fw_address > _MAX_MAIN_FW_ADDRESS:
        raise UnexpectedAddressError((ljmp_addr + 1) & 0xFFFF, main_fw_address)

    result = bytearray(firmware)
    result[1:3] = main_fw_address.to_bytes(2, "big")
    result[ljmp_addr : ljmp_addr + 3] = bytes(3)
    return bytes(result)


def to_hex_string(data: bytes) -> str:
    """Format bytes as upper-case hex pairs separated by spaces."""
    return " ".join(f"{b:02X}" for b in data)


def _platform_key() -> str:
    platform = sys.platform
    return "linux" if platform.startswith("linux") else platform


def is_expected_error(error: HidError) -> bool:
    """Tell whether a HID error is the one a device gives when it drops off the bus on purpose."""
    expected = _EXPECTED_MESSAGES.get(_platform_key())
    return expected is not None and getattr(error, "message", None) == expected