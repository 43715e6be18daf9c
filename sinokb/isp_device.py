"""Talking to the ISP bootloader: reading, erasing and writing flash."""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Protocol

from tqdm import tqdm

from .device_spec import DeviceSpec
from .util import HidError, VerificationError, is_expected_error, verify

log = logging.getLogger(__name__)

REPORT_ID_CMD = 0x05
REPORT_ID_XFER = 0x06

CMD_ENABLE_FIRMWARE = 0x55
CMD_INIT_READ = 0x52
CMD_INIT_WRITE = 0x57
CMD_ERASE = 0x45
CMD_REBOOT = 0x5A

XFER_READ_PAGE = 0x72
XFER_WRITE_PAGE = 0x77

_SETTLE_SECONDS = 2.0


class ISPError(Exception):
    """Raised when an ISP operation fails; the underlying error is in ``cause``."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


class ReadSection(Enum):
    """Region of flash to read."""

    FIRMWARE = "firmware"
    BOOTLOADER = "bootloader"
    FULL = "full"

    @staticmethod
    def available_sections() -> list[str]:
        return [section.value for section in ReadSection]


class HidDevice(Protocol):
    """An open HID device that exchanges feature reports."""

    def send_feature_report(self, data: bytes) -> None:
        """Send a feature report whose first byte is the report ID."""

    def get_feature_report(self, request: bytes) -> bytes:
        """Fetch a feature report; the request carries the report ID and its length."""


@contextmanager
def _isp_errors() -> Iterator[None]:
    try:
        yield
    except (HidError, VerificationError) as err:
        raise ISPError(err) from err


def _command(cmd: int, addr: int = 0) -> bytes:
    return bytes([REPORT_ID_CMD, cmd, addr & 0xFF, (addr >> 8) & 0xFF, 0, 0])


class ISPDevice:
    """A device in ISP mode.

    Commands go to ``cmd_device``; page transfers go to ``xfer_device``,
    which is the same handle unless the platform exposes a separate one.
    """

    def __init__(
        self,
        device_spec: DeviceSpec,
        cmd_device: HidDevice,
        xfer_device: HidDevice | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        progress: bool = True,
    ) -> None:
        self.device_spec = device_spec
        self._cmd = cmd_device
        self._xfer = xfer_device if xfer_device is not None else cmd_device
        self._sleep = sleep
        self._progress = progress

    def read_cycle(self, section: ReadSection = ReadSection.FIRMWARE) -> bytes:
        """Read a section of flash, then reboot if the device spec asks for it."""
        platform = self.device_spec.platform
        with _isp_errors():
            self._enable_firmware()
            if section is ReadSection.FIRMWARE:
                start, length = 0, platform.firmware_size
            elif section is ReadSection.BOOTLOADER:
                start, length = platform.firmware_size, platform.bootloader_size
            else:
                start, length = 0, platform.firmware_size + platform.bootloader_size
            data = self._read(start, length)
        if self.device_spec.reboot:
            self._reboot()
        return data

    def write_cycle(self, firmware: bytes) -> None:
        """Erase, write and verify the firmware area, then enable the firmware."""
        size = self.device_spec.platform.firmware_size
        if len(firmware) < size:
            raise ValueError(f"Firmware of {len(firmware)} bytes is smaller than {size} bytes")
        image = bytearray(firmware)
        # The reset vector target goes to <firmware_size-4> where the bootloader's LJMP picks it up.
        image[size - 4 : size - 2] = image[1:3]

        with _isp_errors():
            self._erase()
            self._write(0, bytes(image))
            image[size - 4 : size - 2] = bytes(2)
            read_back = self._read(0, size)
            print("Verifying...", file=sys.stderr)
            verify(bytes(image), read_back)
            self._enable_firmware()
        if self.device_spec.reboot:
            self._reboot()

    def _read(self, start_addr: int, length: int) -> bytes:
        page_size = self.device_spec.platform.page_size
        num_pages = length // page_size
        result = bytearray()
        print("Reading...", file=sys.stderr)
        self._cmd.send_feature_report(_command(CMD_INIT_READ, start_addr))
        with tqdm(total=num_pages, file=sys.stderr, disable=not self._progress) as bar:
            for page in range(num_pages):
                bar.update(1)
                log.debug("Reading page %d @ offset %#06x", page, start_addr + page * page_size)
                result += self._read_page()
        return bytes(result)

    def _read_page(self) -> bytes:
        page_size = self.device_spec.platform.page_size
        request = bytes([REPORT_ID_XFER, XFER_READ_PAGE]) + bytes(page_size)
        report = bytes(self._xfer.get_feature_report(request))
        if len(report) < page_size + 2:
            raise HidError(f"Short feature report: {len(report)} of {page_size + 2} bytes")
        return report[2 : page_size + 2]

    def _write(self, start_addr: int, data: bytes) -> None:
        page_size = self.device_spec.platform.page_size
        num_pages = self.device_spec.num_pages()
        print("Writing...", file=sys.stderr)
        self._cmd.send_feature_report(_command(CMD_INIT_WRITE, start_addr))
        with tqdm(total=num_pages, file=sys.stderr, disable=not self._progress) as bar:
            for page in range(num_pages):
                bar.update(1)
                offset = page * page_size
                log.debug("Writing page %d @ offset %#06x", page, offset)
                self._write_page(data[offset : offset + page_size])

    def _write_page(self, page: bytes) -> None:
        # The device skips the first 3 bytes of page 0; the reset target is
        # taken from <firmware_size-4> once the firmware is enabled.
        self._xfer.send_feature_report(bytes([REPORT_ID_XFER, XFER_WRITE_PAGE]) + page)

    def _enable_firmware(self) -> None:
        """Place an LJMP at <firmware_size-5> so the bootloader jumps to the firmware."""
        print("Enabling firmware...", file=sys.stderr)
        self._cmd.send_feature_report(_command(CMD_ENABLE_FIRMWARE))

    def _erase(self) -> None:
        """Erase everything but the bootloader and point the reset vector at ISP."""
        print("Erasing...", file=sys.stderr)
        self._cmd.send_feature_report(_command(CMD_ERASE))
        self._sleep(_SETTLE_SECONDS)

    def _reboot(self) -> None:
        print("Rebooting...", file=sys.stderr)
        try:
            self._cmd.send_feature_report(_command(CMD_REBOOT))
        except HidError as err:
            log.debug("Error: %s", err)
            if not is_expected_error(err):
                log.error("Unexpected error: %s", err)
        self._sleep(_SETTLE_SECONDS)