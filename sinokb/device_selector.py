"""Finding a device, switching it into ISP mode and listing connected HID devices."""

from __future__ import annotations

import logging
import os
import struct
import sys
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from itertools import groupby
from pathlib import Path
from typing import Protocol

from tqdm import tqdm

from .device_spec import DeviceSpec
from .hid_tree import DeviceNode, InterfaceNode, ItemNode
from .isp_device import ISPDevice
from .util import HidError, is_expected_error

log = logging.getLogger(__name__)

REPORT_ID_ISP = 0x05
CMD_ISP_MODE = 0x75
REPORT_ID_XFER = 0x06

GAMING_KB_VENDOR_ID = 0x0603
GAMING_KB_PRODUCT_ID = 0x1020
GAMING_KB_V2_PRODUCT_ID = 0x1021
GAMING_KB_IFACE = 0

_SETTLE_SECONDS = 2.0
_RETRY_SECONDS = 1.0

_BUS_USB = 0x03

# HID report descriptor item layout.
_ITEM_SIZES = (0, 1, 2, 4)
_LONG_ITEM = 0xFE
_TYPE_MAIN = 0
_TYPE_GLOBAL = 1
_TAG_FEATURE = 0xB
_TAG_REPORT_ID = 0x8
_TAG_PUSH = 0xA
_TAG_POP = 0xB


class DeviceSelectorError(Exception):
    """Raised when a device cannot be selected."""


class DeviceNotFoundError(DeviceSelectorError):
    def __init__(self, message: str = "Device not found") -> None:
        super().__init__(message)


class UnexpectedDeviceCountError(DeviceSelectorError):
    def __init__(self, message: str = "Unexpected device count") -> None:
        super().__init__(message)


class ReportDescriptorError(DeviceSelectorError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Failed to parse report descriptor {reason}")
        self.reason = reason


@dataclass(frozen=True)
class DeviceInfo:
    """One enumerated HID device entry."""

    path: str
    vendor_id: int
    product_id: int
    interface_number: int
    usage_page: int = 0
    usage: int = 0
    manufacturer_string: str | None = None
    product_string: str | None = None
    bus: str = "usb"


class _HidHandle(Protocol):
    def send_feature_report(self, data: bytes) -> None: ...

    def get_feature_report(self, request: bytes) -> bytes: ...

    def get_report_descriptor(self) -> bytes: ...

    def close(self) -> None: ...


class _HidBackend(Protocol):
    def device_list(self) -> list[DeviceInfo]: ...

    def refresh_devices(self) -> None: ...

    def open_path(self, path: str) -> _HidHandle: ...


def parse_feature_report_ids(descriptor: bytes) -> list[int]:
    """Return the report IDs that carry feature items, in order of first appearance."""
    data = bytes(descriptor)
    ids: list[int] = []
    report_id: int | None = None
    stack: list[int | None] = []
    pos = 0
    while pos < len(data):
        prefix = data[pos]
        if prefix == _LONG_ITEM:
            if pos + 3 > len(data):
                raise ReportDescriptorError(f"truncated long item at offset {pos}")
            end = pos + 3 + data[pos + 1]
            if end > len(data):
                raise ReportDescriptorError(f"truncated long item at offset {pos}")
            pos = end
            continue

        end = pos + 1 + _ITEM_SIZES[prefix & 0x03]
        if end > len(data):
            raise ReportDescriptorError(f"truncated item at offset {pos}")
        value = int.from_bytes(data[pos + 1 : end], "little")
        kind = (prefix >> 2) & 0x03
        tag = prefix >> 4

        if kind == _TYPE_GLOBAL:
            if tag == _TAG_REPORT_ID:
                if not 0 < value <= 0xFF:
                    raise ReportDescriptorError(f"invalid report ID {value}")
                report_id = value
            elif tag == _TAG_PUSH:
                stack.append(report_id)
            elif tag == _TAG_POP:
                if not stack:
                    raise ReportDescriptorError(f"pop without push at offset {pos}")
                report_id = stack.pop()
        elif kind == _TYPE_MAIN and tag == _TAG_FEATURE:
            if report_id is not None and report_id not in ids:
                ids.append(report_id)
        pos = end
    return ids


def _ioc(direction: int, nr: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (ord("H") << 8) | nr


_IOC_READ_WRITE = 3
_IOC_READ = 2
_HID_MAX_DESCRIPTOR_SIZE = 4096
_HIDIOCGRDESCSIZE = _ioc(_IOC_READ, 0x01, 4)
_HIDIOCGRDESC = _ioc(_IOC_READ, 0x02, 4 + _HID_MAX_DESCRIPTOR_SIZE)


def _hidiocsfeature(length: int) -> int:
    return _ioc(_IOC_READ_WRITE, 0x06, length)


def _hidiocgfeature(length: int) -> int:
    return _ioc(_IOC_READ_WRITE, 0x07, length)


class _HidrawHandle:
    """An open hidraw character device."""

    def __init__(self, path: str) -> None:
        try:
            self._fd: int | None = os.open(path, os.O_RDWR)
        except OSError as err:
            raise HidError(f"Failed to open {path}: {err.strerror}") from err
        self.path = path

    def _ioctl(self, request: int, buf: bytearray) -> int:
        import fcntl

        if self._fd is None:
            raise HidError(f"Device {self.path} is closed")
        try:
            return fcntl.ioctl(self._fd, request, buf, True)
        except OSError as err:
            raise HidError(f"ioctl on {self.path} failed: {err.strerror}") from err

    def send_feature_report(self, data: bytes) -> None:
        buf = bytearray(data)
        self._ioctl(_hidiocsfeature(len(buf)), buf)

    def get_feature_report(self, request: bytes) -> bytes:
        buf = bytearray(request)
        received = self._ioctl(_hidiocgfeature(len(buf)), buf)
        return bytes(buf[: max(received, 0)])

    def get_report_descriptor(self) -> bytes:
        size_buf = bytearray(4)
        self._ioctl(_HIDIOCGRDESCSIZE, size_buf)
        (size,) = struct.unpack("=I", size_buf)
        size = min(size, _HID_MAX_DESCRIPTOR_SIZE)
        buf = bytearray(struct.pack("=I", size)) + bytearray(_HID_MAX_DESCRIPTOR_SIZE)
        self._ioctl(_HIDIOCGRDESC, buf)
        return bytes(buf[4 : 4 + size])

    def close(self) -> None:
        if self._fd is not None:
            fd, self._fd = self._fd, None
            try:
                os.close(fd)
            except OSError:
                pass

    def __enter__(self) -> _HidrawHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(errors="replace").strip()
    except OSError:
        return None


def _read_uevent(path: Path) -> dict[str, str]:
    text = _read_text(path) or ""
    entries = (line.partition("=") for line in text.splitlines())
    return {key: value for key, sep, value in entries if sep}


def _scan_hidraw(root: Path = Path("/sys/class/hidraw")) -> list[DeviceInfo]:
    if not root.is_dir():
        return []
    devices = []
    for entry in sorted(root.iterdir()):
        hid_dir = (entry / "device").resolve()
        uevent = _read_uevent(hid_dir / "uevent")
        try:
            bus, vendor_id, product_id = (int(part, 16) for part in uevent["HID_ID"].split(":"))
        except (KeyError, ValueError):
            continue
        iface_dir = hid_dir.parent
        usb_dir = iface_dir.parent
        iface_text = _read_text(iface_dir / "bInterfaceNumber")
        try:
            interface_number = int(iface_text, 16) if iface_text else -1
        except ValueError:
            interface_number = -1
        devices.append(
            DeviceInfo(
                path=f"/dev/{entry.name}",
                vendor_id=vendor_id,
                product_id=product_id,
                interface_number=interface_number,
                manufacturer_string=_read_text(usb_dir / "manufacturer"),
                product_string=_read_text(usb_dir / "product"),
                bus="usb" if bus == _BUS_USB else "other",
            )
        )
    return devices


class HidApi:
    """HID access through the Linux hidraw interface."""

    def __init__(self) -> None:
        if not sys.platform.startswith("linux"):
            raise HidError("HID access is only available through Linux hidraw")
        self._devices = _scan_hidraw()

    def device_list(self) -> list[DeviceInfo]:
        return list(self._devices)

    def refresh_devices(self) -> None:
        self._devices = _scan_hidraw()

    def open_path(self, path: str) -> _HidrawHandle:
        return _HidrawHandle(path)


def _platform_family(platform: str) -> str:
    if platform == "darwin":
        return "darwin"
    if platform in ("win32", "cygwin"):
        return "win32"
    return "linux"


def _describe(device: DeviceInfo, platform: str) -> str:
    if platform == "linux":
        return f"{device.vendor_id:#06x} {device.product_id:#06x} {device.path!r}"
    return (
        f"{device.vendor_id:#06x} {device.product_id:#06x} {device.path!r} "
        f"{device.interface_number} {device.usage_page:#06x} {device.usage:#06x}"
    )


def _close(handle: _HidHandle) -> None:
    try:
        handle.close()
    except (HidError, OSError):
        pass


class DeviceSelector:
    """Locates a device by its spec and brings it into ISP mode.

    HidError from the HID layer propagates unchanged.
    """

    def __init__(
        self,
        api: _HidBackend | None = None,
        *,
        platform: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        progress: bool = True,
    ) -> None:
        self.api = api if api is not None else HidApi()
        self._platform = _platform_family(platform if platform is not None else sys.platform)
        self._sleep = sleep
        self._progress = progress

    def _sorted_usb_devices(self) -> list[DeviceInfo]:
        def key(d: DeviceInfo) -> tuple:
            base = (d.vendor_id, d.product_id, d.interface_number, d.path)
            return base if self._platform == "linux" else base + (d.usage_page, d.usage)

        return sorted((d for d in self.api.device_list() if d.bus == "usb"), key=key)

    def _unique_usb_devices(self) -> list[DeviceInfo]:
        return [
            next(group)
            for _, group in groupby(
                self._sorted_usb_devices(),
                key=lambda d: (d.vendor_id, d.product_id, d.interface_number, d.path),
            )
        ]

    def _feature_report_ids_from_path(self, path: str) -> list[int]:
        handle = self.api.open_path(path)
        try:
            return parse_feature_report_ids(handle.get_report_descriptor())
        finally:
            _close(handle)

    def _descriptor_with_features(
        self, path: str
    ) -> tuple[bytes | Exception, list[int] | Exception]:
        try:
            handle = self.api.open_path(path)
        except HidError as err:
            return err, DeviceNotFoundError()
        try:
            try:
                descriptor = handle.get_report_descriptor()
            except HidError as err:
                return err, DeviceNotFoundError()
            try:
                return descriptor, parse_feature_report_ids(descriptor)
            except ReportDescriptorError as err:
                return descriptor, err
        finally:
            _close(handle)

    def _devices_for_report_ids(
        self, devices: Iterable[DeviceInfo], report_ids: Sequence[int]
    ) -> list[DeviceInfo]:
        matched: dict[int, DeviceInfo] = {}
        for device in devices:
            for rid in self._feature_report_ids_from_path(device.path):
                if rid in report_ids:
                    if rid in matched:
                        raise UnexpectedDeviceCountError()
                    matched[rid] = device
        if not all(rid in matched for rid in report_ids):
            raise DeviceNotFoundError()
        return [matched[rid] for rid in report_ids]

    def _device_for_report_ids(
        self, devices: Iterable[DeviceInfo], report_ids: Sequence[int]
    ) -> DeviceInfo:
        matching = []
        for device in devices:
            ids = self._feature_report_ids_from_path(device.path)
            if all(rid in ids for rid in report_ids):
                matching.append(device)
        if len(matching) > 1:
            raise UnexpectedDeviceCountError()
        if not matching:
            raise DeviceNotFoundError()
        return matching[0]

    def _find_isp_device(self, device_spec: DeviceSpec) -> ISPDevice:
        candidates = [
            d
            for d in self._unique_usb_devices()
            if d.vendor_id == GAMING_KB_VENDOR_ID
            and d.product_id in (GAMING_KB_PRODUCT_ID, GAMING_KB_V2_PRODUCT_ID)
            and d.interface_number == GAMING_KB_IFACE
        ]
        if not candidates:
            raise DeviceNotFoundError()

        wanted = (REPORT_ID_ISP, REPORT_ID_XFER)
        if self._platform == "win32":
            cmd_info, xfer_info = self._devices_for_report_ids(candidates, wanted)
            log.debug("ISP CMD device: %s", _describe(cmd_info, self._platform))
            log.debug("ISP XFER device: %s", _describe(xfer_info, self._platform))
            cmd_handle = self.api.open_path(cmd_info.path)
            xfer_handle = self.api.open_path(xfer_info.path)
            return ISPDevice(
                device_spec, cmd_handle, xfer_handle, sleep=self._sleep, progress=self._progress
            )

        info = self._device_for_report_ids(candidates, wanted)
        log.debug("ISP device: %s", _describe(info, self._platform))
        handle = self.api.open_path(info.path)
        return ISPDevice(device_spec, handle, sleep=self._sleep, progress=self._progress)

    def _find_device(self, device_spec: DeviceSpec) -> _HidHandle:
        found: DeviceInfo | None = None
        for device in self._unique_usb_devices():
            if (
                device.vendor_id != device_spec.vendor_id
                or device.product_id != device_spec.product_id
                or device.interface_number != device_spec.isp_iface_num
            ):
                continue
            try:
                ids = self._feature_report_ids_from_path(device.path)
            except (HidError, DeviceSelectorError) as err:
                raise DeviceNotFoundError() from err
            if device_spec.isp_report_id in ids:
                found = device

        if found is None:
            log.info("Device didn't come up...")
            raise DeviceNotFoundError()
        log.debug("Opening: %r", found.path)
        return self.api.open_path(found.path)

    def _enter_isp_mode(self, handle: _HidHandle) -> None:
        handle.send_feature_report(bytes([REPORT_ID_ISP, CMD_ISP_MODE, 0, 0, 0, 0]))

    def _switch_to_isp_device(self, handle: _HidHandle, device_spec: DeviceSpec) -> ISPDevice:
        try:
            self._enter_isp_mode(handle)
        except HidError as err:
            log.debug("Error: %s", err)
            if not is_expected_error(err):
                log.error("Unexpected: %s", err)
                log.info("Waiting...")
                self._sleep(_SETTLE_SECONDS)
                raise
        finally:
            _close(handle)

        log.info("Waiting for ISP device...")
        self._sleep(_SETTLE_SECONDS)
        self.api.refresh_devices()

        try:
            return self._find_isp_device(device_spec)
        except (DeviceSelectorError, HidError) as err:
            log.info("ISP device didn't come up...")
            raise DeviceNotFoundError() from err

    def _search(self, device_spec: DeviceSpec, retries: int, bar: tqdm) -> ISPDevice:
        for attempt in range(1, retries + 1):
            if attempt > 1:
                message = f"Retrying... Attempt {attempt}/{retries}"
                bar.set_description_str(message)
                log.info(message)
                self.api.refresh_devices()
                self._sleep(_RETRY_SECONDS)

            try:
                handle = self._find_device(device_spec)
            except DeviceNotFoundError:
                pass
            else:
                bar.set_description_str("Device found. Switching to ISP mode...")
                try:
                    return self._switch_to_isp_device(handle, device_spec)
                except DeviceNotFoundError:
                    pass

            log.info("Device not found. Trying ISP device...")
            try:
                return self._find_isp_device(device_spec)
            except DeviceNotFoundError:
                pass
        raise DeviceNotFoundError()

    def try_fetch_isp_device(self, device_spec: DeviceSpec, retries: int) -> ISPDevice:
        """Find the device, switch it to ISP mode and return it, trying up to ``retries`` times."""
        print(
            f"Looking for {device_spec.vendor_id:04x}:{device_spec.product_id:04x} "
            f"(isp_iface_num={device_spec.isp_iface_num} "
            f"isp_report_id={device_spec.isp_report_id})",
            file=sys.stderr,
        )
        with tqdm(
            total=None,
            bar_format="{desc}",
            file=sys.stderr,
            leave=False,
            disable=not self._progress,
        ) as bar:
            bar.set_description_str(f"Searching for device... Attempt 1/{retries}")
            device = self._search(device_spec, retries, bar)
        print("Connected!", file=sys.stderr)
        return device

    def connected_devices_tree(self) -> list[DeviceNode]:
        """Describe every connected USB HID device, grouped by device and interface."""
        nodes = []
        for (vendor_id, product_id), group in groupby(
            self._sorted_usb_devices(), key=lambda d: (d.vendor_id, d.product_id)
        ):
            manufacturer: str | None = None
            product: str | None = None
            interfaces = []
            for (path, interface_number), entries in groupby(
                group, key=lambda d: (d.path, d.interface_number)
            ):
                children = []
                for device in entries:
                    if manufacturer is None:
                        manufacturer = device.manufacturer_string
                    if product is None:
                        product = device.product_string
                    if self._platform == "darwin":
                        children.append(ItemNode(device.usage_page, device.usage))
                    elif self._platform == "win32":
                        descriptor, ids = self._descriptor_with_features(path)
                        children.append(
                            ItemNode(
                                device.usage_page,
                                device.usage,
                                path=path,
                                descriptor=descriptor,
                                feature_report_ids=ids,
                            )
                        )
                if self._platform == "win32":
                    interfaces.append(InterfaceNode(interface_number, children=children))
                else:
                    descriptor, ids = self._descriptor_with_features(path)
                    interfaces.append(
                        InterfaceNode(
                            interface_number,
                            path=path,
                            descriptor=descriptor,
                            feature_report_ids=ids,
                            children=children,
                        )
                    )
            nodes.append(
                DeviceNode(
                    vendor_id=vendor_id,
                    product_id=product_id,
                    manufacturer_string=manufacturer if manufacturer is not None else "None",
                    product_string=product if product is not None else "None",
                    children=interfaces,
                )
            )
        return nodes