from dataclasses import replace

import pytest

from sinokb.device_selector import (
    DeviceInfo,
    DeviceNotFoundError,
    DeviceSelector,
    ReportDescriptorError,
    UnexpectedDeviceCountError,
    parse_feature_report_ids,
)
from sinokb.device_spec import DEVICE_NUPHY_AIR60
from sinokb.hid_tree import to_tree_string
from sinokb.isp_device import ReadSection
from sinokb.platform_spec import PlatformSpec
from sinokb.util import HidError

KB_IFACE0_HEX = (
    "05 01 09 06 A1 01 05 07 19 E0 29 E7 15 00 25 01 75 01 95 08 81 02 75 08 95 01 81 01 "
    "05 07 19 00 29 FF 15 00 26 FF 00 75 08 95 06 81 00 05 08 19 01 29 05 15 00 25 01 75 01 "
    "95 05 91 02 75 03 95 01 91 01 C0"
)
KB_IFACE1_HEX = (
    "05 01 09 80 A1 01 85 01 19 81 29 83 15 00 25 01 75 01 95 03 81 02 95 05 81 01 C0 05 0C "
    "09 01 A1 01 85 02 19 00 2A 3C 02 15 00 26 3C 02 75 10 95 01 81 00 C0 06 00 FF 09 01 A1 "
    "01 85 05 19 01 29 02 15 00 26 FF 00 75 08 95 05 B1 02 C0 05 01 09 06 A1 01 85 06 05 07 "
    "19 E0 29 E7 15 00 25 01 75 01 95 08 81 02 05 07 19 00 29 9F 15 00 25 01 75 01 95 A0 81 "
    "02 C0"
)
KB_IFACE0 = bytes.fromhex(KB_IFACE0_HEX)
KB_IFACE1 = bytes.fromhex(KB_IFACE1_HEX)
ISP_DESCRIPTOR = bytes.fromhex(
    "06 00 FF 09 01 A1 01 85 05 19 01 29 02 15 00 26 FF 00 75 08 95 05 B1 02 "
    "85 06 75 08 96 00 08 B1 02 C0"
)
CMD_ONLY_DESCRIPTOR = bytes.fromhex("06 00 FF 09 01 A1 01 85 05 75 08 95 05 B1 02 C0")
XFER_ONLY_DESCRIPTOR = bytes.fromhex("06 00 FF 09 01 A1 01 85 06 75 08 96 00 08 B1 02 C0")

ISP_MODE_COMMAND = bytes([0x05, 0x75, 0x00, 0x00, 0x00, 0x00])


class FakeHandle:
    def __init__(self, descriptor, fail_send=None):
        self.descriptor = descriptor
        self.fail_send = fail_send
        self.sent = []
        self.requests = []
        self.closed = False

    def send_feature_report(self, data):
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append(bytes(data))

    def get_feature_report(self, request):
        self.requests.append(bytes(request))
        return bytes(request[:2]) + b"\xaa\xbb"

    def get_report_descriptor(self):
        return self.descriptor

    def close(self):
        self.closed = True


class FakeApi:
    def __init__(self, devices, handles, after_refresh=None):
        self.devices = list(devices)
        self.handles = handles
        self.after_refresh = after_refresh
        self.refreshes = 0

    def device_list(self):
        return list(self.devices)

    def refresh_devices(self):
        self.refreshes += 1
        if self.after_refresh is not None:
            self.devices = list(self.after_refresh)

    def open_path(self, path):
        try:
            return self.handles[path]
        except KeyError:
            raise HidError(f"Failed to open {path}") from None


def isp_info(path, product_id=0x1020):
    return DeviceInfo(path=path, vendor_id=0x0603, product_id=product_id, interface_number=0)


def keyboard_info(path, iface, manufacturer="Example Corp"):
    return DeviceInfo(
        path=path,
        vendor_id=0x05AC,
        product_id=0x024F,
        interface_number=iface,
        manufacturer_string=manufacturer,
        product_string="SMK Keyboard",
    )


def selector(api, platform="linux"):
    sleeps = []
    return DeviceSelector(api, platform=platform, sleep=sleeps.append, progress=False), sleeps


def test_parse_feature_report_ids_of_keyboard_interfaces():
    assert parse_feature_report_ids(KB_IFACE0) == []
    assert parse_feature_report_ids(KB_IFACE1) == [5]


def test_parse_feature_report_ids_of_isp_descriptor():
    assert parse_feature_report_ids(ISP_DESCRIPTOR) == [5, 6]


def test_parse_feature_report_ids_deduplicates():
    descriptor = bytes.fromhex("85 05 B1 02 B1 02 85 06 B1 02 85 05 B1 02")
    assert parse_feature_report_ids(descriptor) == [5, 6]


def test_parse_feature_report_ids_push_pop_restores_report_id():
    descriptor = bytes.fromhex("85 03 A4 85 04 B4 B1 02")
    assert parse_feature_report_ids(descriptor) == [3]


@pytest.mark.parametrize("hex_text", ["85", "95 05 26 FF", "85 00 B1 02", "B4"])
def test_parse_feature_report_ids_rejects_bad_descriptors(hex_text):
    with pytest.raises(ReportDescriptorError):
        parse_feature_report_ids(bytes.fromhex(hex_text))


def test_try_fetch_switches_device_into_isp_mode():
    keyboard = FakeHandle(KB_IFACE1)
    isp = FakeHandle(ISP_DESCRIPTOR)
    api = FakeApi(
        [keyboard_info("/dev/hidraw1", 1)],
        {"/dev/hidraw1": keyboard, "/dev/hidraw3": isp},
        after_refresh=[isp_info("/dev/hidraw3")],
    )
    ds, sleeps = selector(api)
    device = ds.try_fetch_isp_device(DEVICE_NUPHY_AIR60, 5)
    assert device.device_spec == DEVICE_NUPHY_AIR60
    assert keyboard.sent == [ISP_MODE_COMMAND]
    assert sleeps == [2.0]
    assert api.refreshes == 1


def test_try_fetch_finds_device_already_in_isp_mode():
    isp = FakeHandle(ISP_DESCRIPTOR)
    api = FakeApi([isp_info("/dev/hidraw3", product_id=0x1021)], {"/dev/hidraw3": isp})
    ds, sleeps = selector(api)
    device = ds.try_fetch_isp_device(DEVICE_NUPHY_AIR60, 1)
    assert device.device_spec == DEVICE_NUPHY_AIR60
    assert sleeps == []


def test_try_fetch_gives_up_after_retries():
    api = FakeApi([], {})
    ds, sleeps = selector(api)
    with pytest.raises(DeviceNotFoundError):
        ds.try_fetch_isp_device(DEVICE_NUPHY_AIR60, 3)
    assert api.refreshes == 2
    assert sleeps == [1.0, 1.0]


def test_try_fetch_with_no_retries_finds_nothing():
    isp = FakeHandle(ISP_DESCRIPTOR)
    api = FakeApi([isp_info("/dev/hidraw3")], {"/dev/hidraw3": isp})
    ds, _ = selector(api)
    with pytest.raises(DeviceNotFoundError):
        ds.try_fetch_isp_device(DEVICE_NUPHY_AIR60, 0)


def test_unexpected_error_entering_isp_mode_propagates():
    keyboard = FakeHandle(KB_IFACE1, fail_send=HidError("boom"))
    api = FakeApi([keyboard_info("/dev/hidraw1", 1)], {"/dev/hidraw1": keyboard})
    ds, sleeps = selector(api)
    with pytest.raises(HidError, match="boom"):
        ds.try_fetch_isp_device(DEVICE_NUPHY_AIR60, 5)
    assert sleeps == [2.0]
    assert keyboard.closed


def test_two_isp_devices_are_ambiguous():
    handles = {"/dev/a": FakeHandle(ISP_DESCRIPTOR), "/dev/b": FakeHandle(ISP_DESCRIPTOR)}
    api = FakeApi([isp_info("/dev/a"), isp_info("/dev/b")], handles)
    ds, _ = selector(api)
    with pytest.raises(UnexpectedDeviceCountError):
        ds.try_fetch_isp_device(DEVICE_NUPHY_AIR60, 1)


def test_isp_device_without_xfer_report_is_not_found():
    api = FakeApi([isp_info("/dev/a")], {"/dev/a": FakeHandle(CMD_ONLY_DESCRIPTOR)})
    ds, _ = selector(api)
    with pytest.raises(DeviceNotFoundError):
        ds.try_fetch_isp_device(DEVICE_NUPHY_AIR60, 1)


def test_windows_uses_separate_command_and_transfer_devices():
    cmd = FakeHandle(CMD_ONLY_DESCRIPTOR)
    xfer = FakeHandle(XFER_ONLY_DESCRIPTOR)
    api = FakeApi([isp_info("/dev/cmd"), isp_info("/dev/xfer")], {"/dev/cmd": cmd, "/dev/xfer": xfer})
    spec = replace(
        DEVICE_NUPHY_AIR60,
        platform=PlatformSpec(firmware_size=4, bootloader_size=4, page_size=2),
        reboot=False,
    )
    ds, _ = selector(api, platform="win32")
    device = ds.try_fetch_isp_device(spec, 1)
    data = device.read_cycle(ReadSection.FIRMWARE)
    assert data == b"\xaa\xbb\xaa\xbb"
    assert xfer.requests == [bytes([0x06, 0x72, 0, 0])] * 2
    assert cmd.requests == []
    assert [report[1] for report in cmd.sent] == [0x55, 0x52]


def test_connected_devices_tree_on_linux():
    handles = {"/dev/hidraw0": FakeHandle(KB_IFACE0), "/dev/hidraw1": FakeHandle(KB_IFACE1)}
    devices = [
        keyboard_info("/dev/hidraw1", 1),
        DeviceInfo(path="/dev/bt", vendor_id=0x05AC, product_id=0x024F, interface_number=0, bus="other"),
        keyboard_info("/dev/hidraw0", 0, manufacturer=None),
    ]
    ds, _ = selector(FakeApi(devices, handles))
    tree = to_tree_string(ds.connected_devices_tree(), 0)
    expected = "\n".join(
        [
            'ID 05ac:024f manufacturer="Example Corp" product="SMK Keyboard"',
            '    path="/dev/hidraw0" interface_number=0',
            f"    report_descriptor=[{KB_IFACE0_HEX}]",
            "    feature_report_ids=[]",
            '    path="/dev/hidraw1" interface_number=1',
            f"    report_descriptor=[{KB_IFACE1_HEX}]",
            "    feature_report_ids=[5]",
        ]
    )
    assert tree == expected


def test_connected_devices_tree_on_macos_lists_usages():
    handles = {"/dev/k1": FakeHandle(KB_IFACE1)}
    devices = [
        replace(keyboard_info("/dev/k1", 1), usage_page=0xFF00, usage=0x0001),
        replace(keyboard_info("/dev/k1", 1), usage_page=0x0001, usage=0x0080),
    ]
    ds, _ = selector(FakeApi(devices, handles), platform="darwin")
    [node] = ds.connected_devices_tree()
    lines = node.to_tree_string(0).splitlines()
    assert lines[-2:] == [
        "        usage_page=0x0001 usage=0x0080",
        "        usage_page=0xff00 usage=0x0001",
    ]


def test_connected_devices_tree_on_windows_reports_open_errors():
    devices = [replace(keyboard_info("/dev/missing", 1), usage_page=0xFF00, usage=0x0001)]
    ds, _ = selector(FakeApi(devices, {}), platform="win32")
    [node] = ds.connected_devices_tree()
    assert node.to_tree_string(0).splitlines()[1:] == [
        "    interface_number=1",
        '        path="/dev/missing" usage_page=0xff00 usage=0x0001',
        "        report_descriptor=error: Failed to open /dev/missing",
        "        feature_report_ids=error: Device not found",
    ]


def test_connected_devices_tree_groups_and_sorts_devices():
    devices = [
        DeviceInfo(path="/dev/b", vendor_id=0x258A, product_id=0x0049, interface_number=0),
        keyboard_info("/dev/a", 0),
    ]
    handles = {"/dev/a": FakeHandle(KB_IFACE0), "/dev/b": FakeHandle(KB_IFACE0)}
    ds, _ = selector(FakeApi(devices, handles))
    nodes = ds.connected_devices_tree()
    assert [(n.vendor_id, n.product_id) for n in nodes] == [(0x05AC, 0x024F), (0x258A, 0x0049)]
    assert nodes[1].manufacturer_string == "None"
    assert nodes[1].product_string == "None"