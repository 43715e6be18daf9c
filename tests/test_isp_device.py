import pytest

from sinokb.device_spec import DeviceSpec
from sinokb.isp_device import ISPDevice, ISPError, ReadSection
from sinokb.platform_spec import PlatformSpec
from sinokb.util import ByteMismatchError, HidError, LengthMismatchError

PLATFORM = PlatformSpec(firmware_size=64, bootloader_size=16, page_size=16)


def _spec(reboot=True):
    return DeviceSpec(vendor_id=0x05AC, product_id=0x024F, platform=PLATFORM, reboot=reboot)


class FakeFlash:
    """Emulates the bootloader's flash handling over feature reports."""

    def __init__(self, image=None, corrupt_at=None, reboot_error=None):
        total = PLATFORM.firmware_size + PLATFORM.bootloader_size
        self.memory = bytearray(image if image is not None else bytes(range(total)))
        self.sent = []
        self.requests = []
        self.pointer = 0
        self.vector = None
        self.corrupt_at = corrupt_at
        self.reboot_error = reboot_error

    def send_feature_report(self, data):
        data = bytes(data)
        self.sent.append(data)
        if data[0] == 0x06 and data[1] == 0x77:
            fs = PLATFORM.firmware_size
            vector = bytearray(2)
            for i, b in enumerate(data[2:]):
                addr = self.pointer + i
                if addr < 3:
                    continue
                if fs - 4 <= addr < fs - 2:
                    vector[addr - (fs - 4)] = b
                    continue
                if addr == self.corrupt_at:
                    b ^= 0xFF
                self.memory[addr] = b
            if self.pointer == 0 or self.vector is None:
                self.vector = self.vector or bytes(vector)
            self.pointer += len(data) - 2
        elif data[0] == 0x05:
            cmd = data[1]
            if cmd in (0x52, 0x57):
                self.pointer = data[2] | (data[3] << 8)
            elif cmd == 0x45:
                self.memory[: PLATFORM.firmware_size] = bytes(PLATFORM.firmware_size)
            elif cmd == 0x5A and self.reboot_error is not None:
                raise self.reboot_error

    def get_feature_report(self, request):
        request = bytes(request)
        self.requests.append(request)
        size = len(request) - 2
        chunk = bytearray(self.memory[self.pointer : self.pointer + size])
        if self.pointer == 0 and self.vector is not None:
            chunk[0:3] = bytes([0x02]) + self.vector
        self.pointer += size
        return request[:2] + bytes(chunk)


def _device(fake, reboot=True):
    return ISPDevice(_spec(reboot), fake, sleep=lambda _s: None, progress=False)


def _firmware():
    image = bytearray(range(100, 164))
    image[0:3] = bytes([0x02, 0x00, 0x66])
    image[60:62] = bytes(2)
    return bytes(image)


def test_available_sections():
    assert ReadSection.available_sections() == ["firmware", "bootloader", "full"]


def test_section_from_string():
    assert ReadSection("bootloader") is ReadSection.BOOTLOADER
    with pytest.raises(ValueError):
        ReadSection("everything")


def test_read_firmware_returns_firmware_area():
    fake = FakeFlash()
    data = _device(fake).read_cycle(ReadSection.FIRMWARE)
    assert data == bytes(fake.memory[: PLATFORM.firmware_size])


def test_read_bootloader_and_full():
    fake = FakeFlash()
    assert _device(fake).read_cycle(ReadSection.BOOTLOADER) == bytes(fake.memory[64:80])
    fake = FakeFlash()
    assert _device(fake).read_cycle(ReadSection.FULL) == bytes(fake.memory)


def test_read_command_bytes():
    fake = FakeFlash()
    _device(fake).read_cycle(ReadSection.FIRMWARE)
    assert fake.sent[0] == bytes([0x05, 0x55, 0, 0, 0, 0])
    assert fake.sent[1] == bytes([0x05, 0x52, 0, 0, 0, 0])
    assert fake.sent[-1] == bytes([0x05, 0x5A, 0, 0, 0, 0])
    assert len(fake.requests) == PLATFORM.firmware_size // PLATFORM.page_size
    assert all(r[:2] == bytes([0x06, 0x72]) for r in fake.requests)
    assert all(len(r) == PLATFORM.page_size + 2 for r in fake.requests)


def test_read_bootloader_start_address_encoding():
    fake = FakeFlash()
    _device(fake).read_cycle(ReadSection.BOOTLOADER)
    assert fake.sent[1] == bytes([0x05, 0x52, 64, 0, 0, 0])


def test_no_reboot_when_disabled():
    fake = FakeFlash()
    data = _device(fake, reboot=False).read_cycle(ReadSection.FIRMWARE)
    assert data == bytes(fake.memory[: PLATFORM.firmware_size])
    assert fake.sent[-1] == bytes([0x05, 0x52, 0, 0, 0, 0])
    assert all(report[1] != 0x5A for report in fake.sent)


def test_reboot_error_is_swallowed():
    fake = FakeFlash(reboot_error=HidError("device gone"))
    data = _device(fake).read_cycle(ReadSection.FIRMWARE)
    assert data == bytes(fake.memory[: PLATFORM.firmware_size])


def test_hid_error_is_wrapped():
    class Broken(FakeFlash):
        def get_feature_report(self, request):
            raise HidError("read failed")

    with pytest.raises(ISPError) as info:
        _device(Broken()).read_cycle(ReadSection.FIRMWARE)
    assert isinstance(info.value.cause, HidError)
    assert str(info.value) == "read failed"


def test_write_cycle_round_trip():
    fake = FakeFlash()
    firmware = _firmware()
    _device(fake).write_cycle(firmware)
    assert _device(FakeFlash(image=fake.memory)).read_cycle()[3:60] == firmware[3:60]
    assert fake.vector == firmware[1:3]


def test_write_cycle_command_sequence():
    fake = FakeFlash()
    _device(fake).write_cycle(_firmware())
    assert fake.sent[0] == bytes([0x05, 0x45, 0, 0, 0, 0])
    assert fake.sent[1] == bytes([0x05, 0x57, 0, 0, 0, 0])
    pages = [r for r in fake.sent if r[:2] == bytes([0x06, 0x77])]
    assert len(pages) == _spec().num_pages()
    assert all(len(p) == PLATFORM.page_size + 2 for p in pages)
    assert fake.sent[-2] == bytes([0x05, 0x55, 0, 0, 0, 0])
    assert fake.sent[-1] == bytes([0x05, 0x5A, 0, 0, 0, 0])


def test_write_places_reset_vector_below_bootloader():
    fake = FakeFlash()
    firmware = _firmware()
    _device(fake).write_cycle(firmware)
    first_page = next(r for r in fake.sent if r[:2] == bytes([0x06, 0x77]))
    last_page = [r for r in fake.sent if r[:2] == bytes([0x06, 0x77])][-1]
    assert first_page[2:] == firmware[:16]
    assert last_page[2 + 12 : 2 + 14] == firmware[1:3]


def test_write_does_not_modify_input():
    firmware = bytearray(_firmware())
    before = bytes(firmware)
    _device(FakeFlash()).write_cycle(firmware)
    assert bytes(firmware) == before


def test_write_verification_failure():
    fake = FakeFlash(corrupt_at=20)
    with pytest.raises(ISPError) as info:
        _device(fake).write_cycle(_firmware())
    assert isinstance(info.value.cause, ByteMismatchError)
    assert info.value.cause.addr == 20


def test_write_oversized_firmware_fails_length_check():
    with pytest.raises(ISPError) as info:
        _device(FakeFlash()).write_cycle(_firmware() + bytes(16))
    assert isinstance(info.value.cause, LengthMismatchError)


def test_write_undersized_firmware_rejected():
    with pytest.raises(ValueError):
        _device(FakeFlash()).write_cycle(bytes(10))


def test_separate_xfer_device():
    cmd = FakeFlash()
    xfer = FakeFlash()
    device = ISPDevice(_spec(), cmd, xfer, sleep=lambda _s: None, progress=False)
    device.read_cycle(ReadSection.FIRMWARE)
    assert cmd.requests == []
    assert len(xfer.requests) == PLATFORM.firmware_size // PLATFORM.page_size