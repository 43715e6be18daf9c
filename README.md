# sinokb

A command-line tool and library for reading and writing the flash of
Sinowealth 8051-based keyboards and mice (SH68F90, SH68F881) through the
ISP bootloader commonly found on them.

It can:

- list connected USB HID devices together with their interfaces, report
  descriptors and feature report IDs;
- read the firmware, the bootloader or the full flash into a file;
- write a firmware image into flash and verify it by reading it back;
- convert a payload between the ISP layout and the JTAG layout.

Files are handled either as raw binary or as Intel HEX. The format is
guessed from the file extension (`.ihex`, `.ihx` and `.hex` mean Intel HEX,
anything else means binary) and can be forced with `--format`. A warning is
printed when the forced format contradicts the extension.

## Installation

```
pip install sinokb
```

This installs the `sinokb` command.

## Usage

### Listing devices

```
sinokb list
sinokb list --vendor_id 0x05ac --product_id 0x024f
```

### Reading flash

```
sinokb read --device nuphy-air60 firmware.hex
sinokb read --device nuphy-air60 --section bootloader bootloader.hex
sinokb read --device nuphy-air60 --section full flash.bin
```

`--section` is one of `firmware` (the default), `bootloader` or `full`.
The MD5 digest of what was read is printed to standard error.

### Writing flash

```
sinokb write --device nuphy-air60 firmware.hex
```

If the image is smaller than the platform's firmware size, you are asked
whether to continue (`[y/N]`); on yes it is padded with zeros. `--force`
skips the question.

### Converting payloads

```
sinokb convert --device nuphy-air60 --direction to_jtag firmware.hex jtag.hex
sinokb convert --device nuphy-air60 --direction to_isp jtag.hex firmware.hex
```

`--input_format` and `--output_format` override the guessed formats.
Conversion works on files only and needs no device attached.

### Selecting a device

Either name a known device with `--device`, or describe it yourself with
`--platform`, `--vendor_id` and `--product_id`:

```
sinokb read --platform sh68f90 --vendor_id 0x05ac --product_id 0x024f \
    --firmware_size 61440 firmware.hex
```

`--platform` is `sh68f90` or `sh68f881`. The following options refine a
device description: `--firmware_size`, `--bootloader_size`, `--page_size`,
`--isp_iface_num`, `--isp_report_id` and `--reboot` (`true` or `false`).
Numeric values may be decimal or hexadecimal with a `0x` prefix (except
`--isp_iface_num`, which is decimal). `--retry` (default 5) sets how many
times the tool looks for the device before giving up.

The known device names are printed by `sinokb read --help`.

### Logging

Diagnostic logging is off by default. Set the `SINOKB_LOG` environment
variable to a level name such as `DEBUG` or `INFO` to have log lines
written to standard error.

## Library use

The payload helpers work without any hardware:

```python
from sinokb.device_spec import DEVICES, available_devices
from sinokb.ihex import from_ihex, to_ihex
from sinokb.util import convert_to_jtag_payload, verify

print(available_devices())
with open("firmware.hex") as f:
    data = from_ihex(f.read(), 0xFFFF)
verify(data, data)
jtag = convert_to_jtag_payload(data, DEVICES["nuphy-air60"])
text = to_ihex(jtag)
```

`convert_to_jtag_payload` and `convert_to_isp_payload` return new bytes and
leave their input unchanged.

Errors are raised as exceptions: `sinokb.ihex.ConversionError` for Intel
HEX problems (with `ChecksumMismatchError`, `AddressTooHighError` and
`UnsupportedRecordTypeError` among its subclasses),
`sinokb.util.VerificationError` when a read-back differs, and
`sinokb.util.PayloadConversionError` when a payload has no usable jump
instruction or points to an unexpected address.

`sinokb.isp_device.ISPDevice` and `sinokb.device_selector.DeviceSelector`
accept any object offering `send_feature_report` and `get_feature_report`
(and, for the selector's backend, `device_list`, `refresh_devices` and
`open_path`), so they can be driven by a backend of your own.

## Limitations

Device access is implemented only through the Linux hidraw interface
(`/dev/hidraw*`, enumerated via `/sys/class/hidraw`). On other operating
systems the `list`, `read` and `write` commands fail with an error; `convert`
and the library helpers above work everywhere. The user running the tool
needs read and write access to the hidraw device nodes.

## Running the tests

```
pip install "sinokb[test]"
pytest
```