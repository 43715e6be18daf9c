"""Command line interface: list devices, read and write flash, convert payloads."""

from __future__ import annotations

import argparse
import hashlib
import logging
import os
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import replace
from enum import Enum
from pathlib import Path

from . import __version__
from .device_selector import DeviceSelector, DeviceSelectorError
from .device_spec import (
    DEVICE_BASE_SH68F881,
    DEVICE_BASE_SH68F90,
    DEVICES,
    DeviceSpec,
    available_devices,
)
from .hid_tree import to_tree_string
from .ihex import ConversionError, from_ihex, to_ihex
from .isp_device import ISPError, ReadSection
from .platform_spec import available_platforms
from .util import (
    HidError,
    PayloadConversionError,
    convert_to_isp_payload,
    convert_to_jtag_payload,
)

log = logging.getLogger(__name__)

PROG = "sinowealth-kb-tool"
DEFAULT_RETRY_COUNT = 5
MAX_IHEX_LENGTH = 0xFFFF
LOG_LEVEL_ENV = "SINOKB_LOG"

_HEX_EXTENSIONS = frozenset({"ihex", "ihx", "hex"})
_DIRECTIONS = ("to_jtag", "to_isp")
_BASE_SPECS = {
    "sh68f90": DEVICE_BASE_SH68F90,
    "sh68f881": DEVICE_BASE_SH68F881,
}
_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFF_FFFF
_USIZE_MAX = 2**64 - 1
_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1

_CLI_ERRORS = (
    OSError,
    HidError,
    ISPError,
    ConversionError,
    PayloadConversionError,
    DeviceSelectorError,
)


class Format(Enum):
    """File format of a firmware image."""

    INTEL_HEX = "ihex"
    BINARY = "bin"

    @staticmethod
    def available_formats() -> list[str]:
        return [fmt.value for fmt in Format]


def _maybe_hex(name: str, min_value: int, max_value: int) -> Callable[[str], int]:
    """Build a parser for a decimal or 0x-prefixed hexadecimal integer in a range."""

    def parse(text: str) -> int:
        digits, base = (text[2:], 16) if text.startswith("0x") else (text, 10)
        try:
            value = int(digits, base)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
        if not min_value <= value <= max_value:
            raise argparse.ArgumentTypeError(
                f"{text} is not in {min_value}..={max_value}"
            )
        return value

    parse.__name__ = name
    return parse


_u16 = _maybe_hex("u16", 0, _U16_MAX)
_u32 = _maybe_hex("u32", 0, _U32_MAX)
_usize = _maybe_hex("usize", 0, _USIZE_MAX)


def _i32(text: str) -> int:
    try:
        value = int(text, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
    if not _I32_MIN <= value <= _I32_MAX:
        raise argparse.ArgumentTypeError(f"{text} is not in {_I32_MIN}..={_I32_MAX}")
    return value


def _retry_count(text: str) -> int:
    try:
        value = int(text, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"{text} is negative")
    return value


def _bool(text: str) -> bool:
    if text == "true":
        return True
    if text == "false":
        return False
    raise argparse.ArgumentTypeError(f"expected 'true' or 'false', got {text!r}")


def _add_device_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-d", "--device", choices=available_devices())
    parser.add_argument("-p", "--platform", choices=available_platforms())
    parser.add_argument("--vendor_id", metavar="VID", type=_u16)
    parser.add_argument("--product_id", metavar="PID", type=_u16)
    parser.add_argument("--firmware_size", metavar="SIZE", type=_usize)
    parser.add_argument("--bootloader_size", metavar="SIZE", type=_usize)
    parser.add_argument("--page_size", metavar="SIZE", type=_usize)
    parser.add_argument("--isp_iface_num", metavar="NUM", type=_i32)
    parser.add_argument("--isp_report_id", metavar="USAGE", type=_u32)
    parser.add_argument("--reboot", metavar="BOOL", type=_bool)


def _add_retry_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-r",
        "--retry",
        metavar="NUM",
        type=_retry_count,
        default=DEFAULT_RETRY_COUNT,
        help="number of attempts trying to find device",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with its list, read, write and convert commands."""
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="A tool to read and write flash for SinoWealth ISP devices",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    list_cmd = commands.add_parser(
        "list", help="List all connected usb hid devices and info about them."
    )
    list_cmd.add_argument("--vendor_id", metavar="VID", type=_u16)
    list_cmd.add_argument("--product_id", metavar="PID", type=_u16)

    read_cmd = commands.add_parser("read", help="Read flash into a file.")
    read_cmd.add_argument("output_file", help="file to write flash contents to")
    read_cmd.add_argument("--format", choices=Format.available_formats())
    read_cmd.add_argument(
        "-s",
        "--section",
        choices=ReadSection.available_sections(),
        default=ReadSection.FIRMWARE.value,
        help="firmware section to read",
    )
    _add_retry_arg(read_cmd)
    _add_device_args(read_cmd)

    write_cmd = commands.add_parser("write", help="Write a file into flash.")
    write_cmd.add_argument("input_file", help="payload to write into flash")
    write_cmd.add_argument(
        "-f", "--force", action="store_true", help="ignore firmware size check"
    )
    write_cmd.add_argument("--format", choices=Format.available_formats())
    _add_retry_arg(write_cmd)
    _add_device_args(write_cmd)

    convert_cmd = commands.add_parser(
        "convert", help="Convert payload from ISP to JTAG and vice versa."
    )
    convert_cmd.add_argument(
        "--direction", choices=_DIRECTIONS, required=True, help="direction of conversion"
    )
    convert_cmd.add_argument("--input_format", choices=Format.available_formats())
    convert_cmd.add_argument("--output_format", choices=Format.available_formats())
    convert_cmd.add_argument("input_file", help="file to convert")
    convert_cmd.add_argument("output_file", help="file to write results to")
    _add_device_args(convert_cmd)

    return parser


def device_spec_from_args(args: argparse.Namespace) -> DeviceSpec:
    """Assemble a device spec from a named device or platform plus overrides.

    Raises ValueError when neither a device nor a platform with vendor and
    product IDs is given.
    """
    device = getattr(args, "device", None)
    platform = getattr(args, "platform", None)
    vendor_id = getattr(args, "vendor_id", None)
    product_id = getattr(args, "product_id", None)

    if device is None:
        missing = [
            f"--{name}"
            for name, value in (
                ("platform", platform),
                ("vendor_id", vendor_id),
                ("product_id", product_id),
            )
            if value is None
        ]
        if missing:
            raise ValueError(
                "the following arguments are required unless --device is given: "
                + ", ".join(missing)
            )

    spec: DeviceSpec | None = None
    if device is not None:
        if device not in DEVICES:
            raise ValueError(f"unknown device: {device}")
        spec = DEVICES[device]
    if platform is not None:
        if platform not in _BASE_SPECS:
            raise ValueError(f"Invalid platform: {platform}")
        spec = _BASE_SPECS[platform]
    assert spec is not None

    overrides = {
        name: getattr(args, name, None)
        for name in ("vendor_id", "product_id", "isp_iface_num", "isp_report_id", "reboot")
    }
    spec = replace(spec, **{k: v for k, v in overrides.items() if v is not None})

    platform_overrides = {
        name: getattr(args, name, None)
        for name in ("firmware_size", "bootloader_size", "page_size")
    }
    platform_overrides = {k: v for k, v in platform_overrides.items() if v is not None}
    if platform_overrides:
        spec = replace(spec, platform=replace(spec.platform, **platform_overrides))
    return spec


def detect_format(path: str | os.PathLike, explicit: Format | str | None = None) -> Format:
    """Choose a file format from an explicit choice or the file extension.

    Warns on stderr when the explicit choice contradicts the extension.
    """
    suffix = Path(path).suffix
    extension = suffix[1:] if suffix else None
    assumed = Format.INTEL_HEX if extension in _HEX_EXTENSIONS else Format.BINARY
    fmt = Format(explicit) if explicit is not None else assumed

    if assumed is Format.INTEL_HEX and fmt is Format.BINARY:
        print(
            f"Warning: binary file has {extension} extension. This might be unintended.",
            file=sys.stderr,
        )
    elif assumed is Format.BINARY and fmt is Format.INTEL_HEX:
        print(
            "Warning: ihex file does not have .ihex or .ihx or .hex extension. "
            "This might be unintended.",
            file=sys.stderr,
        )
    return fmt


def read_with_format(path: str | os.PathLike, fmt: Format) -> bytes:
    """Read a firmware image from a file in the given format."""
    raw = Path(path).read_bytes()
    if fmt is Format.INTEL_HEX:
        return from_ihex(raw.decode("utf-8", errors="replace"), MAX_IHEX_LENGTH)
    return raw


def write_with_format(path: str | os.PathLike, data: bytes, fmt: Format) -> None:
    """Write a firmware image to a file in the given format."""
    if fmt is Format.INTEL_HEX:
        Path(path).write_bytes(to_ihex(data).encode("ascii"))
    else:
        Path(path).write_bytes(bytes(data))


def convert_firmware(firmware: bytes, device_spec: DeviceSpec, direction: str) -> bytes:
    """Convert an image between ISP and JTAG layouts; direction is to_jtag or to_isp."""
    if direction not in _DIRECTIONS:
        raise ValueError(f"Invalid direction: {direction}")
    size = device_spec.platform.firmware_size
    image = bytes(firmware)
    if len(image) < size:
        log.warning(
            "Firmware size is less than expected (%d). Increasing to %d", len(image), size
        )
        image += bytes(size - len(image))

    if direction == "to_jtag":
        result = convert_to_jtag_payload(image, device_spec)
        total = device_spec.total_flash_size()
        if len(result) < total:
            print(
                f"Firmware is smaller ({len(result)} bytes) than expected ({total} bytes). "
                "This payload might not be suitable for JTAG flashing.",
                file=sys.stderr,
            )
    else:
        result = convert_to_isp_payload(image, device_spec)
        if len(result) > size:
            print(
                f"Firmware size is larger ({len(result)} bytes) than expected ({size} bytes). "
                "This payload might not be suitable for ISP flashing.",
                file=sys.stderr,
            )
    return result


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _run_read(args: argparse.Namespace, device_spec: DeviceSpec) -> int:
    fmt = detect_format(args.output_file, args.format)
    section = ReadSection(args.section)
    device = DeviceSelector().try_fetch_isp_device(device_spec, args.retry)
    firmware = device.read_cycle(section)
    print(f"MD5: {hashlib.md5(firmware).hexdigest()}", file=sys.stderr)
    write_with_format(args.output_file, firmware, fmt)
    print(
        f"Successfully read {len(firmware)} bytes - {args.output_file}", file=sys.stderr
    )
    return 0


def _run_write(args: argparse.Namespace, device_spec: DeviceSpec) -> int:
    fmt = detect_format(args.input_file, args.format)
    firmware = read_with_format(args.input_file, fmt)
    size = device_spec.platform.firmware_size
    if len(firmware) < size:
        print(
            f"Warning: firmware size is less than expected ({len(firmware)}). "
            f"It will be resized to {size} and filled with 0",
            file=sys.stderr,
        )
        if not args.force:
            print("Use --force skip confirmation", file=sys.stderr)
            if not _confirm("Are you sure you want to continue?"):
                return 0
        firmware += bytes(size - len(firmware))

    device = DeviceSelector().try_fetch_isp_device(device_spec, args.retry)
    device.write_cycle(firmware)
    print(f"Successfully wrote {len(firmware)} bytes", file=sys.stderr)
    return 0


def _run_list(args: argparse.Namespace) -> int:
    nodes = [
        node
        for node in DeviceSelector().connected_devices_tree()
        if (args.vendor_id is None or node.vendor_id == args.vendor_id)
        and (args.product_id is None or node.product_id == args.product_id)
    ]
    print(to_tree_string(nodes, 0))
    return 0


def _run_convert(args: argparse.Namespace, device_spec: DeviceSpec) -> int:
    input_format = detect_format(args.input_file, args.input_format)
    output_format = detect_format(args.output_file, args.output_format)
    firmware = read_with_format(args.input_file, input_format)
    result = convert_firmware(firmware, device_spec, args.direction)
    write_with_format(args.output_file, result, output_format)
    return 0


def _configure_logging() -> None:
    level_name = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
    level = logging.getLevelName(level_name) if level_name else None
    package_logger = logging.getLogger(__package__ or "sinokb")
    if not isinstance(level, int):
        package_logger.setLevel(logging.CRITICAL + 10)
        return
    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter("%(asctime)sZ %(levelname)-5s [%(name)s] %(message)s")
    formatter.converter = time.gmtime
    handler.setFormatter(formatter)
    package_logger.handlers[:] = [handler]
    package_logger.setLevel(level)
    package_logger.propagate = False


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line tool and return its exit status."""
    _configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help(sys.stderr)
        return 2

    device_spec: DeviceSpec | None = None
    if args.command != "list":
        try:
            device_spec = device_spec_from_args(args)
        except ValueError as err:
            parser.error(str(err))

    try:
        if args.command == "read":
            return _run_read(args, device_spec)
        if args.command == "write":
            return _run_write(args, device_spec)
        if args.command == "convert":
            return _run_convert(args, device_spec)
        return _run_list(args)
    except _CLI_ERRORS as err:
        print(err, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())