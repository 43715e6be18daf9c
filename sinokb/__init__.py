"""Flash reading and writing for Sinowealth ISP keyboards over USB HID, with Intel HEX and ISP/JTAG payload conversion."""

__version__ = "1.0.0"