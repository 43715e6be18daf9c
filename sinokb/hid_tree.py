"""Tree view of connected HID devices, their interfaces and collections."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol, Union

from .util import to_hex_string

INDENT_SIZE = 4

Descriptor = Union[bytes, BaseException, None]
FeatureReportIds = Union[list, BaseException, None]


class _TreeNode(Protocol):
    def to_tree_string(self, level: int) -> str: ...


def _indent(level: int) -> str:
    return " " * (INDENT_SIZE * level)


def _report_lines(indent: str, descriptor: Descriptor, feature_report_ids: FeatureReportIds) -> list[str]:
    lines = []
    if isinstance(descriptor, BaseException):
        lines.append(f"{indent}report_descriptor=error: {descriptor}")
    elif descriptor is not None:
        lines.append(f"{indent}report_descriptor=[{to_hex_string(descriptor)}]")
    if isinstance(feature_report_ids, BaseException):
        lines.append(f"{indent}feature_report_ids=error: {feature_report_ids}")
    elif feature_report_ids is not None:
        ids = ", ".join(str(rid) for rid in feature_report_ids)
        lines.append(f"{indent}feature_report_ids=[{ids}]")
    return lines


def to_tree_string(nodes: Iterable[_TreeNode], level: int = 0) -> str:
    """Render a sequence of nodes, one after another, at the given depth."""
    indent = _indent(level)
    return "\n".join(f"{indent}{node.to_tree_string(level)}" for node in nodes)


@dataclass
class ItemNode:
    """One top-level collection of an interface.

    Without a path only the usage is shown; with a path the report
    descriptor and feature report IDs of the collection are shown as well.
    A descriptor or ID list may be an exception when it could not be read.
    """

    usage_page: int
    usage: int
    path: str | None = None
    descriptor: Descriptor = None
    feature_report_ids: FeatureReportIds = None

    def to_tree_string(self, level: int) -> str:
        indent = _indent(level)
        usage = f"usage_page={self.usage_page:#06x} usage={self.usage:#06x}"
        if self.path is None:
            return f"{indent}{usage}"
        lines = [f'{indent}path="{self.path}" {usage}']
        lines.extend(_report_lines(indent, self.descriptor, self.feature_report_ids))
        return "\n".join(lines)


@dataclass
class InterfaceNode:
    """A USB interface of a device, with the collections it exposes."""

    interface_number: int
    path: str | None = None
    descriptor: Descriptor = None
    feature_report_ids: FeatureReportIds = None
    children: list[ItemNode] = field(default_factory=list)

    def to_tree_string(self, level: int) -> str:
        indent = _indent(level)
        if self.path is not None:
            lines = [f'{indent}path="{self.path}" interface_number={self.interface_number}']
        else:
            lines = [f"{indent}interface_number={self.interface_number}"]
        lines.extend(_report_lines(indent, self.descriptor, self.feature_report_ids))
        lines.extend(child.to_tree_string(level + 1) for child in self.children)
        return "\n".join(lines)


@dataclass
class DeviceNode:
    """A USB device identified by vendor and product ID."""

    vendor_id: int
    product_id: int
    manufacturer_string: str = "None"
    product_string: str = "None"
    children: list[InterfaceNode] = field(default_factory=list)

    def to_tree_string(self, level: int) -> str:
        indent = _indent(level)
        lines = [
            f"{indent}ID {self.vendor_id:04x}:{self.product_id:04x} "
            f'manufacturer="{self.manufacturer_string}" product="{self.product_string}"'
        ]
        lines.extend(child.to_tree_string(level + 1) for child in self.children)
        return "\n".join(lines)