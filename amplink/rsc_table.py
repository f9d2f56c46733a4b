"""Parsing and handling of firmware resource tables.

A table is a ``bytearray``: handlers write assigned notification ids back
into it.
"""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Any, Callable, Iterator, Optional

from .errors import (
    InvalidArgumentError,
    ResourceNotPresentError,
    ResourceNotSupportedError,
    ResourceTableReservedError,
    ResourceTableTruncatedError,
    ResourceTableVersionError,
)

SUPPORTED_VERSION = 1
NOTIFY_ID_ANY = 0xFFFFFFFF
ADDR_ANY = 0xFFFFFFFF


class ResourceType(IntEnum):
    """Resource entry types, with the bounds of the vendor range."""

    CARVEOUT = 0
    DEVMEM = 1
    TRACE = 2
    VDEV = 3
    LAST = 4
    VENDOR_START = 128
    VENDOR_END = 512


_TABLE_HEADER = struct.Struct("<4I")
_U32 = struct.Struct("<I")
_CARVEOUT = struct.Struct("<6I")
_TRACE = struct.Struct("<4I")
_VDEV = struct.Struct("<6IBB2x")
_VRING = struct.Struct("<5I")
_VENDOR = struct.Struct("<2I")

_VDEV_NOTIFYID = 8
_VRING_NOTIFYID = 12


def _unpack(layout: struct.Struct, table: Any, offset: int) -> tuple:
    if offset < 0 or offset + layout.size > len(table):
        raise ResourceTableTruncatedError(
            f"resource at {offset:#x} runs past the end of the table"
        )
    return layout.unpack_from(table, offset)


def _entry_offsets(table: Any) -> Iterator[int]:
    _, num, _, _ = _TABLE_HEADER.unpack_from(table, 0)
    if _TABLE_HEADER.size + num * _U32.size > len(table):
        raise ResourceTableTruncatedError("offset array runs past the end of the table")
    yield from struct.unpack_from(f"<{num}I", table, _TABLE_HEADER.size)


def handle_rsc_table(rproc: Any, table: Any, io: Any = None) -> None:
    """Validate ``table`` and run the handler of every entry in it.

    ``io`` is the region the table lives in; a table larger than it is
    truncated. Entries that are not supported are skipped.
    """
    if len(table) < _TABLE_HEADER.size:
        raise ResourceTableTruncatedError()
    if io is not None and len(table) > io.size:
        raise ResourceTableTruncatedError("table is larger than its memory region")
    version, num, reserved0, reserved1 = _TABLE_HEADER.unpack_from(table, 0)
    if version != SUPPORTED_VERSION:
        raise ResourceTableVersionError(f"unsupported resource table version {version}")
    if _TABLE_HEADER.size + num * _U32.size > len(table):
        raise ResourceTableTruncatedError()
    if reserved0 or reserved1:
        raise ResourceTableReservedError()

    for offset in _entry_offsets(table):
        (rsc_type,) = _unpack(_U32, table, offset)
        if rsc_type < ResourceType.LAST:
            handler = _HANDLERS.get(rsc_type)
        elif ResourceType.VENDOR_START <= rsc_type <= ResourceType.VENDOR_END:
            handler = handle_vendor
        else:
            handler = None
        if handler is None:
            # Device memory and unknown entries are not serviced.
            continue
        try:
            handler(rproc, table, offset)
        except ResourceNotSupportedError:
            continue


def find_rsc(table: Any, rsc_type: int, index: int) -> Optional[int]:
    """Return the offset of the ``index``-th entry of ``rsc_type``, or None."""
    if table is None or len(table) < _TABLE_HEADER.size:
        return None
    seen = 0
    for offset in _entry_offsets(table):
        (entry_type,) = _unpack(_U32, table, offset)
        if entry_type == rsc_type:
            if seen == index:
                return offset
            seen += 1
    return None


def handle_carveout(rproc: Any, table: Any, offset: int) -> None:
    """Map the memory a carveout entry asks for."""
    _, da, pa, length, flags, reserved = _unpack(_CARVEOUT, table, offset)
    if reserved:
        raise ResourceTableReservedError("carveout reserved field is not zero")
    if rproc.mmap(pa, da, length, flags) is None:
        raise InvalidArgumentError(
            f"carveout pa {pa:#x} da {da:#x} of {length:#x} bytes cannot be mapped"
        )


def handle_trace(rproc: Any, table: Any, offset: int) -> None:
    """Accept a trace buffer whose address and length are set."""
    _, da, length, _ = _unpack(_TRACE, table, offset)
    if da != ADDR_ANY and length != 0:
        return
    raise ResourceNotSupportedError("trace buffer without address")


def handle_vendor(rproc: Any, table: Any, offset: int) -> None:
    """Pass a vendor entry to the processor's own handler."""
    handler = rproc.ops.handle_rsc if rproc is not None else None
    if handler is None:
        raise ResourceNotSupportedError("no vendor resource handler")
    _, length = _unpack(_VENDOR, table, offset)
    handler(rproc, table, offset, length)


def _allocate(rproc: Any, requested: int) -> Optional[int]:
    if requested == NOTIFY_ID_ANY:
        return rproc.allocate_id(None, None)
    return rproc.allocate_id(requested, requested + 1)


def handle_vdev(rproc: Any, table: Any, offset: int) -> None:
    """Assign notification ids to a virtio device entry and its vrings."""
    fields = _unpack(_VDEV, table, offset)
    num_vrings = fields[7]
    vrings_start = offset + _VDEV.size
    if vrings_start + num_vrings * _VRING.size > len(table):
        raise ResourceTableTruncatedError("vring entries run past the end of the table")

    vdev_id = _allocate(rproc, fields[2])
    if vdev_id is None:
        raise ResourceNotPresentError("no notification id for the virtio device")
    _U32.pack_into(table, offset + _VDEV_NOTIFYID, vdev_id)

    assigned: list[int] = []
    for vring_offset in range(vrings_start, vrings_start + num_vrings * _VRING.size, _VRING.size):
        requested = _VRING.unpack_from(table, vring_offset)[3]
        notifyid = _allocate(rproc, requested)
        if notifyid is None:
            for previous in assigned:
                rproc.release_id(previous)
            rproc.release_id(vdev_id)
            raise ResourceNotPresentError("no notification id for a vring")
        _U32.pack_into(table, vring_offset + _VRING_NOTIFYID, notifyid)
        assigned.append(notifyid)


_HANDLERS: dict[int, Callable[[Any, Any, int], None]] = {
    ResourceType.CARVEOUT: handle_carveout,
    ResourceType.TRACE: handle_trace,
    ResourceType.VDEV: handle_vdev,
}