"""Remote processor life cycle, memory lookup and notification ids."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional

from .errors import BusyError, InvalidArgumentError
from .io import IORegion
from .rsc_table import NOTIFY_ID_ANY, handle_rsc_table

MAX_NAME_LEN = 32
NOTIFY_ID_BITS = 64


class RemoteprocState(IntEnum):
    OFFLINE = 0
    CONFIGURED = 1
    READY = 2
    RUNNING = 3
    SUSPENDED = 4
    ERROR = 5
    STOPPED = 6


@dataclass
class RemoteprocMem:
    """A memory window shared with the remote processor."""

    name: str
    pa: int
    da: int
    io: IORegion
    size: int


@dataclass(frozen=True)
class Mapping:
    """Where an address range lives: its addresses, region and region offset."""

    pa: int
    da: int
    io: IORegion
    offset: int


@dataclass
class RemoteprocOps:
    """Platform callbacks; any of them may be left unset.

    Callbacks report failure by raising.
    """

    init: Optional[Callable[..., None]] = None
    remove: Optional[Callable[..., None]] = None
    config: Optional[Callable[..., None]] = None
    start: Optional[Callable[..., None]] = None
    stop: Optional[Callable[..., None]] = None
    shutdown: Optional[Callable[..., None]] = None
    mmap: Optional[Callable[..., Optional[Mapping]]] = None
    get_mem: Optional[Callable[..., Optional[RemoteprocMem]]] = None
    handle_rsc: Optional[Callable[..., None]] = None
    notify: Optional[Callable[..., None]] = None


def _covers(start: int, length: int, addr: int, size: int) -> bool:
    end = start + length
    return start <= addr and addr + size <= end and addr < end


class Remoteproc:
    """A remote processor and the memory it shares with this one."""

    def __init__(self, ops: RemoteprocOps, priv: Any = None) -> None:
        if ops is None:
            raise InvalidArgumentError("remote processor operations are required")
        self.ops = ops
        self.priv = priv
        self.state = RemoteprocState.OFFLINE
        self.lock = threading.RLock()
        self.mems: list[RemoteprocMem] = []
        self.bitmap = 0
        self.rsc_io: Optional[IORegion] = None
        self.rsc_offset = 0
        self.rsc_len = 0
        self.bootaddr: Optional[int] = None
        self.loader: Any = None
        if ops.init is not None:
            ops.init(self, priv)

    def add_mem(self, mem: RemoteprocMem) -> None:
        self.mems.append(mem)

    def _get_mem(
        self,
        name: Optional[str] = None,
        pa: Optional[int] = None,
        da: Optional[int] = None,
        io: Optional[IORegion] = None,
        size: int = 0,
    ) -> Optional[RemoteprocMem]:
        if name is not None and len(name) > MAX_NAME_LEN:
            return None
        for mem in self.mems:
            if name is not None:
                if name == mem.name[:MAX_NAME_LEN]:
                    return mem
            elif pa is not None:
                if _covers(mem.pa, mem.size, pa, size):
                    return mem
            elif da is not None:
                if _covers(mem.da, mem.size, da, size):
                    return mem
            elif io is not None:
                if mem.io is io:
                    return mem
            else:
                return None
        if self.ops.get_mem is None:
            return None
        return self.ops.get_mem(self, name, pa, da, io, size)

    # life cycle

    def remove(self) -> None:
        with self.lock:
            if self.state != RemoteprocState.OFFLINE:
                raise BusyError(f"cannot remove while {self.state.name}")
            if self.ops.remove is not None:
                self.ops.remove(self)

    def config(self, data: Any = None) -> None:
        """Configure an offline processor; it is READY afterwards."""
        with self.lock:
            if self.state != RemoteprocState.OFFLINE:
                raise InvalidArgumentError(f"cannot configure while {self.state.name}")
            try:
                if self.ops.config is not None:
                    self.ops.config(self, data)
            finally:
                self.state = RemoteprocState.READY

    def start(self) -> None:
        with self.lock:
            if self.state != RemoteprocState.READY:
                raise InvalidArgumentError(f"cannot start while {self.state.name}")
            try:
                if self.ops.start is not None:
                    self.ops.start(self)
            finally:
                self.state = RemoteprocState.RUNNING

    def stop(self) -> None:
        with self.lock:
            if self.state in (RemoteprocState.STOPPED, RemoteprocState.OFFLINE):
                return
            try:
                if self.ops.stop is not None:
                    self.ops.stop(self)
            finally:
                self.state = RemoteprocState.STOPPED

    def shutdown(self) -> None:
        with self.lock:
            if self.state == RemoteprocState.OFFLINE:
                return
            if self.state != RemoteprocState.STOPPED and self.ops.stop is not None:
                self.ops.stop(self)
            if self.ops.shutdown is not None:
                self.ops.shutdown(self)
            self.state = RemoteprocState.OFFLINE

    # memory

    def get_io_with_name(self, name: str) -> Optional[IORegion]:
        mem = self._get_mem(name=name)
        return None if mem is None else mem.io

    def get_io_with_pa(self, pa: int) -> Optional[IORegion]:
        mem = self._get_mem(pa=pa)
        return None if mem is None else mem.io

    def get_io_with_da(self, da: int) -> Optional[tuple[IORegion, Optional[int]]]:
        """Return the region holding device address ``da`` and its offset there."""
        mem = self._get_mem(da=da)
        if mem is None:
            return None
        pa = mem.pa + da - mem.da
        return mem.io, mem.io.phys_to_offset(pa)

    def mmap(
        self,
        pa: Optional[int] = None,
        da: Optional[int] = None,
        size: int = 0,
        attribute: int = 0,
    ) -> Optional[Mapping]:
        """Find where a range given by physical or device address lives."""
        if size <= 0 or (pa is None and da is None):
            raise InvalidArgumentError("mmap needs a size and a pa or da")
        mem = self._get_mem(pa=pa, da=da, size=size)
        if mem is not None:
            if pa is not None:
                da = mem.da + pa - mem.pa
            else:
                pa = mem.pa + da - mem.da
            offset = mem.io.phys_to_offset(pa)
            if offset is None:
                return None
            return Mapping(pa=pa, da=da, io=mem.io, offset=offset)
        if self.ops.mmap is not None:
            return self.ops.mmap(self, pa, da, size, attribute)
        return None

    def set_rsc_table(self, io: IORegion, offset: int, size: int) -> None:
        """Parse the resource table at ``offset`` in ``io`` and make it current."""
        if io is None or size <= 0:
            raise InvalidArgumentError("a region and a table size are required")
        if self._get_mem(io=io) is None:
            raise InvalidArgumentError("resource table region is not registered")
        table = bytearray(io.read(offset, size))
        try:
            handle_rsc_table(self, table, io)
        finally:
            io.write(offset, table)
        self.rsc_io = io
        self.rsc_offset = offset
        self.rsc_len = size

    # notification ids

    def allocate_id(
        self, start: Optional[int] = None, end: Optional[int] = None
    ) -> Optional[int]:
        """Reserve the lowest free id in ``[start, end)``, or return None."""
        if start is None or start == NOTIFY_ID_ANY:
            start = 0
        if end is None or end == NOTIFY_ID_ANY:
            end = NOTIFY_ID_BITS
        if start >= NOTIFY_ID_BITS or end > NOTIFY_ID_BITS:
            return None
        for bit in range(start, end):
            if not (self.bitmap >> bit) & 1:
                self.bitmap |= 1 << bit
                return bit
        return None

    def release_id(self, notifyid: int) -> None:
        if 0 <= notifyid < NOTIFY_ID_BITS:
            self.bitmap &= ~(1 << notifyid)