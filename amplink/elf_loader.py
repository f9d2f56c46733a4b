"""Incremental ELF image parser that tells the caller which bytes to fetch next."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntFlag
from typing import Callable, Optional, Sequence, TypeVar

from .errors import InvalidArgumentError, LoaderStateError

ELF_MAGIC = b"\x7fELF"
PT_LOAD = 1
RESOURCE_TABLE_SECTION = ".resource_table"

_EI_CLASS = 4
_EI_DATA = 5
_ELFCLASS64 = 2
_ELFDATA2MSB = 2

_EHDR32 = "16sHHIIIIIHHHHHH"
_EHDR64 = "16sHHIQQQIHHHHHH"
_PHDR32 = "IIIIIIII"
_PHDR64 = "IIQQQQQQ"
_SHDR32 = "IIIIIIIIII"
_SHDR64 = "IIQQQQIIQQ"


class LoaderState(IntFlag):
    """Progress of an image load: header stages and loader stages."""

    NOT_READY = 0
    WAIT_FOR_PHDRS = 0x100
    WAIT_FOR_SHDRS = 0x200
    WAIT_FOR_SHSTRTAB = 0x400
    HDRS_COMPLETE = 0x800
    READY_TO_LOAD = 0x10000
    POST_DATA_LOAD = 0x20000
    LOAD_COMPLETE = 0x40000


_HEADER_MASK = int(
    LoaderState.WAIT_FOR_PHDRS
    | LoaderState.WAIT_FOR_SHDRS
    | LoaderState.WAIT_FOR_SHSTRTAB
    | LoaderState.HDRS_COMPLETE
)
_LOADER_MASK = int(
    LoaderState.READY_TO_LOAD
    | LoaderState.POST_DATA_LOAD
    | LoaderState.LOAD_COMPLETE
)


@dataclass(frozen=True)
class LoadRequest:
    """A range of the image the loader needs next.

    ``da`` is the device address to place the bytes at, or None when the
    bytes are more image metadata for the loader itself.
    """

    offset: int
    length: int
    da: Optional[int] = None
    memsize: int = 0
    padding: int = 0


@dataclass(frozen=True)
class Segment:
    """An ELF program header."""

    type: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    flags: int
    align: int


@dataclass(frozen=True)
class Section:
    """An ELF section header."""

    name_offset: int
    type: int
    flags: int
    addr: int
    offset: int
    size: int
    link: int
    info: int
    addralign: int
    entsize: int


@dataclass(frozen=True)
class _ElfHeader:
    entry: int
    phoff: int
    shoff: int
    phentsize: int
    phnum: int
    shentsize: int
    shnum: int
    shstrndx: int


_T = TypeVar("_T")


def identify(data: bytes) -> bool:
    """Return True if ``data`` starts with the ELF magic number."""
    return len(data) >= len(ELF_MAGIC) and bytes(data[: len(ELF_MAGIC)]) == ELF_MAGIC


def _ehdr_size(data: bytes) -> int:
    if len(data) <= _EI_CLASS or data[_EI_CLASS] == _ELFCLASS64:
        return struct.calcsize("<" + _EHDR64)
    return struct.calcsize("<" + _EHDR32)


def _window(data: bytes, offset: int, start: int, size: int) -> Optional[bytes]:
    """Return ``size`` bytes at image position ``start`` if ``data`` holds them."""
    if offset > start or offset + len(data) < start + size:
        return None
    begin = start - offset
    return data[begin : begin + size]


def _segment32(t, off, va, pa, fs, ms, fl, al) -> Segment:
    return Segment(t, off, va, pa, fs, ms, fl, al)


def _segment64(t, fl, off, va, pa, fs, ms, al) -> Segment:
    return Segment(t, off, va, pa, fs, ms, fl, al)


class ElfImage:
    """State of one ELF image being loaded piece by piece."""

    def __init__(self) -> None:
        self._state = LoaderState.NOT_READY
        self._next_segment = 0
        self._header: Optional[_ElfHeader] = None
        self._segments: Optional[tuple[Segment, ...]] = None
        self._sections: Optional[tuple[Section, ...]] = None
        self._shstrtab: Optional[bytes] = None
        self._endian = "<"
        self.is_64 = False

    @property
    def state(self) -> LoaderState:
        return self._state

    @property
    def next_segment(self) -> int:
        return self._next_segment

    @property
    def entry(self) -> Optional[int]:
        """Entry point address, or None before the ELF header is read."""
        return None if self._header is None else self._header.entry

    def _set_header_stage(self, stage: LoaderState) -> None:
        self._state = LoaderState((int(self._state) & ~_HEADER_MASK) | int(stage))

    def _set_loader_stage(self, stage: LoaderState) -> None:
        self._state = LoaderState((int(self._state) & ~_LOADER_MASK) | int(stage))

    def _parse_ehdr(self, chunk: bytes) -> None:
        self.is_64 = chunk[_EI_CLASS] == _ELFCLASS64
        self._endian = ">" if chunk[_EI_DATA] == _ELFDATA2MSB else "<"
        fmt = self._endian + (_EHDR64 if self.is_64 else _EHDR32)
        fields = struct.unpack(fmt, chunk)
        self._header = _ElfHeader(
            entry=fields[4],
            phoff=fields[5],
            shoff=fields[6],
            phentsize=fields[9],
            phnum=fields[10],
            shentsize=fields[11],
            shnum=fields[12],
            shstrndx=fields[13],
        )

    def _parse_table(
        self,
        chunk: bytes,
        fmt: str,
        stride: int,
        count: int,
        factory: Callable[..., _T],
    ) -> tuple[_T, ...]:
        fmt = self._endian + fmt
        entry_size = struct.calcsize(fmt)
        if count and stride < entry_size:
            raise InvalidArgumentError(
                f"header entry size {stride} is smaller than {entry_size}"
            )
        return tuple(
            factory(*struct.unpack_from(fmt, chunk, i * stride)) for i in range(count)
        )

    def load_header(self, data: bytes, offset: int = 0) -> Optional[LoadRequest]:
        """Consume header bytes found at image position ``offset``.

        Returns the next range the loader needs, or None once every header
        it can use has been read.
        """
        data = bytes(data)
        if self._header is None:
            size = _ehdr_size(data)
            if offset != 0 or len(data) < size:
                return LoadRequest(0, size)
            self._parse_ehdr(data[:size])
            self._set_header_stage(LoaderState.WAIT_FOR_PHDRS)
        hdr = self._header

        if self._state & LoaderState.WAIT_FOR_PHDRS:
            size = hdr.phnum * hdr.phentsize
            chunk = _window(data, offset, hdr.phoff, size)
            if chunk is None:
                return LoadRequest(hdr.phoff, size)
            self._segments = self._parse_table(
                chunk,
                _PHDR64 if self.is_64 else _PHDR32,
                hdr.phentsize,
                hdr.phnum,
                _segment64 if self.is_64 else _segment32,
            )
            self._state = LoaderState.WAIT_FOR_SHDRS | LoaderState.READY_TO_LOAD

        if self._state & LoaderState.WAIT_FOR_SHDRS:
            if hdr.shnum == 0:
                self._set_header_stage(LoaderState.HDRS_COMPLETE)
                return None
            size = hdr.shnum * hdr.shentsize
            chunk = _window(data, offset, hdr.shoff, size)
            if chunk is None:
                return LoadRequest(hdr.shoff, size)
            self._sections = self._parse_table(
                chunk,
                _SHDR64 if self.is_64 else _SHDR32,
                hdr.shentsize,
                hdr.shnum,
                Section,
            )
            self._set_header_stage(LoaderState.WAIT_FOR_SHSTRTAB)

        if self._state & LoaderState.WAIT_FOR_SHSTRTAB:
            names = self._section_at(hdr.shstrndx)
            if names is None:
                raise InvalidArgumentError("section name table index out of range")
            chunk = _window(data, offset, names.offset, names.size)
            if chunk is None:
                return LoadRequest(names.offset, names.size)
            self._shstrtab = chunk
            self._set_header_stage(LoaderState.HDRS_COMPLETE)
        return None

    def _next_load_segment(self) -> Optional[Segment]:
        segments = self._segments or ()
        index = self._next_segment
        for index in range(self._next_segment, len(segments)):
            if segments[index].type == PT_LOAD:
                self._next_segment = index + 1
                return segments[index]
        self._next_segment = max(self._next_segment, len(segments))
        return None

    def load_data(self, data: bytes = b"", offset: int = 0) -> Optional[LoadRequest]:
        """Advance the load and return the next range to fetch.

        A request with ``da`` set is segment data for target memory; one
        without is more header data to pass back in. None means there is
        nothing more to load.
        """
        if not int(self._state) & _LOADER_MASK:
            request = self.load_header(data, offset)
            if not int(self._state) & _LOADER_MASK:
                return request

        if self._state & LoaderState.READY_TO_LOAD:
            segment = self._next_load_segment()
            if segment is None:
                return None
            if self._next_segment == len(self._segments):
                self._set_loader_stage(LoaderState.POST_DATA_LOAD)
            return LoadRequest(
                offset=segment.offset,
                length=segment.filesz,
                da=segment.vaddr,
                memsize=segment.memsz,
                padding=0,
            )

        if self._state & LoaderState.POST_DATA_LOAD:
            if not self._state & LoaderState.HDRS_COMPLETE:
                request = self.load_header(data, offset)
                if self._state & LoaderState.HDRS_COMPLETE:
                    self._set_loader_stage(LoaderState.LOAD_COMPLETE)
                    return None
                return request
            self._set_loader_stage(LoaderState.LOAD_COMPLETE)
        return None

    def segment(self, index: int) -> Optional[Segment]:
        """Return program header ``index``, or None if there is none."""
        if self._segments is None or not 0 <= index < len(self._segments):
            return None
        return self._segments[index]

    def _section_at(self, index: int) -> Optional[Section]:
        if self._sections is None or not 0 <= index < len(self._sections):
            return None
        return self._sections[index]

    def _section_name(self, section: Section) -> Optional[bytes]:
        table = self._shstrtab
        start = section.name_offset
        if table is None or start >= len(table):
            return None
        end = table.find(b"\0", start)
        return table[start:] if end < 0 else table[start:end]

    def section_by_name(self, name: str) -> Optional[Section]:
        """Return the first section called ``name``, or None."""
        if self._sections is None or self._shstrtab is None:
            return None
        wanted = name.encode()
        return next(
            (s for s in self._sections if self._section_name(s) == wanted), None
        )

    def locate_rsc_table(self) -> Optional[Section]:
        """Return the resource table section, or None if the image has none."""
        if not self._state & LoaderState.HDRS_COMPLETE:
            raise LoaderStateError("section headers are not loaded yet")
        return self.section_by_name(RESOURCE_TABLE_SECTION)