"""Loading firmware images into a remote processor's memory."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .elf_loader import ElfImage, LoaderState, LoadRequest, Section, identify
from .errors import InvalidArgumentError, LoaderStateError, NoDeviceError
from .io import IORegion
from .remoteproc import Remoteproc, RemoteprocState
from .rsc_table import handle_rsc_table

logger = logging.getLogger(__name__)


class ImageStore(ABC):
    """Where firmware image bytes come from.

    ``seekable`` tells the loader whether it may ask for bytes that lie
    beyond the ones it has already read before the segment data.
    """

    seekable: bool = True
    closed: bool = False

    @abstractmethod
    def open(self, path: str) -> bytes:
        """Open the image at ``path`` and return its first bytes."""

    @abstractmethod
    def read(self, offset: int, length: int) -> bytes:
        """Return up to ``length`` bytes of the image from ``offset``."""

    def close(self) -> None:
        """Mark the store closed; stores holding resources extend this."""
        self.closed = True


@dataclass(frozen=True)
class LoadStep:
    """What a non-blocking load needs next.

    With ``io`` set, ``length`` image bytes from ``offset`` go to ``io`` at
    ``io_offset`` (physical address ``pa``), and the rest of ``memsize`` is
    filled with ``padding``. Without it, the bytes are passed back in.
    """

    offset: int = 0
    length: int = 0
    da: Optional[int] = None
    pa: Optional[int] = None
    io: Optional[IORegion] = None
    io_offset: Optional[int] = None
    memsize: int = 0
    padding: int = 0
    complete: bool = False


@dataclass
class NoblockSession:
    """State kept between calls of :func:`load_noblock`."""

    image: Optional[ElfImage] = None

    @property
    def state(self) -> LoaderState:
        return LoaderState.NOT_READY if self.image is None else self.image.state


def _select_loader(rproc: Remoteproc, data: bytes):
    factory = rproc.loader
    if factory is None:
        if not identify(data):
            raise InvalidArgumentError("unrecognised firmware image format")
        factory = rproc.loader = ElfImage
    return factory


def _read_exact(store: ImageStore, offset: int, length: int) -> Optional[bytes]:
    chunk = bytes(store.read(offset, length))
    if len(chunk) < length:
        return None
    return chunk[:length]


def _locate_rsc_table(image: ElfImage) -> Optional[Section]:
    try:
        section = image.locate_rsc_table()
    except LoaderStateError:
        return None
    if section is None or section.size == 0:
        return None
    return section


def _fetch_rsc_table(
    rproc: Remoteproc, store: ImageStore, section: Section
) -> bytearray:
    chunk = _read_exact(store, section.offset, section.size)
    if chunk is None:
        raise InvalidArgumentError(
            f"resource table at {section.offset:#x} of {section.size:#x} bytes "
            "could not be read"
        )
    table = bytearray(chunk)
    handle_rsc_table(rproc, table, None)
    return table


def _install_rsc_table(
    rproc: Remoteproc, table: bytearray, section: Section
) -> None:
    mapping = rproc.mmap(da=section.addr, size=len(table))
    if mapping is None:
        logger.warning("load: not able to update the resource table")
        return
    if mapping.io.write(mapping.offset, table) != len(table):
        logger.warning("load: failed to update the resource table")
    rproc.rsc_io = mapping.io
    rproc.rsc_offset = mapping.offset
    rproc.rsc_len = len(table)


def _load_headers(image: ElfImage, store: ImageStore, data: bytes) -> None:
    offset = 0
    while True:
        request = image.load_header(data, offset)
        if request is None:
            return
        if (
            image.state & LoaderState.READY_TO_LOAD
            and request.offset > offset + len(data)
            and not store.seekable
        ):
            # The rest of the headers lie after the segment data; read them later.
            return
        chunk = _read_exact(store, request.offset, request.length)
        if chunk is None:
            raise InvalidArgumentError(
                f"failed to read image data at {request.offset:#x}"
            )
        data, offset = chunk, request.offset


def _place_segment(
    rproc: Remoteproc, store: ImageStore, request: LoadRequest
) -> None:
    mapping = rproc.mmap(da=request.da, size=request.memsize)
    if mapping is None:
        raise InvalidArgumentError(f"no mapping for device address {request.da:#x}")
    if request.length > 0:
        chunk = _read_exact(store, request.offset, request.length)
        if chunk is None or mapping.io.write(mapping.offset, chunk) != request.length:
            raise InvalidArgumentError(
                f"failed to load {request.length:#x} bytes to {mapping.pa:#x}"
            )
    if request.memsize > request.length:
        mapping.io.fill(
            mapping.offset + request.length,
            request.padding,
            request.memsize - request.length,
        )


def load(rproc: Remoteproc, store: ImageStore, path: str) -> ElfImage:
    """Load the image at ``path`` from ``store`` into the processor's memory.

    Returns the parsed image; the processor is READY with its boot address
    and resource table set.
    """
    if rproc is None:
        raise NoDeviceError()
    with rproc.lock:
        if rproc.state not in (RemoteprocState.READY, RemoteprocState.CONFIGURED):
            raise InvalidArgumentError(
                f"cannot load firmware while {rproc.state.name}"
            )
        if store is None:
            raise InvalidArgumentError("no image store given")
        data = bytes(store.open(path))
        if not data:
            raise InvalidArgumentError(f"failed to open firmware {path!r}")
        try:
            image = _select_loader(rproc, data)()
            _load_headers(image, store, data)

            rsc_section = _locate_rsc_table(image)
            rsc_table = (
                None
                if rsc_section is None
                else _fetch_rsc_table(rproc, store, rsc_section)
            )

            data, offset = b"", 0
            while True:
                request = image.load_data(data, offset)
                if request is None:
                    break
                if request.da is not None:
                    data = b""
                    _place_segment(rproc, store, request)
                    continue
                if request.length == 0:
                    break
                chunk = _read_exact(store, request.offset, request.length)
                if chunk is None:
                    if image.state & LoaderState.POST_DATA_LOAD:
                        logger.warning("not all the headers are loaded")
                        break
                    raise InvalidArgumentError(
                        f"failed to read image data at {request.offset:#x}"
                    )
                data, offset = chunk, request.offset

            if rsc_table is None:
                rsc_section = _locate_rsc_table(image)
                if rsc_section is not None:
                    rsc_table = _fetch_rsc_table(rproc, store, rsc_section)

            if rsc_table is not None and rsc_section is not None:
                _install_rsc_table(rproc, rsc_table, rsc_section)

            rproc.bootaddr = image.entry
            rproc.state = RemoteprocState.READY
            return image
        finally:
            store.close()


def _apply_loaded_rsc_table(rproc: Remoteproc, image: ElfImage) -> None:
    section = _locate_rsc_table(image)
    if section is None:
        return
    mapping = rproc.mmap(da=section.addr, size=section.size)
    if mapping is None:
        raise InvalidArgumentError("failed to map the resource table")
    table = bytearray(mapping.io.read(mapping.offset, section.size))
    if len(table) != section.size:
        raise InvalidArgumentError("failed to read the resource table")
    handle_rsc_table(rproc, table, None)
    if mapping.io.write(mapping.offset, table) != section.size:
        logger.warning("load executable, failed to update the resource table")
    rproc.rsc_io = mapping.io
    rproc.rsc_offset = mapping.offset
    rproc.rsc_len = section.size


def _noblock_step(
    rproc: Remoteproc, image: ElfImage, data: bytes, offset: int
) -> LoadStep:
    if not image.state & (LoaderState.READY_TO_LOAD | LoaderState.LOAD_COMPLETE):
        request = image.load_header(data, offset)
        if request is not None and not image.state & LoaderState.READY_TO_LOAD:
            return LoadStep(offset=request.offset, length=request.length)

    if image.state & (LoaderState.READY_TO_LOAD | LoaderState.POST_DATA_LOAD):
        request = image.load_data(data, offset)
        if request is not None:
            if request.da is None:
                return LoadStep(offset=request.offset, length=request.length)
            mapping = rproc.mmap(da=request.da, size=request.memsize)
            if mapping is None:
                raise InvalidArgumentError(
                    f"no mapping for device address {request.da:#x}"
                )
            return LoadStep(
                offset=request.offset,
                length=request.length,
                da=mapping.da,
                pa=mapping.pa,
                io=mapping.io,
                io_offset=mapping.offset,
                memsize=request.memsize,
                padding=request.padding,
            )

    if image.state & LoaderState.LOAD_COMPLETE:
        _apply_loaded_rsc_table(rproc, image)
        rproc.bootaddr = image.entry
        return LoadStep(complete=True)
    return LoadStep()


def load_noblock(
    rproc: Remoteproc,
    data: bytes,
    offset: int,
    session: Optional[NoblockSession] = None,
) -> LoadStep:
    """Advance a load with ``data`` found at image position ``offset``.

    The caller fetches and places whatever the returned step asks for and
    calls again with the same ``session`` until the step is complete.
    """
    if rproc is None:
        raise NoDeviceError()
    if session is None:
        session = NoblockSession()
    data = bytes(data or b"")
    with rproc.lock:
        if rproc.state != RemoteprocState.READY:
            raise InvalidArgumentError(
                f"cannot load firmware while {rproc.state.name}"
            )
        if rproc.loader is None and (not data or offset != 0):
            raise InvalidArgumentError("not able to identify the image")
        factory = _select_loader(rproc, data)
        if session.image is None:
            session.image = factory()
        try:
            return _noblock_step(rproc, session.image, data, offset)
        except Exception:
            session.image = None
            raise