import struct

import pytest

from amplink.elf_loader import LoaderState
from amplink.errors import InvalidArgumentError, NoDeviceError
from amplink.io import IORegion
from amplink.loader import ImageStore, LoadStep, NoblockSession, load, load_noblock
from amplink.remoteproc import Remoteproc, RemoteprocMem, RemoteprocOps, RemoteprocState

EHDR_SIZE = 52
PHDR_SIZE = 32
SHDR_SIZE = 40
ENTRY = 0x1040
SEG_DA = 0x1000
RSC_DA = 0x1800
MEM_PA = 0x8000
MEM_DA = 0x1000
MEM_SIZE = 0x1000
PAYLOAD = bytes(range(1, 17))
SEG_MEMSZ = 32
NOTIFY_ANY = 0xFFFFFFFF


def rsc_table_bytes():
    header = struct.pack("<4I", 1, 1, 0, 0) + struct.pack("<I", 20)
    vdev = struct.pack("<6IBB2x", 3, 7, NOTIFY_ANY, 0, 0, 0, 0, 0)
    return header + vdev


def build_elf(seg_da=SEG_DA, with_rsc=True):
    segments = [(1, seg_da, PAYLOAD, SEG_MEMSZ)]
    sections = [(".resource_table", RSC_DA, rsc_table_bytes())] if with_rsc else []

    phoff = EHDR_SIZE
    body = bytearray()
    pos = phoff + PHDR_SIZE * len(segments)
    phdrs = b""
    for ptype, vaddr, payload, memsz in segments:
        phdrs += struct.pack("<8I", ptype, pos + len(body), vaddr, vaddr,
                             len(payload), memsz, 5, 4)
        body += payload

    names = bytearray(b"\0")
    shdrs = [struct.pack("<10I", 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)]
    for name, addr, payload in sections:
        name_off = len(names)
        names += name.encode() + b"\0"
        shdrs.append(struct.pack("<10I", name_off, 1, 2, addr, pos + len(body),
                                 len(payload), 0, 0, 4, 0))
        body += payload
    shstr_name = len(names)
    names += b".shstrtab\0"
    shdrs.append(struct.pack("<10I", shstr_name, 3, 0, 0, pos + len(body),
                             len(names), 0, 0, 1, 0))
    body += names
    shoff = pos + len(body)

    ident = b"\x7fELF" + bytes([1, 1, 1]) + bytes(9)
    ehdr = struct.pack("<16sHHIIIIIHHHHHH", ident, 2, 40, 1, ENTRY, phoff, shoff,
                       0, EHDR_SIZE, PHDR_SIZE, len(segments), SHDR_SIZE,
                       len(shdrs), len(shdrs) - 1)
    return ehdr + phdrs + bytes(body) + b"".join(shdrs)


class BytesStore(ImageStore):
    def __init__(self, image, head=None, seekable=True, short_at=None):
        self.image = image
        self.head = head
        self.seekable = seekable
        self.short_at = short_at
        self.opened = None
        self.closed = False
        self.reads = []

    def open(self, path):
        self.opened = path
        return self.image if self.head is None else self.image[: self.head]

    def read(self, offset, length):
        self.reads.append((offset, length))
        if offset == self.short_at:
            length -= 1
        return self.image[offset : offset + length]

    def close(self):
        self.closed = True


def make_rproc(configure=True):
    rproc = Remoteproc(RemoteprocOps())
    io = IORegion(bytearray(b"\xff" * MEM_SIZE), physical_base=MEM_PA)
    rproc.add_mem(RemoteprocMem("shm", pa=MEM_PA, da=MEM_DA, io=io, size=MEM_SIZE))
    if configure:
        rproc.config()
    return rproc, io


def rsc_notifyid(io):
    start = RSC_DA - MEM_DA
    return struct.unpack_from("<I", io.memory, start + 20 + 8)[0]


def test_load_places_segment_and_padding():
    rproc, io = make_rproc()
    store = BytesStore(build_elf())
    image = load(rproc, store, "fw.elf")
    seg_off = SEG_DA - MEM_DA
    assert bytes(io.memory[seg_off : seg_off + len(PAYLOAD)]) == PAYLOAD
    assert bytes(io.memory[seg_off + len(PAYLOAD) : seg_off + SEG_MEMSZ]) == bytes(
        SEG_MEMSZ - len(PAYLOAD)
    )
    assert io.memory[seg_off + SEG_MEMSZ] == 0xFF
    assert rproc.bootaddr == ENTRY
    assert image.entry == ENTRY
    assert rproc.state == RemoteprocState.READY
    assert image.state & LoaderState.LOAD_COMPLETE
    assert store.opened == "fw.elf"
    assert store.closed


def test_load_installs_resource_table():
    rproc, io = make_rproc()
    load(rproc, BytesStore(build_elf()), "fw.elf")
    assert rproc.rsc_io is io
    assert rproc.rsc_offset == RSC_DA - MEM_DA
    assert rproc.rsc_len == len(rsc_table_bytes())
    assert rsc_notifyid(io) == 0
    assert rproc.allocate_id(0, 1) is None


def test_load_without_resource_table_leaves_rsc_unset():
    rproc, io = make_rproc()
    load(rproc, BytesStore(build_elf(with_rsc=False)), "fw.elf")
    assert rproc.rsc_io is None
    assert rproc.rsc_len == 0
    assert rproc.bootaddr == ENTRY


def test_load_fetches_headers_when_open_returns_only_the_elf_header():
    image_bytes = build_elf()
    rproc, io = make_rproc()
    store = BytesStore(image_bytes, head=EHDR_SIZE)
    load(rproc, store, "fw.elf")
    assert (EHDR_SIZE, PHDR_SIZE) in store.reads
    seg_off = SEG_DA - MEM_DA
    assert bytes(io.memory[seg_off : seg_off + len(PAYLOAD)]) == PAYLOAD
    assert rsc_notifyid(io) == 0


def test_load_from_non_seekable_store_reads_sections_after_data():
    image_bytes = build_elf()
    rproc, io = make_rproc()
    store = BytesStore(image_bytes, head=EHDR_SIZE + PHDR_SIZE, seekable=False)
    image = load(rproc, store, "fw.elf")
    assert image.state & LoaderState.LOAD_COMPLETE
    assert image.section_by_name(".resource_table").addr == RSC_DA
    assert rsc_notifyid(io) == 0
    assert rproc.bootaddr == ENTRY


def test_load_requires_ready_state():
    rproc, _ = make_rproc(configure=False)
    store = BytesStore(build_elf())
    with pytest.raises(InvalidArgumentError):
        load(rproc, store, "fw.elf")
    assert store.opened is None


def test_load_requires_a_device():
    with pytest.raises(NoDeviceError):
        load(None, BytesStore(build_elf()), "fw.elf")


def test_load_rejects_unknown_format_and_closes_store():
    rproc, _ = make_rproc()
    store = BytesStore(b"not an image at all")
    with pytest.raises(InvalidArgumentError):
        load(rproc, store, "fw.bin")
    assert store.closed
    assert rproc.loader is None


def test_load_rejects_empty_image():
    rproc, _ = make_rproc()
    with pytest.raises(InvalidArgumentError):
        load(rproc, BytesStore(b""), "fw.elf")


def test_load_fails_without_mapping_for_segment():
    rproc, _ = make_rproc()
    store = BytesStore(build_elf(seg_da=0x40000))
    with pytest.raises(InvalidArgumentError):
        load(rproc, store, "fw.elf")
    assert store.closed


def test_load_fails_on_short_segment_read():
    image_bytes = build_elf()
    seg_offset = EHDR_SIZE + PHDR_SIZE
    rproc, io = make_rproc()
    store = BytesStore(image_bytes, short_at=seg_offset)
    with pytest.raises(InvalidArgumentError):
        load(rproc, store, "fw.elf")
    assert rproc.bootaddr is None


def drive_noblock(rproc, image_bytes, session):
    data, offset = image_bytes[:EHDR_SIZE], 0
    steps = []
    for _ in range(20):
        step = load_noblock(rproc, data, offset, session)
        steps.append(step)
        if step.complete:
            return steps
        if step.io is not None:
            chunk = image_bytes[step.offset : step.offset + step.length]
            step.io.write(step.io_offset, chunk)
            step.io.fill(step.io_offset + step.length, step.padding,
                         step.memsize - step.length)
            data, offset = b"", 0
        else:
            data = image_bytes[step.offset : step.offset + step.length]
            offset = step.offset
    raise AssertionError("load did not complete")


def test_load_noblock_needs_image_start_to_identify():
    rproc, _ = make_rproc()
    with pytest.raises(InvalidArgumentError):
        load_noblock(rproc, b"", 0, NoblockSession())
    with pytest.raises(InvalidArgumentError):
        load_noblock(rproc, build_elf()[:EHDR_SIZE], 4, NoblockSession())


def test_load_noblock_rejects_unknown_format():
    rproc, _ = make_rproc()
    with pytest.raises(InvalidArgumentError):
        load_noblock(rproc, b"garbage bytes here", 0, NoblockSession())
    assert rproc.loader is None


def test_load_noblock_requires_ready_state():
    rproc, _ = make_rproc(configure=False)
    with pytest.raises(InvalidArgumentError):
        load_noblock(rproc, build_elf(), 0, NoblockSession())


def test_load_noblock_drops_session_on_error():
    rproc, _ = make_rproc()
    image_bytes = build_elf(seg_da=0x40000)
    session = NoblockSession()
    with pytest.raises(InvalidArgumentError):
        load_noblock(rproc, image_bytes, 0, session)
    assert session.image is None
    assert session.state == LoaderState.NOT_READY


def test_load_noblock_with_whole_image_returns_segment_first():
    image_bytes = build_elf()
    rproc, _ = make_rproc()
    session = NoblockSession()
    step = load_noblock(rproc, image_bytes, 0, session)
    assert step.da == SEG_DA
    assert step.length == len(PAYLOAD)
    assert step.offset == EHDR_SIZE + PHDR_SIZE
    assert not step.complete