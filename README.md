# amplink

A pure-Python library for driving a remote processor in an asymmetric
multiprocessing system. It manages the processor's life cycle, loads ELF
firmware into its memory, and handles resource tables. It also keeps track of
RPMsg endpoints.

## Modules

- `amplink.errors`: the exceptions the library raises. All of them derive from
  `RemoteprocError`. Among them are `InvalidArgumentError` (also a
  `ValueError`), `NoDeviceError`, `BusyError` and `LoaderStateError`. The
  resource table family derives from `ResourceTableError`: truncated, version,
  reserved, not present and not supported.
- `amplink.elf_loader`: `identify(data)` checks for the ELF magic number.
  `ElfImage` parses a 32- or 64-bit image of either byte order, piece by piece:
  - `load_header(data, offset)` takes the bytes found at image position
    `offset`. It returns a `LoadRequest` for the next range it needs, or `None`
    once the headers are read.
  - `load_data` walks the loadable segments. Each segment comes back as a
    `LoadRequest` carrying a device address `da`, a `memsize` and a `padding`
    byte.
  - `segment(index)`, `section_by_name(name)` and `locate_rsc_table()` give
    access to the parsed headers. `locate_rsc_table()` finds the
    `.resource_table` section.
  - `state` is a `LoaderState` flag value.
- `amplink.io`: `IORegion` is a `bytearray` seen at a physical base address.
  It has `phys_to_offset`, `offset_to_phys`, `read`, `write` and `fill`.
  Reads, writes and fills stop at the end of the region and return how much
  was done.
- `amplink.rsc_table`: `handle_rsc_table(rproc, table, io)` validates a
  resource table held in a `bytearray` and runs the handler of each entry.
  The handlers are `handle_carveout`, `handle_trace`, `handle_vdev` and
  `handle_vendor`. Virtio device entries get their notification ids written
  back into the table. `find_rsc(table, rsc_type, index)` returns the offset of
  an entry of a given `ResourceType`.
- `amplink.remoteproc`: `Remoteproc` takes a `RemoteprocOps` of optional
  platform callbacks. It provides:
  - life cycle: `config`, `start`, `stop`, `shutdown` and `remove`, following
    the states of `RemoteprocState`;
  - memory windows: `add_mem(RemoteprocMem(...))`, looked up with
    `get_io_with_name`, `get_io_with_pa` and `get_io_with_da`;
  - address translation: `mmap(pa, da, size, attribute)` returns a `Mapping`;
  - `set_rsc_table(io, offset, size)` parses a resource table and makes it
    current;
  - notification ids: `allocate_id` and `release_id`, in the range 0 to 63.
- `amplink.loader`: `load(rproc, store, path)` loads a whole image from an
  `ImageStore` into target memory, pads segments, installs the resource table
  and sets `rproc.bootaddr`. `load_noblock(rproc, data, offset, session)`
  advances a load one step at a time and returns a `LoadStep`. The caller
  fetches the bytes for each step and writes them to memory itself. State
  between calls is kept in a `NoblockSession`.
- `amplink.rpmsg`: `RpmsgDevice` and `RpmsgEndpoint` handle endpoint creation,
  lookup and destruction, and dynamic address allocation from 1024 upward.
  When the device supports it, they send name service announcements.
  `RpmsgHeader` and `NsMessage` pack and unpack the wire formats. Failures
  raise `RpmsgError`, whose `reason` is `"param"`, `"addr"`, `"perm"` or
  `"no_buffer"`.

## Example

```python
from amplink.io import IORegion
from amplink.loader import ImageStore, load
from amplink.remoteproc import Remoteproc, RemoteprocMem, RemoteprocOps


class BytesStore(ImageStore):
    def __init__(self, image: bytes) -> None:
        self.image = image

    def open(self, path: str) -> bytes:
        return self.image

    def read(self, offset: int, length: int) -> bytes:
        return self.image[offset : offset + length]


with open("firmware.elf", "rb") as fh:
    firmware = fh.read()

rproc = Remoteproc(RemoteprocOps())
ram = IORegion(0x10000, physical_base=0x10000000, name="ram")
rproc.add_mem(RemoteprocMem(name="ram", pa=0x10000000, da=0x0, io=ram, size=0x10000))
rproc.config()
load(rproc, BytesStore(firmware), "firmware.elf")
print(hex(rproc.bootaddr))
rproc.start()
```

Endpoints on an RPMsg bus:

```python
from amplink.rpmsg import RpmsgDevice

bus = RpmsgDevice()
ept = bus.create_endpoint("demo", cb=lambda *args: 0)
print(ept.addr)                            # 1024
print(bus.get_endpoint_by_addr(1024) is ept)
ept.destroy()
```

## What it does not do

- It has no message transport of its own. An `RpmsgDevice` sends and receives
  only through the operations it is given in `ops` or through a subclass.
  There is no virtio or vring transport here.
- It does not create virtio devices or set up vrings from a resource table.
  It only assigns their notification ids.
- It has no remote procedure call service and no command-line tool.
- It talks to no hardware. Target memory is whatever `IORegion` objects and
  `RemoteprocOps` callbacks the caller supplies.

## Installing for development

```
pip install -e .[test]
pytest
```