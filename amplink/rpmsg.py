"""Endpoints, addressing and name service messages of an rpmsg bus."""

from __future__ import annotations

import struct
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, ClassVar, Mapping, Optional

ADDR_ANY = 0xFFFFFFFF
RESERVED_ADDRESSES = 1024
NS_EPT_ADDR = 0x35
NAME_SIZE = 32
ADDR_BMP_SIZE = 128


class RpmsgError(Exception):
    """An rpmsg operation failed.

    ``reason`` is one of ``"param"``, ``"addr"``, ``"perm"`` or ``"no_buffer"``.
    """

    def __init__(self, message: str, reason: str = "param") -> None:
        super().__init__(message)
        self.reason = reason


class NsFlags(IntEnum):
    """Name service announcement kinds."""

    CREATE = 0
    DESTROY = 1


@dataclass
class RpmsgHeader:
    """The header that starts every message on the bus."""

    src: int
    dst: int
    reserved: int = 0
    length: int = 0
    flags: int = 0

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct("<IIIHH")
    SIZE: ClassVar[int] = _LAYOUT.size

    def pack(self) -> bytes:
        return self._LAYOUT.pack(
            self.src, self.dst, self.reserved, self.length, self.flags
        )

    @classmethod
    def unpack(cls, data: bytes) -> "RpmsgHeader":
        if len(data) < cls.SIZE:
            raise RpmsgError(f"header needs {cls.SIZE} bytes, got {len(data)}")
        return cls(*cls._LAYOUT.unpack_from(bytes(data), 0))


@dataclass
class NsMessage:
    """A name service announcement: a service was created or destroyed."""

    name: str
    addr: int
    flags: int = NsFlags.CREATE

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct(f"<{NAME_SIZE}sII")
    SIZE: ClassVar[int] = _LAYOUT.size

    def pack(self) -> bytes:
        raw = self.name.encode()[:NAME_SIZE]
        return self._LAYOUT.pack(raw, self.addr, int(self.flags))

    @classmethod
    def unpack(cls, data: bytes) -> "NsMessage":
        if len(data) != cls.SIZE:
            raise RpmsgError(f"name service message must be {cls.SIZE} bytes")
        raw, addr, flags = cls._LAYOUT.unpack(bytes(data))
        name = raw.split(b"\0", 1)[0].decode(errors="replace")
        return cls(name=name, addr=addr, flags=flags)


EndpointCallback = Callable[..., Any]
UnbindCallback = Callable[["RpmsgEndpoint"], Any]


@dataclass(eq=False)
class RpmsgEndpoint:
    """A local endpoint: a name, a local address and a remote address."""

    name: str = ""
    addr: int = ADDR_ANY
    dest_addr: int = ADDR_ANY
    cb: Optional[EndpointCallback] = None
    ns_unbind_cb: Optional[UnbindCallback] = None
    rdev: Optional["RpmsgDevice"] = None
    priv: Any = None

    def _device(self) -> "RpmsgDevice":
        if self.rdev is None:
            raise RpmsgError("endpoint is not attached to a device")
        return self.rdev

    def send_offchannel_raw(
        self, src: int, dst: int, data: bytes, wait: bool = True
    ) -> Any:
        """Send ``data`` from ``src`` to ``dst`` through the endpoint's device."""
        rdev = self._device()
        if data is None or dst == ADDR_ANY:
            raise RpmsgError("a payload and a destination address are required")
        return rdev.send_offchannel_raw(src, dst, data, wait)

    def send(self, data: bytes, wait: bool = True) -> Any:
        """Send ``data`` from this endpoint to its remote address."""
        return self.send_offchannel_raw(self.addr, self.dest_addr, data, wait)

    def send_offchannel_nocopy(self, src: int, dst: int, data: Any) -> Any:
        """Send a buffer obtained from :meth:`get_tx_payload_buffer`."""
        rdev = self._device()
        if data is None or dst == ADDR_ANY:
            raise RpmsgError("a payload and a destination address are required")
        return rdev.send_offchannel_nocopy(src, dst, data)

    def send_ns_message(self, flags: int) -> None:
        """Announce this endpoint's creation or destruction to the remote side."""
        message = NsMessage(name=self.name, addr=self.addr, flags=flags)
        self.send_offchannel_raw(self.addr, NS_EPT_ADDR, message.pack(), True)

    def hold_rx_buffer(self, rxbuf: Any) -> None:
        if self.rdev is None or rxbuf is None:
            return
        self.rdev.hold_rx_buffer(rxbuf)

    def release_rx_buffer(self, rxbuf: Any) -> None:
        if self.rdev is None or rxbuf is None:
            return
        self.rdev.release_rx_buffer(rxbuf)

    def release_tx_buffer(self, buf: Any) -> Any:
        rdev = self._device()
        if buf is None:
            raise RpmsgError("no buffer to release")
        return rdev.release_tx_buffer(buf)

    def get_tx_payload_buffer(self, wait: bool = True) -> Any:
        """Return a transmit payload buffer, or None if none is available."""
        if self.rdev is None:
            return None
        return self.rdev.get_tx_payload_buffer(wait)

    def destroy(self) -> None:
        """Detach the endpoint, announcing its removal when the bus has name service."""
        rdev = self.rdev
        if rdev is None:
            return
        if self.name and rdev.support_ns and self.addr >= RESERVED_ADDRESSES:
            try:
                self.send_ns_message(NsFlags.DESTROY)
            except RpmsgError:
                pass
        rdev._unregister_endpoint(self)


class RpmsgDevice:
    """An rpmsg bus with its endpoints and address allocation.

    The transport's operations are given as ``ops``, a mapping from
    operation name to a callable that takes the device first. Transports
    may instead subclass and override the operation methods. An operation
    that is not provided behaves as the bus defines for a missing one.
    """

    def __init__(
        self,
        support_ns: bool = False,
        ns_bind_cb: Optional[Callable[..., Any]] = None,
        ns_unbind_cb: Optional[Callable[..., Any]] = None,
        ops: Optional[Mapping[str, Callable[..., Any]]] = None,
    ) -> None:
        self.endpoints: list[RpmsgEndpoint] = []
        self.bitmap = 0
        self.support_ns = support_ns
        self.ns_bind_cb = ns_bind_cb
        self.ns_unbind_cb = ns_unbind_cb
        self.ops: dict[str, Callable[..., Any]] = dict(ops or {})
        self.lock = threading.RLock()

    # address bitmap

    def _allocate_address(self) -> Optional[int]:
        for bit in range(ADDR_BMP_SIZE):
            if not (self.bitmap >> bit) & 1:
                self.bitmap |= 1 << bit
                return RESERVED_ADDRESSES + bit
        return None

    def _release_address(self, addr: int) -> None:
        bit = addr - RESERVED_ADDRESSES
        if 0 <= bit < ADDR_BMP_SIZE:
            self.bitmap &= ~(1 << bit)

    def _claim_address(self, addr: int) -> None:
        bit = addr - RESERVED_ADDRESSES
        if not 0 <= bit < ADDR_BMP_SIZE:
            raise RpmsgError(f"address {addr:#x} is outside the dynamic range")
        if (self.bitmap >> bit) & 1:
            raise RpmsgError(f"address {addr:#x} is already in use", "addr")
        self.bitmap |= 1 << bit

    # endpoints

    def register_endpoint(
        self,
        ept: RpmsgEndpoint,
        name: Optional[str],
        src: int,
        dest: int,
        cb: Optional[EndpointCallback],
        unbind_cb: Optional[UnbindCallback] = None,
    ) -> RpmsgEndpoint:
        """Attach ``ept`` to this device without any address bookkeeping."""
        ept.name = (name or "")[:NAME_SIZE]
        ept.addr = src
        ept.dest_addr = dest
        ept.cb = cb
        ept.ns_unbind_cb = unbind_cb
        ept.rdev = self
        self.endpoints.append(ept)
        return ept

    def _unregister_endpoint(self, ept: RpmsgEndpoint) -> None:
        with self.lock:
            if ept.addr != ADDR_ANY:
                self._release_address(ept.addr)
            if ept in self.endpoints:
                self.endpoints.remove(ept)
            ept.rdev = None

    def create_endpoint(
        self,
        name: Optional[str],
        src: int = ADDR_ANY,
        dest: int = ADDR_ANY,
        cb: Optional[EndpointCallback] = None,
        unbind_cb: Optional[UnbindCallback] = None,
    ) -> RpmsgEndpoint:
        """Create an endpoint, allocating a local address when ``src`` is ADDR_ANY."""
        if cb is None:
            raise RpmsgError("an endpoint callback is required")
        ept = RpmsgEndpoint()
        with self.lock:
            addr = src
            if src == ADDR_ANY:
                addr = self._allocate_address()
                if addr is None:
                    raise RpmsgError("no free endpoint address", "addr")
            elif src >= RESERVED_ADDRESSES:
                self._claim_address(src)
            # Addresses below the dynamic range are trusted as predefined services.
            self.register_endpoint(ept, name, addr, dest, cb, unbind_cb)

        if ept.name and self.support_ns and ept.dest_addr == ADDR_ANY:
            try:
                ept.send_ns_message(NsFlags.CREATE)
            except Exception:
                self._unregister_endpoint(ept)
                raise
        return ept

    def get_endpoint(
        self, name: Optional[str], addr: int, dest_addr: int
    ) -> Optional[RpmsgEndpoint]:
        """Find an endpoint by local address, or by name and remote address."""
        wanted = None if name is None else name[:NAME_SIZE]
        for ept in self.endpoints:
            if addr != ADDR_ANY and ept.addr == addr:
                return ept
            if wanted is None or ept.name != wanted:
                continue
            if dest_addr != ADDR_ANY and ept.dest_addr == dest_addr:
                return ept
            if addr == ADDR_ANY and ept.dest_addr == ADDR_ANY:
                return ept
        return None

    def get_endpoint_by_addr(self, addr: int) -> Optional[RpmsgEndpoint]:
        return self.get_endpoint(None, addr, ADDR_ANY)

    # transport operations

    def _required_op(self, name: str, message: str, reason: str = "param"):
        op = self.ops.get(name)
        if op is None:
            raise RpmsgError(message, reason)
        return op

    def send_offchannel_raw(
        self, src: int, dst: int, data: bytes, wait: bool = True
    ) -> Any:
        """Copy ``data`` into a transmit buffer and send it."""
        op = self._required_op(
            "send_offchannel_raw", "the transport cannot send messages"
        )
        return op(self, src, dst, data, wait)

    def send_offchannel_nocopy(self, src: int, dst: int, data: Any) -> Any:
        """Send a transmit buffer the caller has already filled."""
        op = self._required_op(
            "send_offchannel_nocopy", "the transport cannot send without copying"
        )
        return op(self, src, dst, data)

    def hold_rx_buffer(self, rxbuf: Any) -> None:
        """Keep a received buffer after its callback returns."""
        op = self.ops.get("hold_rx_buffer")
        if op is not None:
            op(self, rxbuf)

    def release_rx_buffer(self, rxbuf: Any) -> None:
        """Give a held receive buffer back to the transport."""
        op = self.ops.get("release_rx_buffer")
        if op is not None:
            op(self, rxbuf)

    def release_tx_buffer(self, buf: Any) -> Any:
        """Return an unsent transmit buffer to the transport."""
        op = self._required_op(
            "release_tx_buffer",
            "the transport cannot release transmit buffers",
            "perm",
        )
        return op(self, buf)

    def get_tx_payload_buffer(self, wait: bool = True) -> Any:
        """Return a transmit payload buffer, or None if none is available."""
        op = self.ops.get("get_tx_payload_buffer")
        if op is None:
            return None
        return op(self, wait)