"""Byte-addressable shared memory regions seen at a physical address window."""

from __future__ import annotations

from typing import Optional, Union

from .errors import InvalidArgumentError


class IORegion:
    """A block of memory mapped at a contiguous range of physical addresses."""

    def __init__(
        self,
        memory: Union[bytearray, int],
        physical_base: int = 0,
        name: str = "",
    ) -> None:
        if isinstance(memory, int):
            if memory < 0:
                raise InvalidArgumentError(f"negative region size {memory}")
            memory = bytearray(memory)
        elif not isinstance(memory, bytearray):
            raise TypeError("memory must be a bytearray or a size")
        self.memory = memory
        self.physical_base = physical_base
        self.name = name

    def __repr__(self) -> str:
        return (
            f"IORegion(name={self.name!r}, physical_base={self.physical_base:#x}, "
            f"size={self.size:#x})"
        )

    @property
    def size(self) -> int:
        return len(self.memory)

    def phys_to_offset(self, pa: int) -> Optional[int]:
        """Return the offset of physical address ``pa``, or None if outside."""
        offset = pa - self.physical_base
        return offset if 0 <= offset < self.size else None

    def offset_to_phys(self, offset: int) -> Optional[int]:
        """Return the physical address of ``offset``, or None if outside."""
        return self.physical_base + offset if 0 <= offset < self.size else None

    def _span(self, offset: int, length: int) -> int:
        if not 0 <= offset < self.size:
            raise InvalidArgumentError(
                f"offset {offset:#x} is outside a region of {self.size:#x} bytes"
            )
        if length < 0:
            raise InvalidArgumentError(f"negative length {length}")
        return min(length, self.size - offset)

    def read(self, offset: int, length: int) -> bytes:
        """Read up to ``length`` bytes; the read stops at the end of the region."""
        count = self._span(offset, length)
        return bytes(self.memory[offset : offset + count])

    def write(self, offset: int, data: bytes) -> int:
        """Write as much of ``data`` as fits and return the number of bytes written."""
        data = bytes(data)
        count = self._span(offset, len(data))
        self.memory[offset : offset + count] = data[:count]
        return count

    def fill(self, offset: int, value: int, length: int) -> int:
        """Set up to ``length`` bytes to ``value`` and return how many were set."""
        if not 0 <= value <= 0xFF:
            raise InvalidArgumentError(f"fill value {value} is not a byte")
        count = self._span(offset, length)
        self.memory[offset : offset + count] = bytes([value]) * count
        return count