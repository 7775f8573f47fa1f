"""Leaking bump allocator for small kernel allocations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from kernsim.errors import kassert, panic
from kernsim.pagetable import PAGE_SIZE, round_up

if TYPE_CHECKING:
    from kernsim.memory import MemoryManager

SIZE_MAX = (1 << 64) - 1
_ALIGN = 16


class BumpHeap:
    """Carves blocks off the top of a region; freed memory is never reused.

    Requests larger than the current block's free space are served from a
    fresh page of the memory manager.
    """

    def __init__(self, start: int, end: int, memory: MemoryManager) -> None:
        kassert(start < end, "heap start must precede its end")
        self.start = start
        self.end = end
        self._memory = memory
        self._sizes: dict[int, int] = {}

    @property
    def available(self) -> int:
        """Free bytes left in the current block."""
        return self.end - self.start

    def alloc(self, size: int) -> int:
        """Allocate ``size`` bytes rounded up to 16 and return the address."""
        if size < 0:
            raise ValueError(f"negative allocation size: {size}")
        size = round_up(size, _ALIGN)
        if size > PAGE_SIZE:
            panic("heap alloc request too large")

        if size <= self.end - self.start:
            self.end -= size
            ptr = self.end
        else:
            block = self._memory.alloc_page()
            # Switch blocks only if the new one leaves more room than the old.
            if self.end - self.start < PAGE_SIZE - size:
                self.start = block
                self.end = block + PAGE_SIZE - size
                ptr = self.end
            else:
                ptr = block

        self._sizes[ptr] = size
        return ptr

    def calloc(self, n: int, size: int) -> int:
        """Allocate a zeroed array of ``n`` elements of ``size`` bytes."""
        if size and SIZE_MAX // size < n:
            panic("heap alloc request too large")
        total = n * size
        ptr = self.alloc(total)
        if total:
            self._memory.physical.fill(ptr, total, 0)
        return ptr

    def realloc(self, ptr: int | None, size: int) -> int:
        """Move a block into a new allocation of ``size`` bytes, keeping its data."""
        if ptr is None:
            return self.alloc(size)
        old_size = self._sizes.get(ptr)
        if old_size is None:
            raise ValueError(f"{ptr:#x} is not a live block of this heap")
        new_ptr = self.alloc(size)
        keep = min(old_size, size)
        if keep:
            physical = self._memory.physical
            physical.write(new_ptr, physical.read(ptr, keep))
        return new_ptr

    def free(self, ptr: int | None) -> None:
        """Forget the block; its memory stays allocated."""
        if ptr is not None:
            self._sizes.pop(ptr, None)