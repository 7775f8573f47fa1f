"""Sv39 page table entries, simulated physical memory and table walks."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import IntFlag

PAGE_ORDER = 12
PAGE_SIZE = 1 << PAGE_ORDER
MEGA_SIZE = (1 << 9) * PAGE_SIZE
GIGA_SIZE = (1 << 9) * MEGA_SIZE
PTE_SIZE = 8
PTE_CNT = PAGE_SIZE // PTE_SIZE
LEVELS = 3

SATP_MODE_SV39 = 8
SATP_MODE_SHIFT = 60
SATP_ASID_SHIFT = 44
SATP_ASID_BITS = 16
SATP_PPN_BITS = 44

_U64_MASK = (1 << 64) - 1
_PPN_MASK = (1 << SATP_PPN_BITS) - 1


class PteFlag(IntFlag):
    """Flag bits in the low byte of a page table entry."""

    V = 1 << 0
    R = 1 << 1
    W = 1 << 2
    X = 1 << 3
    U = 1 << 4
    G = 1 << 5
    A = 1 << 6
    D = 1 << 7


PTE_FLAGS_MASK = PteFlag.R | PteFlag.W | PteFlag.X | PteFlag.U | PteFlag.G
_RWX = PteFlag.R | PteFlag.W | PteFlag.X

# (field name, bit offset, bit width) of the 64-bit entry, low bits first.
_FIELDS = (
    ("flags", 0, 8),
    ("rsw", 8, 2),
    ("ppn", 10, 44),
    ("reserved", 54, 7),
    ("pbmt", 61, 2),
    ("n", 63, 1),
)


@dataclass
class Pte:
    """One Sv39 page table entry."""

    flags: int = 0
    ppn: int = 0
    rsw: int = 0
    reserved: int = 0
    pbmt: int = 0
    n: int = 0

    def encode(self) -> int:
        """Pack the fields into a 64-bit integer."""
        value = 0
        for name, offset, width in _FIELDS:
            field_value = int(getattr(self, name))
            if not 0 <= field_value < (1 << width):
                raise ValueError(f"PTE field {name} out of range: {field_value}")
            value |= field_value << offset
        return value

    @classmethod
    def decode(cls, value: int) -> Pte:
        """Unpack a 64-bit integer into its fields."""
        if not 0 <= value <= _U64_MASK:
            raise ValueError(f"PTE value out of range: {value}")
        fields = {
            name: (value >> offset) & ((1 << width) - 1)
            for name, offset, width in _FIELDS
        }
        return cls(**fields)

    @property
    def valid(self) -> bool:
        return bool(self.flags & PteFlag.V)

    @property
    def address(self) -> int:
        """Physical address of the page or table the entry points to."""
        return self.ppn << PAGE_ORDER

    def is_leaf(self) -> bool:
        """True if the entry maps a page rather than pointing to a table."""
        return bool(self.flags & _RWX)


class PhysicalMemory:
    """A contiguous range of byte-addressed physical memory."""

    def __init__(self, start: int, size: int) -> None:
        if size <= 0:
            raise ValueError("memory size must be positive")
        if start < 0:
            raise ValueError("memory start must not be negative")
        self.start = start
        self.size = size
        self._data = bytearray(size)

    @property
    def end(self) -> int:
        return self.start + self.size

    def __contains__(self, address: object) -> bool:
        return isinstance(address, int) and self.start <= address < self.end

    def _offset(self, address: int, size: int) -> int:
        if size < 0:
            raise ValueError(f"negative size: {size}")
        if address < self.start or address + size > self.end:
            raise ValueError(
                f"physical access [{address:#x},{address + size:#x}) out of range")
        return address - self.start

    def read(self, address: int, size: int) -> bytes:
        offset = self._offset(address, size)
        return bytes(self._data[offset:offset + size])

    def write(self, address: int, data: bytes | bytearray) -> None:
        offset = self._offset(address, len(data))
        self._data[offset:offset + len(data)] = data

    def fill(self, address: int, size: int, value: int = 0) -> None:
        if not 0 <= value <= 0xFF:
            raise ValueError(f"byte value out of range: {value}")
        offset = self._offset(address, size)
        self._data[offset:offset + size] = bytes([value]) * size

    def _check_pte_address(self, address: int) -> None:
        if address % PTE_SIZE:
            raise ValueError(f"misaligned PTE address: {address:#x}")

    def read_pte(self, address: int) -> Pte:
        self._check_pte_address(address)
        return Pte.decode(int.from_bytes(self.read(address, PTE_SIZE), "little"))

    def write_pte(self, address: int, pte: Pte) -> None:
        self._check_pte_address(address)
        self.write(address, pte.encode().to_bytes(PTE_SIZE, "little"))


def vpn(vma: int, level: int) -> int:
    """Virtual page number index of ``vma`` at table ``level`` (0..2)."""
    if not 0 <= level < LEVELS:
        raise ValueError(f"invalid page table level: {level}")
    return (vma >> (PAGE_ORDER + 9 * level)) & 0x1FF


def wellformed_vma(vma: int) -> bool:
    """True if address bits 63:38 are all zeros or all ones."""
    value = vma & _U64_MASK
    if value >> 63:
        value -= 1 << 64
    bits = value >> 38
    return bits in (0, -1)


def round_up(value: int, blksz: int) -> int:
    if blksz <= 0:
        raise ValueError("block size must be positive")
    return (value + blksz - 1) // blksz * blksz


def round_down(value: int, blksz: int) -> int:
    if blksz <= 0:
        raise ValueError("block size must be positive")
    return value // blksz * blksz


def leaf_pte(paddr: int, flags: int) -> Pte:
    """Entry mapping the page at ``paddr``; A, D and V are always set."""
    return Pte(flags=int(flags) | PteFlag.A | PteFlag.D | PteFlag.V,
               ppn=paddr >> PAGE_ORDER)


def ptab_pte(paddr: int, g_flag: int = 0) -> Pte:
    """Entry pointing to the next-level table at ``paddr``."""
    return Pte(flags=int(g_flag) | PteFlag.V, ppn=paddr >> PAGE_ORDER)


def make_mtag(root: int, asid: int = 0) -> int:
    """Memory space tag (satp value) for the Sv39 table rooted at ``root``."""
    if not 0 <= asid < (1 << SATP_ASID_BITS):
        raise ValueError(f"ASID out of range: {asid}")
    return ((SATP_MODE_SV39 << SATP_MODE_SHIFT)
            | (asid << SATP_ASID_SHIFT)
            | ((root >> PAGE_ORDER) & _PPN_MASK))


def mtag_to_root(mtag: int) -> int:
    """Physical address of the root table named by ``mtag``."""
    return (mtag & _PPN_MASK) << PAGE_ORDER


def walk_pt(
    memory: PhysicalMemory,
    root: int,
    vma: int,
    allocate: Callable[[], int] | None = None,
) -> int | None:
    """Address of the level-0 PTE for ``vma``, or None if there is none.

    When ``allocate`` is given, missing tables are created from the zeroed
    pages it returns. A leaf met above level 0 (a mega- or gigapage) ends the
    walk with None.
    """
    table = root
    for level in range(LEVELS - 1, 0, -1):
        entry_address = table + vpn(vma, level) * PTE_SIZE
        entry = memory.read_pte(entry_address)
        if entry.valid:
            if entry.is_leaf():
                return None
            table = entry.address
        elif allocate is not None:
            new_table = allocate()
            memory.write_pte(entry_address,
                             Pte(flags=PteFlag.V, ppn=new_table >> PAGE_ORDER))
            table = new_table
        else:
            return None
    return table + vpn(vma, 0) * PTE_SIZE