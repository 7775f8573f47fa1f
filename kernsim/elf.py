"""Loading of 64-bit RISC-V ELF executables into a user memory space."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from kernsim.errors import NotSupportedError
from kernsim.io import IoInterface
from kernsim.kfs import FileSystemError
from kernsim.memory import MemoryManager
from kernsim.pagetable import PAGE_SIZE, PteFlag, round_down, round_up

EI_NIDENT = 16
ELF_MAGIC = b"\x7fELF"
ET_EXEC = 2
RV64_MACHINE = 243
ELFCLASS64 = 2
ELFDATA2LSB = 1
ELFDATA2MSB = 2
EV_CURRENT = 1

PT_LOAD = 1
PF_X = 0x1
PF_W = 0x2
PF_R = 0x4

_EHDR = struct.Struct(f"<{EI_NIDENT}sHHIQQQIHHHHHH")
_PHDR = struct.Struct("<IIQQQQQQ")

EHDR_SIZE = _EHDR.size
PHDR_SIZE = _PHDR.size

_DEFAULT_IDENT = (ELF_MAGIC + bytes([ELFCLASS64, ELFDATA2LSB, EV_CURRENT])).ljust(
    EI_NIDENT, b"\0")

_IO_ERRORS = (ValueError, LookupError, NotSupportedError, FileSystemError,
              EOFError, OSError)

# Error codes reported by the loader.
ERR_READ_HEADER = -1
ERR_BAD_MAGIC = -2
ERR_UNSUPPORTED = -3
ERR_SEEK_PHDR = -4
ERR_READ_PHDR = -5
ERR_OUT_OF_BOUNDS = -6
ERR_SEEK_SEGMENT = -7
ERR_LOAD_SEGMENT = -8
ERR_NOT_LITTLE_ENDIAN = -9
ERR_MAP = -10
ERR_STACK_OVERLAP = -11


class ElfLoadError(Exception):
    """The image could not be loaded; ``code`` tells which step failed."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        super().__init__(message)


@dataclass
class ElfHeader:
    """The ELF file header of a 64-bit image."""

    ident: bytes = _DEFAULT_IDENT
    type: int = ET_EXEC
    machine: int = RV64_MACHINE
    version: int = EV_CURRENT
    entry: int = 0
    phoff: int = EHDR_SIZE
    shoff: int = 0
    flags: int = 0
    ehsize: int = EHDR_SIZE
    phentsize: int = PHDR_SIZE
    phnum: int = 0
    shentsize: int = 0
    shnum: int = 0
    shstrndx: int = 0

    SIZE = EHDR_SIZE

    @classmethod
    def unpack(cls, data: bytes) -> ElfHeader:
        data = bytes(data)
        if len(data) < EHDR_SIZE:
            raise ValueError(f"ELF header needs {EHDR_SIZE} bytes, got {len(data)}")
        return cls(*_EHDR.unpack_from(data))

    def pack(self) -> bytes:
        ident = bytes(self.ident)
        if len(ident) > EI_NIDENT:
            raise ValueError(f"identification longer than {EI_NIDENT} bytes")
        return _EHDR.pack(
            ident.ljust(EI_NIDENT, b"\0"), self.type, self.machine, self.version,
            self.entry, self.phoff, self.shoff, self.flags, self.ehsize,
            self.phentsize, self.phnum, self.shentsize, self.shnum, self.shstrndx)

    def magic_ok(self) -> bool:
        """True if the identification starts with the ELF magic bytes."""
        return bytes(self.ident[:4]) == ELF_MAGIC

    @property
    def data_encoding(self) -> int:
        return self.ident[5] if len(self.ident) > 5 else 0


@dataclass
class ProgramHeader:
    """One entry of the program header table."""

    type: int = PT_LOAD
    flags: int = 0
    offset: int = 0
    vaddr: int = 0
    paddr: int = 0
    filesz: int = 0
    memsz: int = 0
    align: int = PAGE_SIZE

    SIZE = PHDR_SIZE

    @classmethod
    def unpack(cls, data: bytes) -> ProgramHeader:
        data = bytes(data)
        if len(data) < PHDR_SIZE:
            raise ValueError(f"program header needs {PHDR_SIZE} bytes, got {len(data)}")
        return cls(*_PHDR.unpack_from(data))

    def pack(self) -> bytes:
        return _PHDR.pack(self.type, self.flags, self.offset, self.vaddr,
                          self.paddr, self.filesz, self.memsz, self.align)

    def pte_flags(self) -> PteFlag:
        """Page permissions for the segment; always user accessible."""
        flags = PteFlag.U
        if self.flags & PF_R:
            flags |= PteFlag.R
        if self.flags & PF_W:
            flags |= PteFlag.W
        if self.flags & PF_X:
            flags |= PteFlag.X
        return flags


def _seek(io: IoInterface, pos: int, code: int, what: str) -> None:
    try:
        io.seek(pos)
    except _IO_ERRORS as exc:
        raise ElfLoadError(code, f"cannot seek to {what} at {pos:#x}") from exc


def _read(io: IoInterface, size: int, code: int, what: str) -> bytes:
    try:
        data = io.read_full(size)
    except _IO_ERRORS as exc:
        raise ElfLoadError(code, f"cannot read {what}") from exc
    if len(data) != size:
        raise ElfLoadError(code, f"short read of {what}")
    return data


def _load_segment(io: IoInterface, memory: MemoryManager, phdr: ProgramHeader) -> None:
    layout = memory.layout
    end = phdr.vaddr + phdr.memsz
    if phdr.vaddr < layout.user_start or end > layout.user_end:
        raise ElfLoadError(ERR_OUT_OF_BOUNDS, "segment is out of bounds")

    start = round_down(phdr.vaddr, PAGE_SIZE)
    span = round_up(end, PAGE_SIZE) - start
    flags = phdr.pte_flags()

    # Map writable first so the contents can be copied in.
    try:
        memory.alloc_and_map_range(start, span, flags | PteFlag.W)
    except ValueError as exc:
        raise ElfLoadError(ERR_MAP, "cannot map segment") from exc

    _seek(io, phdr.offset, ERR_SEEK_SEGMENT, "segment")
    data = _read(io, phdr.filesz, ERR_LOAD_SEGMENT, "segment")
    try:
        memory.write_virtual(phdr.vaddr, data)
    except _IO_ERRORS as exc:
        raise ElfLoadError(ERR_LOAD_SEGMENT, "segment does not fit its mapping") from exc
    if phdr.memsz > phdr.filesz:
        memory.write_virtual(phdr.vaddr + phdr.filesz, bytes(phdr.memsz - phdr.filesz))

    memory.set_range_flags(start, span, flags)


def load_elf(io: IoInterface, memory: MemoryManager) -> int:
    """Load the executable read from ``io`` into the active space of ``memory``.

    Returns the entry point address; raises :class:`ElfLoadError` on failure.
    """
    header = ElfHeader.unpack(_read(io, EHDR_SIZE, ERR_READ_HEADER, "ELF header"))
    if not header.magic_ok():
        raise ElfLoadError(ERR_BAD_MAGIC, "invalid ELF magic number")
    if header.type != ET_EXEC or header.machine != RV64_MACHINE:
        raise ElfLoadError(ERR_UNSUPPORTED, "unsupported ELF type or machine")
    if header.data_encoding != ELFDATA2LSB:
        raise ElfLoadError(ERR_NOT_LITTLE_ENDIAN, "ELF image is not little-endian")

    for index in range(header.phnum):
        _seek(io, header.phoff + index * header.phentsize, ERR_SEEK_PHDR,
              "program header")
        phdr = ProgramHeader.unpack(
            _read(io, PHDR_SIZE, ERR_READ_PHDR, "program header"))
        if phdr.vaddr + phdr.memsz > memory.layout.user_stack:
            raise ElfLoadError(ERR_STACK_OVERLAP, "segment overlaps the stack")
        if phdr.type == PT_LOAD:
            _load_segment(io, memory, phdr)

    return header.entry