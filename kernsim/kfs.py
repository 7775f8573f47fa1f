"""Read-mostly kernel file system over a block device.

Disk layout: ``[ boot block | inodes | data blocks ]``, every block
``FS_BLKSZ`` bytes. Files can be read and overwritten in place but never
grow or get created.
"""

from __future__ import annotations

import struct
import threading
from dataclasses import dataclass, field

from kernsim.errors import NotSupportedError
from kernsim.io import IoCtl, IoInterface

FS_BLKSZ = 4096
FS_NAMELEN = 32
FS_MAXOPEN = 32
MAX_DENTRIES = 63
INODE_BLOCKS = 1023

_DENTRY = struct.Struct(f"<{FS_NAMELEN}sI28x")
_BOOT_HEADER = struct.Struct("<III52x")
_INODE = struct.Struct(f"<I{INODE_BLOCKS}I")


class FileSystemError(Exception):
    """A file system operation failed."""


@dataclass
class DirEntry:
    """A directory entry: a file name and the inode that holds the file."""

    name: str
    inode: int

    SIZE = _DENTRY.size

    @classmethod
    def unpack(cls, data: bytes) -> DirEntry:
        raw_name, inode = _DENTRY.unpack(bytes(data[:_DENTRY.size]))
        name = raw_name.split(b"\0", 1)[0].decode("utf-8", errors="replace")
        return cls(name, inode)

    def pack(self) -> bytes:
        encoded = self.name.encode("utf-8")
        if len(encoded) > FS_NAMELEN:
            raise ValueError(f"file name longer than {FS_NAMELEN} bytes")
        return _DENTRY.pack(encoded, self.inode)

    def matches(self, name: str) -> bool:
        """Compare like the on-disk lookup: at most ``FS_NAMELEN`` bytes."""
        return name.encode("utf-8")[:FS_NAMELEN] == self.name.encode("utf-8")


@dataclass
class BootBlock:
    """First block of the disk: counts and the directory."""

    num_inodes: int = 0
    num_data: int = 0
    entries: list[DirEntry] = field(default_factory=list)

    @property
    def num_dentry(self) -> int:
        return len(self.entries)

    @classmethod
    def unpack(cls, data: bytes) -> BootBlock:
        data = bytes(data)
        if len(data) < FS_BLKSZ:
            raise ValueError("boot block is shorter than one block")
        num_dentry, num_inodes, num_data = _BOOT_HEADER.unpack_from(data)
        count = min(num_dentry, MAX_DENTRIES)
        entries = [
            DirEntry.unpack(data[offset:offset + DirEntry.SIZE])
            for offset in range(_BOOT_HEADER.size,
                                _BOOT_HEADER.size + count * DirEntry.SIZE,
                                DirEntry.SIZE)
        ]
        return cls(num_inodes, num_data, entries)

    def pack(self) -> bytes:
        if len(self.entries) > MAX_DENTRIES:
            raise ValueError(f"at most {MAX_DENTRIES} directory entries fit")
        body = b"".join(entry.pack() for entry in self.entries)
        block = _BOOT_HEADER.pack(self.num_dentry, self.num_inodes, self.num_data) + body
        return block.ljust(FS_BLKSZ, b"\0")

    def find(self, name: str) -> DirEntry | None:
        return next((entry for entry in self.entries if entry.matches(name)), None)


@dataclass
class Inode:
    """File length in bytes and the data block numbers holding it."""

    byte_len: int = 0
    blocks: list[int] = field(default_factory=list)

    SIZE = _INODE.size

    @classmethod
    def unpack(cls, data: bytes) -> Inode:
        byte_len, *blocks = _INODE.unpack(bytes(data[:_INODE.size]))
        return cls(byte_len, list(blocks))

    def pack(self) -> bytes:
        if len(self.blocks) > INODE_BLOCKS:
            raise ValueError(f"an inode holds at most {INODE_BLOCKS} blocks")
        padded = list(self.blocks) + [0] * (INODE_BLOCKS - len(self.blocks))
        return _INODE.pack(self.byte_len, *padded)


class KfsFile(IoInterface):
    """An open file of a mounted :class:`FileSystem`."""

    def __init__(self, fs: FileSystem, inode_number: int, size: int) -> None:
        super().__init__()
        self._fs = fs
        self.inode_number = inode_number
        self.size = size
        self.position = 0
        self.in_use = True

    def _check_open(self) -> None:
        if not self.in_use:
            raise FileSystemError("file is not open")

    def read(self, size: int) -> bytes:
        with self._fs.lock:
            self._check_open()
            self._fs.require_mounted()
            if self.position >= self.size:
                return b""
            size = min(size, self.size - self.position)
            inode = self._fs.load_inode(self.inode_number)
            out = bytearray()
            pos = self.position
            while len(out) < size:
                index, offset = divmod(pos, FS_BLKSZ)
                if index >= len(inode.blocks):
                    break
                self._fs.seek_device(self._fs.data_block_offset(inode.blocks[index]))
                block = self._fs.device.read_full(FS_BLKSZ)
                if len(block) != FS_BLKSZ:
                    raise FileSystemError("cannot read data block")
                count = min(size - len(out), FS_BLKSZ - offset)
                out += block[offset:offset + count]
                pos += count
            self.position = pos
            return bytes(out)

    def write(self, data: bytes) -> int:
        with self._fs.lock:
            self._check_open()
            self._fs.require_mounted()
            if self.position >= self.size:
                return 0
            data = bytes(data[:self.size - self.position])
            inode = self._fs.load_inode(self.inode_number)
            written = 0
            pos = self.position
            while written < len(data):
                index, offset = divmod(pos, FS_BLKSZ)
                if index >= len(inode.blocks):
                    break
                self._fs.seek_device(
                    self._fs.data_block_offset(inode.blocks[index]) + offset)
                count = min(len(data) - written, FS_BLKSZ - offset)
                if self._fs.device.write_all(data[written:written + count]) != count:
                    raise FileSystemError("cannot write data block")
                written += count
                pos += count
            self.position = pos
            return written

    def control(self, cmd: int, arg: int | None = None) -> int | None:
        with self._fs.lock:
            self._check_open()
            if cmd == IoCtl.GETLEN:
                return self.size
            if cmd == IoCtl.GETPOS:
                return self.position
            if cmd == IoCtl.SETPOS:
                if arg is None or not 0 <= arg <= self.size:
                    raise FileSystemError(f"position out of bounds: {arg}")
                self.position = arg
                return None
            if cmd == IoCtl.GETBLKSZ:
                return FS_BLKSZ
        raise NotSupportedError(f"control command {cmd}")

    def close(self) -> None:
        self.in_use = False
        self._fs.forget(self)


class FileSystem:
    """A mounted file system image with a fixed table of open files."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.device: IoInterface | None = None
        self.boot_block = BootBlock()
        self.mounted = False
        self._open: list[KfsFile | None] = [None] * FS_MAXOPEN

    def require_mounted(self) -> None:
        if not self.mounted or self.device is None:
            raise FileSystemError("file system not mounted")

    def seek_device(self, pos: int) -> None:
        assert self.device is not None
        try:
            self.device.seek(pos)
        except (ValueError, NotSupportedError) as exc:
            raise FileSystemError(f"cannot seek block device to {pos}") from exc

    def data_block_offset(self, block_number: int) -> int:
        return FS_BLKSZ * (1 + self.boot_block.num_inodes + block_number)

    def load_inode(self, inode_number: int) -> Inode:
        self.seek_device(FS_BLKSZ + inode_number * FS_BLKSZ)
        assert self.device is not None
        data = self.device.read_full(Inode.SIZE)
        if len(data) != Inode.SIZE:
            raise FileSystemError("cannot read inode")
        return Inode.unpack(data)

    def mount(self, blkio: IoInterface) -> None:
        """Read the boot block from ``blkio`` and make the file system usable."""
        with self.lock:
            if self.mounted:
                raise FileSystemError("file system already mounted")
            self.device = blkio
            self.seek_device(0)
            data = blkio.read_full(FS_BLKSZ)
            if len(data) != FS_BLKSZ:
                raise FileSystemError("cannot read boot block")
            self.boot_block = BootBlock.unpack(data)
            self.mounted = True
            self._open = [None] * FS_MAXOPEN

    def open(self, name: str) -> KfsFile:
        """Open the file called ``name`` with one reference held."""
        with self.lock:
            self.require_mounted()
            try:
                slot = self._open.index(None)
            except ValueError:
                raise FileSystemError("no available file slots") from None
            entry = self.boot_block.find(name)
            if entry is None:
                raise FileSystemError(f"file not found: {name}")
            inode = self.load_inode(entry.inode)
            handle = KfsFile(self, entry.inode, inode.byte_len)
            handle.refcnt = 1
            self._open[slot] = handle
            return handle

    def forget(self, handle: KfsFile) -> None:
        """Free the open-file slot held by ``handle``."""
        with self.lock:
            for index, current in enumerate(self._open):
                if current is handle:
                    self._open[index] = None
                    break

    @property
    def open_count(self) -> int:
        return sum(1 for handle in self._open if handle is not None)