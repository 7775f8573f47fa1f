"""Abstract byte I/O objects and a memory-backed implementation."""

from __future__ import annotations

from enum import IntEnum

from kernsim.errors import NotSupportedError

_ENCODING = "utf-8"


class IoCtl(IntEnum):
    """Control command numbers (0..7 are reserved)."""

    GETLEN = 1
    SETLEN = 2
    GETPOS = 3
    SETPOS = 4
    FLUSH = 5
    GETBLKSZ = 6


def _as_bytes(s: str | bytes | bytearray) -> bytes:
    return s.encode(_ENCODING) if isinstance(s, str) else bytes(s)


def _as_byte(c: int | str | bytes) -> int:
    if isinstance(c, int):
        if not 0 <= c <= 0xFF:
            raise ValueError(f"byte value out of range: {c}")
        return c
    data = _as_bytes(c)
    if len(data) != 1:
        raise ValueError("expected a single character")
    return data[0]


class IoInterface:
    """Base I/O object with reference counting and convenience helpers.

    ``read`` may return fewer bytes than asked, and an empty result means end
    of file. ``write`` may write fewer bytes than given, and 0 means no more
    room.
    """

    def __init__(self) -> None:
        self.refcnt = 0

    def read(self, size: int) -> bytes:
        raise NotSupportedError("read")

    def write(self, data: bytes) -> int:
        raise NotSupportedError("write")

    def control(self, cmd: int, arg: int | None = None) -> int | None:
        raise NotSupportedError(f"control command {cmd}")

    def close(self) -> None:
        """Release the object's resources; the default does nothing."""

    def ref(self) -> int:
        """Add a reference and return the new count."""
        self.refcnt += 1
        return self.refcnt

    def release(self) -> None:
        """Drop a reference, closing the object when none remain."""
        if self.refcnt == 0:
            return
        self.refcnt -= 1
        if self.refcnt == 0:
            self.close()

    def read_full(self, size: int) -> bytes:
        """Read until ``size`` bytes are collected or end of file."""
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def write_all(self, data: bytes | bytearray) -> int:
        """Write until all of ``data`` is written or no more fits."""
        view = memoryview(bytes(data))
        written = 0
        while written < len(view):
            count = self.write(bytes(view[written:]))
            if count == 0:
                break
            written += count
        return written

    def seek(self, pos: int) -> None:
        self.control(IoCtl.SETPOS, pos)

    def putc(self, c: int | str | bytes) -> int:
        """Write one byte and return its value."""
        value = _as_byte(c)
        if self.write_all(bytes([value])) == 0:
            raise EOFError("no room to write")
        return value

    def getc(self) -> int:
        """Read one byte and return its value."""
        data = self.read(1)
        if not data:
            raise EOFError("end of file")
        return data[0]

    def puts(self, s: str | bytes) -> None:
        """Write ``s`` followed by a newline."""
        self.write_all(_as_bytes(s))
        self.write_all(b"\n")

    def printf(self, fmt: str, *args: object) -> int:
        """Write formatted text and return the number of bytes written."""
        data = _as_bytes(fmt % args)
        written = self.write_all(data)
        if written < len(data):
            raise EOFError("no room to write")
        return written


class MemoryIo(IoInterface):
    """A block of memory treated as a fixed-size file."""

    def __init__(self, buf: bytes | bytearray) -> None:
        super().__init__()
        self.buf = buf if isinstance(buf, bytearray) else bytearray(buf)
        self.pos = 0

    @property
    def size(self) -> int:
        return len(self.buf)

    def read(self, size: int) -> bytes:
        if self.pos >= self.size:
            return b""
        count = min(size, self.size - self.pos)
        data = bytes(self.buf[self.pos:self.pos + count])
        self.pos += count
        return data

    def write(self, data: bytes) -> int:
        if self.pos >= self.size:
            return 0
        count = min(len(data), self.size - self.pos)
        self.buf[self.pos:self.pos + count] = data[:count]
        self.pos += count
        return count

    def control(self, cmd: int, arg: int | None = None) -> int | None:
        if cmd == IoCtl.GETLEN:
            return self.size
        if cmd == IoCtl.GETPOS:
            return self.pos
        if cmd == IoCtl.SETPOS:
            if arg is None or not 0 <= arg <= self.size:
                raise ValueError(f"position out of bounds: {arg}")
            self.pos = arg
            return None
        raise NotSupportedError(f"control command {cmd}")