"""Terminal I/O wrapper with CRLF normalization and line editing."""

from __future__ import annotations

from kernsim.errors import NotSupportedError
from kernsim.io import IoCtl, IoInterface

_CR = 0x0D
_LF = 0x0A
_BS = 0x08
_DEL = 0x7F
_BEL = 0x07
# Byte that resets the input CR state and is dropped from the line.
_RESET_BYTE = 0o133


class TerminalIo(IoInterface):
    """Wraps a raw I/O object, normalizing line endings both ways.

    Input: ``\\r\\n``, a lone ``\\r`` and a lone ``\\n`` each become ``\\n``.
    Output: a lone ``\\r`` or lone ``\\n`` is written as ``\\r\\n``; an
    existing ``\\r\\n`` is passed through unchanged.
    """

    def __init__(self, raw: IoInterface) -> None:
        super().__init__()
        self.raw = raw
        self.cr_in = False
        self.cr_out = False

    def read(self, size: int) -> bytes:
        if size <= 0:
            return b""
        while True:
            chunk = self.raw.read(size)
            if not chunk:
                return b""
            out = bytearray()
            for ch in chunk:
                if self.cr_in:
                    if ch == _CR:
                        out.append(_LF)
                    elif ch == _LF:
                        self.cr_in = False
                    else:
                        self.cr_in = False
                        out.append(ch)
                elif ch == _CR:
                    self.cr_in = True
                    out.append(_LF)
                else:
                    out.append(ch)
            # A chunk holding only the LF of a split CRLF yields nothing; read on.
            if out:
                return bytes(out)

    def _translate(self, data: bytes) -> list[bytes]:
        """Raw output for each input position; skipped bytes map to b''."""
        pieces: list[bytes] = []
        skip_next = False
        for index, ch in enumerate(data):
            if skip_next:
                skip_next = False
                pieces.append(b"")
                continue
            if ch == _CR:
                if index + 1 < len(data) and data[index + 1] == _LF:
                    self.cr_out = False
                    skip_next = True
                else:
                    self.cr_out = True
                pieces.append(b"\r\n")
            elif ch == _LF:
                if self.cr_out:
                    self.cr_out = False
                    pieces.append(b"")
                else:
                    pieces.append(b"\r\n")
            else:
                self.cr_out = False
                pieces.append(bytes([ch]))
        return pieces

    def write(self, data: bytes) -> int:
        consumed = 0
        for piece in self._translate(bytes(data)):
            if piece and self.raw.write_all(piece) < len(piece):
                return consumed
            consumed += 1
        return consumed

    def control(self, cmd: int, arg: int | None = None) -> int | None:
        # Seeking would invalidate the CR state kept for the stream.
        if cmd == IoCtl.SETPOS:
            raise NotSupportedError("terminal does not support seeking")
        return self.raw.control(cmd, arg)

    def close(self) -> None:
        self.raw.release()

    def getsn(self, n: int) -> str:
        """Read an edited line of at most ``n - 1`` characters, echoing input."""
        line = bytearray()
        while True:
            ch = self.getc()
            if ch == _RESET_BYTE:
                self.cr_in = False
            elif ch in (_CR, _LF):
                self.raw.putc(_CR)
                self.raw.putc(_LF)
                return line.decode("utf-8", errors="replace")
            elif ch in (_BS, _DEL):
                if line:
                    line.pop()
                    self.raw.write_all(b"\b \b")
                else:
                    self.raw.putc(_BEL)
            elif len(line) < n - 1:
                self.raw.putc(ch)
                line.append(ch)
            else:
                self.raw.putc(_BEL)