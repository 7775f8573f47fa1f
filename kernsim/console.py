"""Console character I/O over a serial port."""

from __future__ import annotations

from kernsim.io import IoInterface

_ENCODING = "utf-8"


class Console:
    """Line-ending aware console on top of a byte port."""

    def __init__(self, port: IoInterface) -> None:
        self.port = port
        self._prev_out = 0
        self._prev_in = 0

    def _put_byte(self, b: int) -> None:
        if b == 0x0D:
            self.port.putc(0x0D)
            self.port.putc(0x0A)
        else:
            if b == 0x0A and self._prev_out != 0x0D:
                self.port.putc(0x0D)
            self.port.putc(b)
        self._prev_out = b

    def _get_byte(self) -> int:
        # Collapse \r followed by any number of \n into a single \n.
        while True:
            b = self.port.getc()
            if not (b == 0x0A and self._prev_in == 0x0D):
                break
        self._prev_in = b
        return 0x0A if b == 0x0D else b

    def _put_text(self, text: str) -> None:
        for b in text.encode(_ENCODING):
            self._put_byte(b)

    def putchar(self, c: str) -> None:
        """Write one character, expanding line endings to CRLF."""
        if len(c) != 1:
            raise ValueError("expected a single character")
        self._put_text(c)

    def getchar(self) -> str:
        """Read one character; any CR, LF or CRLF arrives as a newline."""
        return chr(self._get_byte())

    def puts(self, s: str) -> None:
        """Write ``s`` followed by a newline."""
        self._put_text(s)
        self._put_byte(0x0A)

    def getsn(self, n: int) -> str:
        """Read a line of at most ``n - 1`` characters with backspace editing."""
        line = bytearray()
        while True:
            b = self._get_byte()
            if b == 0x0D:
                continue
            if b == 0x0A:
                return line.decode(_ENCODING, errors="replace")
            if b in (0x08, 0x7F):
                if line:
                    line.pop()
            elif len(line) < n - 1:
                line.append(b)

    def printf(self, fmt: str, *args: object) -> int:
        """Write formatted text; return the number of bytes it held."""
        data = (fmt % args).encode(_ENCODING)
        for b in data:
            self._put_byte(b)
        return len(data)

    def labeled_printf(
        self, label: str, filename: str, lineno: int, fmt: str, *args: object
    ) -> None:
        """Write ``label: file:line: message`` followed by a newline."""
        self.printf("%s: %s:%d: ", label, filename, lineno)
        self.printf(fmt, *args)
        self._put_byte(0x0A)