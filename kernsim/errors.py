"""Halting, panics and kernel error types."""

from __future__ import annotations

SUCCESS_CODE = 0x5555
FAILURE_CODE = 0x3333


class Halted(Exception):
    """The machine stopped; ``code`` is the value written to the test device."""

    def __init__(self, code: int, message: str | None = None) -> None:
        self.code = code
        self.message = message
        super().__init__(message if message is not None else f"halted with code {code:#x}")

    @property
    def success(self) -> bool:
        return self.code == SUCCESS_CODE


class KernelPanic(Halted):
    """An unrecoverable kernel error; always a failed halt."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(FAILURE_CODE, message)


class NotSupportedError(Exception):
    """The requested operation is not supported by the object."""


def halt_success() -> None:
    """Stop the machine, reporting success."""
    raise Halted(SUCCESS_CODE)


def halt_failure() -> None:
    """Stop the machine, reporting failure."""
    raise Halted(FAILURE_CODE)


def panic(msg: str | None = None) -> None:
    """Stop the machine after an unrecoverable error."""
    raise KernelPanic(msg)


def kassert(condition: object, msg: str | None = None) -> None:
    """Panic with an assertion message unless ``condition`` holds."""
    if not condition:
        text = "ASSERTION FAILED" if msg is None else f"ASSERTION FAILED: {msg}"
        raise KernelPanic(text)