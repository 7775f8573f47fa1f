"""Trap frames and supervisor exception reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

from kernsim.errors import panic

NREGS = 32

REGISTER_NAMES = (
    "zero", "ra", "sp", "gp", "tp", "t0", "t1", "t2",
    "s0", "s1", "a0", "a1", "a2", "a3", "a4", "a5",
    "a6", "a7", "s2", "s3", "s4", "s5", "s6", "s7",
    "s8", "s9", "s10", "s11", "t3", "t4", "t5", "t6",
)

_REGISTER_INDEX = {name: index for index, name in enumerate(REGISTER_NAMES)}


@dataclass
class TrapFrame:
    """Registers saved on trap entry, plus sstatus and sepc.

    ``x[0]`` holds the saved thread pointer while in user mode.
    """

    x: list[int] = field(default_factory=lambda: [0] * NREGS)
    sstatus: int = 0
    sepc: int = 0

    def __post_init__(self) -> None:
        if len(self.x) != NREGS:
            raise ValueError(f"a trap frame holds {NREGS} registers, got {len(self.x)}")
        self.x = list(self.x)

    @staticmethod
    def _index(reg: int | str) -> int:
        if isinstance(reg, str):
            try:
                return _REGISTER_INDEX[reg]
            except KeyError:
                raise KeyError(f"unknown register: {reg}") from None
        if not 0 <= reg < NREGS:
            raise IndexError(f"register index out of range: {reg}")
        return reg

    def __getitem__(self, reg: int | str) -> int:
        return self.x[self._index(reg)]

    def __setitem__(self, reg: int | str, value: int) -> None:
        self.x[self._index(reg)] = value


class ExceptionCause(IntEnum):
    """Exception codes reported in scause."""

    INSTR_ADDR_MISALIGNED = 0
    INSTR_ACCESS_FAULT = 1
    ILLEGAL_INSTR = 2
    BREAKPOINT = 3
    LOAD_ADDR_MISALIGNED = 4
    LOAD_ACCESS_FAULT = 5
    STORE_ADDR_MISALIGNED = 6
    STORE_ACCESS_FAULT = 7
    ECALL_FROM_UMODE = 8
    ECALL_FROM_SMODE = 9
    INSTR_PAGE_FAULT = 12
    LOAD_PAGE_FAULT = 13
    STORE_PAGE_FAULT = 15


_EXCEPTION_NAMES = {
    ExceptionCause.INSTR_ADDR_MISALIGNED: "Misaligned instruction address",
    ExceptionCause.INSTR_ACCESS_FAULT: "Instruction access fault",
    ExceptionCause.ILLEGAL_INSTR: "Illegal instruction",
    ExceptionCause.BREAKPOINT: "Breakpoint",
    ExceptionCause.LOAD_ADDR_MISALIGNED: "Misaligned load address",
    ExceptionCause.LOAD_ACCESS_FAULT: "Load access fault",
    ExceptionCause.STORE_ADDR_MISALIGNED: "Misaligned store address",
    ExceptionCause.STORE_ACCESS_FAULT: "Store access fault",
    ExceptionCause.ECALL_FROM_UMODE: "Environment call from U mode",
    ExceptionCause.ECALL_FROM_SMODE: "Environment call from S mode",
    ExceptionCause.INSTR_PAGE_FAULT: "Instruction page fault",
    ExceptionCause.LOAD_PAGE_FAULT: "Load page fault",
    ExceptionCause.STORE_PAGE_FAULT: "Store page fault",
}


def exception_name(code: int) -> str | None:
    """Human-readable name of an exception code, or None if it has none."""
    return _EXCEPTION_NAMES.get(code)


def describe_exception(code: int, frame: TrapFrame) -> str:
    """One-line report of an exception and the instruction that raised it."""
    name = exception_name(code)
    if name is None:
        return f"Exception {code} at {frame.sepc:#x}"
    return f"{name} at {frame.sepc:#x}"


def default_exception_handler(code: int, frame: TrapFrame) -> None:
    """Report an exception the kernel cannot handle and panic."""
    panic(describe_exception(code, frame))