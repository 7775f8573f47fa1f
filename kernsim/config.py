"""Machine memory layout and device addresses."""

from __future__ import annotations

from dataclasses import dataclass

MB = 1024 * 1024

RAM_START_PMA = 0x80000000
DEFAULT_RAM_SIZE = 8 * MB

USER_START_VMA = 0xC0000000
USER_END_VMA = 0xD0000000
USER_STACK_VMA = USER_END_VMA

UART0_IOBASE = 0x10000000
UART1_IOBASE = 0x10000100
UART0_IRQNO = 10

VIRT0_IOBASE = 0x10001000
VIRT1_IOBASE = 0x10002000
VIRT0_IRQNO = 1


@dataclass(frozen=True)
class MemoryLayout:
    """Physical RAM placement and the user virtual region."""

    ram_start: int = RAM_START_PMA
    ram_size: int = DEFAULT_RAM_SIZE
    user_start: int = USER_START_VMA
    user_end: int = USER_END_VMA

    def __post_init__(self) -> None:
        if self.ram_size <= 0:
            raise ValueError("RAM size must be positive")
        if self.user_start >= self.user_end:
            raise ValueError("user region is empty")

    @classmethod
    def from_megabytes(cls, megabytes: int) -> MemoryLayout:
        """Layout with ``megabytes`` of RAM and default addresses."""
        if megabytes <= 0:
            raise ValueError("RAM size must be positive")
        return cls(ram_size=megabytes * MB)

    @property
    def ram_end(self) -> int:
        """First physical address past RAM."""
        return self.ram_start + self.ram_size

    @property
    def user_stack(self) -> int:
        """Initial user stack pointer."""
        return self.user_end

    def in_user_space(self, address: int) -> bool:
        """True if ``address`` lies within the user region."""
        return self.user_start <= address < self.user_end