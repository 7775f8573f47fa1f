"""A small RISC-V teaching kernel modelled in Python: I/O objects, terminal and console, devices, a flat file system, Sv39 paging, a bump heap, an ELF loader and exception reporting."""

__version__ = "0.1.0"