# kernsim

`kernsim` models the core subsystems of a small RISC-V teaching kernel in
plain Python. It has no dependencies outside the standard library, and each
module can be used on its own.

| Module | What it gives you |
| --- | --- |
| `kernsim.errors` | `Halted`, `KernelPanic`, `NotSupportedError`, and `panic`, `kassert`, `halt_success`, `halt_failure` |
| `kernsim.config` | `MemoryLayout`: RAM start and size, the user address window, and the device address constants |
| `kernsim.io` | `IoInterface`, the base I/O object with reference counting; `MemoryIo`, a byte buffer treated as a file; `IoCtl` command numbers |
| `kernsim.term` | `TerminalIo`: CR/LF normalisation over a raw I/O object, and line editing with `getsn` |
| `kernsim.console` | `Console`: character console over a byte port, with `putchar`, `getchar`, `puts`, `getsn`, `printf` and `labeled_printf` |
| `kernsim.device` | `DeviceManager`: register device openers by name and open the n-th instance |
| `kernsim.kfs` | `FileSystem`, `KfsFile`, and the on-disk records `BootBlock`, `DirEntry`, `Inode` |
| `kernsim.pagetable` | `Pte`, `PteFlag`, `PhysicalMemory` and the Sv39 helpers `vpn`, `wellformed_vma`, `leaf_pte`, `ptab_pte`, `make_mtag`, `mtag_to_root`, `walk_pt` |
| `kernsim.memory` | `MemoryManager`: page pool, memory spaces, mapping, cloning, page faults and virtual reads and writes |
| `kernsim.heap` | `BumpHeap`: a never-reusing allocator for blocks of up to one page |
| `kernsim.elf` | `ElfHeader`, `ProgramHeader`, `ElfLoadError` and `load_elf` |
| `kernsim.trap` | `TrapFrame`, `ExceptionCause`, `exception_name`, `describe_exception`, `default_exception_handler` |

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Errors

Where a kernel would stop the machine, `kernsim` raises. `panic(msg)` and a
failed `kassert(condition, msg)` raise `KernelPanic`, a subclass of `Halted`
whose `code` is the failure value `0x3333`. `halt_success()` raises `Halted`
with code `0x5555`, and `Halted.success` tells the two apart. Operations an
object does not provide raise `NotSupportedError`.

## Memory-backed files

```python
from kernsim.io import IoCtl, MemoryIo

f = MemoryIo(bytearray(b"hello world"))
f.seek(6)
print(f.read_full(5))                 # b'world'
print(f.control(IoCtl.GETLEN, None))  # 11
```

`read` may return fewer bytes than asked and returns `b""` at end of file;
`write` never grows the buffer and returns how many bytes fit. Seeking
outside the buffer raises `ValueError`, and unknown control commands raise
`NotSupportedError`. `getc` and `putc` raise `EOFError` when nothing can be
read or written. `ref()` adds a reference and `release()` drops one, calling
`close()` when the count reaches zero.

## Terminal line endings

```python
from kernsim.io import MemoryIo
from kernsim.term import TerminalIo

raw = MemoryIo(bytearray(16))
term = TerminalIo(raw)
term.write(b"a\nb")
print(bytes(raw.buf[:4]))  # b'a\r\nb'
```

A lone `\n` or `\r` written through a `TerminalIo` reaches the raw object as
`\r\n`; an existing `\r\n` passes through unchanged. On input, `\r`, `\r\n`
and `\n` each read back as one `\n`. `getsn(n)` reads a line of at most
`n - 1` characters, echoing to the raw object, handling backspace and delete,
and ringing the bell when the line is full. Seeking a terminal raises
`NotSupportedError`; other control commands go to the raw object.

`Console` offers the same kind of newline handling on top of any
`IoInterface` used as a serial port.

## Devices

```python
from kernsim.device import DeviceManager
from kernsim.io import MemoryIo

devices = DeviceManager(16)
devices.register("blk", lambda aux: MemoryIo(aux), bytearray(4096))
disk = devices.open("blk", 0)
```

`register` returns the instance number among devices of the same name.
Opening a name or instance that was never registered raises
`DeviceNotFoundError`; registering beyond the capacity panics.

## File system images

A `FileSystem` mounts any `IoInterface` holding an image laid out as a
4096-byte boot block, then one block per inode, then the data blocks.
`BootBlock`, `DirEntry` and `Inode` pack and unpack those records, so an
image can be built in memory:

```python
from kernsim.io import MemoryIo
from kernsim.kfs import FS_BLKSZ, BootBlock, DirEntry, FileSystem, Inode

boot = BootBlock(num_inodes=1, num_data=1, entries=[DirEntry("hello", 0)])
inode = Inode(byte_len=5, blocks=[0])
image = boot.pack() + inode.pack().ljust(FS_BLKSZ, b"\0") + b"hello".ljust(FS_BLKSZ, b"\0")

fs = FileSystem()
fs.mount(MemoryIo(image))
f = fs.open("hello")
print(f.read(100))  # b'hello'
```

`FileSystem.open(name)` returns a `KfsFile` holding one reference; it
supports `read`, `write` within the existing file size, `seek`, and the
`IoCtl` length, position and block-size queries. At most 32 files are open
at once. Failures raise `FileSystemError`.

## Paging

`MemoryManager` keeps its page tables inside a `PhysicalMemory` object, so
mappings are real Sv39 entries that `walk_pt` can inspect.

```python
from kernsim.memory import MemoryManager
from kernsim.pagetable import PteFlag

mm = MemoryManager()
mm.alloc_and_map_page(0xC0000000, PteFlag.R | PteFlag.W | PteFlag.U)
mm.write_virtual(0xC0000000, b"hi\0")
print(mm.validate_vstr(0xC0000000, PteFlag.U | PteFlag.R))  # True
```

`space_clone(asid)` copies the user pages of the active space into a new
space and returns its tag; `switch(mtag)` activates a space;
`unmap_and_free_user` and `space_reclaim` return user pages to the pool.
`handle_page_fault` maps a fresh page for a user address and panics for any
other. The kernel heap is available as `mm.heap`, a `BumpHeap`.

## Loading programs

```python
from kernsim.elf import PF_R, PF_X, ElfHeader, ProgramHeader, load_elf
from kernsim.io import MemoryIo
from kernsim.memory import MemoryManager

code = b"\x13\x00\x00\x00"
header = ElfHeader(entry=0xC0000000, phnum=1)
segment = ProgramHeader(flags=PF_R | PF_X, offset=ElfHeader.SIZE + ProgramHeader.SIZE,
                        vaddr=0xC0000000, filesz=len(code), memsz=len(code))
image = header.pack() + segment.pack() + code

mm = MemoryManager()
entry = load_elf(MemoryIo(image), mm)
print(hex(entry), mm.read_virtual(entry, 4) == code)  # 0xc0000000 True
```

`load_elf` accepts 64-bit little-endian RISC-V executables, maps each
loadable segment into the user window with the segment's permissions, zeroes
the part beyond the file data and returns the entry point. Malformed or
misplaced images raise `ElfLoadError`, whose `code` says which step failed.

## Exceptions

`describe_exception(code, frame)` names an exception code and the faulting
`sepc` of a `TrapFrame`, for example `"Load page fault at 0xc0000010"`;
`default_exception_handler` panics with that text.

## What it does not do

`kernsim` has no command-line program and does not run user code: there is
no processor model, no threads, processes, scheduler, system calls or
signals, no timer or interrupt controller, and no serial or block device
drivers. Devices, ports and disks are any `IoInterface` you supply, such as
a `MemoryIo`.