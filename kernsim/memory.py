"""Physical page allocator and Sv39 virtual memory spaces."""

from __future__ import annotations

from collections.abc import Iterator

from kernsim.config import MemoryLayout
from kernsim.errors import kassert, panic
from kernsim.heap import BumpHeap
from kernsim.pagetable import (
    GIGA_SIZE,
    MEGA_SIZE,
    PAGE_SIZE,
    PTE_CNT,
    PTE_FLAGS_MASK,
    PTE_SIZE,
    PhysicalMemory,
    Pte,
    PteFlag,
    leaf_pte,
    make_mtag,
    mtag_to_root,
    ptab_pte,
    round_down,
    round_up,
    vpn,
    walk_pt,
    wellformed_vma,
)

# Minimum amount of memory in the initial heap block.
HEAP_INIT_MIN = 256

# Root, level-1 and level-0 tables of the main memory space.
_MAIN_TABLES = 3


class MemoryManager:
    """Page allocator, kernel heap and Sv39 memory spaces over simulated RAM.

    The kernel image occupies ``[layout.ram_start, kernel_end)``; the three
    tables of the main memory space follow it, then the initial heap block,
    and every remaining page of RAM goes to the page allocator.
    """

    def __init__(self, layout: MemoryLayout | None = None,
                 kernel_end: int | None = None) -> None:
        self.layout = layout if layout is not None else MemoryLayout()
        ram_start = self.layout.ram_start
        ram_end = self.layout.ram_end
        if kernel_end is None:
            kernel_end = ram_start
        kassert(kernel_end >= ram_start, "kernel image must start at RAM start")
        self.kernel_end = kernel_end

        tables = round_up(kernel_end, PAGE_SIZE)
        image_end = tables + _MAIN_TABLES * PAGE_SIZE
        # Kernel must fit inside one megapage (one level-1 PTE).
        if image_end - ram_start > MEGA_SIZE:
            panic("Kernel too large")

        heap_start = image_end
        heap_end = round_up(heap_start, PAGE_SIZE)
        if heap_end - heap_start < HEAP_INIT_MIN:
            heap_end += round_up(HEAP_INIT_MIN - (heap_end - heap_start), PAGE_SIZE)
        if heap_end > ram_end:
            panic("Not enough memory")

        self.physical = PhysicalMemory(ram_start, self.layout.ram_size)
        self.main_pt2 = tables
        self.main_pt1 = tables + PAGE_SIZE
        self.main_pt0 = tables + 2 * PAGE_SIZE
        self._build_main_tables()

        self.main_mtag = make_mtag(self.main_pt2)
        self._satp = self.main_mtag

        self.heap = BumpHeap(heap_start, heap_end, self)
        # The last page pushed is handed out first, as with a linked free list.
        self._free = list(range(heap_end, ram_end - PAGE_SIZE + 1, PAGE_SIZE))

    # Main space construction

    def _set_entry(self, table: int, index: int, pte: Pte) -> None:
        self.physical.write_pte(table + index * PTE_SIZE, pte)

    def _build_main_tables(self) -> None:
        ram_start = self.layout.ram_start
        ram_end = self.layout.ram_end
        rw_g = PteFlag.R | PteFlag.W | PteFlag.G

        # Identity-map everything below RAM (MMIO) with gigapages.
        for pma in range(0, ram_start, GIGA_SIZE):
            self._set_entry(self.main_pt2, vpn(pma, 2), leaf_pte(pma, rw_g))

        self._set_entry(self.main_pt2, vpn(ram_start, 2),
                        ptab_pte(self.main_pt1, PteFlag.G))
        self._set_entry(self.main_pt1, vpn(ram_start, 1),
                        ptab_pte(self.main_pt0, PteFlag.G))

        # First megarange as single pages: kernel code, then data and heap.
        code_end = round_up(self.kernel_end, PAGE_SIZE)
        mega_end = ram_start + MEGA_SIZE
        for pp in range(ram_start, mega_end, PAGE_SIZE):
            flags = rw_g | PteFlag.X if pp < code_end else rw_g
            self._set_entry(self.main_pt0, vpn(pp, 0), leaf_pte(pp, flags))

        # Remaining RAM as megapages.
        for pp in range(mega_end, ram_end, MEGA_SIZE):
            self._set_entry(self.main_pt1, vpn(pp, 1), leaf_pte(pp, rw_g))

    # Physical pages

    def alloc_page(self) -> int:
        """Take a zeroed page from the free pool and return its address."""
        if not self._free:
            panic("no free pages in free_list: memory_alloc_page")
        page = self._free.pop()
        self.physical.fill(page, PAGE_SIZE, 0)
        return page

    def free_page(self, page: int) -> None:
        """Zero a page and return it to the free pool."""
        if (page == 0 or page % PAGE_SIZE
                or page not in self.physical
                or page + PAGE_SIZE > self.physical.end):
            panic("Invalid page address provided in memory_free_page")
        self.physical.fill(page, PAGE_SIZE, 0)
        self._free.append(page)

    def free_page_count(self) -> int:
        """Number of pages left in the free pool."""
        return len(self._free)

    # Memory spaces

    def active_mtag(self) -> int:
        """Memory space tag of the active space."""
        return self._satp

    def switch(self, mtag: int) -> int:
        """Make ``mtag`` the active space and return the previous tag."""
        old = self._satp
        self._satp = mtag
        return old

    def _root(self) -> int:
        return mtag_to_root(self._satp)

    def _walk(self, root: int, vma: int, create: bool) -> int | None:
        return walk_pt(self.physical, root, vma,
                       self.alloc_page if create else None)

    def _user_ptes(self, root: int) -> Iterator[tuple[int, int, Pte]]:
        """Level-0 entries of existing tables covering the user region."""
        start, end = self.layout.user_start, self.layout.user_end
        for i2 in range(vpn(start, 2), vpn(end - 1, 2) + 1):
            top = self.physical.read_pte(root + i2 * PTE_SIZE)
            if not top.valid or top.is_leaf():
                continue
            for i1 in range(PTE_CNT):
                base = i2 * GIGA_SIZE + i1 * MEGA_SIZE
                if base + MEGA_SIZE <= start or base >= end:
                    continue
                mid = self.physical.read_pte(top.address + i1 * PTE_SIZE)
                if not mid.valid or mid.is_leaf():
                    continue
                for i0 in range(PTE_CNT):
                    va = base + i0 * PAGE_SIZE
                    if start <= va < end:
                        address = mid.address + i0 * PTE_SIZE
                        yield va, address, self.physical.read_pte(address)

    def _page_has(self, vma: int, required: int) -> bool:
        address = self._walk(self._root(), vma, False)
        if address is None:
            return False
        pte = self.physical.read_pte(address)
        return pte.valid and (pte.flags & required) == required

    def _unmap(self, vma: int) -> None:
        address = self._walk(self._root(), vma, False)
        if address is None:
            return
        pte = self.physical.read_pte(address)
        if pte.valid and pte.is_leaf():
            self.free_page(pte.address)
            self.physical.write_pte(address, Pte())

    # Mapping

    def alloc_and_map_page(self, vma: int, flags: int) -> int:
        """Back the page at ``vma`` with a fresh physical page; return ``vma``."""
        if not wellformed_vma(vma) or vma % PAGE_SIZE:
            raise ValueError(f"invalid page address: {vma:#x}")
        page = self.alloc_page()
        address = self._walk(self._root(), vma, True)
        if address is None:
            self.free_page(page)
            raise ValueError(f"{vma:#x} lies inside a large page mapping")
        self.physical.write_pte(address, leaf_pte(page, flags))
        return vma

    def alloc_and_map_range(self, vma: int, size: int, flags: int) -> int:
        """Map every page of ``[vma, vma+size)``; undo all of it on failure."""
        start = round_down(vma, PAGE_SIZE)
        end = round_up(vma + size, PAGE_SIZE)
        mapped: list[int] = []
        try:
            for page_vma in range(start, end, PAGE_SIZE):
                self.alloc_and_map_page(page_vma, flags)
                mapped.append(page_vma)
        except Exception:
            for page_vma in mapped:
                self._unmap(page_vma)
            raise
        return start

    def set_page_flags(self, vp: int, flags: int) -> None:
        """Replace the R, W, X, U and G bits of the page mapped at ``vp``."""
        if vp % PAGE_SIZE:
            raise ValueError(f"address not page aligned: {vp:#x}")
        address = self._walk(self._root(), vp, False)
        pte = self.physical.read_pte(address) if address is not None else None
        if pte is None or not pte.valid:
            raise LookupError(f"no page mapped at {vp:#x}")
        pte.flags = (pte.flags & ~int(PTE_FLAGS_MASK)) | int(flags)
        self.physical.write_pte(address, pte)

    def set_range_flags(self, vp: int, size: int, flags: int) -> None:
        """Set the flags of every page in ``[vp, vp+size)``."""
        for page in range(round_down(vp, PAGE_SIZE),
                          round_up(vp + size, PAGE_SIZE), PAGE_SIZE):
            self.set_page_flags(page, flags)

    def unmap_and_free_user(self) -> None:
        """Unmap and free every page of the active space with the U bit set."""
        for _, address, pte in self._user_ptes(self._root()):
            if not pte.valid or not pte.flags & PteFlag.U:
                continue
            if pte.is_leaf():
                self.free_page(pte.address)
                pte.flags = 0
                self.physical.write_pte(address, pte)

    def space_reclaim(self) -> None:
        """Switch to the main space and free the user pages of the old one."""
        old_root = self._root()
        self.switch(self.main_mtag)
        for _, address, pte in self._user_ptes(old_root):
            if not pte.valid or pte.flags & PteFlag.G:
                continue
            if pte.is_leaf():
                self.free_page(pte.address)
                self.physical.write_pte(address, Pte())

    def space_clone(self, asid: int = 0) -> int:
        """Copy the active space: shared global mappings, copied user pages."""
        parent_root = self._root()
        child_root = self.alloc_page()
        for index in range(PTE_CNT):
            entry = self.physical.read_pte(self.main_pt2 + index * PTE_SIZE)
            if entry.flags & PteFlag.G:
                self._set_entry(child_root, index, entry)

        for vma, _, parent in list(self._user_ptes(parent_root)):
            if not parent.valid:
                continue
            child_address = self._walk(child_root, vma, True)
            kassert(child_address is not None, "child page table walk failed")
            page = self.alloc_page()
            child = self.physical.read_pte(child_address)
            child.ppn = page >> 12
            child.flags |= parent.flags
            self.physical.write_pte(child_address, child)
            self.physical.write(page, self.physical.read(parent.address, PAGE_SIZE))

        return make_mtag(child_root, asid)

    def handle_page_fault(self, vaddr: int) -> int:
        """Map a fresh user page at the faulting address; return its page."""
        if not self.layout.in_user_space(vaddr):
            panic("page fault in invalid address space")
        va = round_down(vaddr, PAGE_SIZE)
        if self._walk(self._root(), va, True) is None:
            panic("Page fault: PTE not found")
        return self.alloc_and_map_page(va, PteFlag.R | PteFlag.W | PteFlag.U)

    # Validation

    def validate_vptr_len(self, vp: int, length: int, flags: int) -> bool:
        """True if every page of ``[vp, vp+length)`` is mapped with ``flags``."""
        if not wellformed_vma(vp) or length == 0:
            return False
        required = int(flags)
        return all(
            self._page_has(page, required)
            for page in range(round_down(vp, PAGE_SIZE),
                              round_up(vp + length, PAGE_SIZE), PAGE_SIZE)
        )

    def validate_vstr(self, vs: int, flags: int) -> bool:
        """True if a NUL-terminated string at ``vs`` lies in pages with ``flags``."""
        if not wellformed_vma(vs):
            return False
        required = int(flags)
        addr = vs
        while True:
            page = round_down(addr, PAGE_SIZE)
            if not self._page_has(page, required):
                return False
            chunk = self.physical.read(self.translate(addr), page + PAGE_SIZE - addr)
            if chunk.find(0) >= 0:
                return True
            addr = page + PAGE_SIZE

    # Virtual access

    def translate(self, vma: int) -> int:
        """Physical address that ``vma`` maps to in the active space."""
        if not wellformed_vma(vma):
            raise ValueError(f"malformed virtual address: {vma:#x}")
        table = self._root()
        for level in (2, 1, 0):
            entry = self.physical.read_pte(table + vpn(vma, level) * PTE_SIZE)
            if not entry.valid:
                break
            if entry.is_leaf():
                span = PAGE_SIZE << (9 * level)
                return entry.address + vma % span
            table = entry.address
        raise LookupError(f"no mapping for {vma:#x}")

    def read_virtual(self, vma: int, size: int) -> bytes:
        """Read ``size`` bytes starting at virtual address ``vma``."""
        out = bytearray()
        addr = vma
        remaining = size
        while remaining > 0:
            chunk = min(remaining, PAGE_SIZE - addr % PAGE_SIZE)
            out += self.physical.read(self.translate(addr), chunk)
            addr += chunk
            remaining -= chunk
        return bytes(out)

    def write_virtual(self, vma: int, data: bytes | bytearray) -> None:
        """Write ``data`` starting at virtual address ``vma``."""
        view = memoryview(bytes(data))
        addr = vma
        done = 0
        while done < len(view):
            chunk = min(len(view) - done, PAGE_SIZE - addr % PAGE_SIZE)
            self.physical.write(self.translate(addr), view[done:done + chunk])
            addr += chunk
            done += chunk