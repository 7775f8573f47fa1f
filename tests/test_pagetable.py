import pytest

from kernsim.pagetable import (
    PAGE_SIZE,
    PTE_CNT,
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

RAM = 0x80000000


def test_page_constants_fixed_by_format():
    assert round_up(1, PAGE_SIZE) == 4096
    mem = PhysicalMemory(RAM, PAGE_SIZE)
    assert len(mem.read(RAM, PAGE_SIZE)) == 4096
    assert PTE_CNT == 512


def test_flag_bits_fixed_by_format():
    assert leaf_pte(0, PteFlag(0)).flags == 0xC1
    assert Pte(flags=PteFlag.U).encode() == 1 << 4
    assert Pte(flags=PteFlag.V).encode() == 1


def test_pte_field_positions():
    assert Pte(ppn=1).encode() == 1 << 10
    assert Pte(n=1).encode() == 1 << 63
    assert Pte(flags=0xFF).encode() == 0xFF


@pytest.mark.parametrize(
    "pte",
    [
        Pte(),
        Pte(flags=0xC7, ppn=RAM >> 12),
        Pte(flags=1, ppn=(1 << 44) - 1, rsw=3, reserved=5, pbmt=2, n=1),
    ],
)
def test_pte_round_trip(pte):
    assert Pte.decode(pte.encode()) == pte


def test_pte_field_overflow_rejected():
    with pytest.raises(ValueError):
        Pte(flags=0x100).encode()
    with pytest.raises(ValueError):
        Pte.decode(1 << 64)


def test_leaf_and_table_entries():
    leaf = leaf_pte(RAM, PteFlag.R | PteFlag.W)
    assert leaf.is_leaf()
    assert leaf.flags & PteFlag.A and leaf.flags & PteFlag.D and leaf.flags & PteFlag.V
    assert leaf.address == RAM
    table = ptab_pte(RAM + PAGE_SIZE, PteFlag.G)
    assert not table.is_leaf()
    assert table.flags == PteFlag.G | PteFlag.V
    assert table.address == RAM + PAGE_SIZE


def test_vpn_indices():
    assert vpn(RAM, 2) == 2
    assert vpn(0xC0000000, 2) == 3
    address = 0xC0123000
    rebuilt = sum(vpn(address, level) << (12 + 9 * level) for level in range(3))
    assert rebuilt == address


def test_vpn_rejects_bad_level():
    with pytest.raises(ValueError):
        vpn(0, 3)


@pytest.mark.parametrize(
    "vma,expected",
    [
        (0, True),
        ((1 << 38) - 1, True),
        (1 << 38, False),
        (0xFFFFFFC000000000, True),
        ((1 << 64) - 1, True),
        (0x8000000000000000, False),
    ],
)
def test_wellformed_vma(vma, expected):
    assert wellformed_vma(vma) is expected


def test_rounding():
    assert round_up(1, PAGE_SIZE) == PAGE_SIZE
    assert round_up(PAGE_SIZE, PAGE_SIZE) == PAGE_SIZE
    assert round_down(PAGE_SIZE + 1, PAGE_SIZE) == PAGE_SIZE
    assert round_down(PAGE_SIZE - 1, PAGE_SIZE) == 0
    with pytest.raises(ValueError):
        round_up(1, 0)


def test_mtag_round_trip_and_mode():
    root = RAM + 5 * PAGE_SIZE
    mtag = make_mtag(root, 7)
    assert mtag_to_root(mtag) == root
    assert mtag >> 60 == 8
    assert (mtag >> 44) & 0xFFFF == 7
    with pytest.raises(ValueError):
        make_mtag(root, 1 << 16)


def test_physical_memory_read_write_fill():
    mem = PhysicalMemory(RAM, 4 * PAGE_SIZE)
    mem.write(RAM + 10, b"hello")
    assert mem.read(RAM + 10, 5) == b"hello"
    mem.fill(RAM + 10, 3, 0xAA)
    assert mem.read(RAM + 10, 5) == b"\xaa\xaa\xaalo"
    assert RAM in mem
    assert RAM + 4 * PAGE_SIZE not in mem


def test_physical_memory_bounds():
    mem = PhysicalMemory(RAM, PAGE_SIZE)
    with pytest.raises(ValueError):
        mem.read(RAM - 1, 1)
    with pytest.raises(ValueError):
        mem.write(RAM + PAGE_SIZE - 2, b"abc")
    with pytest.raises(ValueError):
        mem.fill(RAM, 1, 256)


def test_pte_storage_round_trip():
    mem = PhysicalMemory(RAM, PAGE_SIZE)
    pte = leaf_pte(RAM, PteFlag.R | PteFlag.X)
    mem.write_pte(RAM + 16, pte)
    assert mem.read_pte(RAM + 16) == pte
    assert int.from_bytes(mem.read(RAM + 16, 8), "little") == pte.encode()
    with pytest.raises(ValueError):
        mem.read_pte(RAM + 3)


def _allocator(mem, first_page):
    pages = iter(range(first_page, mem.end, PAGE_SIZE))
    handed_out = []

    def allocate():
        page = next(pages)
        mem.fill(page, PAGE_SIZE)
        handed_out.append(page)
        return page

    return allocate, handed_out


def test_walk_without_tables_returns_none():
    mem = PhysicalMemory(RAM, 8 * PAGE_SIZE)
    assert walk_pt(mem, RAM, 0xC0000000) is None


def test_walk_creates_tables_and_finds_them_again():
    mem = PhysicalMemory(RAM, 8 * PAGE_SIZE)
    allocate, pages = _allocator(mem, RAM + PAGE_SIZE)
    vma = 0xC0003000
    pte_address = walk_pt(mem, RAM, vma, allocate)
    assert len(pages) == 2
    assert pte_address == pages[1] + vpn(vma, 0) * 8
    root_entry = mem.read_pte(RAM + vpn(vma, 2) * 8)
    assert root_entry.valid and not root_entry.is_leaf()
    assert root_entry.address == pages[0]
    assert walk_pt(mem, RAM, vma) == pte_address
    neighbour = walk_pt(mem, RAM, vma + PAGE_SIZE, allocate)
    assert neighbour == pte_address + 8
    assert len(pages) == 2


def test_walk_stops_at_gigapage_leaf():
    mem = PhysicalMemory(RAM, 8 * PAGE_SIZE)
    mem.write_pte(RAM + vpn(0, 2) * 8, leaf_pte(0, PteFlag.R | PteFlag.W))
    allocate, pages = _allocator(mem, RAM + PAGE_SIZE)
    assert walk_pt(mem, RAM, 0x1000, allocate) is None
    assert pages == []