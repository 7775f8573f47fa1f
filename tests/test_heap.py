import pytest

from kernsim.config import MemoryLayout
from kernsim.errors import KernelPanic
from kernsim.heap import BumpHeap
from kernsim.memory import MemoryManager
from kernsim.pagetable import PAGE_SIZE


@pytest.fixture
def mm():
    layout = MemoryLayout.from_megabytes(4)
    return MemoryManager(layout, layout.ram_start + PAGE_SIZE)


@pytest.fixture
def region(mm):
    return mm.alloc_page()


@pytest.fixture
def heap(mm, region):
    return BumpHeap(region, region + PAGE_SIZE, mm)


def test_alloc_takes_from_top_rounded_to_16(heap, region):
    p = heap.alloc(1)
    assert p == region + PAGE_SIZE - 16
    q = heap.alloc(17)
    assert q % 16 == 0
    assert p - q >= 17


def test_blocks_do_not_overlap(heap, region):
    sizes = [1, 16, 33, 100, 7]
    blocks = sorted((heap.alloc(size), size) for size in sizes)
    for (start, size), (next_start, _) in zip(blocks, blocks[1:]):
        assert start + size <= next_start
    assert all(region <= start < region + PAGE_SIZE for start, _ in blocks)


def test_request_larger_than_page_panics(heap):
    with pytest.raises(KernelPanic):
        heap.alloc(PAGE_SIZE + 1)


def test_switches_to_new_page_when_exhausted(heap, region):
    assert heap.alloc(PAGE_SIZE) == region
    ptr = heap.alloc(64)
    assert not region <= ptr < region + PAGE_SIZE
    assert heap.end == ptr
    assert heap.available == PAGE_SIZE - 64


def test_full_page_request_keeps_current_block(heap):
    heap.alloc(16)
    before = (heap.start, heap.end)
    ptr = heap.alloc(PAGE_SIZE)
    assert ptr % PAGE_SIZE == 0
    assert (heap.start, heap.end) == before


def test_calloc_zeroes(heap, mm, region):
    mm.physical.fill(region, PAGE_SIZE, 0xFF)
    ptr = heap.calloc(4, 8)
    assert mm.physical.read(ptr, 32) == bytes(32)


def test_calloc_overflow_panics(heap):
    with pytest.raises(KernelPanic):
        heap.calloc(1 << 63, 4)


def test_realloc_preserves_contents(heap, mm):
    ptr = heap.alloc(8)
    mm.physical.write(ptr, b"abcdefgh")
    moved = heap.realloc(ptr, 64)
    assert moved != ptr
    assert mm.physical.read(moved, 8) == b"abcdefgh"
    fresh = heap.realloc(None, 8)
    assert fresh % 16 == 0


def test_realloc_of_freed_block_raises(heap):
    ptr = heap.alloc(8)
    heap.free(ptr)
    with pytest.raises(ValueError):
        heap.realloc(ptr, 16)


def test_free_does_not_reuse_memory(heap):
    ptr = heap.alloc(32)
    heap.free(ptr)
    assert heap.alloc(32) < ptr


def test_empty_region_panics(mm, region):
    with pytest.raises(KernelPanic):
        BumpHeap(region, region, mm)


def test_manager_heap_allocates_in_ram(mm):
    ptr = mm.heap.alloc(32)
    assert ptr in mm.physical
    assert ptr % 16 == 0