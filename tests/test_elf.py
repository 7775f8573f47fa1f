import pytest

from kernsim.config import USER_END_VMA, USER_START_VMA
from kernsim.elf import (
    EHDR_SIZE,
    PF_R,
    PF_W,
    PF_X,
    PHDR_SIZE,
    PT_LOAD,
    ElfHeader,
    ElfLoadError,
    ProgramHeader,
    load_elf,
)
from kernsim.io import MemoryIo
from kernsim.memory import MemoryManager
from kernsim.pagetable import PAGE_SIZE, PteFlag

TEXT = b"\x13\x00\x00\x00" * 8
DATA = b"hello, user"


def build_image(segments, header=None):
    """Build an image: header, program headers, then each segment's bytes."""
    header = header or ElfHeader()
    header.phnum = len(segments)
    header.phoff = EHDR_SIZE
    offset = EHDR_SIZE + PHDR_SIZE * len(segments)
    phdrs = []
    body = b""
    for phdr, content in segments:
        phdr.offset = offset
        phdr.filesz = len(content)
        phdrs.append(phdr)
        body += content
        offset += len(content)
    return header.pack() + b"".join(p.pack() for p in phdrs) + body


def load(image):
    memory = MemoryManager()
    return load_elf(MemoryIo(image), memory), memory


def error_code(image):
    with pytest.raises(ElfLoadError) as info:
        load(image)
    return info.value.code


def test_header_round_trip():
    header = ElfHeader(entry=USER_START_VMA, phnum=2, flags=5)
    assert ElfHeader.unpack(header.pack()) == header
    assert len(header.pack()) == 64


def test_program_header_round_trip():
    phdr = ProgramHeader(flags=PF_R | PF_W, vaddr=USER_START_VMA, memsz=100)
    assert ProgramHeader.unpack(phdr.pack()) == phdr
    assert len(phdr.pack()) == 56


def test_unpack_short_header_raises():
    with pytest.raises(ValueError):
        ElfHeader.unpack(b"\x7fELF")


def test_magic_ok():
    assert ElfHeader().magic_ok()
    assert not ElfHeader(ident=b"\x7fELG").magic_ok()


def test_pte_flags_from_segment_flags():
    assert ProgramHeader(flags=PF_R | PF_X).pte_flags() == PteFlag.R | PteFlag.X | PteFlag.U
    assert ProgramHeader(flags=PF_W).pte_flags() == PteFlag.W | PteFlag.U
    assert ProgramHeader(flags=0).pte_flags() == PteFlag.U


def test_load_copies_segments_and_returns_entry():
    entry = USER_START_VMA + 4
    text = ProgramHeader(flags=PF_R | PF_X, vaddr=USER_START_VMA, memsz=len(TEXT))
    data_vma = USER_START_VMA + 2 * PAGE_SIZE
    data = ProgramHeader(flags=PF_R | PF_W, vaddr=data_vma, memsz=len(DATA) + 40)
    image = build_image([(text, TEXT), (data, DATA)], ElfHeader(entry=entry))

    result, memory = load(image)

    assert result == entry
    assert memory.read_virtual(USER_START_VMA, len(TEXT)) == TEXT
    assert memory.read_virtual(data_vma, len(DATA)) == DATA
    assert memory.read_virtual(data_vma + len(DATA), 40) == bytes(40)


def test_load_sets_segment_permissions():
    text = ProgramHeader(flags=PF_R | PF_X, vaddr=USER_START_VMA, memsz=len(TEXT))
    _, memory = load(build_image([(text, TEXT)]))
    rx = PteFlag.R | PteFlag.X | PteFlag.U
    assert memory.validate_vptr_len(USER_START_VMA, len(TEXT), rx)
    assert not memory.validate_vptr_len(USER_START_VMA, len(TEXT), PteFlag.W)


def test_unaligned_segment_spanning_pages():
    vaddr = USER_START_VMA + PAGE_SIZE - 4
    content = bytes(range(16))
    phdr = ProgramHeader(flags=PF_R, vaddr=vaddr, memsz=len(content))
    _, memory = load(build_image([(phdr, content)]))
    assert memory.read_virtual(vaddr, len(content)) == content


def test_non_load_segments_are_skipped():
    note = ProgramHeader(type=4, vaddr=USER_START_VMA, memsz=8)
    _, memory = load(build_image([(note, b"notedata")]))
    assert not memory.validate_vptr_len(USER_START_VMA, 8, PteFlag.U)


def test_short_header():
    assert error_code(b"\x7fELF\x02\x01") == -1


def test_bad_magic():
    assert error_code(build_image([], ElfHeader(ident=b"\x7fXLF\x02\x01\x01"))) == -2


def test_wrong_machine():
    assert error_code(build_image([], ElfHeader(machine=62))) == -3


def test_wrong_type():
    assert error_code(build_image([], ElfHeader(type=3))) == -3


def test_big_endian():
    assert error_code(build_image([], ElfHeader(ident=b"\x7fELF\x02\x02\x01"))) == -9


def test_program_header_offset_past_end():
    image = ElfHeader(phnum=1, phoff=10_000).pack()
    assert error_code(image) == -4


def test_truncated_program_header():
    image = ElfHeader(phnum=1).pack() + b"\x01\x00"
    assert error_code(image) == -5


def test_segment_below_user_space():
    phdr = ProgramHeader(flags=PF_R, vaddr=USER_START_VMA - PAGE_SIZE, memsz=16)
    assert error_code(build_image([(phdr, bytes(16))])) == -6


def test_segment_overlapping_stack():
    phdr = ProgramHeader(flags=PF_R, vaddr=USER_END_VMA - 8, memsz=16)
    assert error_code(build_image([(phdr, bytes(16))])) == -11


def test_segment_offset_past_end():
    phdr = ProgramHeader(flags=PF_R, vaddr=USER_START_VMA, memsz=16)
    image = build_image([(phdr, b"")])
    header = ElfHeader.unpack(image)
    bad = ProgramHeader.unpack(image[header.phoff:header.phoff + PHDR_SIZE])
    bad.offset = 10_000
    bad.filesz = 16
    image = image[:header.phoff] + bad.pack()
    assert error_code(image) == -7


def test_truncated_segment_data():
    phdr = ProgramHeader(flags=PF_R, vaddr=USER_START_VMA, memsz=64)
    image = build_image([(phdr, bytes(64))])
    assert error_code(image[:-10]) == -8


def test_error_is_exception_with_message():
    with pytest.raises(ElfLoadError, match="magic"):
        load(build_image([], ElfHeader(ident=b"NOPE")))


def test_load_reports_pt_load_constant():
    assert ProgramHeader().type == PT_LOAD
    phdr = ProgramHeader(flags=PF_R | PF_W, vaddr=USER_START_VMA, memsz=4)
    _, memory = load(build_image([(phdr, b"abcd")]))
    assert memory.read_virtual(USER_START_VMA, 4) == b"abcd"