# Copyright 2023 Quarkslab
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Container reader

Locates the functions of an ELF, MachO (fat or not), PE file or of an archive
of such objects. The file header is inspected directly to check the
architecture before handing the bytes to LIEF, which provides the sections,
symbols and relocations.
"""

# builtin imports
from __future__ import annotations
import bisect
import dataclasses
import logging
import struct
from dataclasses import dataclass, field
from collections.abc import Iterator
from typing import TYPE_CHECKING

# third-party imports
import lief  # type: ignore[import-untyped]

# local imports
from cfgdiff.errors import InputError, ArchitectureMismatchError
from cfgdiff.loader.types import ContainerType, InputFormat

if TYPE_CHECKING:
    from pathlib import Path
    from cfgdiff.types import Addr


ARCHIVE_MAGIC = b"!<arch>\n"
BITCODE_MAGIC = b"BC\xc0\xde"
BITCODE_WRAPPER_MAGIC = b"\xde\xc0\x17\x0b"

ELF_MACHINES = {
    3: InputFormat.x86,
    62: InputFormat.x86_64,
    40: InputFormat.arm32,
    183: InputFormat.arm64,
    83: InputFormat.avr,
}
MACHO_MAGICS = (b"\xce\xfa\xed\xfe", b"\xcf\xfa\xed\xfe", b"\xfe\xed\xfa\xce", b"\xfe\xed\xfa\xcf")
MACHO_CPU_TYPES = {
    0x7: InputFormat.x86,
    0x01000007: InputFormat.x86_64,
    0xC: InputFormat.arm32,
    0x0100000C: InputFormat.arm64,
}
PE_MACHINES = {
    0x14C: InputFormat.x86,
    0x8664: InputFormat.x86_64,
    0x1C0: InputFormat.arm32,
    0x1C2: InputFormat.arm32,
    0x1C4: InputFormat.arm32,
    0xAA64: InputFormat.arm64,
}

ELF_TYPE_RELOCATABLE = 1
SHN_LORESERVE = 0xFF00
MACHO_N_ARM_THUMB_DEF = 0x0008
# Lowest value considered as an absolute address, below it is a plain constant
MIN_ADDRESS = 0x10000


@dataclass(frozen=True)
class Segment:
    """Bytes of a section mapped at ``addr``, ``size`` may exceed the data (bss)"""

    addr: Addr
    size: int
    data: bytes


@dataclass(frozen=True)
class MemoryMap:
    """
    The mapped sections of a linked image. It is used to read the jump tables and
    to tell absolute addresses from plain constants. Relocatable objects have an
    empty map, their addresses are given by the relocations.
    """

    segments: tuple[Segment, ...] = ()

    def is_address(self, value: int) -> bool:
        """Whether ``value`` points inside a mapped section"""
        if value < MIN_ADDRESS:
            return False
        return any(s.addr <= value < s.addr + s.size for s in self.segments)

    def read(self, addr: Addr, size: int) -> bytes | None:
        """
        Read ``size`` bytes at ``addr``

        :return: the bytes, None if they are not all backed by a section content
        """

        for segment in self.segments:
            offset = addr - segment.addr
            if 0 <= offset and offset + size <= len(segment.data):
                return segment.data[offset : offset + size]
        return None


@dataclass(frozen=True)
class FunctionSlice:
    """
    Bytes of one function as found by the container reader

    :param name: the raw symbol name
    :param addr: load address of the first byte (section relative in objects)
    :param data: the function bytes
    :param thumb: whether it is ARM Thumb code
    :param relocations: symbol names of the relocations applied to the function,
                        keyed by their address
    :param symbols: function symbols of the enclosing object keyed by address,
                    used to name direct call targets
    :param member: archive member the function comes from, if any
    :param memory: mapped sections of the enclosing image
    """

    name: str
    addr: Addr
    data: bytes
    thumb: bool = False
    relocations: dict[Addr, str] = field(default_factory=dict)
    symbols: dict[Addr, str] = field(default_factory=dict)
    member: str | None = None
    memory: MemoryMap = field(default_factory=MemoryMap)


def sniff(data: bytes) -> ContainerType:
    """
    Detect the container format from the first bytes of a file

    :param data: content of the file
    :return: the container type, ``ContainerType.unknown`` if not recognized
    """

    if data.startswith(b"\x7fELF"):
        return ContainerType.elf
    if data[:4] in MACHO_MAGICS:
        return ContainerType.macho
    if data[:4] in (b"\xca\xfe\xba\xbe", b"\xca\xfe\xba\xbf") and len(data) >= 8:
        # Java class files share the magic, their "nfat_arch" is a version >= 45
        (nfat_arch,) = struct.unpack(">I", data[4:8])
        if nfat_arch < 45:
            return ContainerType.fat_macho
    if data.startswith(b"MZ"):
        return ContainerType.pe
    if data.startswith(ARCHIVE_MAGIC):
        return ContainerType.archive
    if data.startswith(BITCODE_MAGIC) or data.startswith(BITCODE_WRAPPER_MAGIC):
        return ContainerType.bitcode
    return ContainerType.unknown


def detect_architecture(data: bytes, container: ContainerType) -> InputFormat | None:
    """
    Read the architecture declared in the header of an ELF, MachO or PE file

    :param data: content of the file
    :param container: the container type as returned by :py:func:`sniff`
    :return: the matching format, None if the architecture is not supported
    :raises InputError: if the header is truncated
    """

    try:
        match container:
            case ContainerType.elf:
                endian = "<" if data[5] == 1 else ">"
                (machine,) = struct.unpack_from(endian + "H", data, 18)
                return ELF_MACHINES.get(machine)
            case ContainerType.macho:
                endian = "<" if data[:4] in (b"\xce\xfa\xed\xfe", b"\xcf\xfa\xed\xfe") else ">"
                (cputype,) = struct.unpack_from(endian + "I", data, 4)
                return MACHO_CPU_TYPES.get(cputype)
            case ContainerType.pe:
                (pe_offset,) = struct.unpack_from("<I", data, 0x3C)
                if data[pe_offset : pe_offset + 4] != b"PE\0\0":
                    raise InputError("invalid PE signature")
                (machine,) = struct.unpack_from("<H", data, pe_offset + 4)
                return PE_MACHINES.get(machine)
    except (struct.error, IndexError) as e:
        raise InputError(f"truncated {container.name} header") from e
    return None


def iter_fat_slices(data: bytes) -> Iterator[tuple[int, bytes]]:
    """
    Iterate over the slices of a universal MachO file

    :param data: content of the file
    :return: iterator of (cputype, slice bytes)
    """

    is_64 = data[:4] == b"\xca\xfe\xba\xbf"
    (nfat_arch,) = struct.unpack_from(">I", data, 4)
    offset = 8
    for _ in range(nfat_arch):
        if is_64:
            cputype, _, slice_offset, size, _, _ = struct.unpack_from(">IIQQII", data, offset)
            offset += 32
        else:
            cputype, _, slice_offset, size, _ = struct.unpack_from(">IIIII", data, offset)
            offset += 20
        yield cputype, data[slice_offset : slice_offset + size]


def iter_archive(data: bytes) -> Iterator[tuple[str, bytes]]:
    """
    Iterate over the members of an ``ar`` archive. Both GNU and BSD long names are
    supported, the symbol tables are skipped.

    :param data: content of the archive
    :return: iterator of (member name, member bytes)
    :raises InputError: if the archive is malformed
    """

    offset = len(ARCHIVE_MAGIC)
    long_names = b""
    while offset + 60 <= len(data):
        header = data[offset : offset + 60]
        if header[58:60] != b"`\n":
            raise InputError(f"malformed archive member header at offset {offset:#x}")
        name = header[:16].decode("ascii", errors="replace").rstrip()
        try:
            size = int(header[48:58].decode("ascii").strip())
        except ValueError as e:
            raise InputError(f"malformed archive member size at offset {offset:#x}") from e
        content = data[offset + 60 : offset + 60 + size]
        offset += 60 + size + (size & 1)

        if name.startswith("#1/"):  # BSD: the name prefixes the content
            name_length = int(name[3:])
            name = content[:name_length].rstrip(b"\0").decode(errors="replace")
            content = content[name_length:]
        elif name == "//":  # GNU long names table
            long_names = content
            continue
        elif name.startswith("/") and name[1:].isdigit():
            start = int(name[1:])
            end = long_names.find(b"\n", start)
            name = long_names[start : end if end >= 0 else None].decode(errors="replace")
            name = name.rstrip("/")
        else:
            name = name.rstrip("/")

        if name in ("", "/SYM64", "__.SYMDEF", "__.SYMDEF SORTED", "__.SYMDEF_64"):
            continue
        yield name, content


def _parse(data: bytes, description: str) -> lief.Binary:
    binary = lief.parse(data)
    if binary is None:
        raise InputError(f"corrupt or unsupported {description}")
    return binary


def _elf_functions(binary: lief.ELF.Binary, data: bytes, fmt: InputFormat) -> list[FunctionSlice]:
    (e_type,) = struct.unpack_from("<H" if data[5] == 1 else ">H", data, 16)
    relocatable = e_type == ELF_TYPE_RELOCATABLE
    sections = list(binary.sections)

    # Relocations are grouped by the section they patch
    relocations: dict[str, dict[Addr, str]] = {}
    if relocatable:
        for reloc in binary.relocations:
            if not reloc.has_symbol or not reloc.symbol.name or reloc.section is None:
                continue
            relocations.setdefault(reloc.section.name, {})[reloc.address] = reloc.symbol.name

    candidates = []
    for symbol in binary.symbols:
        if not symbol.is_function or not symbol.name:
            continue
        if symbol.shndx == 0 or symbol.shndx >= SHN_LORESERVE or symbol.shndx >= len(sections):
            continue
        if symbol.size == 0:
            logging.debug(f"Skipping function `{symbol.name}` without size")
            continue
        candidates.append(symbol)

    addr_mask = ~1 if fmt == InputFormat.arm32 else ~0
    symbols = {} if relocatable else {s.value & addr_mask: s.name for s in candidates}
    memory = MemoryMap()
    if not relocatable:
        # Non allocated sections have no address
        memory = MemoryMap(
            tuple(
                Segment(s.virtual_address, s.size, bytes(s.content))
                for s in sections
                if s.virtual_address != 0
            )
        )

    functions = []
    for symbol in candidates:
        section = sections[symbol.shndx]
        thumb = fmt == InputFormat.arm32 and bool(symbol.value & 1)
        addr = symbol.value & addr_mask
        start = addr - section.virtual_address
        content = bytes(section.content)
        if start < 0 or start + symbol.size > len(content):
            logging.warning(f"Function `{symbol.name}` lies outside of its section, skipped")
            continue
        section_relocs = relocations.get(section.name, {})
        functions.append(
            FunctionSlice(
                name=symbol.name,
                addr=addr,
                data=content[start : start + symbol.size],
                thumb=thumb,
                relocations={
                    a: n for a, n in section_relocs.items() if addr <= a < addr + symbol.size
                },
                symbols=symbols,
                memory=memory,
            )
        )
    return functions


def _sized_by_next(
    entries: list[tuple[Addr, str, bool]], start: Addr, content: bytes
) -> Iterator[tuple[Addr, str, bool, bytes]]:
    """
    Compute the extent of symbols without size: each one ends at the next symbol of
    the same section, the last one at the end of the section.
    """

    entries = sorted(entries)
    bounds = sorted({addr for addr, _, _ in entries})
    for addr, name, thumb in entries:
        following = bisect.bisect_right(bounds, addr)
        end = bounds[following] if following < len(bounds) else start + len(content)
        yield addr, name, thumb, content[addr - start : end - start]


def _macho_functions(binary: lief.MachO.Binary, fmt: InputFormat) -> list[FunctionSlice]:
    sections = list(binary.sections)
    per_section: dict[int, list[tuple[Addr, str, bool]]] = {}
    for symbol in binary.symbols:
        n_sect = symbol.numberof_sections
        if not symbol.name or n_sect == 0 or n_sect > len(sections):
            continue
        section = sections[n_sect - 1]
        if section.segment_name != "__TEXT" or section.name != "__text":
            continue
        thumb = fmt == InputFormat.arm32 and bool(symbol.description & MACHO_N_ARM_THUMB_DEF)
        per_section.setdefault(n_sect, []).append((symbol.value, symbol.name, thumb))

    memory = MemoryMap(
        tuple(Segment(s.virtual_address, s.size, bytes(s.content)) for s in sections)
    )
    functions = []
    for n_sect, entries in per_section.items():
        section = sections[n_sect - 1]
        content = bytes(section.content)
        symbols = {addr: name for addr, name, _ in entries}
        for addr, name, thumb, data in _sized_by_next(entries, section.virtual_address, content):
            # Assembler temporary labels are boundaries, not functions
            if name.startswith(("ltmp", "L")) or not data:
                continue
            functions.append(
                FunctionSlice(
                    name=name[1:] if name.startswith("_") else name,
                    addr=addr,
                    data=data,
                    thumb=thumb,
                    symbols=symbols,
                    memory=memory,
                )
            )
    return functions


def _pe_functions(binary: lief.PE.Binary, fmt: InputFormat) -> list[FunctionSlice]:
    if not binary.has_exports:
        return []

    per_section: dict[str, list[tuple[Addr, str, bool]]] = {}
    sections = {s.name: s for s in binary.sections}
    for entry in binary.get_export().entries:
        if not entry.name or entry.is_extern:
            continue
        rva = entry.address & ~1 if fmt == InputFormat.arm32 else entry.address
        for section in sections.values():
            if section.virtual_address <= rva < section.virtual_address + max(
                section.virtual_size, section.size
            ):
                per_section.setdefault(section.name, []).append(
                    (rva, entry.name, fmt == InputFormat.arm32)
                )
                break

    imagebase = binary.optional_header.imagebase
    memory = MemoryMap(
        tuple(
            Segment(
                imagebase + s.virtual_address,
                max(s.virtual_size, s.size),
                bytes(s.content),
            )
            for s in sections.values()
        )
    )
    functions = []
    for section_name, entries in per_section.items():
        section = sections[section_name]
        content = bytes(section.content)
        symbols = {imagebase + rva: name for rva, name, _ in entries}
        for rva, name, thumb, data in _sized_by_next(entries, section.virtual_address, content):
            if not data:
                continue
            functions.append(
                FunctionSlice(
                    name=name,
                    addr=imagebase + rva,
                    data=data,
                    thumb=thumb,
                    symbols=symbols,
                    memory=memory,
                )
            )
    return functions


def _object_functions(
    data: bytes, fmt: InputFormat, description: str
) -> list[FunctionSlice]:
    """Functions of a single (non archive) object, after the architecture check"""

    container = sniff(data)
    if container == ContainerType.fat_macho:
        for cputype, macho_slice in iter_fat_slices(data):
            if MACHO_CPU_TYPES.get(cputype) == fmt:
                return _object_functions(macho_slice, fmt, description)
        raise ArchitectureMismatchError(
            f"architecture {fmt.tag} is not present in the universal binary {description}"
        )

    if container not in (ContainerType.elf, ContainerType.macho, ContainerType.pe):
        raise InputError(f"{description} is not an ELF, MachO or PE file")

    arch = detect_architecture(data, container)
    if arch != fmt:
        found = arch.tag if arch is not None else "an unsupported architecture"
        raise ArchitectureMismatchError(
            f"{description} contains {found} code but {fmt.tag} was requested"
        )

    binary = _parse(data, description)
    match container:
        case ContainerType.elf:
            return _elf_functions(binary, data, fmt)
        case ContainerType.macho:
            return _macho_functions(binary, fmt)
        case ContainerType.pe:
            return _pe_functions(binary, fmt)
    raise InputError(f"{description} is not supported")


def read_functions(path: Path, fmt: InputFormat) -> list[FunctionSlice]:
    """
    Read all the functions of a native file for the requested architecture

    :param path: the file to read
    :param fmt: the requested architecture, must not be ``InputFormat.llvm_bitcode``
    :return: list of the functions found
    :raises InputError: if the file is unreadable, corrupt or for another architecture
    """

    try:
        data = path.read_bytes()
    except OSError as e:
        raise InputError(f"cannot read file ({e.strerror})", path) from e

    lief.logging.disable()
    try:
        if sniff(data) == ContainerType.archive:
            functions = []
            for member, content in iter_archive(data):
                if sniff(content) == ContainerType.unknown:
                    logging.debug(f"Skipping archive member {member}")
                    continue
                for function in _object_functions(content, fmt, f"archive member {member}"):
                    functions.append(dataclasses.replace(function, member=member))
            return functions

        if sniff(data) == ContainerType.bitcode:
            raise ArchitectureMismatchError(
                f"the file contains LLVM bitcode but {fmt.tag} was requested"
            )
        return _object_functions(data, fmt, "the file")
    except InputError as e:
        if e.path is not None:
            raise
        raise type(e)(str(e), path) from e
