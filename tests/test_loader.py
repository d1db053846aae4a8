"""
Copyright 2023 Quarkslab

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import struct
from types import SimpleNamespace

import llvmlite.binding as llvm
import pytest

from cfgdiff import ArchitectureMismatchError, InputError, Program, canonicalize
from cfgdiff.canonicalizer import split_blocks
from cfgdiff.loader import Function, Instruction, InputFormat
from cfgdiff.loader.backend.avr import decode as decode_avr
from cfgdiff.loader.backend.container import (
    FunctionSlice,
    MemoryMap,
    Segment,
    detect_architecture,
    iter_archive,
    read_functions,
    sniff,
)
from cfgdiff.loader.backend.disassembler import CapstoneDecoder
from cfgdiff.loader.backend.native import FunctionBackendNative
from cfgdiff.loader.backend.utils import demangle
from cfgdiff.loader.types import ContainerType, FlowType
from cfgdiff.matcher import align
from cfgdiff.normalizer import normalize
from cfgdiff.types import BlockStatus, EdgeKind, OperandRole

# Header of an x86-64 relocatable ELF file, without any section
ELF_X86_64 = b"\x7fELF\x02\x01\x01" + b"\0" * 9 + struct.pack("<HH", 1, 62) + b"\0" * 44

MULADD_I32 = """
define i32 @muladd(i32 %x, i32 %y) {
entry:
  %t = mul i32 %x, %y
  %r = add i32 %t, %y
  ret i32 %r
}

define i32 @choose(i32 %x) {
entry:
  %c = icmp sgt i32 %x, 0
  br i1 %c, label %then, label %else
then:
  ret i32 1
else:
  ret i32 2
}
"""

MULADD_I64 = """
define i32 @muladd(i64 %x, i64 %y) {
entry:
  %t = mul i64 %x, %y
  %r = add i64 %t, %y
  %s = trunc i64 %r to i32
  ret i32 %s
}
"""


# x86 switch on eax through a table of absolute addresses at 0x402000:
#   cmp eax, 1; ja default; jmp [eax*4 + 0x402000]
#   case0: mov eax, 10; ret
#   case1: mov eax, 20; ret
#   default: xor eax, eax; ret
SWITCH_X86 = bytes.fromhex("83f801" "7713" "ff248500204000" "b80a000000c3" "b814000000c3" "31c0c3")
SWITCH_X86_TABLE = struct.pack("<III", 0x40100C, 0x401012, 0)

# Same switch in position independent x86-64 code, table of offsets at 0x2000:
#   cmp edi, 1; ja default; lea rdx, [rip + 0xff4]
#   movsxd rax, dword ptr [rdx + rdi*4]; add rax, rdx; jmp rax
#   case0, case1 and default as above
SWITCH_X86_64 = bytes.fromhex(
    "83ff01" "771c" "488d15f40f0000" "486304ba" "4801d0" "ffe0"
    "b80a000000c3" "b814000000c3" "31c0c3"
)  # fmt: skip
SWITCH_X86_64_TABLE = struct.pack("<iii", 0x1015 - 0x2000, 0x101B - 0x2000, 0)


def native_function(fslice: FunctionSlice, fmt: InputFormat) -> Function:
    program = SimpleNamespace(format=fmt)
    return Function.from_backend(FunctionBackendNative(lambda: program, fslice), fmt)


def ar_member(name: str, content: bytes) -> bytes:
    header = f"{name:<16}{0:<12}{0:<6}{0:<6}{644:<8}{len(content):<10}`\n".encode()
    return header + content + (b"\n" if len(content) % 2 else b"")


def write_bitcode(path, ir: str):
    path.write_bytes(llvm.parse_assembly(ir).as_bitcode())
    return path


class TestFormats:
    """Format tags"""

    @pytest.mark.parametrize(
        "tag, expected",
        [
            ("llvm-bitcode", InputFormat.llvm_bitcode),
            ("LLBC", InputFormat.llvm_bitcode),
            ("aarch64", InputFormat.arm64),
            ("ARMv7", InputFormat.arm32),
            ("avr", InputFormat.avr),
            ("i386", InputFormat.x86),
            ("x86_64", InputFormat.x86_64),
            (" amd64 ", InputFormat.x86_64),
        ],
    )
    def test_from_string(self, tag, expected):
        assert InputFormat.from_string(tag) == expected

    def test_unknown_tag(self):
        with pytest.raises(ValueError):
            InputFormat.from_string("sparc")

    def test_tags(self):
        assert InputFormat.x86_64.tag == "x86-64"
        assert InputFormat.llvm_bitcode.family == "llvm"
        assert InputFormat.x86.family == InputFormat.x86_64.family == "x86"


class TestContainer:
    """Container detection and architecture checks"""

    @pytest.mark.parametrize(
        "data, expected",
        [
            (ELF_X86_64, ContainerType.elf),
            (b"\xcf\xfa\xed\xfe" + b"\0" * 28, ContainerType.macho),
            (b"\xca\xfe\xba\xbe\0\0\0\x02", ContainerType.fat_macho),
            (b"\xca\xfe\xba\xbe\0\0\0\x34", ContainerType.unknown),
            (b"MZ" + b"\0" * 62, ContainerType.pe),
            (b"!<arch>\n", ContainerType.archive),
            (b"BC\xc0\xde\x35\x14", ContainerType.bitcode),
            (b"\xde\xc0\x17\x0b\0\0\0\0", ContainerType.bitcode),
            (b"hello", ContainerType.unknown),
        ],
    )
    def test_sniff(self, data, expected):
        assert sniff(data) == expected

    def test_elf_architecture(self):
        assert detect_architecture(ELF_X86_64, ContainerType.elf) == InputFormat.x86_64
        arm64 = ELF_X86_64[:18] + struct.pack("<H", 183) + ELF_X86_64[20:]
        assert detect_architecture(arm64, ContainerType.elf) == InputFormat.arm64
        sparc = ELF_X86_64[:18] + struct.pack("<H", 2) + ELF_X86_64[20:]
        assert detect_architecture(sparc, ContainerType.elf) is None

    def test_truncated_header(self):
        with pytest.raises(InputError):
            detect_architecture(ELF_X86_64[:10], ContainerType.elf)

    def test_macho_architecture(self):
        header = b"\xcf\xfa\xed\xfe" + struct.pack("<I", 0x0100000C) + b"\0" * 24
        assert detect_architecture(header, ContainerType.macho) == InputFormat.arm64

    def test_archive(self):
        long_name = "a_rather_long_member_name.o"
        data = (
            b"!<arch>\n"
            + ar_member("/", b"\0\0\0\0")
            + ar_member("//", f"{long_name}/\n".encode())
            + ar_member("short.o/", b"abc")
            + ar_member("/0", ELF_X86_64)
        )
        members = list(iter_archive(data))
        assert [name for name, _ in members] == ["short.o", long_name]
        assert members[0][1] == b"abc"
        assert members[1][1] == ELF_X86_64

    def test_malformed_archive(self):
        data = b"!<arch>\n" + ar_member("a.o/", b"abcd")[:58] + b"xx" + b"abcd"
        with pytest.raises(InputError):
            list(iter_archive(data))

    def test_architecture_mismatch(self, tmp_path):
        path = tmp_path / "x86.o"
        path.write_bytes(ELF_X86_64)
        with pytest.raises(ArchitectureMismatchError) as excinfo:
            Program(path, "arm64")
        assert excinfo.value.path == path
        assert "x86-64" in str(excinfo.value)

    def test_archive_mismatch(self, tmp_path):
        path = tmp_path / "lib.a"
        path.write_bytes(b"!<arch>\n" + ar_member("x86.o/", ELF_X86_64))
        with pytest.raises(ArchitectureMismatchError):
            read_functions(path, InputFormat.arm64)

    def test_bitcode_on_native(self, tmp_path):
        path = tmp_path / "x86.o"
        path.write_bytes(ELF_X86_64)
        with pytest.raises(ArchitectureMismatchError):
            Program(path, InputFormat.llvm_bitcode)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        with pytest.raises(InputError):
            Program(path, InputFormat.x86_64)
        with pytest.raises(InputError):
            Program(path, InputFormat.llvm_bitcode)

    def test_missing_file(self, tmp_path):
        with pytest.raises(InputError) as excinfo:
            Program(tmp_path / "missing.o", InputFormat.x86_64)
        assert excinfo.value.path == tmp_path / "missing.o"


class TestDecoders:
    """Machine code decoding"""

    def test_capstone_x86_64(self):
        # test edi, edi; je +2; inc eax; ret
        code = b"\x85\xff\x74\x02\xff\xc0\xc3"
        backends = list(CapstoneDecoder(InputFormat.x86_64).disassemble(code, 0x1000))
        instructions = [Instruction.from_backend(b) for b in backends]

        assert [i.mnemonic for i in instructions] == ["test", "je", "inc", "ret"]
        assert [i.flow for i in instructions] == [
            FlowType.sequential,
            FlowType.cond_jump,
            FlowType.sequential,
            FlowType.ret,
        ]
        assert instructions[1].targets == [0x1006]
        assert normalize(instructions[1], "x86").opcode == "cond_branch.eq"
        # The branch target is dropped
        assert normalize(instructions[1], "x86").literals == (None,)

        blocks = split_blocks(instructions)
        assert [len(b.instructions) for b in blocks] == [2, 1, 1]
        assert [kind for _, kind, _ in blocks[0].edges] == [
            EdgeKind.branch_true,
            EdgeKind.branch_false,
        ]

    def test_capstone_undecodable(self):
        backends = list(CapstoneDecoder(InputFormat.x86_64).disassemble(b"\x06\xc3", 0))
        assert backends[0].is_opaque
        assert not backends[-1].is_opaque
        token = normalize(Instruction.from_backend(backends[0]), "x86")
        assert token.is_opaque

    def test_avr(self):
        # ldi r24, 1; breq +2; ldi r24, 2; ret
        instructions = [
            Instruction.from_backend(b) for b in decode_avr(bytes.fromhex("81e009f082e00895"), 0)
        ]
        assert [i.mnemonic for i in instructions] == ["ldi", "breq", "ldi", "ret"]
        assert [i.addr for i in instructions] == [0, 2, 4, 6]
        assert instructions[1].flow == FlowType.cond_jump
        assert instructions[1].targets == [6]

        first = normalize(instructions[0], "avr")
        assert first.opcode == "move"
        assert first.literals == (None, 1)
        assert normalize(instructions[1], "avr").opcode == "cond_branch.eq"
        assert len(split_blocks(instructions)) == 3

    def test_avr_two_words(self):
        # call 0x100; ret
        instructions = list(decode_avr(bytes.fromhex("0e9480000895"), 0))
        assert [i.mnemonic for i in instructions] == ["call", "ret"]
        assert instructions[0].size == 4
        assert instructions[0].targets == [0x100]

    def test_avr_invalid_word(self):
        instructions = list(decode_avr(bytes.fromhex("ffff0895"), 0))
        assert instructions[0].is_opaque
        assert instructions[1].mnemonic == "ret"


class TestNativeFunctions:
    """Functions read from a linked image or an object"""

    def switch_x86(self, code: bytes = SWITCH_X86) -> Function:
        memory = MemoryMap(
            (Segment(0x401000, len(code), code), Segment(0x402000, 12, SWITCH_X86_TABLE))
        )
        fslice = FunctionSlice("dispatch", 0x401000, code, memory=memory)
        return native_function(fslice, InputFormat.x86)

    def test_absolute_jump_table(self):
        function = self.switch_x86()
        jump = function[0x401005]
        assert jump.flow == FlowType.indirect_jump
        assert jump.targets == [0x40100C, 0x401012]

        cfg = canonicalize(function)
        assert len(cfg) == 5
        assert cfg.warnings == ()

    def test_relative_jump_table(self):
        memory = MemoryMap(
            (
                Segment(0x1000, len(SWITCH_X86_64), SWITCH_X86_64),
                Segment(0x2000, 12, SWITCH_X86_64_TABLE),
            )
        )
        function = native_function(
            FunctionSlice("dispatch", 0x1000, SWITCH_X86_64, memory=memory), InputFormat.x86_64
        )
        jump = function[0x1013]
        assert jump.mnemonic == "jmp"
        assert jump.targets == [0x1015, 0x101B]
        assert len(canonicalize(function)) == 5

    def test_jump_table_case_changed(self):
        changed = SWITCH_X86.replace(bytes.fromhex("b814"), bytes.fromhex("b863"))
        alignment = align(canonicalize(self.switch_x86()), canonicalize(self.switch_x86(changed)))
        assert alignment.count(BlockStatus.modified) == 1
        assert alignment.count(BlockStatus.matched) == 4

    def test_unreadable_jump_table(self):
        # Objects have no memory map, the cases stay reachable through the jump
        function = native_function(
            FunctionSlice("dispatch", 0x401000, SWITCH_X86), InputFormat.x86
        )
        assert function[0x401005].targets == []
        cfg = canonicalize(function)
        assert len(cfg) == 5
        assert cfg.warnings == ()

    def test_absolute_address_immediate(self):
        # mov eax, offset message; ret, linked at two different addresses
        tokens = []
        for addr in (0x402010, 0x503010):
            code = b"\xb8" + struct.pack("<I", addr) + b"\xc3"
            memory = MemoryMap((Segment(addr & ~0xFFF, 0x1000, b""),))
            fslice = FunctionSlice("f", 0x401000, code, memory=memory)
            function = native_function(fslice, InputFormat.x86)
            tokens.append(normalize(function[0x401000], "x86"))

        assert tokens[0].roles == (OperandRole.register, OperandRole.label)
        assert tokens[0].literals == (None, None)
        assert tokens[0] == tokens[1]

    def test_constant_immediate(self):
        code = b"\xb8" + struct.pack("<I", 0x402010) + b"\xc3"
        function = native_function(FunctionSlice("f", 0x401000, code), InputFormat.x86)
        token = normalize(function[0x401000], "x86")
        assert token.roles == (OperandRole.register, OperandRole.immediate)
        assert token.literals == (None, 0x402010)

    def test_relocated_immediate(self):
        # push offset message; ret, in an object
        code = bytes.fromhex("6800000000c3")
        function = native_function(
            FunctionSlice("f", 0, code, relocations={1: "message"}), InputFormat.x86
        )
        token = normalize(function[0], "x86")
        assert token.roles == (OperandRole.label,)
        assert token.literals == (None,)


class TestDemangle:
    """Symbol names"""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("_ZN3foo3barEv", "foo::bar()"),
            ("__ZN3foo3barEv", "foo::bar()"),
            ("_ZN4core3fmt5write17h0123456789abcdefE", "core::fmt::write"),
            ("main", "main"),
            ("_Zinvalid", "_Zinvalid"),
        ],
    )
    def test_demangle(self, name, expected):
        assert demangle(name) == expected


class TestBitcode:
    """LLVM bitcode loading"""

    def test_load(self, tmp_path):
        program = Program(write_bitcode(tmp_path / "a.bc", MULADD_I32), "llvm-bitcode")
        assert program.format == InputFormat.llvm_bitcode
        assert sorted(program.keys()) == ["choose", "muladd"]

        cfg = canonicalize(program["choose"])
        assert cfg.side_table.labels == ("entry", "then", "else")
        assert [e.kind for e in cfg[0].edges] == [EdgeKind.branch_true, EdgeKind.branch_false]
        assert cfg[0].tokens[0].opcode == "compare.gt"
        assert cfg[0].tokens[1].opcode == "cond_branch"

    def test_differently_typed(self, tmp_path):
        primary = Program(write_bitcode(tmp_path / "i32.bc", MULADD_I32), "llvm")
        secondary = Program(write_bitcode(tmp_path / "i64.bc", MULADD_I64), "llvm")
        alignment = align(canonicalize(primary["muladd"]), canonicalize(secondary["muladd"]))
        assert [p.status for p in alignment] == [BlockStatus.modified]
