"""CIL instruction stream walker.

Decodes opcodes and operands of a method body (ECMA-335 III). Only the
instruction boundaries and raw operand values are produced; tokens are
left for the caller to resolve.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple

from .errors import SymbolicationError


class ILFormatError(SymbolicationError):
    """The IL byte stream contains an unknown opcode or a truncated operand."""


class OperandType(Enum):
    NONE = 0
    SHORT_VAR = 1  # uint8 local / argument index
    SHORT_I = 2  # int8
    SHORT_BRANCH = 3  # int8 relative target
    VAR = 4  # uint16 local / argument index
    I = 5  # int32
    BRANCH = 6  # int32 relative target
    SHORT_R = 7  # float32
    I8 = 8
    R = 9  # float64
    METHOD = 10
    FIELD = 11
    TYPE = 12
    STRING = 13
    SIG = 14
    TOKEN = 15
    SWITCH = 16


_OPERAND_SIZES = {
    OperandType.NONE: 0,
    OperandType.SHORT_VAR: 1,
    OperandType.SHORT_I: 1,
    OperandType.SHORT_BRANCH: 1,
    OperandType.VAR: 2,
    OperandType.I: 4,
    OperandType.BRANCH: 4,
    OperandType.SHORT_R: 4,
    OperandType.I8: 8,
    OperandType.R: 8,
    OperandType.METHOD: 4,
    OperandType.FIELD: 4,
    OperandType.TYPE: 4,
    OperandType.STRING: 4,
    OperandType.SIG: 4,
    OperandType.TOKEN: 4,
}

TOKEN_OPERANDS = {
    OperandType.METHOD, OperandType.FIELD, OperandType.TYPE,
    OperandType.STRING, OperandType.SIG, OperandType.TOKEN,
}


def _table(entries) -> Dict[int, Tuple[str, OperandType]]:
    table = {}
    for code, name, operand in entries:
        table[code] = (name, operand)
    return table


O = OperandType

# Opcodes without operands are listed as ranges below
_ONE_BYTE = _table([
    (0x0E, "ldarg.s", O.SHORT_VAR), (0x0F, "ldarga.s", O.SHORT_VAR), (0x10, "starg.s", O.SHORT_VAR),
    (0x11, "ldloc.s", O.SHORT_VAR), (0x12, "ldloca.s", O.SHORT_VAR), (0x13, "stloc.s", O.SHORT_VAR),
    (0x1F, "ldc.i4.s", O.SHORT_I), (0x20, "ldc.i4", O.I), (0x21, "ldc.i8", O.I8),
    (0x22, "ldc.r4", O.SHORT_R), (0x23, "ldc.r8", O.R),
    (0x27, "jmp", O.METHOD), (0x28, "call", O.METHOD), (0x29, "calli", O.SIG),
    (0x45, "switch", O.SWITCH),
    (0x6F, "callvirt", O.METHOD), (0x70, "cpobj", O.TYPE), (0x71, "ldobj", O.TYPE),
    (0x72, "ldstr", O.STRING), (0x73, "newobj", O.METHOD), (0x74, "castclass", O.TYPE),
    (0x75, "isinst", O.TYPE), (0x79, "unbox", O.TYPE),
    (0x7B, "ldfld", O.FIELD), (0x7C, "ldflda", O.FIELD), (0x7D, "stfld", O.FIELD),
    (0x7E, "ldsfld", O.FIELD), (0x7F, "ldsflda", O.FIELD), (0x80, "stsfld", O.FIELD),
    (0x81, "stobj", O.TYPE), (0x8C, "box", O.TYPE), (0x8D, "newarr", O.TYPE),
    (0x8F, "ldelema", O.TYPE), (0xA3, "ldelem", O.TYPE), (0xA4, "stelem", O.TYPE),
    (0xA5, "unbox.any", O.TYPE), (0xC2, "refanyval", O.TYPE), (0xC6, "mkrefany", O.TYPE),
    (0xD0, "ldtoken", O.TOKEN), (0xDD, "leave", O.BRANCH), (0xDE, "leave.s", O.SHORT_BRANCH),
])

for _code in range(0x2B, 0x38):
    _ONE_BYTE[_code] = ("br.s" if _code == 0x2B else f"branch.s.{_code:02x}", O.SHORT_BRANCH)
for _code in range(0x38, 0x45):
    _ONE_BYTE[_code] = ("br" if _code == 0x38 else f"branch.{_code:02x}", O.BRANCH)

# Operand-less single byte opcodes
_NO_OPERAND_RANGES = (
    (0x00, 0x0D), (0x14, 0x1E), (0x25, 0x26), (0x2A, 0x2A), (0x46, 0x6E),
    (0x76, 0x76), (0x7A, 0x7A), (0x82, 0x8B), (0x8E, 0x8E), (0x90, 0xA2),
    (0xB3, 0xBA), (0xC3, 0xC3), (0xD1, 0xDC), (0xDF, 0xE0),
)
for _start, _end in _NO_OPERAND_RANGES:
    for _code in range(_start, _end + 1):
        _ONE_BYTE.setdefault(_code, (f"op.{_code:02x}", O.NONE))
_ONE_BYTE[0x00] = ("nop", O.NONE)
_ONE_BYTE[0x2A] = ("ret", O.NONE)

# 0xFE prefixed opcodes
_TWO_BYTE = _table([
    (0x00, "arglist", O.NONE), (0x01, "ceq", O.NONE), (0x02, "cgt", O.NONE),
    (0x03, "cgt.un", O.NONE), (0x04, "clt", O.NONE), (0x05, "clt.un", O.NONE),
    (0x06, "ldftn", O.METHOD), (0x07, "ldvirtftn", O.METHOD),
    (0x09, "ldarg", O.VAR), (0x0A, "ldarga", O.VAR), (0x0B, "starg", O.VAR),
    (0x0C, "ldloc", O.VAR), (0x0D, "ldloca", O.VAR), (0x0E, "stloc", O.VAR),
    (0x0F, "localloc", O.NONE), (0x11, "endfilter", O.NONE), (0x12, "unaligned.", O.SHORT_I),
    (0x13, "volatile.", O.NONE), (0x14, "tail.", O.NONE), (0x15, "initobj", O.TYPE),
    (0x16, "constrained.", O.TYPE), (0x17, "cpblk", O.NONE), (0x18, "initblk", O.NONE),
    (0x19, "no.", O.SHORT_I), (0x1A, "rethrow", O.NONE), (0x1C, "sizeof", O.TYPE),
    (0x1D, "refanytype", O.NONE), (0x1E, "readonly.", O.NONE),
])

del _code, _start, _end


@dataclass(frozen=True)
class Instruction:
    offset: int
    opcode: int  # 0xFExx for two byte opcodes
    name: str
    operand_type: OperandType
    operand: Optional[int] = None

    @property
    def is_token(self) -> bool:
        return self.operand_type in TOKEN_OPERANDS


def iter_instructions(il: bytes) -> Iterator[Instruction]:
    """Yield every instruction of ``il`` in order."""
    pos = 0
    size = len(il)
    while pos < size:
        start = pos
        code = il[pos]
        pos += 1
        if code == 0xFE:
            if pos >= size:
                raise ILFormatError(f"Truncated two byte opcode at IL_{start:04X}")
            second = il[pos]
            pos += 1
            entry = _TWO_BYTE.get(second)
            opcode = 0xFE00 | second
        else:
            entry = _ONE_BYTE.get(code)
            opcode = code
        if entry is None:
            raise ILFormatError(f"Unknown opcode 0x{opcode:02X} at IL_{start:04X}")
        name, operand_type = entry

        operand = None
        if operand_type is OperandType.SWITCH:
            if pos + 4 > size:
                raise ILFormatError(f"Truncated switch at IL_{start:04X}")
            count = struct.unpack_from("<I", il, pos)[0]
            pos += 4 + 4 * count
            operand = count
        else:
            width = _OPERAND_SIZES[operand_type]
            if width:
                if pos + width > size:
                    raise ILFormatError(f"Truncated operand of {name} at IL_{start:04X}")
                if operand_type in (OperandType.SHORT_I, OperandType.SHORT_BRANCH):
                    operand = struct.unpack_from("<b", il, pos)[0]
                elif operand_type is OperandType.SHORT_VAR:
                    operand = il[pos]
                elif operand_type is OperandType.VAR:
                    operand = struct.unpack_from("<H", il, pos)[0]
                elif operand_type in (OperandType.I, OperandType.BRANCH):
                    operand = struct.unpack_from("<i", il, pos)[0]
                elif operand_type is OperandType.I8:
                    operand = struct.unpack_from("<q", il, pos)[0]
                else:
                    # Tokens and raw float bits
                    operand = struct.unpack_from("<Q" if width == 8 else "<I", il, pos)[0]
                pos += width

        if pos > size:
            raise ILFormatError(f"Instruction at IL_{start:04X} runs past end of body")
        yield Instruction(start, opcode, name, operand_type, operand)


def iter_tokens(il: bytes, *operand_types: OperandType) -> Iterator[Tuple[Instruction, int]]:
    """Yield ``(instruction, token)`` for instructions with token operands.

    Restricted to ``operand_types`` when given.
    """
    wanted = set(operand_types) or TOKEN_OPERANDS
    for instruction in iter_instructions(il):
        if instruction.operand_type in wanted:
            yield instruction, instruction.operand
