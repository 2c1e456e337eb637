"""Type display names.

Renders a TypeSignature the way C# source spells it: keyword aliases for
built-in types, ``T?`` for nullable value types, ``[]`` / ``[,]`` arrays and
generic arguments in angle brackets with the arity suffix removed.
"""
from __future__ import annotations

from typing import List, Optional, Sequence

from .reflection import (
    ARRAY, BYREF, NAMED, POINTER, SZARRAY, TypeDefinition, TypeSignature,
)

BUILT_IN_TYPE_NAMES = {
    "System.Void": "void",
    "System.Boolean": "bool",
    "System.Byte": "byte",
    "System.Char": "char",
    "System.Decimal": "decimal",
    "System.Double": "double",
    "System.Single": "float",
    "System.Int32": "int",
    "System.Int64": "long",
    "System.Object": "object",
    "System.SByte": "sbyte",
    "System.Int16": "short",
    "System.String": "string",
    "System.UInt32": "uint",
    "System.UInt64": "ulong",
    "System.UInt16": "ushort",
}

NULLABLE = "System.Nullable`1"


def _arity(name: str) -> int:
    _, tick, count = name.partition("`")
    return int(count) if tick and count.isdigit() else 0


def _declared_argument_count(sig: Optional[TypeSignature]) -> int:
    """Generic arguments owned by ``sig`` and its declaring types."""
    total = 0
    while sig is not None:
        total += _arity(sig.name)
        sig = sig.declaring
    return total


def get_type_display_name(sig: TypeSignature, full_name: bool = True,
                          include_generic_parameter_names: bool = False) -> str:
    """Pretty print a type."""
    out: List[str] = []
    _process_type(out, sig, full_name, include_generic_parameter_names)
    return "".join(out)


def get_type_definition_display_name(type_def: TypeDefinition, full_name: bool = True) -> str:
    """Display name of a type definition, with its generic parameter names."""
    return get_type_display_name(type_def.signature(), full_name, include_generic_parameter_names=True)


def _process_type(out: List[str], sig: TypeSignature, full_name: bool, include_names: bool) -> None:
    if sig.kind == NAMED and sig.generic_arguments:
        if sig.full_name == NULLABLE and len(sig.generic_arguments) == 1:
            _process_type(out, sig.generic_arguments[0], full_name, include_names)
            out.append("?")
        else:
            arguments = sig.generic_arguments
            _process_generic_type(out, sig, arguments, len(arguments), full_name, include_names)
    elif sig.kind in (SZARRAY, ARRAY):
        _process_array_type(out, sig, full_name, include_names)
    elif sig.kind in (BYREF, POINTER):
        _process_type(out, sig.element, full_name, include_names)
        out.append("&" if sig.kind == BYREF else "*")
    elif sig.is_generic_parameter:
        if include_names:
            out.append(sig.name)
    elif sig.full_name in BUILT_IN_TYPE_NAMES:
        out.append(BUILT_IN_TYPE_NAMES[sig.full_name])
    elif sig.kind == NAMED and sig.namespace == "System" and sig.declaring is None:
        out.append(sig.name)
    elif full_name:
        out.append(sig.full_name)
    else:
        out.append(sig.name)


def _process_array_type(out: List[str], sig: TypeSignature, full_name: bool, include_names: bool) -> None:
    inner = sig
    while inner.kind in (SZARRAY, ARRAY):
        inner = inner.element
    _process_type(out, inner, full_name, include_names)

    while sig.kind in (SZARRAY, ARRAY):
        out.append("[" + "," * (sig.rank - 1) + "]")
        sig = sig.element


def _process_generic_type(out: List[str], sig: TypeSignature, arguments: Sequence[TypeSignature],
                          length: int, full_name: bool, include_names: bool) -> None:
    offset = _declared_argument_count(sig.declaring)

    if full_name:
        if sig.declaring is not None:
            _process_generic_type(out, sig.declaring, arguments, offset, full_name, include_names)
            out.append("+")
        elif sig.namespace:
            out.append(sig.namespace)
            out.append(".")

    tick = sig.name.find("`")
    if tick <= 0:
        out.append(sig.name)
        return

    out.append(sig.name[:tick])
    out.append("<")
    for i in range(offset, min(length, len(arguments))):
        _process_type(out, arguments[i], full_name, include_names)
        if i + 1 == length:
            continue
        out.append(",")
        if include_names or not arguments[i + 1].is_generic_parameter:
            out.append(" ")
    out.append(">")
