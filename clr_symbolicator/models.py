"""Data model for CLR Symbolicator.

Frames, debug metadata and resolved methods are plain dataclasses. Frames
and debug metadata are frozen: symbolication produces a new frame value
with the location fields filled in, so the captured frame and the
symbolicated one can always be told apart.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# Start line of a sequence point that maps to no source (compiler-injected code)
HIDDEN_LINE = 0xFEEFEE


@dataclass(frozen=True)
class SequencePoint:
    """Maps an IL offset to a source span."""
    offset: int
    start_line: int
    start_column: int
    end_line: int = 0
    end_column: int = 0
    document: Optional[str] = None

    @property
    def is_hidden(self) -> bool:
        return self.start_line == HIDDEN_LINE


@dataclass(frozen=True)
class DebugMeta:
    """Identifies the symbol file that belongs to a compiled module."""
    file: str
    module_id: uuid.UUID
    type: str  # "ppdb" (portable) or "pdb" (full/windows)
    guid: uuid.UUID
    age: int
    checksums: Tuple[str, ...] = ()

    @property
    def is_portable(self) -> bool:
        return self.type.lower() == "ppdb"

    def __str__(self) -> str:
        lines = [
            f"File: {self.file}, ModuleId: {self.module_id}, IsPortable: {self.is_portable}, "
            f"Type: {self.type}, Guid: {self.guid}, Age: {self.age}, Checksums:"
        ]
        lines.extend(self.checksums)
        return "\n".join(lines)


@dataclass(frozen=True)
class StackFrameInformation:
    """A single captured frame.

    ``method_index`` is the metadata token of the method within the module
    identified by ``mvid``. ``offset`` is an IL offset when ``is_il_offset``
    is true, otherwise a native offset that cannot be symbolicated.
    """
    method: Optional[str] = None
    method_index: Optional[int] = None
    file_name: Optional[str] = None
    offset: Optional[int] = None
    mvid: Optional[uuid.UUID] = None
    is_il_offset: Optional[bool] = None
    aot_id: Optional[str] = None
    assembly_full_name: Optional[str] = None  # "package"
    type_full_name: Optional[str] = None  # "module"
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    parameters: Optional[Tuple[str, ...]] = None
    generic_arguments: Optional[Tuple[str, ...]] = None

    @property
    def has_location(self) -> bool:
        return self.line_number is not None


@dataclass
class StackTraceInformation:
    """Complete captured trace: frames (innermost first) plus debug metadata.

    ``debug_metas`` only holds entries for modules whose frames still need
    symbolication. ``errors`` collects per-module problems found while
    symbolicating; a trace with errors is still a valid, partial result.
    """
    frames: List[StackFrameInformation] = field(default_factory=list)
    debug_metas: Dict[uuid.UUID, DebugMeta] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def to_string(self, fmt: str = "default") -> str:
        from .formatting import render_json, render_text

        if fmt == "json":
            return render_json(self)
        return render_text(self)

    def __str__(self) -> str:
        return self.to_string()


@dataclass
class ResolvedParameter:
    """A parameter ready for display."""
    name: Optional[str] = None
    type_name: Optional[str] = None
    prefix: str = ""  # "", "ref", "out", "in" or "params"
    is_dynamic: bool = False
    # Named tuple elements: one (type, name-or-None) pair per element.
    # type_name is then the wrapping generic type, if any.
    tuple_elements: Optional[List[Tuple[str, Optional[str]]]] = None

    def __str__(self) -> str:
        parts = []
        if self.prefix:
            parts.append(self.prefix + " ")

        if self.is_dynamic:
            parts.append("dynamic")
        elif self.tuple_elements:
            elements = []
            for type_name, element_name in self.tuple_elements:
                elements.append(f"{type_name} {element_name}" if element_name else type_name)
            tuple_text = "(" + ", ".join(elements) + ")"
            # A named tuple wrapped in a generic type, e.g. Task<(int a, int b)>
            parts.append(f"{self.type_name}<{tuple_text}>" if self.type_name else tuple_text)
        elif self.type_name:
            parts.append(self.type_name)
        else:
            parts.append("?")

        if self.name:
            parts.append(" " + self.name)
        return "".join(parts)


@dataclass
class ResolvedMethod:
    """A demystified method, ready for display.

    ``method_resolved`` is false when the source-level method could not be
    found; the parameter list then renders as ``?``. The same applies to
    ``sub_method_resolved`` for the lambda / local function part.
    """
    name: Optional[str] = None
    declaring_type: Optional[str] = None
    sub_method: Optional[str] = None
    ordinal: Optional[int] = None
    generic_arguments: List[str] = field(default_factory=list)
    parameters: List[ResolvedParameter] = field(default_factory=list)
    sub_method_parameters: List[ResolvedParameter] = field(default_factory=list)
    return_parameter: Optional[ResolvedParameter] = None
    is_async: bool = False
    is_lambda: bool = False
    method_resolved: bool = True
    sub_method_resolved: bool = False

    def __str__(self) -> str:
        out = []
        if self.is_async:
            out.append("async ")

        if self.return_parameter is not None:
            out.append(str(self.return_parameter))
            out.append(" ")

        if self.declaring_type is not None:
            if self.name == ".ctor":
                if not self.sub_method and not self.is_lambda:
                    out.append("new ")
                out.append(self.declaring_type)
            elif self.name == ".cctor":
                out.append("static ")
                out.append(self.declaring_type)
            else:
                out.append(f"{self.declaring_type}.{self.name}")
        else:
            out.append(self.name or "")

        if self.generic_arguments:
            out.append("<" + ", ".join(self.generic_arguments) + ">")

        out.append("(")
        if self.method_resolved:
            out.append(", ".join(str(p) for p in self.parameters))
        else:
            out.append("?")
        out.append(")")

        if self.sub_method or self.is_lambda:
            out.append("+")
            out.append(self.sub_method or "")
            out.append("(")
            if self.sub_method_resolved:
                out.append(", ".join(str(p) for p in self.sub_method_parameters))
            else:
                out.append("?")
            out.append(")")
            if self.is_lambda:
                out.append(" => { }")
                if self.ordinal is not None:
                    out.append(f" [{self.ordinal}]")

        return "".join(out)
