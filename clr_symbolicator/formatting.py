"""Trace rendering.

Text output follows the .NET ``Exception.StackTrace`` layout::

   at Ns.Type.Method(int value) in /src/File.cs:line 12:9

Frames without a file but with a module id render the mono-style
``<{mvid}#{aot id}>`` placeholder instead. The JSON form keeps every field,
including nulls, so ``from_json(to_json(info)) == info``.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from .models import DebugMeta, StackFrameInformation, StackTraceInformation

# Field name -> JSON key
_FRAME_KEYS = (
    ("method", "method"),
    ("method_index", "methodIndex"),
    ("file_name", "fileName"),
    ("offset", "offset"),
    ("mvid", "mvid"),
    ("is_il_offset", "isILOffset"),
    ("aot_id", "aotId"),
    ("assembly_full_name", "assemblyFullName"),
    ("type_full_name", "typeFullName"),
    ("line_number", "lineNumber"),
    ("column_number", "columnNumber"),
    ("parameters", "parameters"),
    ("generic_arguments", "genericArguments"),
)


def render_frame(frame: StackFrameInformation) -> Optional[str]:
    """One ``   at ...`` line, or None for frames without a method."""
    if frame.method is None:
        return None

    parts = ["   at ", frame.method]
    if frame.file_name is not None:
        parts.append(" in ")
        parts.append(frame.file_name)
    elif frame.mvid is not None:
        parts.append(" in <")
        parts.append(frame.mvid.hex)
        if frame.aot_id is not None:
            parts.append("#")
            parts.append(frame.aot_id)
        parts.append(">")

    if frame.line_number is not None:
        parts.append(f":line {frame.line_number}")
    if frame.column_number is not None:
        parts.append(f":{frame.column_number}")
    return "".join(parts)


def render_text(info: StackTraceInformation) -> str:
    lines = [line for line in (render_frame(f) for f in info.frames) if line is not None]
    return "".join(line + "\n" for line in lines)


# ============================================================================
# JSON
# ============================================================================

def _uuid_or_none(value: Optional[str]) -> Optional[uuid.UUID]:
    return uuid.UUID(value) if value is not None else None


def _tuple_or_none(value: Optional[List[str]]):
    return tuple(value) if value is not None else None


def frame_to_dict(frame: StackFrameInformation) -> Dict[str, Any]:
    data = {}
    for attr, key in _FRAME_KEYS:
        value = getattr(frame, attr)
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif isinstance(value, tuple):
            value = list(value)
        data[key] = value
    return data


def frame_from_dict(data: Dict[str, Any]) -> StackFrameInformation:
    values = {attr: data.get(key) for attr, key in _FRAME_KEYS}
    values["mvid"] = _uuid_or_none(values["mvid"])
    values["parameters"] = _tuple_or_none(values["parameters"])
    values["generic_arguments"] = _tuple_or_none(values["generic_arguments"])
    return StackFrameInformation(**values)


def debug_meta_to_dict(meta: DebugMeta) -> Dict[str, Any]:
    return {
        "file": meta.file,
        "moduleId": str(meta.module_id),
        "type": meta.type,
        "isPortable": meta.is_portable,
        "guid": str(meta.guid),
        "age": meta.age,
        "checksums": list(meta.checksums),
    }


def debug_meta_from_dict(data: Dict[str, Any]) -> DebugMeta:
    return DebugMeta(
        file=data["file"],
        module_id=uuid.UUID(data["moduleId"]),
        type=data["type"],
        guid=uuid.UUID(data["guid"]),
        age=data["age"],
        checksums=tuple(data.get("checksums") or ()),
    )


def to_dict(info: StackTraceInformation) -> Dict[str, Any]:
    return {
        "frames": [frame_to_dict(f) for f in info.frames],
        "debugMetas": {str(k): debug_meta_to_dict(v) for k, v in info.debug_metas.items()},
        "errors": list(info.errors),
    }


def from_dict(data: Dict[str, Any]) -> StackTraceInformation:
    return StackTraceInformation(
        frames=[frame_from_dict(f) for f in data.get("frames") or []],
        debug_metas={uuid.UUID(k): debug_meta_from_dict(v) for k, v in (data.get("debugMetas") or {}).items()},
        errors=list(data.get("errors") or []),
    )


def to_json(info: StackTraceInformation, indent: Optional[int] = 2) -> str:
    """Serialize a trace to JSON. Absent optional fields are written as null."""
    return json.dumps(to_dict(info), indent=indent)


def from_json(text: str) -> StackTraceInformation:
    """Parse a trace written by ``to_json``.

    Raises:
        ValueError: ``text`` is not valid JSON or lacks required DebugMeta fields.
    """
    try:
        data = json.loads(text)
        return from_dict(data)
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid stack trace JSON: {e}") from e


def render_json(info: StackTraceInformation) -> str:
    return to_json(info)
