"""Error types for CLR Symbolicator.

Only genuinely malformed input raises. A symbol file that cannot be found,
or a method name that cannot be demystified, is reported as ``None`` by the
component that looked for it.
"""
from __future__ import annotations

from typing import Optional


class SymbolicationError(Exception):
    """Base class for all symbolication failures."""


class MalformedImageError(SymbolicationError):
    """A PE image or its metadata is internally inconsistent."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{message} ({path})"
        super().__init__(message)


class MalformedSymbolFileError(SymbolicationError):
    """A candidate symbol file opened but is not a readable portable PDB."""

    def __init__(self, message: str, path: Optional[str] = None, module_id=None):
        self.path = path
        self.module_id = module_id
        if path:
            message = f"{message} ({path})"
        super().__init__(message)
