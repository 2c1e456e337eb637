"""Debug metadata extraction.

Reads from a compiled module the identity of the symbol file that belongs
to it: CodeView signature and age, referenced PDB path, portability and
PDB checksums, plus the module version id (MVID) from the module's own
metadata.
"""
from __future__ import annotations

import os
import threading
from typing import Dict, Optional

from .errors import MalformedImageError
from .models import DebugMeta
from .pe_image import DEBUG_TYPE_CODEVIEW, DEBUG_TYPE_PDB_CHECKSUM, PEImage


def extract_debug_meta(image: PEImage) -> Optional[DebugMeta]:
    """Build the DebugMeta of ``image``.

    Returns None when the image has no CodeView entry (stripped) or no CLI
    metadata (native image). Malformed debug data raises
    MalformedImageError.
    """
    entries = image.read_debug_directory()

    codeview_entry = next((e for e in entries if e.type == DEBUG_TYPE_CODEVIEW), None)
    if codeview_entry is None:
        return None
    if not image.has_metadata:
        return None

    codeview = image.read_codeview(codeview_entry)

    checksums = ()
    checksum_entry = next((e for e in entries if e.type == DEBUG_TYPE_PDB_CHECKSUM), None)
    if checksum_entry is not None:
        checksums = (str(image.read_pdb_checksum(checksum_entry)),)

    module_id = image.metadata.get_module_version_id()
    if module_id is None:
        raise MalformedImageError("Metadata has no Module row", image.path)

    return DebugMeta(
        file=codeview.path,
        module_id=module_id,
        type="ppdb" if codeview_entry.is_portable_codeview else "pdb",
        guid=codeview.guid,
        age=codeview.age,
        checksums=checksums,
    )


def read_debug_meta(path: str) -> Optional[DebugMeta]:
    """Load the image at ``path`` and extract its DebugMeta."""
    return extract_debug_meta(PEImage.from_file(path))


class DebugMetaCache:
    """Per-session memo of DebugMeta by assembly path.

    A path is read at most once per cache. Missing files and images without
    debug information are remembered as None.
    """

    def __init__(self):
        self._entries: Dict[str, Optional[DebugMeta]] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> Optional[DebugMeta]:
        key = os.path.abspath(path)
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                if key in self._entries:
                    return self._entries[key]

            if not os.path.isfile(key):
                meta = None
            else:
                meta = read_debug_meta(key)

            with self._lock:
                return self._entries.setdefault(key, meta)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._key_locks.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return os.path.abspath(path) in self._entries
