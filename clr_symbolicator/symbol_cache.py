"""Symbol file lookup and reader cache.

Locates the portable PDB that belongs to a module and keeps one open
reader per module id. Lookup order for a DebugMeta:

1. ``{symbols_path}/{module_id:N}/{name}.pdb`` (mono-style layout)
2. ``{symbols_path}/{name}.pdb``
3. The PDB path recorded in the module (if enabled)
4. An HTTP symbol server, downloaded into a local cache (if configured)

The first readable candidate wins. A module whose candidates all fail is
remembered so it is never probed twice.
"""
from __future__ import annotations

import os
import sys
import threading
import uuid
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import SymbolicateOptions
from .errors import MalformedSymbolFileError, SymbolicationError
from .models import DebugMeta
from .portable_pdb import PortablePdbReader

Opener = Callable[[str], BinaryIO]

# Negative cache entry
_MISSING = object()


def safe_print(msg: str):
    """Print message safely, handling unicode encoding issues on Windows."""
    try:
        print(msg)
    except UnicodeEncodeError:
        encoding = sys.stdout.encoding or 'utf-8'
        print(msg.encode(encoding, errors='replace').decode(encoding, errors='replace'))


def _default_opener(path: str) -> BinaryIO:
    return open(path, "rb")


def pdb_file_name(debug_meta: DebugMeta) -> str:
    """File name of the module's PDB, whatever OS recorded the path."""
    name = debug_meta.file.replace("\\", "/").rsplit("/", 1)[-1]
    stem, ext = os.path.splitext(name)
    return (stem or name) + ".pdb"


def _original_pdb_path(debug_meta: DebugMeta) -> str:
    stem, _ = os.path.splitext(debug_meta.file)
    return stem + ".pdb"


class SymbolReaderCache:
    """
    At-most-once symbol file resolution per module id.

    Readers and their file handles stay open until ``close()``. A registry
    lock guards the per-key lock map; the per-key lock serializes the lookup
    of one module id so concurrent frames of the same module wait for one
    resolution while other modules proceed.
    """

    def __init__(self, options: Optional[SymbolicateOptions] = None,
                 opener: Optional[Opener] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the cache.

        Args:
            options: Probing options. Defaults to ``SymbolicateOptions()``.
            opener: Callable opening a path for binary reading. Must raise
                OSError when the file cannot be opened.
            session: HTTP session for symbol server downloads.
        """
        self.options = options or SymbolicateOptions()
        self._opener = opener or _default_opener
        self._session = session
        self._owns_session = session is None
        self._entries: Dict[uuid.UUID, object] = {}
        self._handles: List[BinaryIO] = []
        self._key_locks: Dict[uuid.UUID, threading.Lock] = {}
        self._lock = threading.Lock()
        self._closed = False

        self.stats = {
            'symbols_opened': 0,
            'symbols_downloaded': 0,
            'symbols_missing': 0,
            'symbols_malformed': 0,
        }

    def _log(self, message: str):
        """Log a message if verbose mode is enabled."""
        if self.options.verbose:
            safe_print(f"[SYMBOL] {message}")

    def _get_session(self) -> requests.Session:
        """Get or create HTTP session with retry configuration."""
        if self._session is None:
            self._session = requests.Session()
            retry_strategy = Retry(
                total=3,
                backoff_factor=0.5,
                status_forcelist=[429, 500, 502, 503, 504],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)
            self._session.headers.update({
                'User-Agent': 'clr-symbolicator/1.0 (Symbol Download)'
            })
        return self._session

    # ========================================================================
    # LOOKUP
    # ========================================================================

    def probing_paths(self, debug_meta: DebugMeta) -> List[str]:
        """Local candidate paths for ``debug_meta``, in probing order."""
        paths = []
        file_name = pdb_file_name(debug_meta)
        if self.options.symbols_path:
            paths.append(os.path.join(self.options.symbols_path, debug_meta.module_id.hex, file_name))
            paths.append(os.path.join(self.options.symbols_path, file_name))
        if self.options.attempt_original_symbol_path and debug_meta.file:
            paths.append(_original_pdb_path(debug_meta))
        return paths

    def get(self, debug_meta: DebugMeta) -> Optional[PortablePdbReader]:
        """
        Return the reader for ``debug_meta``'s module, or None if not found.

        Raises:
            MalformedSymbolFileError: The first candidate that opened is not
                a portable PDB. Reported once; later calls return None.
        """
        key = debug_meta.module_id
        with self._lock:
            if self._closed:
                raise SymbolicationError("SymbolReaderCache is closed")
            entry = self._entries.get(key)
            if entry is not None:
                return None if entry is _MISSING else entry
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            # Another thread may have resolved it while we waited
            with self._lock:
                entry = self._entries.get(key)
            if entry is not None:
                self._log(f"Cache hit: {debug_meta.file}")
                return None if entry is _MISSING else entry

            try:
                reader = self._resolve(debug_meta)
            except MalformedSymbolFileError:
                self._store(key, _MISSING)
                raise
            self._store(key, reader if reader is not None else _MISSING)
            return reader

    def _store(self, key: uuid.UUID, value: object) -> None:
        with self._lock:
            if not self._closed:
                self._entries[key] = value

    def _resolve(self, debug_meta: DebugMeta) -> Optional[PortablePdbReader]:
        for path in self.probing_paths(debug_meta):
            self._log(f"Probing: {path}")
            reader = self._try_open(path, debug_meta)
            if reader is not None:
                return reader

        if self.options.symbol_server:
            path = self.download_symbol(debug_meta)
            if path:
                reader = self._try_open(path, debug_meta)
                if reader is not None:
                    return reader

        self.stats['symbols_missing'] += 1
        self._log(f"- No symbols for {debug_meta.file} ({debug_meta.module_id})")
        return None

    def _try_open(self, path: str, debug_meta: DebugMeta) -> Optional[PortablePdbReader]:
        try:
            handle = self._opener(path)
        except OSError:
            return None

        try:
            reader = PortablePdbReader.from_stream(handle, path)
        except MalformedSymbolFileError as e:
            handle.close()
            self.stats['symbols_malformed'] += 1
            self._log(f"- Malformed symbol file: {e}")
            raise MalformedSymbolFileError(str(e), module_id=debug_meta.module_id) from e

        if reader.guid != debug_meta.guid:
            self._log(f"  Signature mismatch: {path} has {reader.guid}, module expects {debug_meta.guid}")

        with self._lock:
            closed = self._closed
            if not closed:
                self._handles.append(handle)
        if closed:
            # close() ran during the lookup and already released its handles
            handle.close()
            raise SymbolicationError("SymbolReaderCache is closed")
        self.stats['symbols_opened'] += 1
        self._log(f"+ Opened: {path}")
        return reader

    # ========================================================================
    # SYMBOL SERVER
    # ========================================================================

    def _build_symbol_path(self, debug_meta: DebugMeta) -> str:
        """
        Build the symbol server key for a PDB file.

        Portable PDBs use ``{name}/{GUID}FFFFFFFF/{name}``; Windows PDBs append
        the age in hex instead.
        """
        name = pdb_file_name(debug_meta)
        guid_clean = debug_meta.guid.hex.upper()
        suffix = "FFFFFFFF" if debug_meta.is_portable else f"{debug_meta.age:X}"
        return f"{name}/{guid_clean}{suffix}/{name}"

    def _get_cached_path(self, debug_meta: DebugMeta) -> Path:
        """Get the local download cache path for a symbol file."""
        return Path(self.options.download_cache_dir) / self._build_symbol_path(debug_meta)

    def download_symbol(self, debug_meta: DebugMeta) -> Optional[str]:
        """
        Download the module's PDB from the configured symbol server.

        Timeouts, connection failures, non-200 responses and an unwritable
        download cache count as "not found".

        Returns:
            Local path to the downloaded PDB, or None.
        """
        cached_path = self._get_cached_path(debug_meta)
        if cached_path.exists():
            self._log(f"+ {cached_path.name} (cached)")
            return str(cached_path)

        url = f"{self.options.symbol_server.rstrip('/')}/{self._build_symbol_path(debug_meta)}"
        partial = cached_path.with_name(cached_path.name + ".part")
        self._log(f"Downloading: {url}")
        try:
            with self._get_session().get(url, stream=True, timeout=self.options.probe_timeout) as response:
                self._log(f"    -> HTTP {response.status_code}")
                if response.status_code != 200:
                    return None

                cached_path.parent.mkdir(parents=True, exist_ok=True)
                with open(partial, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=8192):
                        if chunk:
                            f.write(chunk)
            os.replace(partial, cached_path)
        except (requests.RequestException, OSError) as e:
            self._log(f"    -> {type(e).__name__}: {str(e)[:60]}")
            self._discard_partial(partial)
            return None

        self.stats['symbols_downloaded'] += 1
        self._log(f"+ Downloaded {cached_path.name} ({cached_path.stat().st_size} bytes)")
        return str(cached_path)

    def _discard_partial(self, partial: Path) -> None:
        try:
            if partial.exists():
                partial.unlink()
        except OSError as e:
            self._log(f"    -> Could not remove {partial}: {e}")

    # ========================================================================
    # LIFETIME
    # ========================================================================

    def close(self) -> None:
        """Release every opened symbol file. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handles, self._handles = self._handles, []
            self._entries.clear()
        for handle in handles:
            handle.close()
        if self._session is not None and self._owns_session:
            self._session.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._entries)

    def __enter__(self) -> "SymbolReaderCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __del__(self):
        # Safety net only; owners call close()
        if not getattr(self, "_closed", True):
            self.close()
