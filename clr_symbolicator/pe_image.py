"""PE/COFF Image Reader.

Reads the parts of a managed PE image needed for symbolication:

- Section table and RVA to file offset mapping
- Debug directory entries (CodeView RSDS and PDB checksum records)
- CLI header and the ECMA-335 metadata blob
- Method bodies (tiny and fat IL headers)

Parsing follows the layout of IMAGE_DOS_HEADER / IMAGE_NT_HEADERS directly
with struct; malformed input raises MalformedImageError.
"""
from __future__ import annotations

import struct
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import MalformedImageError
from .metadata_reader import MetadataFormatError, MetadataReader

# IMAGE_DIRECTORY_ENTRY_*
DIRECTORY_DEBUG = 6
DIRECTORY_COM_DESCRIPTOR = 14

# IMAGE_DEBUG_TYPE_*
DEBUG_TYPE_CODEVIEW = 2
DEBUG_TYPE_REPRO = 16
DEBUG_TYPE_EMBEDDED_PORTABLE_PDB = 17
DEBUG_TYPE_PDB_CHECKSUM = 19

# MinorVersion of a CodeView entry that references a portable PDB ('PM')
PORTABLE_CODEVIEW_VERSION = 0x504D

CODEVIEW_SIGNATURE = b"RSDS"
DEBUG_ENTRY_SIZE = 28
SECTION_HEADER_SIZE = 40


@dataclass
class SectionHeader:
    name: str
    virtual_address: int
    virtual_size: int
    raw_size: int
    raw_pointer: int


@dataclass
class DebugDirectoryEntry:
    """One IMAGE_DEBUG_DIRECTORY record."""
    characteristics: int
    timestamp: int
    major_version: int
    minor_version: int
    type: int
    data_size: int
    data_rva: int
    data_pointer: int

    @property
    def is_portable_codeview(self) -> bool:
        return self.type == DEBUG_TYPE_CODEVIEW and self.minor_version == PORTABLE_CODEVIEW_VERSION


@dataclass
class CodeViewData:
    guid: uuid.UUID
    age: int
    path: str


@dataclass
class PdbChecksumData:
    algorithm: str
    checksum: bytes

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.checksum.hex()}"


@dataclass
class RawMethodBody:
    """Raw IL of one method plus its local signature token (0 if none)."""
    il: bytes
    local_signature_token: int = 0
    max_stack: int = 8


class PEImage:
    """A parsed PE/COFF image held in memory."""

    def __init__(self, data: bytes, path: Optional[str] = None):
        self.data = data
        self.path = path
        self.sections: List[SectionHeader] = []
        self.data_directories: List[Tuple[int, int]] = []
        self.is_pe64 = False
        self.machine = 0
        self.timestamp = 0
        self._metadata: Optional[MetadataReader] = None

        try:
            self._parse_headers()
        except struct.error as e:
            raise MalformedImageError(f"Truncated PE headers: {e}", path) from e

    @classmethod
    def from_file(cls, path: str) -> "PEImage":
        with open(path, "rb") as f:
            data = f.read()
        return cls(data, path)

    def _error(self, message: str) -> MalformedImageError:
        return MalformedImageError(message, self.path)

    def _parse_headers(self) -> None:
        data = self.data
        if len(data) < 0x40 or data[:2] != b"MZ":
            raise self._error("Missing DOS header")

        # DOS header e_lfanew
        e_lfanew = struct.unpack_from("<I", data, 0x3C)[0]
        if e_lfanew <= 0 or e_lfanew + 4 > len(data):
            raise self._error("Invalid e_lfanew")

        # PE signature
        if data[e_lfanew:e_lfanew + 4] != b"PE\x00\x00":
            raise self._error("Missing PE signature")

        # File header
        file_header_off = e_lfanew + 4
        self.machine, num_sections, self.timestamp, _, _, size_opt_header, _ = struct.unpack_from(
            "<HHIIIHH", data, file_header_off)

        # Optional header
        opt_off = file_header_off + 20
        if opt_off + size_opt_header > len(data):
            raise self._error("Optional header runs past end of image")

        magic = struct.unpack_from("<H", data, opt_off)[0]
        if magic not in (0x10B, 0x20B):
            raise self._error(f"Unknown optional header magic 0x{magic:X}")
        self.is_pe64 = magic == 0x20B

        # NumberOfRvaAndSizes precedes the data directories
        if self.is_pe64:
            data_dir_off = opt_off + 112
        else:
            data_dir_off = opt_off + 96
        dir_count = struct.unpack_from("<I", data, data_dir_off - 4)[0]
        dir_count = min(dir_count, (opt_off + size_opt_header - data_dir_off) // 8)
        for i in range(max(dir_count, 0)):
            self.data_directories.append(struct.unpack_from("<II", data, data_dir_off + 8 * i))

        # Section table
        sections_off = opt_off + size_opt_header
        for i in range(num_sections):
            sec_off = sections_off + i * SECTION_HEADER_SIZE
            if sec_off + SECTION_HEADER_SIZE > len(data):
                raise self._error("Section table runs past end of image")
            name = data[sec_off:sec_off + 8].rstrip(b"\x00").decode("ascii", errors="ignore")
            virtual_size, virtual_address, size_raw, ptr_raw = struct.unpack_from("<IIII", data, sec_off + 8)
            self.sections.append(SectionHeader(name, virtual_address, virtual_size, size_raw, ptr_raw))

    # ========================================================================
    # ADDRESSING
    # ========================================================================

    def get_directory(self, index: int) -> Tuple[int, int]:
        """Return ``(rva, size)`` of a data directory, zeros when absent."""
        if index < len(self.data_directories):
            return self.data_directories[index]
        return 0, 0

    def rva_to_offset(self, rva: int) -> Optional[int]:
        for section in self.sections:
            extent = max(section.virtual_size, section.raw_size)
            if section.virtual_address <= rva < section.virtual_address + extent:
                delta = rva - section.virtual_address
                if delta < section.raw_size:
                    return section.raw_pointer + delta
        return None

    def read_at_rva(self, rva: int, size: int) -> bytes:
        offset = self.rva_to_offset(rva)
        if offset is None or offset + size > len(self.data):
            raise self._error(f"RVA 0x{rva:X} (+{size}) is outside the image")
        return self.data[offset:offset + size]

    # ========================================================================
    # DEBUG DIRECTORY
    # ========================================================================

    def read_debug_directory(self) -> List[DebugDirectoryEntry]:
        """Parse all IMAGE_DEBUG_DIRECTORY entries (empty if none)."""
        debug_rva, debug_size = self.get_directory(DIRECTORY_DEBUG)
        if debug_rva == 0 or debug_size == 0:
            return []

        if debug_size % DEBUG_ENTRY_SIZE:
            raise self._error(f"Debug directory size {debug_size} is not a multiple of {DEBUG_ENTRY_SIZE}")
        raw = self.read_at_rva(debug_rva, debug_size)

        entries = []
        for off in range(0, debug_size, DEBUG_ENTRY_SIZE):
            entries.append(DebugDirectoryEntry(*struct.unpack_from("<IIHHIIII", raw, off)))
        return entries

    def _entry_data(self, entry: DebugDirectoryEntry) -> bytes:
        if entry.data_pointer + entry.data_size > len(self.data):
            raise self._error(f"Debug data for entry type {entry.type} runs past end of image")
        return self.data[entry.data_pointer:entry.data_pointer + entry.data_size]

    def read_codeview(self, entry: DebugDirectoryEntry) -> CodeViewData:
        """Decode an RSDS CodeView record: GUID, age and PDB path."""
        raw = self._entry_data(entry)
        if len(raw) < 24 or raw[:4] != CODEVIEW_SIGNATURE:
            raise self._error("CodeView entry is not an RSDS record")

        guid = uuid.UUID(bytes_le=bytes(raw[4:20]))
        age = struct.unpack_from("<I", raw, 20)[0]
        path_bytes = raw[24:]
        nul = path_bytes.find(b"\x00")
        if nul < 0:
            raise self._error("CodeView PDB path is not NUL-terminated")
        path = path_bytes[:nul].decode("utf-8", errors="replace")
        return CodeViewData(guid, age, path)

    def read_pdb_checksum(self, entry: DebugDirectoryEntry) -> PdbChecksumData:
        """Decode a PdbChecksum record: algorithm name then digest."""
        raw = self._entry_data(entry)
        nul = raw.find(b"\x00")
        if nul <= 0:
            raise self._error("PDB checksum entry has no algorithm name")
        algorithm = raw[:nul].decode("utf-8", errors="replace")
        checksum = bytes(raw[nul + 1:])
        if not checksum:
            raise self._error("PDB checksum entry has an empty digest")
        return PdbChecksumData(algorithm, checksum)

    # ========================================================================
    # CLI METADATA
    # ========================================================================

    @property
    def has_metadata(self) -> bool:
        rva, size = self.get_directory(DIRECTORY_COM_DESCRIPTOR)
        return rva != 0 and size != 0

    def read_metadata_bytes(self) -> bytes:
        cli_rva, cli_size = self.get_directory(DIRECTORY_COM_DESCRIPTOR)
        if cli_rva == 0 or cli_size < 16:
            raise self._error("Image has no CLI header")
        cli = self.read_at_rva(cli_rva, 16)
        metadata_rva, metadata_size = struct.unpack_from("<II", cli, 8)
        if metadata_rva == 0 or metadata_size == 0:
            raise self._error("CLI header has no metadata")
        return self.read_at_rva(metadata_rva, metadata_size)

    @property
    def metadata(self) -> MetadataReader:
        """The image's metadata reader, parsed on first use."""
        if self._metadata is None:
            try:
                self._metadata = MetadataReader(self.read_metadata_bytes())
            except MetadataFormatError as e:
                raise self._error(f"Invalid metadata: {e}") from e
        return self._metadata

    def read_method_body(self, rva: int) -> Optional[RawMethodBody]:
        """Read the IL body at ``rva``; None for abstract / extern methods."""
        if rva == 0:
            return None
        offset = self.rva_to_offset(rva)
        if offset is None or offset >= len(self.data):
            raise self._error(f"Method body RVA 0x{rva:X} is outside the image")

        first = self.data[offset]
        if first & 0x3 == 0x2:
            # Tiny header: code size in the upper 6 bits
            size = first >> 2
            start = offset + 1
            if start + size > len(self.data):
                raise self._error(f"Method body at 0x{rva:X} runs past end of image")
            return RawMethodBody(bytes(self.data[start:start + size]))

        if first & 0x3 == 0x3:
            if offset + 12 > len(self.data):
                raise self._error(f"Fat method header at 0x{rva:X} is truncated")
            flags_and_size, max_stack, code_size, local_sig = struct.unpack_from("<HHII", self.data, offset)
            header_size = (flags_and_size >> 12) * 4
            start = offset + header_size
            if start + code_size > len(self.data):
                raise self._error(f"Method body at 0x{rva:X} runs past end of image")
            return RawMethodBody(bytes(self.data[start:start + code_size]), local_sig, max_stack)

        raise self._error(f"Unknown method header format 0x{first:02X} at RVA 0x{rva:X}")
