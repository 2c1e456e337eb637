"""ECMA-335 Metadata Reader.

Low-level reader for the physical metadata format shared by managed PE
images and portable PDB files:

- Metadata root and stream headers ("BSJB")
- #Strings, #Blob and #GUID heaps
- The compressed table stream (#~ / #-) with full row-size computation
- Compressed integers and type / method / local signatures

Everything is decoded with direct struct unpacking. Inconsistent input
raises MetadataFormatError.
"""
from __future__ import annotations

import struct
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import SymbolicationError


class MetadataFormatError(SymbolicationError):
    """Metadata bytes do not follow the ECMA-335 physical layout."""


METADATA_SIGNATURE = 0x424A5342  # "BSJB"


# ============================================================================
# TABLES
# ============================================================================

class Table(IntEnum):
    """Metadata table ids (ECMA-335 II.22 and the portable PDB tables)."""
    MODULE = 0x00
    TYPE_REF = 0x01
    TYPE_DEF = 0x02
    FIELD_PTR = 0x03
    FIELD = 0x04
    METHOD_PTR = 0x05
    METHOD_DEF = 0x06
    PARAM_PTR = 0x07
    PARAM = 0x08
    INTERFACE_IMPL = 0x09
    MEMBER_REF = 0x0A
    CONSTANT = 0x0B
    CUSTOM_ATTRIBUTE = 0x0C
    FIELD_MARSHAL = 0x0D
    DECL_SECURITY = 0x0E
    CLASS_LAYOUT = 0x0F
    FIELD_LAYOUT = 0x10
    STAND_ALONE_SIG = 0x11
    EVENT_MAP = 0x12
    EVENT_PTR = 0x13
    EVENT = 0x14
    PROPERTY_MAP = 0x15
    PROPERTY_PTR = 0x16
    PROPERTY = 0x17
    METHOD_SEMANTICS = 0x18
    METHOD_IMPL = 0x19
    MODULE_REF = 0x1A
    TYPE_SPEC = 0x1B
    IMPL_MAP = 0x1C
    FIELD_RVA = 0x1D
    ENC_LOG = 0x1E
    ENC_MAP = 0x1F
    ASSEMBLY = 0x20
    ASSEMBLY_PROCESSOR = 0x21
    ASSEMBLY_OS = 0x22
    ASSEMBLY_REF = 0x23
    ASSEMBLY_REF_PROCESSOR = 0x24
    ASSEMBLY_REF_OS = 0x25
    FILE = 0x26
    EXPORTED_TYPE = 0x27
    MANIFEST_RESOURCE = 0x28
    NESTED_CLASS = 0x29
    GENERIC_PARAM = 0x2A
    METHOD_SPEC = 0x2B
    GENERIC_PARAM_CONSTRAINT = 0x2C
    # Portable PDB
    DOCUMENT = 0x30
    METHOD_DEBUG_INFORMATION = 0x31
    LOCAL_SCOPE = 0x32
    LOCAL_VARIABLE = 0x33
    LOCAL_CONSTANT = 0x34
    IMPORT_SCOPE = 0x35
    STATE_MACHINE_METHOD = 0x36
    CUSTOM_DEBUG_INFORMATION = 0x37


T = Table

_HAS_CUSTOM_ATTRIBUTE = (
    T.METHOD_DEF, T.FIELD, T.TYPE_REF, T.TYPE_DEF, T.PARAM, T.INTERFACE_IMPL, T.MEMBER_REF,
    T.MODULE, T.DECL_SECURITY, T.PROPERTY, T.EVENT, T.STAND_ALONE_SIG, T.MODULE_REF,
    T.TYPE_SPEC, T.ASSEMBLY, T.ASSEMBLY_REF, T.FILE, T.EXPORTED_TYPE, T.MANIFEST_RESOURCE,
    T.GENERIC_PARAM, T.GENERIC_PARAM_CONSTRAINT, T.METHOD_SPEC,
)

# name -> (tag bits, tables in tag order; None marks an unused tag)
CODED_INDEXES: Dict[str, Tuple[int, Tuple[Optional[Table], ...]]] = {
    "TypeDefOrRef": (2, (T.TYPE_DEF, T.TYPE_REF, T.TYPE_SPEC)),
    "HasConstant": (2, (T.FIELD, T.PARAM, T.PROPERTY)),
    "HasCustomAttribute": (5, _HAS_CUSTOM_ATTRIBUTE),
    "HasFieldMarshal": (1, (T.FIELD, T.PARAM)),
    "HasDeclSecurity": (2, (T.TYPE_DEF, T.METHOD_DEF, T.ASSEMBLY)),
    "MemberRefParent": (3, (T.TYPE_DEF, T.TYPE_REF, T.MODULE_REF, T.METHOD_DEF, T.TYPE_SPEC)),
    "HasSemantics": (1, (T.EVENT, T.PROPERTY)),
    "MethodDefOrRef": (1, (T.METHOD_DEF, T.MEMBER_REF)),
    "MemberForwarded": (1, (T.FIELD, T.METHOD_DEF)),
    "Implementation": (2, (T.FILE, T.ASSEMBLY_REF, T.EXPORTED_TYPE)),
    "CustomAttributeType": (3, (None, None, T.METHOD_DEF, T.MEMBER_REF, None)),
    "ResolutionScope": (2, (T.MODULE, T.MODULE_REF, T.ASSEMBLY_REF, T.TYPE_REF)),
    "TypeOrMethodDef": (1, (T.TYPE_DEF, T.METHOD_DEF)),
    "HasCustomDebugInformation": (5, _HAS_CUSTOM_ATTRIBUTE + (
        T.DOCUMENT, T.LOCAL_SCOPE, T.LOCAL_VARIABLE, T.LOCAL_CONSTANT, T.IMPORT_SCOPE,
    )),
}

U8 = "u8"
U16 = "u16"
U32 = "u32"
STRING = "string"
GUID = "guid"
BLOB = "blob"


def _idx(table: Table) -> Tuple[str, Table]:
    return ("table", table)


def _coded(name: str) -> Tuple[str, str]:
    return ("coded", name)


# Column layout of every table, in physical order
TABLE_SCHEMAS: Dict[Table, Tuple[Tuple[str, Any], ...]] = {
    T.MODULE: (("Generation", U16), ("Name", STRING), ("Mvid", GUID), ("EncId", GUID), ("EncBaseId", GUID)),
    T.TYPE_REF: (("ResolutionScope", _coded("ResolutionScope")), ("TypeName", STRING), ("TypeNamespace", STRING)),
    T.TYPE_DEF: (("Flags", U32), ("TypeName", STRING), ("TypeNamespace", STRING),
                 ("Extends", _coded("TypeDefOrRef")), ("FieldList", _idx(T.FIELD)), ("MethodList", _idx(T.METHOD_DEF))),
    T.FIELD_PTR: (("Field", _idx(T.FIELD)),),
    T.FIELD: (("Flags", U16), ("Name", STRING), ("Signature", BLOB)),
    T.METHOD_PTR: (("Method", _idx(T.METHOD_DEF)),),
    T.METHOD_DEF: (("RVA", U32), ("ImplFlags", U16), ("Flags", U16), ("Name", STRING),
                   ("Signature", BLOB), ("ParamList", _idx(T.PARAM))),
    T.PARAM_PTR: (("Param", _idx(T.PARAM)),),
    T.PARAM: (("Flags", U16), ("Sequence", U16), ("Name", STRING)),
    T.INTERFACE_IMPL: (("Class", _idx(T.TYPE_DEF)), ("Interface", _coded("TypeDefOrRef"))),
    T.MEMBER_REF: (("Class", _coded("MemberRefParent")), ("Name", STRING), ("Signature", BLOB)),
    T.CONSTANT: (("Type", U16), ("Parent", _coded("HasConstant")), ("Value", BLOB)),
    T.CUSTOM_ATTRIBUTE: (("Parent", _coded("HasCustomAttribute")), ("Type", _coded("CustomAttributeType")),
                         ("Value", BLOB)),
    T.FIELD_MARSHAL: (("Parent", _coded("HasFieldMarshal")), ("NativeType", BLOB)),
    T.DECL_SECURITY: (("Action", U16), ("Parent", _coded("HasDeclSecurity")), ("PermissionSet", BLOB)),
    T.CLASS_LAYOUT: (("PackingSize", U16), ("ClassSize", U32), ("Parent", _idx(T.TYPE_DEF))),
    T.FIELD_LAYOUT: (("Offset", U32), ("Field", _idx(T.FIELD))),
    T.STAND_ALONE_SIG: (("Signature", BLOB),),
    T.EVENT_MAP: (("Parent", _idx(T.TYPE_DEF)), ("EventList", _idx(T.EVENT))),
    T.EVENT_PTR: (("Event", _idx(T.EVENT)),),
    T.EVENT: (("EventFlags", U16), ("Name", STRING), ("EventType", _coded("TypeDefOrRef"))),
    T.PROPERTY_MAP: (("Parent", _idx(T.TYPE_DEF)), ("PropertyList", _idx(T.PROPERTY))),
    T.PROPERTY_PTR: (("Property", _idx(T.PROPERTY)),),
    T.PROPERTY: (("Flags", U16), ("Name", STRING), ("Type", BLOB)),
    T.METHOD_SEMANTICS: (("Semantics", U16), ("Method", _idx(T.METHOD_DEF)), ("Association", _coded("HasSemantics"))),
    T.METHOD_IMPL: (("Class", _idx(T.TYPE_DEF)), ("MethodBody", _coded("MethodDefOrRef")),
                    ("MethodDeclaration", _coded("MethodDefOrRef"))),
    T.MODULE_REF: (("Name", STRING),),
    T.TYPE_SPEC: (("Signature", BLOB),),
    T.IMPL_MAP: (("MappingFlags", U16), ("MemberForwarded", _coded("MemberForwarded")),
                 ("ImportName", STRING), ("ImportScope", _idx(T.MODULE_REF))),
    T.FIELD_RVA: (("RVA", U32), ("Field", _idx(T.FIELD))),
    T.ENC_LOG: (("Token", U32), ("FuncCode", U32)),
    T.ENC_MAP: (("Token", U32),),
    T.ASSEMBLY: (("HashAlgId", U32), ("MajorVersion", U16), ("MinorVersion", U16), ("BuildNumber", U16),
                 ("RevisionNumber", U16), ("Flags", U32), ("PublicKey", BLOB), ("Name", STRING), ("Culture", STRING)),
    T.ASSEMBLY_PROCESSOR: (("Processor", U32),),
    T.ASSEMBLY_OS: (("OSPlatformID", U32), ("OSMajorVersion", U32), ("OSMinorVersion", U32)),
    T.ASSEMBLY_REF: (("MajorVersion", U16), ("MinorVersion", U16), ("BuildNumber", U16), ("RevisionNumber", U16),
                     ("Flags", U32), ("PublicKeyOrToken", BLOB), ("Name", STRING), ("Culture", STRING),
                     ("HashValue", BLOB)),
    T.ASSEMBLY_REF_PROCESSOR: (("Processor", U32), ("AssemblyRef", _idx(T.ASSEMBLY_REF))),
    T.ASSEMBLY_REF_OS: (("OSPlatformId", U32), ("OSMajorVersion", U32), ("OSMinorVersion", U32),
                        ("AssemblyRef", _idx(T.ASSEMBLY_REF))),
    T.FILE: (("Flags", U32), ("Name", STRING), ("HashValue", BLOB)),
    T.EXPORTED_TYPE: (("Flags", U32), ("TypeDefId", U32), ("TypeName", STRING), ("TypeNamespace", STRING),
                      ("Implementation", _coded("Implementation"))),
    T.MANIFEST_RESOURCE: (("Offset", U32), ("Flags", U32), ("Name", STRING), ("Implementation", _coded("Implementation"))),
    T.NESTED_CLASS: (("NestedClass", _idx(T.TYPE_DEF)), ("EnclosingClass", _idx(T.TYPE_DEF))),
    T.GENERIC_PARAM: (("Number", U16), ("Flags", U16), ("Owner", _coded("TypeOrMethodDef")), ("Name", STRING)),
    T.METHOD_SPEC: (("Method", _coded("MethodDefOrRef")), ("Instantiation", BLOB)),
    T.GENERIC_PARAM_CONSTRAINT: (("Owner", _idx(T.GENERIC_PARAM)), ("Constraint", _coded("TypeDefOrRef"))),
    T.DOCUMENT: (("Name", BLOB), ("HashAlgorithm", GUID), ("Hash", BLOB), ("Language", GUID)),
    T.METHOD_DEBUG_INFORMATION: (("Document", _idx(T.DOCUMENT)), ("SequencePoints", BLOB)),
    T.LOCAL_SCOPE: (("Method", _idx(T.METHOD_DEF)), ("ImportScope", _idx(T.IMPORT_SCOPE)),
                    ("VariableList", _idx(T.LOCAL_VARIABLE)), ("ConstantList", _idx(T.LOCAL_CONSTANT)),
                    ("StartOffset", U32), ("Length", U32)),
    T.LOCAL_VARIABLE: (("Attributes", U16), ("Index", U16), ("Name", STRING)),
    T.LOCAL_CONSTANT: (("Name", STRING), ("Signature", BLOB)),
    T.IMPORT_SCOPE: (("Parent", _idx(T.IMPORT_SCOPE)), ("Imports", BLOB)),
    T.STATE_MACHINE_METHOD: (("MoveNextMethod", _idx(T.METHOD_DEF)), ("KickoffMethod", _idx(T.METHOD_DEF))),
    T.CUSTOM_DEBUG_INFORMATION: (("Parent", _coded("HasCustomDebugInformation")), ("Kind", GUID), ("Value", BLOB)),
}

# HeapSizes flags of the table stream header
HEAP_STRING_WIDE = 0x01
HEAP_GUID_WIDE = 0x02
HEAP_BLOB_WIDE = 0x04
HEAP_EXTRA_DATA = 0x20

_FIXED_WIDTHS = {U8: 1, U16: 2, U32: 4}


class TableLayout:
    """Column widths of every table for a given set of row counts.

    ``row_counts`` are the tables stored in the stream itself;
    ``external_row_counts`` are tables referenced from elsewhere (a portable
    PDB indexes the type system tables of its assembly).
    """

    def __init__(self, row_counts: Dict[int, int], heap_sizes: int,
                 external_row_counts: Optional[Dict[int, int]] = None):
        self.row_counts = dict(row_counts)
        self.heap_sizes = heap_sizes
        self._index_counts = dict(external_row_counts or {})
        self._index_counts.update(self.row_counts)
        self._widths: Dict[int, List[int]] = {}

    def count(self, table: int) -> int:
        return self._index_counts.get(table, 0)

    def coded_index_width(self, name: str) -> int:
        bits, tables = CODED_INDEXES[name]
        largest = max((self.count(t) for t in tables if t is not None), default=0)
        return 2 if largest < (1 << (16 - bits)) else 4

    def column_width(self, kind: Any) -> int:
        if kind in _FIXED_WIDTHS:
            return _FIXED_WIDTHS[kind]
        if kind == STRING:
            return 4 if self.heap_sizes & HEAP_STRING_WIDE else 2
        if kind == GUID:
            return 4 if self.heap_sizes & HEAP_GUID_WIDE else 2
        if kind == BLOB:
            return 4 if self.heap_sizes & HEAP_BLOB_WIDE else 2
        category, target = kind
        if category == "table":
            return 2 if self.count(target) < (1 << 16) else 4
        return self.coded_index_width(target)

    def column_widths(self, table: int) -> List[int]:
        widths = self._widths.get(table)
        if widths is None:
            widths = [self.column_width(kind) for _, kind in TABLE_SCHEMAS[Table(table)]]
            self._widths[table] = widths
        return widths

    def row_size(self, table: int) -> int:
        return sum(self.column_widths(table))


# ============================================================================
# COMPRESSED INTEGERS / BLOB READER
# ============================================================================

def read_compressed_uint(data: Sequence[int], pos: int) -> Tuple[int, int]:
    """Decode an ECMA-335 II.23.2 compressed unsigned integer at ``pos``."""
    try:
        b0 = data[pos]
        if b0 & 0x80 == 0:
            return b0, pos + 1
        if b0 & 0xC0 == 0x80:
            return ((b0 & 0x3F) << 8) | data[pos + 1], pos + 2
        if b0 & 0xE0 == 0xC0:
            value = ((b0 & 0x1F) << 24) | (data[pos + 1] << 16) | (data[pos + 2] << 8) | data[pos + 3]
            return value, pos + 4
    except IndexError:
        raise MetadataFormatError(f"Truncated compressed integer at offset {pos}") from None
    raise MetadataFormatError(f"Invalid compressed integer lead byte 0x{b0:02X} at offset {pos}")


_SIGNED_ADJUST = {1: 0x40, 2: 0x2000, 4: 0x10000000}


def read_compressed_int(data: Sequence[int], pos: int) -> Tuple[int, int]:
    """Decode a compressed signed integer (sign stored in the low bit)."""
    raw, new_pos = read_compressed_uint(data, pos)
    value = raw >> 1
    if raw & 1:
        value -= _SIGNED_ADJUST[new_pos - pos]
    return value, new_pos


class BlobReader:
    """Sequential reader over a blob."""

    def __init__(self, data: bytes, pos: int = 0, end: Optional[int] = None):
        self.data = data
        self.pos = pos
        self.end = len(data) if end is None else end

    @property
    def remaining(self) -> int:
        return self.end - self.pos

    def _take(self, size: int) -> int:
        if self.pos + size > self.end:
            raise MetadataFormatError(f"Read of {size} bytes past end of blob at offset {self.pos}")
        start = self.pos
        self.pos += size
        return start

    def read_byte(self) -> int:
        return self.data[self._take(1)]

    def peek_byte(self) -> int:
        if self.pos >= self.end:
            raise MetadataFormatError("Unexpected end of blob")
        return self.data[self.pos]

    def read_uint16(self) -> int:
        return struct.unpack_from("<H", self.data, self._take(2))[0]

    def read_uint32(self) -> int:
        return struct.unpack_from("<I", self.data, self._take(4))[0]

    def read_int32(self) -> int:
        return struct.unpack_from("<i", self.data, self._take(4))[0]

    def read_uint64(self) -> int:
        return struct.unpack_from("<Q", self.data, self._take(8))[0]

    def read_bytes(self, size: int) -> bytes:
        start = self._take(size)
        return bytes(self.data[start:start + size])

    def read_compressed_uint(self) -> int:
        if self.pos >= self.end:
            raise MetadataFormatError("Unexpected end of blob")
        value, self.pos = read_compressed_uint(self.data, self.pos)
        if self.pos > self.end:
            raise MetadataFormatError("Compressed integer runs past end of blob")
        return value

    def read_compressed_int(self) -> int:
        if self.pos >= self.end:
            raise MetadataFormatError("Unexpected end of blob")
        value, self.pos = read_compressed_int(self.data, self.pos)
        if self.pos > self.end:
            raise MetadataFormatError("Compressed integer runs past end of blob")
        return value

    def read_ser_string(self) -> Optional[str]:
        """Read a custom attribute SerString (0xFF marks null)."""
        if self.peek_byte() == 0xFF:
            self.pos += 1
            return None
        length = self.read_compressed_uint()
        return self.read_bytes(length).decode("utf-8", errors="replace")


# ============================================================================
# METADATA ROOT
# ============================================================================

@dataclass
class StreamHeader:
    name: str
    offset: int
    size: int


@dataclass
class PdbStreamInfo:
    """Header of the #Pdb stream of a standalone portable PDB."""
    pdb_id: bytes
    entry_point: int
    referenced_row_counts: Dict[int, int] = field(default_factory=dict)

    @property
    def guid(self) -> uuid.UUID:
        return uuid.UUID(bytes_le=self.pdb_id[:16])

    @property
    def stamp(self) -> int:
        return struct.unpack_from("<I", self.pdb_id, 16)[0]


class MetadataReader:
    """Reads tables and heaps from a metadata blob (BSJB root)."""

    def __init__(self, data: bytes):
        self.data = data
        self.version = ""
        self.streams: Dict[str, StreamHeader] = {}
        self.pdb: Optional[PdbStreamInfo] = None
        self._strings = b""
        self._blobs = b""
        self._guids = b""
        self._table_data = b""
        self._table_offsets: Dict[int, int] = {}
        self.layout = TableLayout({}, 0)
        self.sorted_tables = 0

        try:
            self._parse_root()
            self._parse_pdb_stream()
            self._parse_tables()
        except (struct.error, IndexError) as e:
            raise MetadataFormatError(f"Truncated metadata: {e}") from e

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_root(self) -> None:
        data = self.data
        if len(data) < 20:
            raise MetadataFormatError("Metadata root too small")
        signature, _major, _minor, _reserved, length = struct.unpack_from("<IHHII", data, 0)
        if signature != METADATA_SIGNATURE:
            raise MetadataFormatError(f"Bad metadata signature 0x{signature:08X}")
        if 16 + length > len(data):
            raise MetadataFormatError("Metadata version string runs past end")
        self.version = bytes(data[16:16 + length]).split(b"\x00", 1)[0].decode("utf-8", errors="replace")

        pos = 16 + length
        _flags, stream_count = struct.unpack_from("<HH", data, pos)
        pos += 4
        for _ in range(stream_count):
            offset, size = struct.unpack_from("<II", data, pos)
            pos += 8
            name_end = bytes(data[pos:pos + 32]).find(b"\x00")
            if name_end < 0:
                raise MetadataFormatError("Unterminated stream name")
            name = bytes(data[pos:pos + name_end]).decode("ascii", errors="replace")
            pos += (name_end + 4) & ~3
            if offset + size > len(data):
                raise MetadataFormatError(f"Stream {name} runs past end of metadata")
            self.streams[name] = StreamHeader(name, offset, size)

        self._strings = self._stream_bytes("#Strings")
        self._blobs = self._stream_bytes("#Blob")
        self._guids = self._stream_bytes("#GUID")

    def _stream_bytes(self, name: str) -> bytes:
        header = self.streams.get(name)
        if header is None:
            return b""
        return bytes(self.data[header.offset:header.offset + header.size])

    def _parse_pdb_stream(self) -> None:
        raw = self._stream_bytes("#Pdb")
        if not raw:
            return
        reader = BlobReader(raw)
        pdb_id = reader.read_bytes(20)
        entry_point = reader.read_uint32()
        referenced = reader.read_uint64()
        counts = {}
        for table in range(64):
            if referenced & (1 << table):
                counts[table] = reader.read_uint32()
        self.pdb = PdbStreamInfo(pdb_id, entry_point, counts)

    def _parse_tables(self) -> None:
        raw = self._stream_bytes("#~") or self._stream_bytes("#-")
        if not raw:
            return
        _reserved, _major, _minor, heap_sizes, _reserved2, valid, sorted_mask = struct.unpack_from("<IBBBBQQ", raw, 0)
        pos = 24
        row_counts: Dict[int, int] = {}
        for table in range(64):
            if valid & (1 << table):
                if table not in TABLE_SCHEMAS:
                    raise MetadataFormatError(f"Unknown metadata table 0x{table:02X}")
                row_counts[table] = struct.unpack_from("<I", raw, pos)[0]
                pos += 4
        if heap_sizes & HEAP_EXTRA_DATA:
            pos += 4

        external = self.pdb.referenced_row_counts if self.pdb else None
        self.layout = TableLayout(row_counts, heap_sizes, external)
        self.sorted_tables = sorted_mask
        for table in sorted(row_counts):
            self._table_offsets[table] = pos
            pos += self.layout.row_size(table) * row_counts[table]
        if pos > len(raw):
            raise MetadataFormatError("Metadata tables run past end of table stream")
        self._table_data = raw

    # ------------------------------------------------------------------
    # Heaps
    # ------------------------------------------------------------------

    def get_string(self, offset: int) -> str:
        if offset == 0:
            return ""
        if offset >= len(self._strings):
            raise MetadataFormatError(f"String heap offset {offset} out of range")
        end = self._strings.find(b"\x00", offset)
        if end < 0:
            end = len(self._strings)
        return self._strings[offset:end].decode("utf-8", errors="replace")

    def get_blob(self, offset: int) -> bytes:
        if offset == 0:
            return b""
        if offset >= len(self._blobs):
            raise MetadataFormatError(f"Blob heap offset {offset} out of range")
        length, start = read_compressed_uint(self._blobs, offset)
        if start + length > len(self._blobs):
            raise MetadataFormatError(f"Blob at {offset} runs past end of heap")
        return self._blobs[start:start + length]

    def get_guid(self, index: int) -> Optional[uuid.UUID]:
        if index == 0:
            return None
        start = (index - 1) * 16
        if start + 16 > len(self._guids):
            raise MetadataFormatError(f"GUID heap index {index} out of range")
        return uuid.UUID(bytes_le=self._guids[start:start + 16])

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def row_count(self, table: int) -> int:
        return self.layout.row_counts.get(table, 0)

    def get_row(self, table: int, rid: int) -> Dict[str, Any]:
        """Decode row ``rid`` (1-based) of ``table``.

        Heap columns are returned as raw heap offsets / indices, simple
        indexes as row ids and coded indexes as ``(table, rid)`` pairs.
        """
        count = self.row_count(table)
        if rid < 1 or rid > count:
            raise MetadataFormatError(f"Row {rid} out of range for table {Table(table).name} ({count} rows)")
        schema = TABLE_SCHEMAS[Table(table)]
        widths = self.layout.column_widths(table)
        pos = self._table_offsets[table] + (rid - 1) * self.layout.row_size(table)
        row: Dict[str, Any] = {}
        for (name, kind), width in zip(schema, widths):
            if width == 1:
                value = self._table_data[pos]
            elif width == 2:
                value = struct.unpack_from("<H", self._table_data, pos)[0]
            else:
                value = struct.unpack_from("<I", self._table_data, pos)[0]
            pos += width
            if isinstance(kind, tuple) and kind[0] == "coded":
                value = self.decode_coded_index(kind[1], value)
            row[name] = value
        return row

    def rows(self, table: int) -> Iterator[Tuple[int, Dict[str, Any]]]:
        for rid in range(1, self.row_count(table) + 1):
            yield rid, self.get_row(table, rid)

    @staticmethod
    def decode_coded_index(name: str, value: int) -> Tuple[Optional[Table], int]:
        bits, tables = CODED_INDEXES[name]
        tag = value & ((1 << bits) - 1)
        if tag >= len(tables) or tables[tag] is None:
            raise MetadataFormatError(f"Invalid {name} coded index tag {tag}")
        return tables[tag], value >> bits

    def get_module_version_id(self) -> Optional[uuid.UUID]:
        if self.row_count(Table.MODULE) == 0:
            return None
        return self.get_guid(self.get_row(Table.MODULE, 1)["Mvid"])


# ============================================================================
# SIGNATURES
# ============================================================================

class ElementType(IntEnum):
    """ELEMENT_TYPE_* constants used in signature blobs."""
    END = 0x00
    VOID = 0x01
    BOOLEAN = 0x02
    CHAR = 0x03
    I1 = 0x04
    U1 = 0x05
    I2 = 0x06
    U2 = 0x07
    I4 = 0x08
    U4 = 0x09
    I8 = 0x0A
    U8 = 0x0B
    R4 = 0x0C
    R8 = 0x0D
    STRING = 0x0E
    PTR = 0x0F
    BYREF = 0x10
    VALUETYPE = 0x11
    CLASS = 0x12
    VAR = 0x13
    ARRAY = 0x14
    GENERICINST = 0x15
    TYPEDBYREF = 0x16
    I = 0x18
    U = 0x19
    FNPTR = 0x1B
    OBJECT = 0x1C
    SZARRAY = 0x1D
    MVAR = 0x1E
    CMOD_REQD = 0x1F
    CMOD_OPT = 0x20
    SENTINEL = 0x41
    PINNED = 0x45


PRIMITIVE_ELEMENT_TYPES = {
    ElementType.VOID, ElementType.BOOLEAN, ElementType.CHAR, ElementType.I1, ElementType.U1,
    ElementType.I2, ElementType.U2, ElementType.I4, ElementType.U4, ElementType.I8, ElementType.U8,
    ElementType.R4, ElementType.R8, ElementType.STRING, ElementType.TYPEDBYREF, ElementType.I,
    ElementType.U, ElementType.OBJECT,
}

# Signature header flags
SIG_FIELD = 0x06
SIG_LOCAL = 0x07
SIG_GENERIC = 0x10
SIG_HAS_THIS = 0x20
SIG_METHOD_SPEC = 0x0A


@dataclass
class MethodSignature:
    header: int
    generic_parameter_count: int
    return_type: Any
    parameter_types: List[Any]

    @property
    def has_this(self) -> bool:
        return bool(self.header & SIG_HAS_THIS)


class SignatureDecoder:
    """Decodes signature blobs through a type provider.

    The provider builds whatever type representation the caller wants. It
    must implement ``primitive``, ``type_definition``, ``type_reference``,
    ``type_specification``, ``sz_array``, ``array``, ``pointer``,
    ``by_reference``, ``pinned``, ``generic_instantiation``,
    ``generic_type_parameter``, ``generic_method_parameter`` and
    ``function_pointer``.
    """

    def __init__(self, provider: Any):
        self.provider = provider

    def decode_type(self, reader: BlobReader) -> Any:
        code = reader.read_byte()
        p = self.provider

        # Custom modifiers are skipped
        while code in (ElementType.CMOD_OPT, ElementType.CMOD_REQD):
            reader.read_compressed_uint()
            code = reader.read_byte()

        if code in PRIMITIVE_ELEMENT_TYPES:
            return p.primitive(ElementType(code))
        if code in (ElementType.CLASS, ElementType.VALUETYPE):
            return self._decode_type_handle(reader, code == ElementType.VALUETYPE)
        if code == ElementType.SZARRAY:
            return p.sz_array(self.decode_type(reader))
        if code == ElementType.ARRAY:
            element = self.decode_type(reader)
            rank = reader.read_compressed_uint()
            for _ in range(reader.read_compressed_uint()):
                reader.read_compressed_uint()
            for _ in range(reader.read_compressed_uint()):
                reader.read_compressed_int()
            return p.array(element, rank)
        if code == ElementType.PTR:
            return p.pointer(self.decode_type(reader))
        if code == ElementType.BYREF:
            return p.by_reference(self.decode_type(reader))
        if code == ElementType.PINNED:
            return p.pinned(self.decode_type(reader))
        if code == ElementType.GENERICINST:
            kind = reader.read_byte()
            if kind not in (ElementType.CLASS, ElementType.VALUETYPE):
                raise MetadataFormatError(f"Invalid generic instantiation kind 0x{kind:02X}")
            generic = self._decode_type_handle(reader, kind == ElementType.VALUETYPE)
            count = reader.read_compressed_uint()
            arguments = [self.decode_type(reader) for _ in range(count)]
            return p.generic_instantiation(generic, arguments)
        if code == ElementType.VAR:
            return p.generic_type_parameter(reader.read_compressed_uint())
        if code == ElementType.MVAR:
            return p.generic_method_parameter(reader.read_compressed_uint())
        if code == ElementType.FNPTR:
            self.decode_method_signature(reader)
            return p.function_pointer()
        raise MetadataFormatError(f"Unsupported signature element type 0x{code:02X}")

    def _decode_type_handle(self, reader: BlobReader, is_value_type: bool) -> Any:
        coded = reader.read_compressed_uint()
        tag, rid = coded & 0x3, coded >> 2
        if tag == 0:
            return self.provider.type_definition(rid, is_value_type)
        if tag == 1:
            return self.provider.type_reference(rid, is_value_type)
        if tag == 2:
            return self.provider.type_specification(rid)
        raise MetadataFormatError(f"Invalid TypeDefOrRef encoding {coded}")

    def decode_method_signature(self, reader: BlobReader) -> MethodSignature:
        header = reader.read_byte()
        generic_count = reader.read_compressed_uint() if header & SIG_GENERIC else 0
        param_count = reader.read_compressed_uint()
        return_type = self.decode_type(reader)
        params = []
        for _ in range(param_count):
            if reader.peek_byte() == ElementType.SENTINEL:
                reader.read_byte()
            params.append(self.decode_type(reader))
        return MethodSignature(header, generic_count, return_type, params)

    def decode_field_signature(self, reader: BlobReader) -> Any:
        header = reader.read_byte()
        if header & 0x0F != SIG_FIELD:
            raise MetadataFormatError(f"Invalid field signature header 0x{header:02X}")
        return self.decode_type(reader)

    def decode_local_signature(self, reader: BlobReader) -> List[Any]:
        header = reader.read_byte()
        if header != SIG_LOCAL:
            raise MetadataFormatError(f"Invalid local signature header 0x{header:02X}")
        count = reader.read_compressed_uint()
        return [self.decode_type(reader) for _ in range(count)]

    def decode_method_spec(self, reader: BlobReader) -> List[Any]:
        header = reader.read_byte()
        if header != SIG_METHOD_SPEC:
            raise MetadataFormatError(f"Invalid method spec header 0x{header:02X}")
        count = reader.read_compressed_uint()
        return [self.decode_type(reader) for _ in range(count)]
