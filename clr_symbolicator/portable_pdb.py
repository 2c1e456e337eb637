"""Portable PDB Reader.

Reads a standalone portable PDB: the #Pdb stream (PDB id and referenced
type system row counts), the Document table and the per-method sequence
point blobs of the MethodDebugInformation table.
"""
from __future__ import annotations

import uuid
from typing import BinaryIO, Dict, List, Optional

from .errors import MalformedSymbolFileError
from .metadata_reader import BlobReader, MetadataFormatError, MetadataReader, Table
from .models import HIDDEN_LINE, SequencePoint

METHOD_DEF_TABLE = 0x06


def method_row_id(token: int) -> Optional[int]:
    """Row id of a MethodDef token; None for tokens of any other table."""
    if token >> 24 != METHOD_DEF_TABLE:
        return None
    return token & 0x00FFFFFF


class PortablePdbReader:
    """Sequence point access over one portable PDB file."""

    def __init__(self, data: bytes, path: Optional[str] = None):
        self.path = path
        try:
            self.metadata = MetadataReader(data)
        except MetadataFormatError as e:
            raise MalformedSymbolFileError(f"Not a portable PDB: {e}", path) from e
        if self.metadata.pdb is None:
            raise MalformedSymbolFileError("Metadata has no #Pdb stream", path)
        self._documents: Dict[int, str] = {}
        self._sequence_points: Dict[int, List[SequencePoint]] = {}

    @classmethod
    def from_stream(cls, stream: BinaryIO, path: Optional[str] = None) -> "PortablePdbReader":
        return cls(stream.read(), path)

    @classmethod
    def from_file(cls, path: str) -> "PortablePdbReader":
        with open(path, "rb") as f:
            return cls.from_stream(f, path)

    @property
    def guid(self) -> uuid.UUID:
        """Signature GUID from the PDB id (matches the CodeView GUID)."""
        return self.metadata.pdb.guid

    @property
    def entry_point(self) -> int:
        return self.metadata.pdb.entry_point

    def get_document_name(self, rid: int) -> str:
        """Decode a Document row's name blob (separator + joined parts)."""
        name = self._documents.get(rid)
        if name is None:
            try:
                row = self.metadata.get_row(Table.DOCUMENT, rid)
                reader = BlobReader(self.metadata.get_blob(row["Name"]))
                separator = reader.read_byte()
                parts = []
                while reader.remaining:
                    part = self.metadata.get_blob(reader.read_compressed_uint())
                    parts.append(part.decode("utf-8", errors="replace"))
            except MetadataFormatError as e:
                raise MalformedSymbolFileError(f"Invalid document {rid}: {e}", self.path) from e
            name = (chr(separator) if separator else "").join(parts)
            self._documents[rid] = name
        return name

    def get_sequence_points(self, method_token: int) -> List[SequencePoint]:
        """Sequence points of a method, in blob order.

        Unknown methods and methods without debug information yield an
        empty list.
        """
        rid = method_row_id(method_token)
        if rid is None or rid < 1 or rid > self.metadata.row_count(Table.METHOD_DEBUG_INFORMATION):
            return []

        points = self._sequence_points.get(rid)
        if points is None:
            try:
                row = self.metadata.get_row(Table.METHOD_DEBUG_INFORMATION, rid)
                blob = self.metadata.get_blob(row["SequencePoints"])
                points = self._decode_sequence_points(blob, row["Document"]) if blob else []
            except MetadataFormatError as e:
                raise MalformedSymbolFileError(
                    f"Invalid sequence points for method 0x{method_token:08X}: {e}", self.path) from e
            self._sequence_points[rid] = points
        return points

    def _decode_sequence_points(self, blob: bytes, document_rid: int) -> List[SequencePoint]:
        reader = BlobReader(blob)
        reader.read_compressed_uint()  # LocalSignature
        if document_rid == 0:
            document_rid = reader.read_compressed_uint()
        document = self.get_document_name(document_rid) if document_rid else None

        points: List[SequencePoint] = []
        offset = 0
        start_line = start_column = 0
        seen_visible = False

        while reader.remaining:
            delta_offset = reader.read_compressed_uint()
            if points and delta_offset == 0:
                # Document record
                document = self.get_document_name(reader.read_compressed_uint())
                continue
            offset = offset + delta_offset if points else delta_offset

            delta_lines = reader.read_compressed_uint()
            if delta_lines == 0:
                delta_columns = reader.read_compressed_uint()
            else:
                delta_columns = reader.read_compressed_int()

            if delta_lines == 0 and delta_columns == 0:
                points.append(SequencePoint(offset, HIDDEN_LINE, 0, HIDDEN_LINE, 0, document))
                continue

            if seen_visible:
                start_line += reader.read_compressed_int()
                start_column += reader.read_compressed_int()
            else:
                start_line = reader.read_compressed_uint()
                start_column = reader.read_compressed_uint()
                seen_visible = True

            points.append(SequencePoint(
                offset, start_line, start_column,
                start_line + delta_lines, start_column + delta_columns, document,
            ))
        return points
