"""CLR Symbolicator package.

Resolves raw managed (.NET) stack frames into readable traces:
- Debug metadata extraction from PE images (CodeView, PDB checksum, MVID)
- Portable PDB lookup, caching and sequence point resolution
- Optional download of missing PDBs from an HTTP symbol server
- Demystification of async, iterator, lambda and local function names
- Text and lossless JSON rendering of traces
"""
from .config import SymbolicateOptions
from .debug_meta import DebugMetaCache, extract_debug_meta, read_debug_meta
from .demystifier import Demystifier, GeneratedNameKind, try_parse_generated_name
from .errors import (
    MalformedImageError,
    MalformedSymbolFileError,
    SymbolicationError,
)
from .formatting import from_json, render_text, to_json
from .models import (
    HIDDEN_LINE,
    DebugMeta,
    ResolvedMethod,
    ResolvedParameter,
    SequencePoint,
    StackFrameInformation,
    StackTraceInformation,
)
from .pe_image import PEImage
from .portable_pdb import PortablePdbReader
from .reflection import (
    AssemblyMetadataProvider,
    MetadataProvider,
    ModelMetadataProvider,
)
from .sequence_points import find_sequence_point, resolve_location
from .symbol_cache import SymbolReaderCache
from .symbolicator import CapturedFrame, StackTraceSymbolicator, build_stack_trace
from .visibility import filter_frames, show_in_stack_trace

__all__ = [
    # Data model
    "HIDDEN_LINE",
    "DebugMeta",
    "ResolvedMethod",
    "ResolvedParameter",
    "SequencePoint",
    "StackFrameInformation",
    "StackTraceInformation",
    # Errors
    "SymbolicationError",
    "MalformedImageError",
    "MalformedSymbolFileError",
    # Images and symbols
    "PEImage",
    "PortablePdbReader",
    "DebugMetaCache",
    "extract_debug_meta",
    "read_debug_meta",
    "SymbolReaderCache",
    "find_sequence_point",
    "resolve_location",
    # Demystification
    "MetadataProvider",
    "ModelMetadataProvider",
    "AssemblyMetadataProvider",
    "Demystifier",
    "GeneratedNameKind",
    "try_parse_generated_name",
    "filter_frames",
    "show_in_stack_trace",
    # Symbolication
    "SymbolicateOptions",
    "CapturedFrame",
    "StackTraceSymbolicator",
    "build_stack_trace",
    "render_text",
    "to_json",
    "from_json",
]

__version__ = "1.0.0"
