"""Stack trace symbolication.

Two passes over a trace:

- ``build_stack_trace`` turns captured frames (method + IL offset) into a
  StackTraceInformation: hidden frames dropped, method names demystified,
  and DebugMeta collected for modules whose frames still lack locations.
- ``StackTraceSymbolicator.symbolicate`` fills in file, line and column from
  portable PDBs. Fields that were already known are never overwritten.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional

from .config import SymbolicateOptions
from .demystifier import Demystifier
from .errors import MalformedSymbolFileError
from .models import DebugMeta, StackFrameInformation, StackTraceInformation
from .reflection import MetadataProvider, MethodDefinition
from .sequence_points import resolve_location
from .symbol_cache import SymbolReaderCache, safe_print
from .visibility import filter_frames


@dataclass
class CapturedFrame:
    """A frame as captured in the crashing process, before symbolication."""
    method: Optional[MethodDefinition] = None
    offset: Optional[int] = None
    is_il_offset: bool = True
    file_name: Optional[str] = None
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    aot_id: Optional[str] = None


class StackTraceSymbolicator:
    """
    Resolves source locations of stack traces.

    Owns its SymbolReaderCache unless one is passed in, in which case the
    caller stays responsible for closing it.
    """

    def __init__(self, options: Optional[SymbolicateOptions] = None,
                 cache: Optional[SymbolReaderCache] = None):
        self.options = options or SymbolicateOptions()
        self._owns_cache = cache is None
        self.cache = cache if cache is not None else SymbolReaderCache(self.options)
        self.stats = {
            'frames_symbolicated': 0,
            'frames_unresolved': 0,
        }

    def _log(self, message: str):
        """Log a message if verbose mode is enabled."""
        if self.options.verbose:
            safe_print(f"[SYMBOL] {message}")

    # ========================================================================
    # SYMBOLICATION
    # ========================================================================

    def symbolicate(self, info: StackTraceInformation) -> StackTraceInformation:
        """
        Fill in source locations of every frame that still lacks one.

        Frames are replaced in ``info.frames``; nothing else is modified
        except ``info.errors``, which receives one entry per module whose
        symbol file is malformed.

        Args:
            info: The trace to symbolicate.

        Returns:
            ``info`` itself, for chaining.
        """
        for i, frame in enumerate(info.frames):
            if frame.line_number is not None or frame.mvid is None:
                continue
            debug_meta = info.debug_metas.get(frame.mvid)
            if debug_meta is None:
                continue
            try:
                info.frames[i] = self.symbolicate_frame(frame, debug_meta)
            except MalformedSymbolFileError as e:
                message = f"{debug_meta.file} ({debug_meta.module_id}): {e}"
                self._log(f"Error: {message}")
                if message not in info.errors:
                    info.errors.append(message)
        return info

    def symbolicate_frame(self, frame: StackFrameInformation, debug_meta: DebugMeta) -> StackFrameInformation:
        """
        Resolve one frame against its module's symbol file.

        Returns the frame unchanged when it has no method token, no IL
        offset, or no symbols were found.

        Raises:
            MalformedSymbolFileError: The module's symbol file is corrupt.
        """
        if frame.method_index is None or frame.offset is None or frame.is_il_offset is False:
            return frame

        reader = self.cache.get(debug_meta)
        if reader is None:
            self.stats['frames_unresolved'] += 1
            return frame

        location = resolve_location(reader.get_sequence_points(frame.method_index), frame.offset)
        if location is None:
            self.stats['frames_unresolved'] += 1
            return frame

        line, column, document = location
        self.stats['frames_symbolicated'] += 1
        return replace(
            frame,
            file_name=frame.file_name if frame.file_name is not None else document,
            line_number=line,
            column_number=frame.column_number if frame.column_number is not None else column,
        )

    # ========================================================================
    # LIFETIME
    # ========================================================================

    def close(self) -> None:
        if self._owns_cache:
            self.cache.close()

    def __enter__(self) -> "StackTraceSymbolicator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ============================================================================
# TRACE ASSEMBLY
# ============================================================================

def build_frame(captured: CapturedFrame, demystifier: Demystifier,
                module_id: Optional[uuid.UUID] = None,
                assembly_full_name: Optional[str] = None) -> StackFrameInformation:
    """Capture-side view of one frame: display name, token and offsets."""
    method = captured.method
    resolved = demystifier.resolve(method)
    type_full_name = None
    if method is not None and method.declaring_type is not None:
        type_full_name = method.declaring_type.full_name.replace("+", ".")

    return StackFrameInformation(
        method=str(resolved) if resolved is not None else None,
        method_index=method.token if method is not None and method.token else None,
        file_name=captured.file_name,
        offset=captured.offset,
        mvid=module_id,
        is_il_offset=captured.is_il_offset,
        aot_id=captured.aot_id,
        assembly_full_name=assembly_full_name,
        type_full_name=type_full_name,
        line_number=captured.line_number or None,
        column_number=captured.column_number or None,
        parameters=tuple(str(p) for p in resolved.parameters) if resolved is not None else None,
        generic_arguments=tuple(resolved.generic_arguments) if resolved is not None else None,
    )


def build_stack_trace(raw_frames: Iterable[CapturedFrame], provider: MetadataProvider,
                      debug_metas: Optional[Mapping[uuid.UUID, DebugMeta]] = None,
                      verbose: bool = False) -> StackTraceInformation:
    """
    Assemble a StackTraceInformation from captured frames of one module.

    Args:
        raw_frames: Frames innermost first.
        provider: Metadata of the module the frames' methods belong to.
        debug_metas: Known DebugMeta by module id. Defaults to the
            provider's own ``debug_meta`` when it has one.
        verbose: Log demystifier diagnostics.

    Returns:
        The trace. ``debug_metas`` only holds modules with frames that
        have no line number yet.
    """
    module_id = getattr(provider, "module_id", None)
    assembly_full_name = getattr(provider, "assembly_full_name", None)
    if debug_metas is None:
        own = getattr(provider, "debug_meta", None)
        debug_metas = {own.module_id: own} if own is not None else {}

    demystifier = Demystifier(provider, verbose=verbose)
    visible = filter_frames(list(raw_frames), lambda f: f.method)

    frames: List[StackFrameInformation] = []
    needed: Dict[uuid.UUID, DebugMeta] = {}
    for captured in visible:
        frame = build_frame(captured, demystifier, module_id, assembly_full_name)
        frames.append(frame)
        if frame.line_number is None and frame.mvid is not None and frame.mvid in debug_metas:
            needed.setdefault(frame.mvid, debug_metas[frame.mvid])

    return StackTraceInformation(frames=frames, debug_metas=needed)
