"""End-to-end tests: captured frames to demystified, symbolicated traces."""
import uuid
from unittest.mock import MagicMock, Mock

import pytest

from builders import (
    IL_POP, IL_RET, AssemblyBuilder, PortablePdbBuilder, VOID, class_type, il_call,
    il_ldftn, il_newobj, local_sig, method_sig,
)
from clr_symbolicator.config import SymbolicateOptions
from clr_symbolicator.demystifier import Demystifier
from clr_symbolicator.metadata_reader import Table
from clr_symbolicator.models import DebugMeta, StackFrameInformation
from clr_symbolicator.reflection import AssemblyMetadataProvider
from clr_symbolicator.symbol_cache import SymbolReaderCache
from clr_symbolicator.symbolicator import (
    CapturedFrame, StackTraceSymbolicator, build_frame, build_stack_trace,
)


def _options(symbols_path):
    return SymbolicateOptions(symbols_path=symbols_path, attempt_original_symbol_path=False)


@pytest.fixture
def provider(sample_files):
    return AssemblyMetadataProvider.from_file(sample_files.dll)


def _captured(provider, token, offset, **kwargs):
    return CapturedFrame(method=provider.find_method(token), offset=offset, **kwargs)


def test_sample_trace_end_to_end(sample, sample_files, provider):
    """Names are demystified and locations come from the portable PDB."""
    t = sample.tokens
    info = build_stack_trace([
        _captured(provider, t.local2, 6),
        _captured(provider, t.local1, 2),
        _captured(provider, t.start, 1),
    ], provider)
    assert list(info.debug_metas) == [sample.mvid]

    with StackTraceSymbolicator(_options(sample_files.symbols)) as symbolicator:
        symbolicator.symbolicate(info)
        assert symbolicator.stats['frames_symbolicated'] == 2
        assert symbolicator.stats['frames_unresolved'] == 1

    local2, local1, start = info.frames
    assert local2.method == "void Sample.Program.Start()+LocalFunc2(bool a, bool b)"
    assert (local2.file_name, local2.line_number, local2.column_number) == ("/src/Program.cs", 43, 9)
    assert local2.method_index == t.local2
    assert local2.mvid == sample.mvid
    assert local2.type_full_name == "Sample.Program"
    assert local2.assembly_full_name == "Sample, Version=1.0.0.0, Culture=neutral, PublicKeyToken=null"

    # No sequence points recorded for LocalFunc1
    assert local1.method == "void Sample.Program.Start()+LocalFunc1(bool a)"
    assert local1.line_number is None

    assert start.method == "void Sample.Program.Start()"
    assert (start.line_number, start.column_number) == (11, 9)
    assert info.errors == []


def test_async_frame_skips_hidden_points(sample, sample_files, provider):
    """An offset past a hidden point maps to the real point before it."""
    info = build_stack_trace([_captured(provider, sample.tokens.async_move_next, 12)], provider)
    with StackTraceSymbolicator(_options(sample_files.symbols)) as symbolicator:
        symbolicator.symbolicate(info)
    frame = info.frames[0]
    assert frame.method == "async Task<int> Sample.Worker.RunAsync(CancellationToken token)"
    assert frame.type_full_name == "Sample.Worker.<RunAsync>d__0"
    assert (frame.file_name, frame.line_number, frame.column_number) == ("/src/Worker.cs", 17, 9)


def test_symbolicate_is_idempotent(sample, sample_files, provider):
    info = build_stack_trace([_captured(provider, sample.tokens.start, 1)], provider)
    with StackTraceSymbolicator(_options(sample_files.symbols)) as symbolicator:
        first = list(symbolicator.symbolicate(info).frames)
        second = list(symbolicator.symbolicate(info).frames)
    assert first == second


def test_known_fields_are_not_overwritten(sample, sample_files, provider):
    """A frame's own file and column win over the PDB."""
    meta = provider.debug_meta
    frame = StackFrameInformation(method_index=sample.tokens.start, offset=1, mvid=meta.module_id,
                                  is_il_offset=True, file_name="Program.cs", column_number=3)
    with StackTraceSymbolicator(_options(sample_files.symbols)) as symbolicator:
        result = symbolicator.symbolicate_frame(frame, meta)
    assert (result.file_name, result.line_number, result.column_number) == ("Program.cs", 11, 3)


def test_frames_with_locations_are_left_alone(sample, sample_files, provider):
    info = build_stack_trace([_captured(provider, sample.tokens.start, 1, line_number=99)], provider)
    assert info.debug_metas == {}
    with StackTraceSymbolicator(_options(sample_files.symbols)) as symbolicator:
        symbolicator.symbolicate(info)
    assert info.frames[0].line_number == 99


def test_native_offsets_are_not_symbolicated(sample, sample_files, provider):
    meta = provider.debug_meta
    frame = StackFrameInformation(method_index=sample.tokens.start, offset=1, mvid=meta.module_id,
                                  is_il_offset=False)
    with StackTraceSymbolicator(_options(sample_files.symbols)) as symbolicator:
        assert symbolicator.symbolicate_frame(frame, meta) is frame


def test_missing_symbols_leave_frames_unchanged(sample, provider, tmp_path):
    info = build_stack_trace([_captured(provider, sample.tokens.start, 1)], provider)
    before = list(info.frames)
    with StackTraceSymbolicator(_options(str(tmp_path))) as symbolicator:
        symbolicator.symbolicate(info)
    assert info.frames == before
    assert info.errors == []


def test_malformed_symbols_reported_once(sample, provider, tmp_path):
    """Every frame of a module with a corrupt PDB stays unresolved; one error is kept."""
    pdb_dir = tmp_path / sample.mvid.hex
    pdb_dir.mkdir()
    (pdb_dir / "Sample.pdb").write_bytes(b"\x00" * 64)

    info = build_stack_trace([
        _captured(provider, sample.tokens.local2, 6),
        _captured(provider, sample.tokens.start, 1),
    ], provider)
    with StackTraceSymbolicator(_options(str(tmp_path))) as symbolicator:
        symbolicator.symbolicate(info)

    assert [f.line_number for f in info.frames] == [None, None]
    assert len(info.errors) == 1
    assert str(sample.mvid) in info.errors[0]


def test_download_failure_does_not_stop_other_modules(sample, sample_files, provider, tmp_path):
    """An unwritable download cache leaves one module unresolved; the next still resolves."""
    other = uuid.UUID("0a1b2c3d-4e5f-4a6b-8c7d-9e8f7a6b5c4d")
    info = build_stack_trace([_captured(provider, sample.tokens.start, 1)], provider)
    info.frames.insert(0, StackFrameInformation(method="void Other.Lib.Run()", method_index=0x06000001,
                                                offset=0, mvid=other, is_il_offset=True))
    info.debug_metas[other] = DebugMeta(file="/build/Other.pdb", module_id=other, type="ppdb",
                                        guid=other, age=1)

    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    response = MagicMock()
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    response.status_code = 200
    response.iter_content.return_value = [b"BSJB"]
    session = Mock()
    session.get.return_value = response

    options = SymbolicateOptions(symbols_path=sample_files.symbols, attempt_original_symbol_path=False,
                                 symbol_server="https://symbols.example.com",
                                 download_cache_dir=str(blocker / "cache"))
    with SymbolReaderCache(options, session=session) as cache:
        symbolicator = StackTraceSymbolicator(options, cache=cache)
        symbolicator.symbolicate(info)
        symbolicator.symbolicate(info)

    assert info.frames[0].line_number is None
    assert (info.frames[1].line_number, info.frames[1].column_number) == (11, 9)
    assert info.errors == []
    assert session.get.call_count == 1


def test_injected_cache_stays_open(sample_files):
    cache = SymbolReaderCache(_options(sample_files.symbols))
    with StackTraceSymbolicator(cache=cache):
        pass
    assert not cache.closed
    cache.close()


def test_build_frame_without_method(provider):
    """A frame with no method handle keeps only its captured fields."""
    frame = build_frame(CapturedFrame(offset=4, is_il_offset=False, aot_id="abc"), Demystifier(provider),
                        module_id=provider.module_id)
    assert frame.method is None
    assert frame.method_index is None
    assert frame.parameters is None
    assert frame.aot_id == "abc"
    assert frame.mvid == provider.module_id


def test_build_stack_trace_keeps_needed_modules(sample, provider):
    """Explicit debug metadata is used and only needed modules are kept."""
    other = uuid.UUID("00000000-0000-4000-8000-000000000001")
    metas = {provider.module_id: provider.debug_meta, other: provider.debug_meta}
    info = build_stack_trace([_captured(provider, sample.tokens.run, 0)], provider, debug_metas=metas)
    assert list(info.debug_metas) == [provider.module_id]
    assert info.frames[0].parameters == ("int value",)


# ============================================================================
# DEEPLY NESTED LOCAL FUNCTIONS AND LAMBDAS
# ============================================================================

NESTED_MVID = uuid.UUID("5e4d3c2b-1a09-4f8e-9d7c-6b5a49382716")
NESTED_PDB_GUID = uuid.UUID("c0ffee00-1234-4abc-9def-0123456789ab")


def _nested_module(tmp_path):
    """Outer -> Level1 -> Level2 -> lambda -> Level4, with a PDB in a symbol store."""
    asm = AssemblyBuilder("module", mvid=NESTED_MVID)
    nested = asm.add_type("Nested", "Sample")
    outer = asm.add_method(nested, "Outer", method_sig(VOID))
    level1 = asm.add_method(nested, "<Outer>g__Level1|0_0", method_sig(VOID, has_this=False), static=True)
    level2 = asm.add_method(nested, "<Outer>g__Level2|0_1", method_sig(VOID, has_this=False), static=True)
    level4 = asm.add_method(nested, "<Outer>g__Level4|0_4", method_sig(VOID, has_this=False), static=True)

    closure = asm.add_type("<>c__DisplayClass0_0", nested_in=nested, compiler_generated=True)
    closure_ctor = asm.add_method(closure, ".ctor", method_sig(VOID))
    lambda2 = asm.add_method(closure, "<Outer>b__2", method_sig(VOID))
    lambda3 = asm.add_method(closure, "<Outer>b__3", method_sig(VOID))

    asm.set_body(outer, il_newobj(closure_ctor) + b"\x0a" + il_call(level1) + IL_RET,
                 local_sig(class_type((Table.TYPE_DEF, closure))))
    asm.set_body(level1, il_call(level2) + IL_RET)
    asm.set_body(level2, b"\x00" + il_ldftn(lambda2) + IL_POP + IL_RET)
    asm.set_body(lambda2, il_call(level4) + IL_RET)
    asm.set_body(lambda3, IL_RET)
    asm.set_body(level4, b"\x00" + IL_RET)

    pdb = PortablePdbBuilder(NESTED_PDB_GUID, method_count=asm.method_count, type_count=asm.type_count)
    doc = pdb.add_document("C:\\src\\Nested.cs")
    pdb.add_method(outer & 0xFFFFFF, doc, [(0, 10, 9, 10, 30), (6, 11, 9, 11, 18)])
    pdb.add_method(level1 & 0xFFFFFF, doc, [(0, 20, 13, 20, 22)])
    pdb.add_method(level2 & 0xFFFFFF, doc, [(0, 28, 9, 28, 10), (1, 29, 13, 29, 50)])
    pdb.add_method(lambda2 & 0xFFFFFF, doc, [(0, 30, 23, 30, 32)])
    pdb.add_method(level4 & 0xFFFFFF, doc, [(0, 40, 13, 40, 40)])

    dll = tmp_path / "module.dll"
    dll.write_bytes(asm.build(pdb_guid=NESTED_PDB_GUID, pdb_path="C:\\build\\module.pdb"))
    symbols = tmp_path / "symbols"
    (symbols / NESTED_MVID.hex).mkdir(parents=True)
    (symbols / NESTED_MVID.hex / "module.pdb").write_bytes(pdb.build())
    tokens = dict(outer=outer, level1=level1, level2=level2, lambda2=lambda2, level4=level4)
    return str(dll), str(symbols), tokens


def test_nested_local_functions_and_lambdas(tmp_path):
    """Every level resolves to Outer with its own sub-method and source line."""
    dll, symbols, tokens = _nested_module(tmp_path)
    provider = AssemblyMetadataProvider.from_file(dll)
    info = build_stack_trace([
        _captured(provider, tokens["level4"], 0),
        _captured(provider, tokens["lambda2"], 5),
        _captured(provider, tokens["level2"], 6),
        _captured(provider, tokens["level1"], 0),
        _captured(provider, tokens["outer"], 6),
    ], provider)

    with StackTraceSymbolicator(_options(symbols)) as symbolicator:
        symbolicator.symbolicate(info)

    assert [f.method for f in info.frames] == [
        "void Sample.Nested.Outer()+Level4()",
        "void Sample.Nested.Outer()+() => { } [2]",
        "void Sample.Nested.Outer()+Level2()",
        "void Sample.Nested.Outer()+Level1()",
        "void Sample.Nested.Outer()",
    ]
    assert [(f.line_number, f.column_number) for f in info.frames] == [
        (40, 13), (30, 23), (29, 13), (20, 13), (11, 9),
    ]
    assert {f.file_name for f in info.frames} == {"C:\\src\\Nested.cs"}
    assert info.errors == []
