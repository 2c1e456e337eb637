"""Tests for the command line interface."""
import json

import pytest

from builders import AssemblyBuilder
from clr_symbolicator.cli import main
from clr_symbolicator.config import (
    ENV_ATTEMPT_ORIGINAL_PATH, ENV_SYMBOL_SERVER, ENV_SYMBOLS_PATH, ENV_VERBOSE,
)
from clr_symbolicator.formatting import to_json
from clr_symbolicator.reflection import AssemblyMetadataProvider
from clr_symbolicator.symbolicator import CapturedFrame, build_stack_trace


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (ENV_SYMBOLS_PATH, ENV_ATTEMPT_ORIGINAL_PATH, ENV_SYMBOL_SERVER, ENV_VERBOSE):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def trace_file(sample, sample_files, tmp_path):
    """A captured trace of Sample.dll, not yet symbolicated."""
    provider = AssemblyMetadataProvider.from_file(sample_files.dll)
    info = build_stack_trace([
        CapturedFrame(method=provider.find_method(sample.tokens.local2), offset=6),
        CapturedFrame(method=provider.find_method(sample.tokens.start), offset=1),
    ], provider)
    path = tmp_path / "trace.json"
    path.write_text(to_json(info), encoding="utf-8")
    return str(path)


def test_debug_meta(sample, sample_files, capsys):
    assert main(["debug-meta", sample_files.dll]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["moduleId"] == str(sample.mvid)
    assert data["guid"] == str(sample.pdb_guid)
    assert data["isPortable"] is True
    assert data["file"] == "/build/Sample.pdb"


def test_debug_meta_stripped_module(tmp_path, capsys):
    dll = tmp_path / "Stripped.dll"
    dll.write_bytes(AssemblyBuilder("Stripped").build(debug_directory=False))
    assert main(["debug-meta", str(dll)]) == 1
    assert "No debug information" in capsys.readouterr().err


def test_debug_meta_corrupt_module(sample, tmp_path, capsys):
    """Malformed images exit with status 2."""
    data = bytearray(sample.image)
    index = bytes(data).find(b"BSJB")
    data[index:index + 4] = b"JUNK"
    dll = tmp_path / "Corrupt.dll"
    dll.write_bytes(bytes(data))
    assert main(["debug-meta", str(dll)]) == 2
    assert "[!]" in capsys.readouterr().err


def test_debug_meta_missing_file(tmp_path):
    assert main(["debug-meta", str(tmp_path / "Missing.dll")]) == 1


def test_resolve(sample, sample_files, capsys):
    assert main(["resolve", sample_files.dll, hex(sample.tokens.local2)]) == 0
    assert capsys.readouterr().out.strip() == "void Sample.Program.Start()+LocalFunc2(bool a, bool b)"


def test_resolve_requires_valid_token(sample_files):
    with pytest.raises(SystemExit):
        main(["resolve", sample_files.dll])
    with pytest.raises(SystemExit):
        main(["resolve", sample_files.dll, "not-a-token"])


def test_resolve_unknown_token(sample_files, capsys):
    assert main(["resolve", sample_files.dll, "0x06FFFFFF"]) == 1
    assert "No method with token 0x06FFFFFF" in capsys.readouterr().err


def test_symbolicate_text(sample_files, trace_file, capsys):
    assert main(["symbolicate", trace_file, "--symbols-path", sample_files.symbols, "--no-original-path"]) == 0
    out = capsys.readouterr().out
    assert "   at void Sample.Program.Start()+LocalFunc2(bool a, bool b) in /src/Program.cs:line 43:9" in out
    assert "   at void Sample.Program.Start() in /src/Program.cs:line 11:9" in out


def test_symbolicate_json_to_file(sample_files, trace_file, tmp_path, capsys):
    output = tmp_path / "out.json"
    assert main(["symbolicate", trace_file, "--symbols-path", sample_files.symbols,
                 "--no-original-path", "--format", "json", "-o", str(output)]) == 0
    assert "Results saved to" in capsys.readouterr().out
    data = json.loads(output.read_text(encoding="utf-8"))
    assert [f["lineNumber"] for f in data["frames"]] == [43, 11]


def test_symbolicate_without_symbols(trace_file, tmp_path, capsys):
    """Frames stay unresolved but the command still succeeds."""
    assert main(["symbolicate", trace_file, "--symbols-path", str(tmp_path / "empty"), "--no-original-path"]) == 0
    out = capsys.readouterr().out
    assert "   at void Sample.Program.Start() in <" in out


def test_symbolicate_invalid_json(tmp_path, capsys):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert main(["symbolicate", str(bad)]) == 1
    assert "[!]" in capsys.readouterr().err


def test_symbolicate_missing_file(tmp_path):
    assert main(["symbolicate", str(tmp_path / "missing.json")]) == 1
