"""Tests for text and JSON rendering of traces."""
import json
import uuid

import pytest

from clr_symbolicator.formatting import from_json, render_frame, render_text, to_dict, to_json
from clr_symbolicator.models import DebugMeta, StackFrameInformation, StackTraceInformation

MVID = uuid.UUID("0d9c8b7a-6958-4a3b-9c2d-1e0f2a3b4c5d")


def _trace():
    meta = DebugMeta(file="/build/App.pdb", module_id=MVID, type="ppdb", guid=MVID, age=1,
                     checksums=("SHA256:00ff",))
    frames = [
        StackFrameInformation(
            method="void App.Program.Main(string[] args)", method_index=0x06000001, offset=12,
            mvid=MVID, is_il_offset=True, assembly_full_name="App, Version=1.0.0.0",
            type_full_name="App.Program", parameters=("string[] args",), generic_arguments=(),
        ),
        StackFrameInformation(method="void App.Worker.Run()", file_name="/src/Worker.cs",
                              line_number=14, column_number=9),
    ]
    return StackTraceInformation(frames=frames, debug_metas={MVID: meta}, errors=["one"])


def test_render_frame_with_location():
    frame = StackFrameInformation(method="void A.B()", file_name="/src/B.cs", line_number=3, column_number=7)
    assert render_frame(frame) == "   at void A.B() in /src/B.cs:line 3:7"


def test_render_frame_with_module_placeholder():
    """Frames without a file show the module id and AOT id."""
    frame = StackFrameInformation(method="void A.B()", mvid=MVID, aot_id="f00d")
    assert render_frame(frame) == f"   at void A.B() in <{MVID.hex}#f00d>"
    assert render_frame(StackFrameInformation(method="void A.B()", mvid=MVID)) == f"   at void A.B() in <{MVID.hex}>"


def test_render_frame_bare():
    assert render_frame(StackFrameInformation(method="void A.B()")) == "   at void A.B()"
    assert render_frame(StackFrameInformation(offset=4)) is None


def test_render_text_skips_frames_without_method():
    info = StackTraceInformation(frames=[
        StackFrameInformation(method="void A.B()"),
        StackFrameInformation(offset=1),
        StackFrameInformation(method="void A.C()"),
    ])
    assert render_text(info) == "   at void A.B()\n   at void A.C()\n"
    assert str(info) == render_text(info)


def test_json_round_trip():
    info = _trace()
    assert from_json(to_json(info)) == info
    assert from_json(info.to_string("json")) == info


def test_json_keeps_nulls_and_camel_case_keys():
    data = to_dict(_trace())
    first = data["frames"][0]
    assert first["methodIndex"] == 0x06000001
    assert first["isILOffset"] is True
    assert first["fileName"] is None
    assert first["lineNumber"] is None
    assert first["mvid"] == str(MVID)
    assert data["debugMetas"][str(MVID)]["isPortable"] is True
    assert json.loads(to_json(_trace(), indent=None))["errors"] == ["one"]


def test_from_json_minimal():
    """Missing collections default to empty."""
    info = from_json('{"frames": [{"method": "void A.B()"}]}')
    assert info.frames[0].method == "void A.B()"
    assert info.frames[0].mvid is None
    assert info.debug_metas == {}
    assert info.errors == []


@pytest.mark.parametrize("text", [
    "not json",
    '{"frames": [], "debugMetas": {"00000000-0000-0000-0000-000000000000": {"file": "x"}}}',
    '{"frames": 3}',
])
def test_from_json_invalid(text):
    with pytest.raises(ValueError):
        from_json(text)
