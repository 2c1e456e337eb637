"""Shared fixtures: a small compiled-looking assembly and its portable PDB."""
import os
import sys
import uuid
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from builders import (  # noqa: E402
    BOOLEAN, INT32, IL_LDARG_0, IL_LDC_I4_1, IL_POP, IL_RET, STRING, VOID,
    AssemblyBuilder, PortablePdbBuilder, attribute_value, by_ref, class_type,
    field_sig, generic_inst, il_call, il_ldftn, il_ldsfld, il_newobj, il_stsfld,
    local_sig, method_sig, method_var, ser_string, string_array_argument,
    sz_array, value_type,
)
from clr_symbolicator.metadata_reader import Table  # noqa: E402
from clr_symbolicator.models import HIDDEN_LINE  # noqa: E402

SAMPLE_MVID = uuid.UUID("6f1e2d3c-4b5a-4978-8a9b-0c1d2e3f4a5b")
SAMPLE_PDB_GUID = uuid.UUID("0a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d")
SAMPLE_CHECKSUM = ("SHA256", bytes(range(32)))

ASYNC_STATE_MACHINE = "System.Runtime.CompilerServices.AsyncStateMachineAttribute"
ITERATOR_STATE_MACHINE = "System.Runtime.CompilerServices.IteratorStateMachineAttribute"
TUPLE_ELEMENT_NAMES = "System.Runtime.CompilerServices.TupleElementNamesAttribute"


def build_sample_assembly():
    """
    Assemble ``Sample.dll`` with the shapes the C# compiler emits.

    Returns:
        Namespace with ``image`` (PE bytes), ``pdb`` (portable PDB bytes) and
        the metadata token of every interesting method.
    """
    asm = AssemblyBuilder("Sample", mvid=SAMPLE_MVID)
    t = SimpleNamespace()
    system_type = class_type(asm.type_ref("System.Type"))
    action = asm.type_ref("System.Action")
    action_ctor = asm.member_ref(action, ".ctor", method_sig(VOID, class_type(asm.type_ref("System.Object")),
                                                            b"\x18"))

    # class Program
    program = asm.add_type("Program", "Sample")
    t.s_action = asm.add_field(program, "s_action", field_sig(class_type(action)), static=True)
    t.start = asm.add_method(program, "Start", method_sig(VOID))
    t.local1 = asm.add_method(program, "<Start>g__LocalFunc1|0_0", method_sig(VOID, BOOLEAN, has_this=False),
                              params=[(1, "a", 0)], static=True)
    t.local2 = asm.add_method(program, "<Start>g__LocalFunc2|0_1",
                              method_sig(VOID, BOOLEAN, BOOLEAN, has_this=False),
                              params=[(1, "a", 0), (2, "b", 0)], static=True)
    t.run = asm.add_method(program, "Run", method_sig(VOID, INT32), params=[(1, "value", 0)])
    t.main = asm.add_method(program, "Main", method_sig(VOID, sz_array(STRING), has_this=False),
                            params=[(1, "args", 0)], static=True)
    t.swap = asm.add_method(program, "Swap",
                            method_sig(VOID, by_ref(method_var(0)), by_ref(method_var(0)),
                                       has_this=False, generic_count=1),
                            params=[(1, "left", 0), (2, "right", 0)], static=True, generic_parameters=["T"])
    t.pair = asm.add_method(program, "Pair",
                            method_sig(generic_inst(asm.type_ref("System.ValueTuple`2"), INT32, STRING,
                                                    is_value_type=True)),
                            params=[(0, None, 0)])
    t.cctor = asm.add_method(program, ".cctor", method_sig(VOID, has_this=False), static=True)
    t.ctor = asm.add_method(program, ".ctor", method_sig(VOID))
    asm.add_attribute((Table.PARAM, asm.param_rid(t.pair, 0)), TUPLE_ELEMENT_NAMES,
                      [sz_array(STRING)], attribute_value(string_array_argument(["a", "b"])))

    # Closure of Run
    display_class = asm.add_type("<>c__DisplayClass1_0", nested_in=program, compiler_generated=True)
    t.display_class_ctor = asm.add_method(display_class, ".ctor", method_sig(VOID))
    t.run_lambda0 = asm.add_method(display_class, "<Run>b__0", method_sig(VOID))
    t.run_lambda1 = asm.add_method(display_class, "<Run>b__1", method_sig(VOID))

    # Cache class of non-capturing lambdas
    cache_class = asm.add_type("<>c", nested_in=program, compiler_generated=True)
    t.cache_instance = asm.add_field(cache_class, "<>9", field_sig(class_type((Table.TYPE_DEF, cache_class))),
                                     static=True)
    t.cache_cctor = asm.add_method(cache_class, ".cctor", method_sig(VOID, has_this=False), static=True)
    t.cache_ctor = asm.add_method(cache_class, ".ctor", method_sig(VOID))
    t.main_lambda0 = asm.add_method(cache_class, "<Main>b__2_0", method_sig(VOID))
    t.main_lambda1 = asm.add_method(cache_class, "<Main>b__2_1", method_sig(VOID))
    t.field_lambda = asm.add_method(cache_class, "<.cctor>b__7_0", method_sig(VOID))

    # class Worker
    worker = asm.add_type("Worker", "Sample")
    t.run_async = asm.add_method(
        worker, "RunAsync",
        method_sig(generic_inst(asm.type_ref("System.Threading.Tasks.Task`1"), INT32),
                   value_type(asm.type_ref("System.Threading.CancellationToken"))),
        params=[(1, "token", 0)])
    t.numbers = asm.add_method(
        worker, "Numbers",
        method_sig(generic_inst(asm.type_ref("System.Collections.Generic.IEnumerable`1"), INT32)))
    asm.add_attribute((Table.METHOD_DEF, t.run_async & 0xFFFFFF), ASYNC_STATE_MACHINE, [system_type],
                      attribute_value(ser_string("Sample.Worker+<RunAsync>d__0")))
    asm.add_attribute((Table.METHOD_DEF, t.numbers & 0xFFFFFF), ITERATOR_STATE_MACHINE, [system_type],
                      attribute_value(ser_string("Sample.Worker+<Numbers>d__1")))

    async_machine = asm.add_type("<RunAsync>d__0", nested_in=worker, extends="System.ValueType",
                                 interfaces=["System.Runtime.CompilerServices.IAsyncStateMachine"],
                                 compiler_generated=True)
    t.async_move_next = asm.add_method(async_machine, "MoveNext", method_sig(VOID))

    iterator_machine = asm.add_type("<Numbers>d__1", nested_in=worker,
                                    interfaces=["System.Collections.IEnumerator"], compiler_generated=True)
    t.iterator_move_next = asm.add_method(iterator_machine, "MoveNext", method_sig(BOOLEAN))

    # Bodies
    asm.set_body(t.start, IL_LDC_I4_1 + il_call(t.local1) + IL_RET)
    asm.set_body(t.local1, IL_LDARG_0 + IL_LDARG_0 + il_call(t.local2) + IL_RET)
    asm.set_body(t.local2, IL_RET)
    asm.set_body(t.run, il_newobj(t.display_class_ctor) + b"\x0a" + IL_RET,
                 local_sig(class_type((Table.TYPE_DEF, display_class))))
    asm.set_body(t.main, il_ldsfld(t.cache_instance) + il_ldftn(t.main_lambda0) + IL_POP + IL_POP
                 + il_ldsfld(t.cache_instance) + il_ldftn(t.main_lambda1) + IL_POP + IL_POP + IL_RET)
    asm.set_body(t.cctor, il_ldsfld(t.cache_instance) + il_ldftn(t.field_lambda) + il_newobj(action_ctor)
                 + il_stsfld(t.s_action) + IL_RET)
    asm.set_body(t.cache_cctor, il_newobj(t.cache_ctor) + il_stsfld(t.cache_instance) + IL_RET)
    for token in (t.run_lambda0, t.run_lambda1, t.main_lambda0, t.main_lambda1, t.field_lambda,
                  t.async_move_next, t.iterator_move_next):
        asm.set_body(token, IL_RET)

    # Symbols
    pdb = PortablePdbBuilder(SAMPLE_PDB_GUID, method_count=asm.method_count, type_count=asm.type_count)
    program_cs = pdb.add_document("/src/Program.cs")
    worker_cs = pdb.add_document("/src/Worker.cs")
    pdb.add_method(t.local2 & 0xFFFFFF, program_cs, [(0, 42, 13, 42, 30), (5, 43, 9, 43, 20)])
    pdb.add_method(t.start & 0xFFFFFF, program_cs, [(0, 10, 5, 10, 6), (1, 11, 9, 11, 25), (6, 12, 5, 12, 6)])
    pdb.add_method(t.async_move_next & 0xFFFFFF, worker_cs, [
        (0, HIDDEN_LINE, 0, HIDDEN_LINE, 0),
        (2, 17, 9, 17, 40),
        (10, HIDDEN_LINE, 0, HIDDEN_LINE, 0),
        (14, 18, 13, 18, 25),
    ])

    return SimpleNamespace(
        builder=asm,
        image=asm.build(pdb_guid=SAMPLE_PDB_GUID, pdb_path="/build/Sample.pdb", checksum=SAMPLE_CHECKSUM),
        pdb=pdb.build(),
        tokens=t,
        mvid=SAMPLE_MVID,
        pdb_guid=SAMPLE_PDB_GUID,
    )


@pytest.fixture(scope="session")
def sample():
    """The sample assembly, built once per test session."""
    return build_sample_assembly()


@pytest.fixture
def sample_files(sample, tmp_path):
    """Sample.dll on disk plus a symbol store holding Sample.pdb under its MVID."""
    dll = tmp_path / "Sample.dll"
    dll.write_bytes(sample.image)
    symbols = tmp_path / "symbols"
    pdb_dir = symbols / sample.mvid.hex
    pdb_dir.mkdir(parents=True)
    (pdb_dir / "Sample.pdb").write_bytes(sample.pdb)
    return SimpleNamespace(dll=str(dll), symbols=str(symbols), pdb=str(pdb_dir / "Sample.pdb"))
