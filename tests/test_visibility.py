"""Tests for hiding runtime plumbing frames."""
from clr_symbolicator.reflection import (
    METHOD_IMPL_AGGRESSIVE_INLINING,
    STACK_TRACE_HIDDEN_ATTRIBUTE,
    CustomAttribute,
    MethodDefinition,
    TypeDefinition,
)
from clr_symbolicator.visibility import filter_frames, show_in_stack_trace


def _method(type_name, name, **kwargs):
    namespace, _, short = type_name.rpartition(".")
    type_def = TypeDefinition(short, namespace)
    return type_def.add_method(MethodDefinition(name, **kwargs))


def test_user_methods_are_shown():
    assert show_in_stack_trace(_method("Shop.Checkout", "Pay"))
    assert show_in_stack_trace(MethodDefinition("DynamicMethod"))


def test_aggressive_inlining_hidden():
    assert not show_in_stack_trace(_method("Shop.Checkout", "Pay", impl_flags=METHOD_IMPL_AGGRESSIVE_INLINING))


def test_stack_trace_hidden_method_and_type():
    """The attribute hides a method, or every method of a type."""
    hidden = CustomAttribute(STACK_TRACE_HIDDEN_ATTRIBUTE)
    assert not show_in_stack_trace(_method("Shop.Guard", "Check", attributes=[hidden]))

    guard = TypeDefinition("Guard", "Shop", attributes=[hidden])
    assert not show_in_stack_trace(guard.add_method(MethodDefinition("Check")))


def test_task_plumbing_hidden():
    assert not show_in_stack_trace(_method("System.Threading.Tasks.Task`1", "InnerInvoke"))
    assert not show_in_stack_trace(_method("System.Threading.ExecutionContext", "RunInternal"))
    assert not show_in_stack_trace(_method("System.Runtime.ExceptionServices.ExceptionDispatchInfo", "Throw"))
    assert show_in_stack_trace(_method("System.Threading.Tasks.Task", "Wait"))


def test_throw_helper_hidden_entirely():
    assert not show_in_stack_trace(_method("System.ThrowHelper", "ThrowArgumentNullException"))


def test_awaiters_hidden():
    assert not show_in_stack_trace(_method("System.Runtime.CompilerServices.TaskAwaiter", "GetResult"))
    assert not show_in_stack_trace(
        _method("System.Runtime.CompilerServices.TaskAwaiter`1", "HandleNonSuccessAndDebuggerNotification"))
    assert show_in_stack_trace(_method("System.Runtime.CompilerServices.TaskAwaiter", "OnCompleted"))


def test_filter_frames_keeps_last_frame():
    """Hidden frames drop out, but the outermost frame always stays."""
    inner = _method("Shop.Checkout", "Pay")
    plumbing = _method("System.Runtime.CompilerServices.TaskAwaiter", "GetResult")
    entry = _method("System.Threading.ExecutionContext", "Run")
    frames = [inner, plumbing, None, entry]

    assert filter_frames(frames, lambda m: m) == [inner, None, entry]


def test_filter_frames_empty():
    assert filter_frames([], lambda m: m) == []
