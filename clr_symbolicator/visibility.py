"""Frame visibility.

Decides which frames belong in a rendered trace. Runtime plumbing (task
trampolines, awaiters, execution context runners), aggressively inlined
methods and anything marked ``[StackTraceHidden]`` are left out. The last
frame is always kept so a trace never renders empty.
"""
from __future__ import annotations

from typing import Callable, List, Optional, Sequence, TypeVar

from .reflection import STACK_TRACE_HIDDEN_ATTRIBUTE, MethodDefinition

T = TypeVar("T")

# Declaring type -> hidden method names (empty set hides every method)
HIDDEN_METHODS = {
    "System.Threading.Tasks.Task`1": {"InnerInvoke"},
    "System.Threading.Tasks.ValueTask`1": {"get_Result"},
    "System.Threading.Tasks.Task": {
        "ExecuteWithThreadLocal", "Execute", "ExecutionContextCallback", "ExecuteEntry", "InnerInvoke",
    },
    "System.Threading.ExecutionContext": {"RunInternal", "Run"},
    "System.Runtime.ExceptionServices.ExceptionDispatchInfo": {"Throw"},
    "System.ThrowHelper": set(),
}

AWAITER_TYPES = {
    "System.Runtime.CompilerServices.TaskAwaiter",
    "System.Runtime.CompilerServices.TaskAwaiter`1",
    "System.Runtime.CompilerServices.ValueTaskAwaiter",
    "System.Runtime.CompilerServices.ValueTaskAwaiter`1",
    "System.Runtime.CompilerServices.ConfiguredValueTaskAwaitable+ConfiguredValueTaskAwaiter",
    "System.Runtime.CompilerServices.ConfiguredValueTaskAwaitable`1+ConfiguredValueTaskAwaiter",
    "System.Runtime.CompilerServices.ConfiguredTaskAwaitable+ConfiguredTaskAwaiter",
    "System.Runtime.CompilerServices.ConfiguredTaskAwaitable`1+ConfiguredTaskAwaiter",
}

AWAITER_METHODS = {"HandleNonSuccessAndDebuggerNotification", "ThrowForNonSuccess", "ValidateEnd", "GetResult"}


def show_in_stack_trace(method: MethodDefinition) -> bool:
    """True if a frame running ``method`` should be rendered."""
    if method.is_aggressive_inlining:
        return False
    if method.has_attribute(STACK_TRACE_HIDDEN_ATTRIBUTE):
        return False

    type_def = method.declaring_type
    if type_def is None:
        return True
    if type_def.has_attribute(STACK_TRACE_HIDDEN_ATTRIBUTE):
        return False

    type_name = type_def.full_name
    if type_name in HIDDEN_METHODS:
        names = HIDDEN_METHODS[type_name]
        if not names or method.name in names:
            return False
    if type_name in AWAITER_TYPES and method.name in AWAITER_METHODS:
        return False
    return True


def filter_frames(frames: Sequence[T],
                  get_method: Callable[[T], Optional[MethodDefinition]]) -> List[T]:
    """
    Drop hidden frames, always keeping the last one.

    Args:
        frames: Frames innermost first.
        get_method: Returns the method a frame runs, or None if unknown.

    Returns:
        The visible frames, in order.
    """
    visible = []
    last = len(frames) - 1
    for i, frame in enumerate(frames):
        method = get_method(frame)
        if method is not None and i < last and not show_in_stack_trace(method):
            continue
        visible.append(frame)
    return visible
