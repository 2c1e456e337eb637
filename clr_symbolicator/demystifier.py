"""Demystifier.

Turns compiler-generated methods back into the source-level method that a
developer wrote:

- async / iterator state machine ``MoveNext`` -> the owning method
- lambdas ``<Outer>b__0_1`` -> ``Outer(...)+() => { } [1]``
- local functions ``<Outer>g__Local|0_0`` -> ``Outer(...)+Local(...)``
- lambdas stored in static fields -> the field name

Everything is answered through a MetadataProvider. When the source-level
method cannot be confirmed the frame falls back to a weaker display form;
nothing here raises for "could not demystify".
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .errors import SymbolicationError
from .il_reader import OperandType, iter_instructions
from .models import ResolvedMethod, ResolvedParameter
from .reflection import (
    ASYNC_STATE_MACHINE_INTERFACE, DYNAMIC_ATTRIBUTE, ENUMERATOR_INTERFACE,
    ITERATOR_ATTRIBUTES, PARAM_ARRAY_ATTRIBUTE, STATE_MACHINE_ATTRIBUTES,
    TUPLE_ELEMENT_NAMES_ATTRIBUTE, MetadataProvider, MethodDefinition,
    ParameterDefinition, TypeDefinition, TypeSignature,
)
from .symbol_cache import safe_print
from .type_names import get_type_definition_display_name, get_type_display_name

# Enclosing types searched above the generated method's own type
MAX_RESOLVE_DEPTH = 10

VALUE_TUPLE_PREFIX = "System.ValueTuple`"


class GeneratedNameKind(Enum):
    """Tag character that follows ``<original>`` in a generated name."""
    NONE = ""
    THIS_PROXY_FIELD = "4"
    HOISTED_LOCAL_FIELD = "5"
    DISPLAY_CLASS_LOCAL_OR_FIELD = "8"
    LAMBDA_METHOD = "b"
    LAMBDA_DISPLAY_CLASS = "c"
    STATE_MACHINE_TYPE = "d"
    LOCAL_FUNCTION = "g"
    AWAITER_FIELD = "u"
    HOISTED_SYNTHESIZED_LOCAL_FIELD = "s"
    STATE_MACHINE_STATE_FIELD = "1"
    ITERATOR_CURRENT_BACKING_FIELD = "2"
    STATE_MACHINE_PARAMETER_PROXY_FIELD = "3"
    REUSABLE_HOISTED_LOCAL_FIELD = "7"
    LAMBDA_CACHE_FIELD = "9"
    FIXED_BUFFER_FIELD = "e"
    ANONYMOUS_TYPE = "f"
    TRANSPARENT_IDENTIFIER = "h"
    ANONYMOUS_TYPE_FIELD = "i"
    AUTO_PROPERTY_BACKING_FIELD = "k"
    ITERATOR_CURRENT_THREAD_ID_FIELD = "l"
    ITERATOR_FINALLY_METHOD = "m"
    BASE_METHOD_WRAPPER = "n"
    DYNAMIC_CALL_SITE_CONTAINER_TYPE = "o"
    DYNAMIC_CALL_SITE_FIELD = "p"
    ASYNC_BUILDER_FIELD = "t"


_KINDS = {kind.value: kind for kind in GeneratedNameKind if kind.value}


@dataclass(frozen=True)
class GeneratedName:
    """A parsed ``[CS$]<original>c[__suffix]`` name."""
    name: str
    kind: GeneratedNameKind
    tag: str
    open_bracket: int
    close_bracket: int

    @property
    def original_name(self) -> str:
        return self.name[self.open_bracket + 1:self.close_bracket]


def _index_of_balanced(name: str, opening_offset: int, closing: str) -> int:
    opening = name[opening_offset]
    depth = 1
    for i in range(opening_offset + 1, len(name)):
        c = name[i]
        if c == opening:
            depth += 1
        elif c == closing:
            depth -= 1
            if depth == 0:
                return i
    return -1


def try_parse_generated_name(name: str) -> Optional[GeneratedName]:
    """Parse a compiler-generated name.

    Accepts ``[CS$]<middle>c[__suffix]`` where ``middle`` may itself contain
    balanced brackets and ``c`` is a single character in ``[1-9a-z]``
    ('0' is not special). Returns None for ordinary names.
    """
    if name.startswith("CS$<"):
        open_bracket = 3
    elif name.startswith("<"):
        open_bracket = 0
    else:
        return None

    close_bracket = _index_of_balanced(name, open_bracket, ">")
    if close_bracket < 0 or close_bracket + 1 >= len(name):
        return None

    tag = name[close_bracket + 1]
    if not ("1" <= tag <= "9" or "a" <= tag <= "z"):
        return None
    return GeneratedName(name, _KINDS.get(tag, GeneratedNameKind.NONE), tag, open_bracket, close_bracket)


@dataclass
class _GeneratedNameResolution:
    resolved: bool
    method: MethodDefinition
    type: Optional[TypeDefinition]
    method_name: str
    sub_method_name: Optional[str]
    kind: GeneratedNameKind
    ordinal: Optional[int] = None


class Demystifier:
    """
    Resolves methods to their source-level display form.

    Args:
        provider: Metadata of the module the methods belong to.
        verbose: Log candidates whose IL could not be read.
    """

    def __init__(self, provider: MetadataProvider, verbose: bool = False):
        self.provider = provider
        self.verbose = verbose

    def _log(self, message: str):
        """Log a message if verbose mode is enabled."""
        if self.verbose:
            safe_print(f"[SYMBOL] {message}")

    # ========================================================================
    # RESOLUTION
    # ========================================================================

    def resolve(self, method: Optional[MethodDefinition]) -> Optional[ResolvedMethod]:
        """
        Build the display form of a method.

        Args:
            method: The method of a captured frame, None if capture had no handle.

        Returns:
            ResolvedMethod, or None when there is no method to resolve.
        """
        if method is None:
            return None

        origin = method
        result = ResolvedMethod()
        sub_method_base: Optional[MethodDefinition] = method
        type_def = method.declaring_type
        sub_method_name: Optional[str] = method.name
        method_name = method.name

        if type_def is not None and type_def.is_compiler_generated and (
                type_def.implements(ASYNC_STATE_MACHINE_INTERFACE) or type_def.implements(ENUMERATOR_INTERFACE)):
            result.is_async = type_def.implements(ASYNC_STATE_MACHINE_INTERFACE)

            # MoveNext -> the method that owns the state machine
            method, type_def, keep_sub_method = self._resolve_state_machine_method(method)
            if not keep_sub_method:
                sub_method_base = None
                sub_method_name = None
            method_name = method.name

        method_base: Optional[MethodDefinition] = method
        result.name = method_name

        if "<" in method.name:
            resolution = self._resolve_generated_name(method)
            type_def = resolution.type
            method_name = resolution.method_name
            sub_method_name = resolution.sub_method_name
            if resolution.resolved:
                method = resolution.method
                method_name = method.name
                method_base = method
                result.ordinal = resolution.ordinal
            else:
                method_base = None
            result.name = method_name

            result.is_lambda = resolution.kind is GeneratedNameKind.LAMBDA_METHOD

            if result.is_lambda and type_def is not None and method_name == ".cctor":
                # Lambda assigned to a static field in a field initializer
                field = self.provider.find_static_field_for_delegate(type_def, origin)
                if field is not None:
                    result.name = field.name
                    result.is_lambda = False
                    method = origin

        if sub_method_name != method_name:
            result.sub_method = sub_method_name

        if type_def is not None:
            result.declaring_type = get_type_definition_display_name(type_def)

        if not method.is_constructor and method.return_type is not None:
            result.return_parameter = self.get_parameter(ParameterDefinition(
                name=None,
                type=method.return_type,
                attributes=list(method.return_attributes),
            ))

        if method.is_generic:
            result.generic_arguments = [
                get_type_display_name(TypeSignature.generic_parameter(name, method=True),
                                      full_name=False, include_generic_parameter_names=True)
                for name in self.provider.get_generic_arguments(method)
            ]

        result.parameters = [self.get_parameter(p) for p in self.provider.get_parameters(method)]
        result.method_resolved = method_base is not None

        if sub_method_base is not None and sub_method_base is not method_base:
            result.sub_method_parameters = [
                self.get_parameter(p) for p in self.provider.get_parameters(sub_method_base)
                if p.name and not p.name.startswith("<")
            ]
            result.sub_method_resolved = True

        return result

    def _resolve_state_machine_method(
            self, method: MethodDefinition) -> Tuple[MethodDefinition, Optional[TypeDefinition], bool]:
        """Find the method annotated as owner of ``method``'s state machine type.

        Returns ``(method, declaring type, is iterator)``. Only iterator
        owners keep the ``+MoveNext`` annotation.
        """
        state_machine_type = method.declaring_type
        parent_type = state_machine_type.declaring_type if state_machine_type else None
        if parent_type is None:
            return method, state_machine_type, False

        for candidate in self.provider.get_methods(parent_type):
            found = False
            is_iterator = False
            for attribute in self.provider.get_custom_attributes(candidate):
                if attribute.type_name not in STATE_MACHINE_ATTRIBUTES or not attribute.arguments:
                    continue
                if _is_type(attribute.arguments[0], state_machine_type):
                    found = True
                    is_iterator |= attribute.type_name in ITERATOR_ATTRIBUTES
            if found:
                return candidate, candidate.declaring_type, is_iterator

        return method, state_machine_type, False

    # ========================================================================
    # GENERATED NAMES
    # ========================================================================

    def _resolve_generated_name(self, method: MethodDefinition) -> _GeneratedNameResolution:
        type_def = method.declaring_type
        parsed = try_parse_generated_name(method.name)
        if parsed is None:
            return _GeneratedNameResolution(False, method, type_def, method.name, None, GeneratedNameKind.NONE)

        name = method.name
        kind = parsed.kind
        method_name = parsed.original_name
        sub_method_name = None

        if kind is GeneratedNameKind.LOCAL_FUNCTION:
            # <Outer>g__Local|0_1
            local_start = name.find(parsed.tag, parsed.close_bracket + 1)
            if local_start >= 0:
                local_start += 3
                if local_start < len(name):
                    local_end = name.find("|", local_start)
                    if local_end > 0:
                        sub_method_name = name[local_start:local_end]
        elif kind is GeneratedNameKind.LAMBDA_METHOD:
            sub_method_name = ""

        failed = _GeneratedNameResolution(False, method, type_def, method_name, sub_method_name, kind)
        if type_def is None:
            return failed

        match_hint = _get_match_hint(kind, method)
        search_type = type_def
        for depth in range(MAX_RESOLVE_DEPTH + 1):
            if depth:
                search_type = search_type.declaring_type
                if search_type is None:
                    return failed

            candidates = [m for m in self.provider.get_methods(search_type) if m.name == method_name]
            # Ordinary methods before constructors
            candidates.sort(key=lambda m: m.is_constructor)
            source = self._try_resolve_source_method(candidates, kind, match_hint, method)
            if source is not None:
                candidate, ordinal = source
                return _GeneratedNameResolution(True, candidate, candidate.declaring_type, method_name,
                                                sub_method_name, kind, ordinal)

            if depth and method_name == ".cctor":
                for candidate in self.provider.get_methods(search_type):
                    if candidate.name == ".cctor":
                        return _GeneratedNameResolution(True, candidate, search_type, method_name,
                                                        sub_method_name, kind)

        return failed

    def _try_resolve_source_method(self, candidates: Sequence[MethodDefinition], kind: GeneratedNameKind,
                                   match_hint: Optional[str],
                                   method: MethodDefinition) -> Optional[Tuple[MethodDefinition, Optional[int]]]:
        """Return ``(candidate, ordinal)`` for the first candidate confirmed to originate ``method``."""
        closure_type = method.declaring_type
        for candidate in candidates:
            try:
                body = self.provider.get_method_body(candidate)
                if body is None:
                    continue

                # A display class instance held in a local of the candidate
                if kind is GeneratedNameKind.LAMBDA_METHOD and closure_type is not None:
                    if any(local.refers_to(closure_type) for local in body.local_types):
                        return candidate, self._get_ordinal(method)

                for instruction in iter_instructions(body.il):
                    if instruction.operand_type not in (OperandType.METHOD, OperandType.TOKEN):
                        continue
                    operand = self.provider.resolve_member(candidate, instruction.operand)
                    if not isinstance(operand, MethodDefinition):
                        continue
                    if operand is method or (match_hint is not None and match_hint in operand.name):
                        ordinal = self._get_ordinal(method) if kind is GeneratedNameKind.LAMBDA_METHOD else None
                        return candidate, ordinal
            except SymbolicationError as e:
                self._log(f"Skipping {candidate.name}: {e}")
        return None

    def _get_ordinal(self, method: MethodDefinition) -> Optional[int]:
        """Ordinal of a lambda among same-named siblings, e.g. 1 for ``<M>b__0_1``.

        None when the lambda has no siblings sharing its prefix.
        """
        name = method.name
        lambda_start = name.find(GeneratedNameKind.LAMBDA_METHOD.value + "__") + 3
        if lambda_start <= 3:
            return None

        second_start = name.find("_", lambda_start) + 1
        if second_start > 0:
            lambda_start = second_start

        suffix = name[lambda_start:]
        if not suffix.isdigit():
            return None
        ordinal = int(suffix)

        if method.declaring_type is None:
            return None
        prefix = name[:lambda_start]
        count = 0
        for sibling in self.provider.get_methods(method.declaring_type):
            if len(sibling.name) > lambda_start and sibling.name.startswith(prefix):
                count += 1
                if count > 1:
                    return ordinal
        return None

    # ========================================================================
    # PARAMETERS
    # ========================================================================

    def get_parameter(self, parameter: ParameterDefinition) -> ResolvedParameter:
        """Display form of a parameter (or of a return value when unnamed)."""
        attributes = self.provider.get_custom_attributes(parameter)
        prefix = _get_prefix(parameter, attributes)
        parameter_type = parameter.type

        if parameter_type.is_generic:
            tuple_names = _tuple_element_names(attributes)
            if tuple_names:
                return _value_tuple_parameter(tuple_names, prefix, parameter.name, parameter_type)

        if parameter_type.is_by_ref:
            parameter_type = parameter_type.element

        return ResolvedParameter(
            name=parameter.name,
            type_name=get_type_display_name(parameter_type, full_name=False, include_generic_parameter_names=True),
            prefix=prefix,
            is_dynamic=any(a.type_name == DYNAMIC_ATTRIBUTE for a in attributes),
        )


def _is_type(argument, type_def: TypeDefinition) -> bool:
    """True if a ``System.Type`` attribute argument names ``type_def``."""
    if isinstance(argument, TypeDefinition):
        return argument is type_def
    if isinstance(argument, str):
        return argument.split(",", 1)[0].strip() == type_def.full_name
    return False


def _get_match_hint(kind: GeneratedNameKind, method: MethodDefinition) -> Optional[str]:
    """``|0_`` part of a local function name, shared by its siblings."""
    if kind is not GeneratedNameKind.LOCAL_FUNCTION:
        return None
    name = method.name
    start = name.find("|")
    if start < 1:
        return None
    end = name.find("_", start) + 1
    if end <= start:
        return None
    return name[start:end]


def _get_prefix(parameter: ParameterDefinition, attributes) -> str:
    if any(a.type_name == PARAM_ARRAY_ATTRIBUTE for a in attributes):
        return "params"
    if parameter.is_out:
        return "out"
    if parameter.is_in:
        return "in"
    if parameter.type.is_by_ref:
        return "ref"
    return ""


def _tuple_element_names(attributes) -> List[Optional[str]]:
    for attribute in attributes:
        if attribute.type_name == TUPLE_ELEMENT_NAMES_ATTRIBUTE and attribute.arguments:
            names = attribute.arguments[0]
            if names:
                return list(names)
    return []


def _value_tuple_parameter(tuple_names: List[Optional[str]], prefix: str, name: Optional[str],
                           parameter_type: TypeSignature) -> ResolvedParameter:
    if parameter_type.full_name.startswith(VALUE_TUPLE_PREFIX):
        wrapper = None
        elements = parameter_type.generic_arguments
    else:
        # e.g. Task<(int a, int b)>
        wrapper = parameter_type.name.split("`", 1)[0]
        elements = parameter_type.generic_arguments[0].generic_arguments

    tuple_elements = []
    for i, element in enumerate(elements):
        element_name = tuple_names[i] if i < len(tuple_names) else None
        tuple_elements.append((
            get_type_display_name(element, full_name=False, include_generic_parameter_names=True),
            element_name,
        ))

    return ResolvedParameter(name=name, type_name=wrapper, prefix=prefix, tuple_elements=tuple_elements)
