"""Reflection model over ECMA-335 metadata.

Plain model types (types, methods, parameters, fields, custom attributes
and type signatures) plus the ``MetadataProvider`` capability interface the
demystifier works against:

- ``ModelMetadataProvider`` answers from model objects built in memory
- ``AssemblyMetadataProvider`` builds the model from a PE image's metadata
  and decodes IL bodies on demand
"""
from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from .errors import MalformedImageError, SymbolicationError
from .il_reader import iter_instructions
from .metadata_reader import (
    BlobReader, ElementType, MetadataFormatError, SignatureDecoder, Table,
)
from .models import DebugMeta
from .pe_image import PEImage

# ============================================================================
# WELL-KNOWN NAMES
# ============================================================================

COMPILER_GENERATED_ATTRIBUTE = "System.Runtime.CompilerServices.CompilerGeneratedAttribute"
STACK_TRACE_HIDDEN_ATTRIBUTE = "System.Diagnostics.StackTraceHiddenAttribute"
PARAM_ARRAY_ATTRIBUTE = "System.ParamArrayAttribute"
DYNAMIC_ATTRIBUTE = "System.Runtime.CompilerServices.DynamicAttribute"
TUPLE_ELEMENT_NAMES_ATTRIBUTE = "System.Runtime.CompilerServices.TupleElementNamesAttribute"
ASYNC_STATE_MACHINE_ATTRIBUTE = "System.Runtime.CompilerServices.AsyncStateMachineAttribute"
ITERATOR_STATE_MACHINE_ATTRIBUTE = "System.Runtime.CompilerServices.IteratorStateMachineAttribute"
ASYNC_ITERATOR_STATE_MACHINE_ATTRIBUTE = "System.Runtime.CompilerServices.AsyncIteratorStateMachineAttribute"

STATE_MACHINE_ATTRIBUTES = {
    ASYNC_STATE_MACHINE_ATTRIBUTE,
    ITERATOR_STATE_MACHINE_ATTRIBUTE,
    ASYNC_ITERATOR_STATE_MACHINE_ATTRIBUTE,
}
ITERATOR_ATTRIBUTES = {ITERATOR_STATE_MACHINE_ATTRIBUTE, ASYNC_ITERATOR_STATE_MACHINE_ATTRIBUTE}

ASYNC_STATE_MACHINE_INTERFACE = "System.Runtime.CompilerServices.IAsyncStateMachine"
ENUMERATOR_INTERFACE = "System.Collections.IEnumerator"

# MethodImplAttributes / MethodAttributes / ParamAttributes / FieldAttributes
METHOD_IMPL_AGGRESSIVE_INLINING = 0x0100
METHOD_STATIC = 0x0010
PARAM_IN = 0x0001
PARAM_OUT = 0x0002
FIELD_STATIC = 0x0010

# Signature type kinds
NAMED = "named"
SZARRAY = "szarray"
ARRAY = "array"
POINTER = "pointer"
BYREF = "byref"
GENERIC_PARAMETER = "var"
METHOD_GENERIC_PARAMETER = "mvar"
FUNCTION_POINTER = "fnptr"


# ============================================================================
# MODEL
# ============================================================================

@dataclass(frozen=True)
class TypeSignature:
    """A type as it appears in a signature.

    For nested types ``declaring`` holds the enclosing type. Generic
    arguments of a constructed type are stored on the innermost type and
    cover the whole declaring chain.
    """
    kind: str = NAMED
    name: str = ""
    namespace: str = ""
    declaring: Optional["TypeSignature"] = None
    generic_arguments: Tuple["TypeSignature", ...] = ()
    element: Optional["TypeSignature"] = None
    rank: int = 1
    is_value_type: bool = False
    definition: Optional["TypeDefinition"] = field(default=None, compare=False, repr=False)

    @property
    def full_name(self) -> str:
        if self.kind != NAMED:
            return self.name
        if self.declaring is not None:
            return f"{self.declaring.full_name}+{self.name}"
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    @property
    def is_generic(self) -> bool:
        return bool(self.generic_arguments)

    @property
    def is_generic_parameter(self) -> bool:
        return self.kind in (GENERIC_PARAMETER, METHOD_GENERIC_PARAMETER)

    @property
    def is_by_ref(self) -> bool:
        return self.kind == BYREF

    @property
    def is_array(self) -> bool:
        return self.kind in (SZARRAY, ARRAY)

    @classmethod
    def parse(cls, full_name: str, is_value_type: bool = False,
              generic_arguments: Sequence["TypeSignature"] = ()) -> "TypeSignature":
        """Build a named type from ``Namespace.Outer+Inner``."""
        parts = full_name.split("+")
        namespace, _, name = parts[0].rpartition(".")
        sig = cls(NAMED, name, namespace)
        for nested in parts[1:]:
            sig = cls(NAMED, nested, "", declaring=sig)
        return replace(sig, is_value_type=is_value_type, generic_arguments=tuple(generic_arguments))

    @classmethod
    def generic_parameter(cls, name: str, method: bool = False) -> "TypeSignature":
        return cls(METHOD_GENERIC_PARAMETER if method else GENERIC_PARAMETER, name)

    def make_sz_array(self) -> "TypeSignature":
        return TypeSignature(SZARRAY, element=self)

    def make_array(self, rank: int) -> "TypeSignature":
        return TypeSignature(ARRAY, element=self, rank=rank)

    def make_by_ref(self) -> "TypeSignature":
        return TypeSignature(BYREF, element=self)

    def make_pointer(self) -> "TypeSignature":
        return TypeSignature(POINTER, element=self)

    def refers_to(self, type_def: "TypeDefinition") -> bool:
        """True if this (possibly constructed) type is ``type_def``."""
        if self.definition is not None:
            return self.definition is type_def
        return self.kind == NAMED and self.full_name == type_def.full_name


@dataclass
class CustomAttribute:
    """An applied attribute: its type's full name and decoded fixed arguments.

    A ``System.Type`` argument is a TypeDefinition when the type is defined
    in the same module, otherwise its serialized name.
    """
    type_name: str
    arguments: List[Any] = field(default_factory=list)


def _has_attribute(attributes: Iterable[CustomAttribute], type_name: str) -> bool:
    return any(a.type_name == type_name for a in attributes)


@dataclass(eq=False)
class ParameterDefinition:
    name: Optional[str]
    type: TypeSignature
    position: int = 0
    is_in: bool = False
    is_out: bool = False
    attributes: List[CustomAttribute] = field(default_factory=list)

    def has_attribute(self, type_name: str) -> bool:
        return _has_attribute(self.attributes, type_name)


@dataclass(eq=False)
class FieldDefinition:
    name: str
    type: Optional[TypeSignature] = None
    is_static: bool = False
    token: int = 0
    declaring_type: Optional["TypeDefinition"] = field(default=None, repr=False)


@dataclass
class MethodBody:
    il: bytes
    local_types: List[TypeSignature] = field(default_factory=list)


@dataclass(eq=False)
class MethodDefinition:
    name: str
    declaring_type: Optional["TypeDefinition"] = field(default=None, repr=False)
    parameters: List[ParameterDefinition] = field(default_factory=list)
    # None for constructors
    return_type: Optional[TypeSignature] = None
    return_attributes: List[CustomAttribute] = field(default_factory=list)
    generic_parameters: List[str] = field(default_factory=list)
    attributes: List[CustomAttribute] = field(default_factory=list)
    body: Optional[MethodBody] = field(default=None, repr=False)
    token: int = 0
    is_static: bool = False
    impl_flags: int = 0

    @property
    def is_constructor(self) -> bool:
        return self.name in (".ctor", ".cctor")

    @property
    def is_generic(self) -> bool:
        return bool(self.generic_parameters)

    @property
    def is_aggressive_inlining(self) -> bool:
        return bool(self.impl_flags & METHOD_IMPL_AGGRESSIVE_INLINING)

    def has_attribute(self, type_name: str) -> bool:
        return _has_attribute(self.attributes, type_name)


@dataclass(eq=False)
class TypeDefinition:
    name: str
    namespace: str = ""
    declaring_type: Optional["TypeDefinition"] = None
    generic_parameters: List[str] = field(default_factory=list)
    interfaces: List[str] = field(default_factory=list)
    attributes: List[CustomAttribute] = field(default_factory=list)
    methods: List[MethodDefinition] = field(default_factory=list, repr=False)
    fields: List[FieldDefinition] = field(default_factory=list, repr=False)
    token: int = 0
    is_value_type: bool = False

    def __post_init__(self):
        for method in self.methods:
            method.declaring_type = self
        for fld in self.fields:
            fld.declaring_type = self

    def add_method(self, method: MethodDefinition) -> MethodDefinition:
        method.declaring_type = self
        self.methods.append(method)
        return method

    def add_field(self, fld: FieldDefinition) -> FieldDefinition:
        fld.declaring_type = self
        self.fields.append(fld)
        return fld

    @property
    def full_name(self) -> str:
        if self.declaring_type is not None:
            return f"{self.declaring_type.full_name}+{self.name}"
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    @property
    def is_compiler_generated(self) -> bool:
        return self.has_attribute(COMPILER_GENERATED_ATTRIBUTE)

    @property
    def is_generic_type_definition(self) -> bool:
        return bool(self.generic_parameters)

    def has_attribute(self, type_name: str) -> bool:
        return _has_attribute(self.attributes, type_name)

    def implements(self, interface: str) -> bool:
        return any(i == interface or i.startswith(interface + "`") for i in self.interfaces)

    def bare_signature(self) -> TypeSignature:
        declaring = self.declaring_type.bare_signature() if self.declaring_type else None
        return TypeSignature(
            NAMED, self.name, "" if declaring else self.namespace,
            declaring=declaring, is_value_type=self.is_value_type, definition=self,
        )

    def signature(self) -> TypeSignature:
        """This type as written in its own scope (open generic parameters)."""
        arguments = tuple(TypeSignature.generic_parameter(p) for p in self.generic_parameters)
        return replace(self.bare_signature(), generic_arguments=arguments)

    def __str__(self) -> str:
        return self.full_name


Member = Union[MethodDefinition, FieldDefinition]


# ============================================================================
# PROVIDERS
# ============================================================================

class MetadataProvider(Protocol):
    """What the demystifier needs to know about a module's metadata."""

    def get_methods(self, type_def: TypeDefinition) -> Sequence[MethodDefinition]:
        """All methods of a type, constructors included."""

    def get_parameters(self, method: MethodDefinition) -> Sequence[ParameterDefinition]:
        ...

    def get_custom_attributes(self, member: Any) -> Sequence[CustomAttribute]:
        ...

    def get_method_body(self, method: MethodDefinition) -> Optional[MethodBody]:
        """IL and local types, None for methods without a body."""

    def get_generic_arguments(self, method: MethodDefinition) -> Sequence[str]:
        ...

    def resolve_member(self, context: MethodDefinition, token: int) -> Optional[Member]:
        """Resolve a token found in ``context``'s IL."""

    def find_method(self, token: int) -> Optional[MethodDefinition]:
        ...

    def find_static_field_for_delegate(self, type_def: TypeDefinition,
                                       method: MethodDefinition) -> Optional[FieldDefinition]:
        ...


class ModelMetadataProvider:
    """Metadata provider over in-memory model objects.

    Methods and fields with a non-zero token are indexed so IL operands can
    be resolved.
    """

    def __init__(self, types: Iterable[TypeDefinition] = (), module_id: Optional[uuid.UUID] = None):
        self.module_id = module_id
        self.types: List[TypeDefinition] = []
        self._members: Dict[int, Member] = {}
        self._types_by_name: Dict[str, TypeDefinition] = {}
        for type_def in types:
            self.add_type(type_def)

    def add_type(self, type_def: TypeDefinition) -> TypeDefinition:
        self.types.append(type_def)
        self._types_by_name[type_def.full_name] = type_def
        for method in type_def.methods:
            if method.token:
                self._members[method.token] = method
        for fld in type_def.fields:
            if fld.token:
                self._members[fld.token] = fld
        return type_def

    def find_type(self, full_name: str) -> Optional[TypeDefinition]:
        return self._types_by_name.get(full_name)

    def get_methods(self, type_def: TypeDefinition) -> Sequence[MethodDefinition]:
        return list(type_def.methods)

    def get_fields(self, type_def: TypeDefinition) -> Sequence[FieldDefinition]:
        return list(type_def.fields)

    def get_parameters(self, method: MethodDefinition) -> Sequence[ParameterDefinition]:
        return list(method.parameters)

    def get_custom_attributes(self, member: Any) -> Sequence[CustomAttribute]:
        return list(getattr(member, "attributes", ()))

    def get_method_body(self, method: MethodDefinition) -> Optional[MethodBody]:
        return method.body

    def get_generic_arguments(self, method: MethodDefinition) -> Sequence[str]:
        return list(method.generic_parameters)

    def resolve_member(self, context: MethodDefinition, token: int) -> Optional[Member]:
        return self._members.get(token)

    def find_method(self, token: int) -> Optional[MethodDefinition]:
        member = self._members.get(token)
        return member if isinstance(member, MethodDefinition) else None

    def find_static_field_for_delegate(self, type_def: TypeDefinition,
                                       method: MethodDefinition) -> Optional[FieldDefinition]:
        """Find the static field of ``type_def`` initialized with a delegate to ``method``.

        Scans the type initializer for ``ldftn method`` followed by a
        ``stsfld`` of one of the type's own static fields.
        """
        cctor = next((m for m in self.get_methods(type_def) if m.name == ".cctor"), None)
        if cctor is None:
            return None
        try:
            body = self.get_method_body(cctor)
            if body is None:
                return None
            pending = None
            for instruction in iter_instructions(body.il):
                if instruction.name in ("ldftn", "ldvirtftn"):
                    pending = self.resolve_member(cctor, instruction.operand)
                elif instruction.name == "stsfld":
                    target = self.resolve_member(cctor, instruction.operand) if pending is method else None
                    if (isinstance(target, FieldDefinition) and target.is_static
                            and target.declaring_type is type_def):
                        return target
                    pending = None
        except SymbolicationError:
            return None
        return None


# Names of primitive element types
_PRIMITIVE_NAMES = {
    ElementType.VOID: "Void",
    ElementType.BOOLEAN: "Boolean",
    ElementType.CHAR: "Char",
    ElementType.I1: "SByte",
    ElementType.U1: "Byte",
    ElementType.I2: "Int16",
    ElementType.U2: "UInt16",
    ElementType.I4: "Int32",
    ElementType.U4: "UInt32",
    ElementType.I8: "Int64",
    ElementType.U8: "UInt64",
    ElementType.R4: "Single",
    ElementType.R8: "Double",
    ElementType.STRING: "String",
    ElementType.TYPEDBYREF: "TypedReference",
    ElementType.I: "IntPtr",
    ElementType.U: "UIntPtr",
    ElementType.OBJECT: "Object",
}
_REFERENCE_PRIMITIVES = {ElementType.STRING, ElementType.OBJECT}


class _SignatureTypeProvider:
    """Builds TypeSignature values while decoding signatures of one member."""

    def __init__(self, owner: "AssemblyMetadataProvider",
                 type_parameters: Sequence[str] = (), method_parameters: Sequence[str] = ()):
        self.owner = owner
        self.type_parameters = type_parameters
        self.method_parameters = method_parameters

    def primitive(self, code: ElementType) -> TypeSignature:
        return TypeSignature(NAMED, _PRIMITIVE_NAMES[code], "System",
                             is_value_type=code not in _REFERENCE_PRIMITIVES)

    def type_definition(self, rid: int, is_value_type: bool) -> TypeSignature:
        type_def = self.owner.get_type_definition(rid)
        if type_def is None:
            raise MetadataFormatError(f"TypeDef row {rid} does not exist")
        return replace(type_def.bare_signature(), is_value_type=is_value_type)

    def type_reference(self, rid: int, is_value_type: bool) -> TypeSignature:
        return replace(self.owner.get_type_reference(rid), is_value_type=is_value_type)

    def type_specification(self, rid: int) -> TypeSignature:
        return self.owner.get_type_specification(rid)

    def sz_array(self, element: TypeSignature) -> TypeSignature:
        return element.make_sz_array()

    def array(self, element: TypeSignature, rank: int) -> TypeSignature:
        return element.make_array(rank)

    def pointer(self, element: TypeSignature) -> TypeSignature:
        return element.make_pointer()

    def by_reference(self, element: TypeSignature) -> TypeSignature:
        return element.make_by_ref()

    def pinned(self, element: TypeSignature) -> TypeSignature:
        return element

    def generic_instantiation(self, generic: TypeSignature, arguments: List[TypeSignature]) -> TypeSignature:
        return replace(generic, generic_arguments=tuple(arguments))

    def generic_type_parameter(self, index: int) -> TypeSignature:
        name = self.type_parameters[index] if index < len(self.type_parameters) else f"!{index}"
        return TypeSignature.generic_parameter(name)

    def generic_method_parameter(self, index: int) -> TypeSignature:
        name = self.method_parameters[index] if index < len(self.method_parameters) else f"!!{index}"
        return TypeSignature.generic_parameter(name, method=True)

    def function_pointer(self) -> TypeSignature:
        return TypeSignature(FUNCTION_POINTER, "IntPtr")


class _UnsupportedArgument(Exception):
    pass


class AssemblyMetadataProvider(ModelMetadataProvider):
    """
    Metadata provider reading a managed PE image.

    Types, methods, fields, parameters and custom attributes are built when
    the provider is created; IL bodies are decoded on first request.
    """

    def __init__(self, image: PEImage):
        self.image = image
        self.metadata = image.metadata
        super().__init__(module_id=self.metadata.get_module_version_id())
        self.path = image.path
        self._type_defs: Dict[int, TypeDefinition] = {}
        self._methods: Dict[int, MethodDefinition] = {}
        self._fields: Dict[int, FieldDefinition] = {}
        self._params: Dict[int, Tuple[MethodDefinition, int]] = {}
        self._method_rows: Dict[int, Dict[str, Any]] = {}
        self._type_refs: Dict[int, TypeSignature] = {}
        self._type_specs: Dict[int, TypeSignature] = {}
        self._bodies: Dict[int, Optional[MethodBody]] = {}
        self._debug_meta: Optional[DebugMeta] = None
        self._debug_meta_loaded = False

        try:
            self._load()
        except MetadataFormatError as e:
            raise MalformedImageError(f"Invalid metadata: {e}", image.path) from e

    @classmethod
    def from_file(cls, path: str) -> "AssemblyMetadataProvider":
        return cls(PEImage.from_file(path))

    @property
    def debug_meta(self) -> Optional[DebugMeta]:
        if not self._debug_meta_loaded:
            from .debug_meta import extract_debug_meta

            self._debug_meta = extract_debug_meta(self.image)
            self._debug_meta_loaded = True
        return self._debug_meta

    @property
    def assembly_full_name(self) -> Optional[str]:
        """``Name, Version=1.0.0.0, Culture=neutral, PublicKeyToken=...``; None for netmodules."""
        md = self.metadata
        if md.row_count(Table.ASSEMBLY) == 0:
            return None
        row = md.get_row(Table.ASSEMBLY, 1)
        version = "{}.{}.{}.{}".format(row["MajorVersion"], row["MinorVersion"],
                                       row["BuildNumber"], row["RevisionNumber"])
        culture = md.get_string(row["Culture"]) or "neutral"
        public_key = md.get_blob(row["PublicKey"])
        # Token is the last 8 bytes of the key's SHA-1, reversed
        token = hashlib.sha1(public_key).digest()[-8:][::-1].hex() if public_key else "null"
        return f"{md.get_string(row['Name'])}, Version={version}, Culture={culture}, PublicKeyToken={token}"

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _row_range(self, table: int, rid: int, column: str, target: int, pointer_table: int) -> List[int]:
        """Rows of ``target`` owned by row ``rid`` of ``table`` (list columns)."""
        md = self.metadata
        start = md.get_row(table, rid)[column]
        if rid < md.row_count(table):
            end = md.get_row(table, rid + 1)[column]
        else:
            end = (md.row_count(pointer_table) or md.row_count(target)) + 1
        rids = list(range(start, max(start, end)))
        if md.row_count(pointer_table):
            column_name = next(iter(md.get_row(pointer_table, 1)))
            rids = [md.get_row(pointer_table, r)[column_name] for r in rids]
        return rids

    def _load(self) -> None:
        md = self.metadata

        for rid, row in md.rows(Table.TYPE_DEF):
            type_def = TypeDefinition(
                name=md.get_string(row["TypeName"]),
                namespace=md.get_string(row["TypeNamespace"]),
                token=(Table.TYPE_DEF << 24) | rid,
            )
            self._type_defs[rid] = type_def

        for _, row in md.rows(Table.NESTED_CLASS):
            nested = self._type_defs.get(row["NestedClass"])
            enclosing = self._type_defs.get(row["EnclosingClass"])
            if nested is not None and enclosing is not None:
                nested.declaring_type = enclosing

        type_generics: Dict[int, List[Tuple[int, str]]] = {}
        method_generics: Dict[int, List[Tuple[int, str]]] = {}
        for _, row in md.rows(Table.GENERIC_PARAM):
            owner_table, owner_rid = row["Owner"]
            owners = type_generics if owner_table == Table.TYPE_DEF else method_generics
            owners.setdefault(owner_rid, []).append((row["Number"], md.get_string(row["Name"])))
        for rid, type_def in self._type_defs.items():
            type_def.generic_parameters = [n for _, n in sorted(type_generics.get(rid, []))]

        for rid, type_def in self._type_defs.items():
            for method_rid in self._row_range(Table.TYPE_DEF, rid, "MethodList", Table.METHOD_DEF, Table.METHOD_PTR):
                row = md.get_row(Table.METHOD_DEF, method_rid)
                method = type_def.add_method(MethodDefinition(
                    name=md.get_string(row["Name"]),
                    generic_parameters=[n for _, n in sorted(method_generics.get(method_rid, []))],
                    token=(Table.METHOD_DEF << 24) | method_rid,
                    is_static=bool(row["Flags"] & METHOD_STATIC),
                    impl_flags=row["ImplFlags"],
                ))
                self._methods[method_rid] = method
                self._method_rows[method_rid] = row
            for field_rid in self._row_range(Table.TYPE_DEF, rid, "FieldList", Table.FIELD, Table.FIELD_PTR):
                row = md.get_row(Table.FIELD, field_rid)
                self._fields[field_rid] = type_def.add_field(FieldDefinition(
                    name=md.get_string(row["Name"]),
                    is_static=bool(row["Flags"] & FIELD_STATIC),
                    token=(Table.FIELD << 24) | field_rid,
                ))

        # Base types decide value-type-ness; needs every TypeDef created first
        for rid, type_def in self._type_defs.items():
            extends = md.get_row(Table.TYPE_DEF, rid)["Extends"]
            base = self._coded_type_name(extends) if extends[1] else None
            type_def.is_value_type = base in ("System.ValueType", "System.Enum") and type_def.full_name != "System.Enum"

        for rid, type_def in self._type_defs.items():
            provider = _SignatureTypeProvider(self, type_def.generic_parameters)
            decoder = SignatureDecoder(provider)
            for fld in type_def.fields:
                row = md.get_row(Table.FIELD, fld.token & 0xFFFFFF)
                fld.type = decoder.decode_field_signature(BlobReader(md.get_blob(row["Signature"])))
            for method in type_def.methods:
                self._load_signature(type_def, method)

        for _, row in md.rows(Table.INTERFACE_IMPL):
            type_def = self._type_defs.get(row["Class"])
            if type_def is not None:
                type_def.interfaces.append(self._coded_type_name(row["Interface"]))

        for type_def in self._type_defs.values():
            self.add_type(type_def)

        for _, row in md.rows(Table.CUSTOM_ATTRIBUTE):
            self._load_custom_attribute(row)

    def _load_signature(self, type_def: TypeDefinition, method: MethodDefinition) -> None:
        md = self.metadata
        method_rid = method.token & 0xFFFFFF
        row = self._method_rows[method_rid]
        decoder = SignatureDecoder(_SignatureTypeProvider(self, type_def.generic_parameters, method.generic_parameters))
        signature = decoder.decode_method_signature(BlobReader(md.get_blob(row["Signature"])))

        names: Dict[int, Tuple[int, Dict[str, Any]]] = {}
        for param_rid in self._row_range(Table.METHOD_DEF, method_rid, "ParamList", Table.PARAM, Table.PARAM_PTR):
            param_row = md.get_row(Table.PARAM, param_rid)
            names[param_row["Sequence"]] = (param_rid, param_row)

        if not method.is_constructor:
            method.return_type = signature.return_type
        if 0 in names:
            self._params[names[0][0]] = (method, 0)

        for position, param_type in enumerate(signature.parameter_types, 1):
            param_rid, param_row = names.get(position, (0, None))
            flags = param_row["Flags"] if param_row else 0
            method.parameters.append(ParameterDefinition(
                name=(md.get_string(param_row["Name"]) or None) if param_row else None,
                type=param_type,
                position=position - 1,
                is_in=bool(flags & PARAM_IN),
                is_out=bool(flags & PARAM_OUT),
            ))
            if param_rid:
                self._params[param_rid] = (method, position)

    def _coded_type_name(self, coded: Tuple[Optional[int], int]) -> str:
        table, rid = coded
        if table == Table.TYPE_DEF:
            return self._type_defs[rid].full_name
        if table == Table.TYPE_REF:
            return self.get_type_reference(rid).full_name
        return self.get_type_specification(rid).full_name

    def _load_custom_attribute(self, row: Dict[str, Any]) -> None:
        owner = self._attribute_owner(row["Parent"])
        if owner is None:
            return

        ctor_table, ctor_rid = row["Type"]
        md = self.metadata
        if ctor_table == Table.METHOD_DEF:
            ctor = self._methods.get(ctor_rid)
            if ctor is None or ctor.declaring_type is None:
                return
            type_name = ctor.declaring_type.full_name
            signature_blob = md.get_blob(self._method_rows[ctor_rid]["Signature"])
        else:
            ref = md.get_row(Table.MEMBER_REF, ctor_rid)
            parent_table, parent_rid = ref["Class"]
            if parent_table not in (Table.TYPE_DEF, Table.TYPE_REF, Table.TYPE_SPEC):
                return
            type_name = self._coded_type_name((parent_table, parent_rid))
            signature_blob = md.get_blob(ref["Signature"])

        attribute = CustomAttribute(type_name, self._decode_attribute_arguments(signature_blob, md.get_blob(row["Value"])))
        owner.append(attribute)

    def _attribute_owner(self, parent: Tuple[Optional[int], int]) -> Optional[List[CustomAttribute]]:
        table, rid = parent
        if table == Table.TYPE_DEF and rid in self._type_defs:
            return self._type_defs[rid].attributes
        if table == Table.METHOD_DEF and rid in self._methods:
            return self._methods[rid].attributes
        if table == Table.PARAM and rid in self._params:
            method, position = self._params[rid]
            if position == 0:
                return method.return_attributes
            return method.parameters[position - 1].attributes
        return None

    def _decode_attribute_arguments(self, signature_blob: bytes, value: bytes) -> List[Any]:
        if len(value) < 2:
            return []
        decoder = SignatureDecoder(_SignatureTypeProvider(self))
        signature = decoder.decode_method_signature(BlobReader(signature_blob))
        reader = BlobReader(value)
        if reader.read_uint16() != 0x0001:
            raise MetadataFormatError("Custom attribute blob has no prolog")
        arguments = []
        try:
            for param_type in signature.parameter_types:
                arguments.append(self._read_fixed_argument(reader, param_type))
        except _UnsupportedArgument:
            pass
        return arguments

    def _read_fixed_argument(self, reader: BlobReader, sig: TypeSignature) -> Any:
        if sig.kind == SZARRAY:
            count = reader.read_uint32()
            if count == 0xFFFFFFFF:
                return None
            return [self._read_fixed_argument(reader, sig.element) for _ in range(count)]
        if sig.kind != NAMED:
            raise _UnsupportedArgument(sig.full_name)

        name = sig.full_name
        if name == "System.String":
            return reader.read_ser_string()
        if name == "System.Type":
            type_name = reader.read_ser_string()
            if type_name is None:
                return None
            # Assembly qualified names carry ", Assembly, Version=..."
            return self.find_type(type_name.split(",", 1)[0].strip()) or type_name
        if name == "System.Boolean":
            return bool(reader.read_byte())
        if name in ("System.Byte", "System.SByte"):
            return reader.read_byte()
        if name in ("System.Int16", "System.UInt16", "System.Char"):
            return reader.read_uint16()
        if name == "System.Int32":
            return reader.read_int32()
        if name == "System.UInt32":
            return reader.read_uint32()
        if name in ("System.Int64", "System.UInt64"):
            return reader.read_uint64()
        raise _UnsupportedArgument(name)

    # ------------------------------------------------------------------
    # Signature helpers
    # ------------------------------------------------------------------

    def get_type_definition(self, rid: int) -> Optional[TypeDefinition]:
        return self._type_defs.get(rid)

    def get_type_reference(self, rid: int) -> TypeSignature:
        sig = self._type_refs.get(rid)
        if sig is None:
            md = self.metadata
            row = md.get_row(Table.TYPE_REF, rid)
            scope_table, scope_rid = row["ResolutionScope"]
            name = md.get_string(row["TypeName"])
            if scope_table == Table.TYPE_REF and scope_rid and scope_rid != rid:
                sig = TypeSignature(NAMED, name, declaring=self.get_type_reference(scope_rid))
            else:
                sig = TypeSignature(NAMED, name, md.get_string(row["TypeNamespace"]))
            self._type_refs[rid] = sig
        return sig

    def get_type_specification(self, rid: int) -> TypeSignature:
        sig = self._type_specs.get(rid)
        if sig is None:
            blob = self.metadata.get_blob(self.metadata.get_row(Table.TYPE_SPEC, rid)["Signature"])
            sig = SignatureDecoder(_SignatureTypeProvider(self)).decode_type(BlobReader(blob))
            self._type_specs[rid] = sig
        return sig

    # ------------------------------------------------------------------
    # MetadataProvider
    # ------------------------------------------------------------------

    def get_method_body(self, method: MethodDefinition) -> Optional[MethodBody]:
        rid = method.token & 0xFFFFFF
        if rid not in self._methods or self._methods[rid] is not method:
            return method.body
        if rid in self._bodies:
            return self._bodies[rid]

        raw = self.image.read_method_body(self._method_rows[rid]["RVA"])
        body = None
        if raw is not None:
            local_types: List[TypeSignature] = []
            sig_token = raw.local_signature_token
            if sig_token and sig_token >> 24 == Table.STAND_ALONE_SIG:
                try:
                    blob = self.metadata.get_blob(self.metadata.get_row(Table.STAND_ALONE_SIG, sig_token & 0xFFFFFF)["Signature"])
                    type_parameters = method.declaring_type.generic_parameters if method.declaring_type else ()
                    decoder = SignatureDecoder(_SignatureTypeProvider(self, type_parameters, method.generic_parameters))
                    local_types = decoder.decode_local_signature(BlobReader(blob))
                except MetadataFormatError as e:
                    raise MalformedImageError(f"Invalid locals of {method.name}: {e}", self.path) from e
            body = MethodBody(raw.il, local_types)
        self._bodies[rid] = body
        return body

    def resolve_member(self, context: MethodDefinition, token: int) -> Optional[Member]:
        table, rid = token >> 24, token & 0xFFFFFF
        try:
            if table == Table.METHOD_DEF:
                return self._methods.get(rid)
            if table == Table.FIELD:
                return self._fields.get(rid)
            if table == Table.METHOD_SPEC:
                if rid < 1 or rid > self.metadata.row_count(Table.METHOD_SPEC):
                    return None
                method_table, method_rid = self.metadata.get_row(Table.METHOD_SPEC, rid)["Method"]
                return self.resolve_member(context, (method_table << 24) | method_rid)
            if table == Table.MEMBER_REF:
                return self._resolve_member_reference(rid)
        except MetadataFormatError:
            return None
        return None

    def _resolve_member_reference(self, rid: int) -> Optional[Member]:
        """Map a MemberRef on a type of this module (e.g. a generic closure) to its definition."""
        md = self.metadata
        if rid < 1 or rid > md.row_count(Table.MEMBER_REF):
            return None
        row = md.get_row(Table.MEMBER_REF, rid)
        parent_table, parent_rid = row["Class"]
        if parent_table == Table.TYPE_DEF:
            type_def = self._type_defs.get(parent_rid)
        elif parent_table == Table.TYPE_SPEC:
            type_def = self.get_type_specification(parent_rid).definition
        else:
            return None
        if type_def is None:
            return None

        name = md.get_string(row["Name"])
        signature = md.get_blob(row["Signature"])
        if signature and signature[0] & 0x0F == 0x06:
            return next((f for f in type_def.fields if f.name == name), None)

        candidates = [m for m in type_def.methods if m.name == name]
        if len(candidates) > 1 and signature:
            reader = BlobReader(signature)
            header = reader.read_byte()
            if header & 0x10:
                reader.read_compressed_uint()
            count = reader.read_compressed_uint()
            candidates = [m for m in candidates if len(m.parameters) == count] or candidates
        return candidates[0] if candidates else None

    def find_method(self, token: int) -> Optional[MethodDefinition]:
        if token >> 24 != Table.METHOD_DEF:
            return None
        return self._methods.get(token & 0xFFFFFF)
