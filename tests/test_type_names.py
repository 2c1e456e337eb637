"""Tests for C# style type display names."""
from clr_symbolicator.reflection import TypeDefinition, TypeSignature
from clr_symbolicator.type_names import get_type_definition_display_name, get_type_display_name

INT = TypeSignature.parse("System.Int32", is_value_type=True)
STRING = TypeSignature.parse("System.String")
T = TypeSignature.generic_parameter("T")


def test_built_in_aliases():
    """Primitive types use their C# keywords."""
    assert get_type_display_name(INT) == "int"
    assert get_type_display_name(STRING) == "string"
    assert get_type_display_name(TypeSignature.parse("System.Void")) == "void"
    assert get_type_display_name(TypeSignature.parse("System.Object")) == "object"


def test_system_types_drop_namespace():
    """Other top level System types print their short name."""
    assert get_type_display_name(TypeSignature.parse("System.DateTime", is_value_type=True)) == "DateTime"
    assert get_type_display_name(TypeSignature.parse("System.IO.Stream")) == "System.IO.Stream"


def test_full_and_short_names():
    """full_name controls whether namespaces and declaring types print."""
    widget = TypeSignature.parse("Shop.Widget")
    assert get_type_display_name(widget) == "Shop.Widget"
    assert get_type_display_name(widget, full_name=False) == "Widget"
    assert get_type_display_name(TypeSignature.parse("Shop.Outer+Inner")) == "Shop.Outer+Inner"


def test_generic_instance():
    """Arity suffixes become angle brackets."""
    dictionary = TypeSignature.parse("System.Collections.Generic.Dictionary`2", generic_arguments=[STRING, INT])
    assert get_type_display_name(dictionary) == "System.Collections.Generic.Dictionary<string, int>"
    task = TypeSignature.parse("System.Threading.Tasks.Task`1", generic_arguments=[INT])
    assert get_type_display_name(task, full_name=False) == "Task<int>"


def test_nullable():
    """Nullable<T> prints as T?."""
    nullable = TypeSignature.parse("System.Nullable`1", is_value_type=True, generic_arguments=[INT])
    assert get_type_display_name(nullable) == "int?"


def test_nested_generic_splits_arguments():
    """Arguments are distributed over the declaring chain."""
    inner = TypeSignature.parse("Shop.Outer`1+Inner`1", generic_arguments=[STRING, INT])
    assert get_type_display_name(inner) == "Shop.Outer<string>+Inner<int>"


def test_arrays():
    """Multi-dimensional and jagged arrays."""
    assert get_type_display_name(INT.make_sz_array()) == "int[]"
    assert get_type_display_name(INT.make_array(2)) == "int[,]"
    assert get_type_display_name(INT.make_sz_array().make_sz_array()) == "int[][]"


def test_by_ref_and_pointer():
    """Managed references and pointers keep their suffix."""
    assert get_type_display_name(INT.make_by_ref()) == "int&"
    assert get_type_display_name(INT.make_pointer()) == "int*"


def test_open_generic_parameters():
    """Generic parameter names print only when asked for."""
    lst = TypeSignature.parse("System.Collections.Generic.List`1", generic_arguments=[T])
    assert get_type_display_name(lst) == "System.Collections.Generic.List<>"
    assert get_type_display_name(lst, include_generic_parameter_names=True) == "System.Collections.Generic.List<T>"

    pair = TypeSignature.parse("System.Collections.Generic.Dictionary`2",
                               generic_arguments=[T, TypeSignature.generic_parameter("U")])
    assert get_type_display_name(pair) == "System.Collections.Generic.Dictionary<,>"


def test_type_definition_display_name():
    """Definitions print with their own generic parameter names."""
    outer = TypeDefinition("Cache`1", "Shop", generic_parameters=["T"])
    inner = TypeDefinition("Entry`1", declaring_type=outer, generic_parameters=["T", "TValue"])
    plain = TypeDefinition("Program", "Shop")

    assert get_type_definition_display_name(outer) == "Shop.Cache<T>"
    assert get_type_definition_display_name(inner) == "Shop.Cache<T>+Entry<TValue>"
    assert get_type_definition_display_name(plain, full_name=False) == "Program"
