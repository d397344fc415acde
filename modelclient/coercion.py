"""Conversion of user-supplied text into typed field values and filter predicates."""

from typing import Any, Dict, Iterable, List, Mapping, Tuple

from common.constants import RAW_JSON_FIELD
from common.protocol import QueryElement
from common.types import FieldDescriptor, FieldKind, FieldPredicate, Operator, ResourceType
from modelclient.exceptions import (
    FieldDoesNotExistError,
    IllegalQueryError,
    TypeConversionError,
    UnsupportedFilterError,
)

# Two-character operators must be tried before their one-character prefixes
_OPERATORS: Tuple[Tuple[str, Operator, bool], ...] = (
    ("!=", Operator.EQUAL, True),
    ("=", Operator.EQUAL, False),
    (">=", Operator.GREATER_THAN_OR_EQUAL, False),
    (">", Operator.GREATER_THAN, False),
    ("<=", Operator.LESS_THAN_OR_EQUAL, False),
    ("<", Operator.LESS_THAN, False),
)

_INEQUALITY_CHARS = frozenset("!=<>")

_TRUE_STRINGS = frozenset({"1", "t", "true"})
_FALSE_STRINGS = frozenset({"0", "f", "false"})


def decode_operator(raw: str) -> Tuple[str, Operator, bool]:
    """
    Separate the leading operator from a predicate's value.

    For example, '>=5' -> ('5', GREATER_THAN_OR_EQUAL, False) and
    '!=foo' -> ('foo', EQUAL, True). Text without an operator is an equality test.

    Raises:
        IllegalQueryError: For '==', which is ambiguous with the filter syntax
    """
    if raw.startswith("=="):
        raise IllegalQueryError(raw, "Operator == is not allowed. Suggest using = instead.")
    for token, operator, invert in _OPERATORS:
        if raw.startswith(token):
            return raw[len(token):].strip(), operator, invert
    return raw.strip(), Operator.EQUAL, False


def parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def coerce_value(descriptor: FieldDescriptor, text: str) -> Any:
    """
    Convert text into the representation required by a field's kind.

    Integer kinds are parsed base-10 and range-checked for their width, floating
    kinds are parsed as floats, booleans accept 1/0/t/f/true/false. Every other
    kind is passed through unchanged.

    Raises:
        TypeConversionError: If the text does not parse as the declared kind
    """
    kind = descriptor.kind
    try:
        if kind.is_integer:
            value = int(text.strip(), 10)
            low, high = kind.integer_bounds
            if not low <= value <= high:
                raise ValueError(f"{value} out of range for {kind.value}")
            return value
        if kind.is_floating:
            return float(text.strip())
        if kind == FieldKind.BOOL:
            return parse_bool(text)
    except ValueError:
        raise TypeConversionError(repr(text), kind.value)
    return text


def coerce_fields(resource_type: ResourceType, fields: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Coerce every textual value of a field assignment map.

    Values that are not strings are assumed to be typed already. The raw
    payload pseudo-field is passed through untouched.

    Raises:
        FieldDoesNotExistError: If a field is not declared by the model
        TypeConversionError: If a value does not parse as its field's kind
    """
    coerced = {}
    for name, value in fields.items():
        if name == RAW_JSON_FIELD:
            coerced[name] = value
            continue
        descriptor = resource_type.find_field(name)
        if descriptor is None:
            raise FieldDoesNotExistError(resource_type.name, name)
        coerced[name] = coerce_value(descriptor, value) if isinstance(value, str) else value
    return coerced


def coerce_filter_value(descriptor: FieldDescriptor, text: str) -> Any:
    """
    Convert the value of a filter predicate.

    Raises:
        UnsupportedFilterError: For floating point fields
        TypeConversionError: If the text does not parse as the declared kind
    """
    if descriptor.kind.is_floating:
        raise UnsupportedFilterError(descriptor.name)
    if descriptor.kind.is_integer:
        return coerce_value(descriptor, text)
    return text


def query_strings_to_map(clauses: Iterable[str], allow_inequality: bool) -> Dict[str, str]:
    """
    Turn 'field<op>value' clauses into {field: '<op>value'}; the last duplicate wins.

    Raises:
        IllegalQueryError: If a clause contains no operator
    """
    queries = {}
    for clause in clauses:
        clause = clause.strip()
        operator_pos = -1
        for i, ch in enumerate(clause):
            if (allow_inequality and ch in _INEQUALITY_CHARS) or ch == "=":
                operator_pos = i
                break
        if operator_pos == -1:
            raise IllegalQueryError(clause, "no operator found")
        queries[clause[:operator_pos].strip()] = clause[operator_pos:]
    return queries


def parse_query_set(query: str, allow_inequality: bool) -> Dict[str, str]:
    """
    Parse a comma-separated query such as 'name=foo,id>3'.

    An empty string yields an empty map.
    """
    if not query:
        return {}
    return query_strings_to_map(query.split(","), allow_inequality)


def parse_field_assignments(text: str) -> Dict[str, str]:
    """
    Parse 'name=foo,site_id=1' into {'name': 'foo', 'site_id': '1'}.
    """
    assignments = {}
    for name, raw in parse_query_set(text, allow_inequality=False).items():
        value, _, _ = decode_operator(raw)
        assignments[name] = value
    return assignments


def build_predicates(resource_type: ResourceType, queries: Mapping[str, str]) -> List[FieldPredicate]:
    """
    Build one typed FieldPredicate per query entry.

    Raises:
        IllegalQueryError: For malformed operators or unsupported filter kinds
        FieldDoesNotExistError: If a field is not declared by the model
        TypeConversionError: If a value does not parse as its field's kind
    """
    predicates = []
    for field_name, raw in queries.items():
        value_text, operator, invert = decode_operator(raw)
        descriptor = resource_type.find_field(field_name)
        if descriptor is None:
            raise FieldDoesNotExistError(resource_type.name, field_name)
        predicates.append(FieldPredicate(
            name=field_name,
            operator=operator,
            invert=invert,
            value=coerce_filter_value(descriptor, value_text),
        ))
    return predicates


def predicate_to_element(predicate: FieldPredicate, kind: FieldKind) -> QueryElement:
    """Encode a predicate for the wire: integers as iValue, everything else as sValue."""
    element = QueryElement(
        name=predicate.name,
        operator=predicate.operator.value,
        invert=predicate.invert,
    )
    if kind.is_integer:
        element.i_value = int(predicate.value)
    else:
        element.s_value = str(predicate.value)
    return element
