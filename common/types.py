"""Shared data type definitions (field kinds, resource types, predicates, instances)."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class FieldKind(Enum):
    """Declared kind of a schema field."""

    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    FLOAT = "float"
    DOUBLE = "double"
    STRING = "string"
    BOOL = "bool"
    BYTES = "bytes"
    ENUM = "enum"
    MESSAGE = "message"

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_BOUNDS

    @property
    def is_floating(self) -> bool:
        return self in (FieldKind.FLOAT, FieldKind.DOUBLE)

    @property
    def integer_bounds(self) -> Tuple[int, int]:
        """Inclusive (min, max) range for integer kinds."""
        return _INTEGER_BOUNDS[self]

    @classmethod
    def from_type_name(cls, type_name: str) -> 'FieldKind':
        """Map a descriptor type name (e.g. 'sfixed32') onto a FieldKind."""
        try:
            return _TYPE_ALIASES[type_name.lower()]
        except KeyError:
            raise ValueError(f"Unknown field type {type_name!r}")


_INTEGER_BOUNDS = {
    FieldKind.INT32: (-2 ** 31, 2 ** 31 - 1),
    FieldKind.UINT32: (0, 2 ** 32 - 1),
    FieldKind.INT64: (-2 ** 63, 2 ** 63 - 1),
    FieldKind.UINT64: (0, 2 ** 64 - 1),
}

_TYPE_ALIASES = {
    "int32": FieldKind.INT32,
    "sint32": FieldKind.INT32,
    "sfixed32": FieldKind.INT32,
    "uint32": FieldKind.UINT32,
    "fixed32": FieldKind.UINT32,
    "int64": FieldKind.INT64,
    "sint64": FieldKind.INT64,
    "sfixed64": FieldKind.INT64,
    "uint64": FieldKind.UINT64,
    "fixed64": FieldKind.UINT64,
    "float": FieldKind.FLOAT,
    "double": FieldKind.DOUBLE,
    "string": FieldKind.STRING,
    "bool": FieldKind.BOOL,
    "bytes": FieldKind.BYTES,
    "enum": FieldKind.ENUM,
    "message": FieldKind.MESSAGE,
}


class Visibility(Enum):
    """Field classifiers that hide a field from default projections."""

    GUI_HIDDEN = "gui_hidden"
    FEEDBACK = "feedback"
    BOOKKEEPING = "bookkeeping"


@dataclass(frozen=True)
class FieldDescriptor:
    """
    A declared field of a message type.
    """
    name: str
    kind: FieldKind
    repeated: bool = False
    classifiers: FrozenSet[Visibility] = frozenset()
    type_name: Optional[str] = None  # enum or message type, when applicable

    def default_value(self) -> Any:
        """Value a field takes when it is absent from a received message."""
        if self.repeated:
            return []
        if self.kind.is_integer:
            return 0
        if self.kind.is_floating:
            return 0.0
        if self.kind == FieldKind.BOOL:
            return False
        if self.kind in (FieldKind.STRING, FieldKind.BYTES):
            return ""
        return None


@dataclass(frozen=True)
class ResourceType:
    """
    A model kind resolved from the schema. The field set is read-only.
    """
    name: str
    message_name: str
    fields: Tuple[FieldDescriptor, ...]
    _by_name: Mapping[str, FieldDescriptor] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(
            self, '_by_name', MappingProxyType({f.name: f for f in self.fields})
        )

    def find_field(self, name: str) -> Optional[FieldDescriptor]:
        return self._by_name.get(name)


class Operator(Enum):
    """Comparison operators understood by Filter queries."""

    EQUAL = "EQUAL"
    GREATER_THAN = "GREATER_THAN"
    GREATER_THAN_OR_EQUAL = "GREATER_THAN_OR_EQUAL"
    LESS_THAN = "LESS_THAN"
    LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"


@dataclass(frozen=True)
class FieldPredicate:
    """One field-level comparison; predicates of a query are ANDed."""
    name: str
    operator: Operator
    invert: bool
    value: Any


@dataclass(frozen=True)
class FieldVisibility:
    """Toggles deciding which classified fields are projected into listings."""
    show_hidden: bool = False
    show_feedback: bool = False
    show_bookkeeping: bool = False

    def allows(self, descriptor: FieldDescriptor) -> bool:
        if descriptor.repeated:
            return False
        if Visibility.GUI_HIDDEN in descriptor.classifiers and not self.show_hidden:
            return False
        if Visibility.FEEDBACK in descriptor.classifiers and not self.show_feedback:
            return False
        if Visibility.BOOKKEEPING in descriptor.classifiers and not self.show_bookkeeping:
            return False
        return True


@dataclass(frozen=True)
class ResourceRef:
    """Identity of a created instance."""
    model_name: str
    id: int
    uuid: Optional[str] = None


@dataclass
class ResourceInstance:
    """
    An instance of a ResourceType as returned by the server.

    ``raw`` holds every declared field (defaults filled in); ``fields`` holds
    the projection selected by the caller's visibility toggles.
    """
    model_name: str
    raw: Dict[str, Any]
    fields: Dict[str, Any]

    @classmethod
    def from_message(
        cls,
        resource_type: ResourceType,
        message: Mapping[str, Any],
        visibility: Optional[FieldVisibility] = None
    ) -> 'ResourceInstance':
        raw = {}
        for descriptor in resource_type.fields:
            value = message.get(descriptor.name)
            raw[descriptor.name] = descriptor.default_value() if value is None else value

        if visibility is None:
            projected = dict(raw)
        else:
            projected = {
                d.name: raw[d.name] for d in resource_type.fields if visibility.allows(d)
            }
        return cls(model_name=resource_type.name, raw=raw, fields=projected)

    @property
    def id(self) -> int:
        return int(self.raw.get('id') or 0)

    @property
    def uuid(self) -> Optional[str]:
        return self.raw.get('uuid') or None

    @property
    def status(self) -> Optional[Any]:
        value = self.raw.get('status')
        if value in (None, ""):
            return None
        return value

    def is_enacted(self) -> bool:
        """True once the server has caught up with the last requested change."""
        enacted = self.raw.get('enacted') or 0.0
        updated = self.raw.get('updated') or 0.0
        return enacted >= updated


@dataclass(frozen=True)
class Convergence:
    """Conditions a RetryPoller waits for before returning an instance."""
    until_found: bool = False
    until_enacted: bool = False
    until_status: bool = False


@dataclass(frozen=True)
class OperationOutcome:
    """Per-id result of a batch operation (update, delete, sync)."""
    id: int
    message: str
    succeeded: bool = True
