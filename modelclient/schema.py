"""Schema sources and the SchemaCatalog that resolves model types from them."""

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple, Union

from common.constants import MODEL_PACKAGE, MODEL_SERVICE
from common.logging_config import get_logger
from common.types import FieldDescriptor, FieldKind, ResourceType, Visibility
from modelclient.exceptions import (
    FieldDoesNotExistError,
    SchemaUnavailableError,
    SymbolNotFoundError,
    UnknownModelTypeError,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class MessageType:
    """Descriptor of a message type."""
    name: str
    fields: Tuple[FieldDescriptor, ...]


@dataclass(frozen=True)
class MethodDescriptor:
    """Descriptor of an RPC method."""
    service: str
    name: str
    input_type: str
    output_type: str
    client_streaming: bool = False
    server_streaming: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.service}.{self.name}"

    @property
    def path(self) -> str:
        """gRPC request path, e.g. '/xos.xos/GetSlice'."""
        return f"/{self.service}/{self.name}"


@dataclass(frozen=True)
class ServiceDescriptor:
    """Descriptor of a service and its methods."""
    name: str
    methods: Tuple[MethodDescriptor, ...]


Symbol = Union[MessageType, MethodDescriptor, ServiceDescriptor]


class SchemaSource(Protocol):
    """Anything that can enumerate methods and look up schema symbols."""

    def list_methods(self, service: str) -> List[str]:
        ...

    def find_symbol(self, name: str) -> Symbol:
        ...


def split_method_name(method: str) -> Tuple[str, str]:
    """
    Split 'pkg.Service.Method' or 'pkg.Service/Method' into (service, method).
    """
    method = method.lstrip('/')
    if '/' in method:
        service, _, name = method.rpartition('/')
    else:
        service, _, name = method.rpartition('.')
    if not service or not name:
        raise SymbolNotFoundError(method)
    return service, name


def _parse_field(entry: Mapping[str, Any]) -> FieldDescriptor:
    kind = FieldKind.from_type_name(entry.get('type', 'string'))
    classifiers = frozenset(Visibility(option) for option in entry.get('options', ()))
    repeated = bool(entry.get('repeated', False)) or entry.get('label') == 'repeated'
    return FieldDescriptor(
        name=entry['name'],
        kind=kind,
        repeated=repeated,
        classifiers=classifiers,
        type_name=entry.get('type_name'),
    )


class StaticSchemaSource:
    """
    Schema source backed by an in-memory descriptor document.

    Document layout::

        {
          "services": {
            "xos.xos": {
              "GetSlice": {"input": "xos.ID", "output": "xos.Slice"},
              ...
            }
          },
          "messages": {
            "xos.Slice": [
              {"name": "id", "type": "int32"},
              {"name": "enacted", "type": "double", "options": ["bookkeeping"]},
              ...
            ]
          }
        }
    """

    def __init__(self, document: Mapping[str, Any]):
        try:
            self._services = self._parse_services(document.get('services', {}))
            self._messages = {
                name: MessageType(name=name, fields=tuple(_parse_field(f) for f in fields))
                for name, fields in document.get('messages', {}).items()
            }
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise SchemaUnavailableError(f"Malformed schema document: {e}")

    @staticmethod
    def _parse_services(services: Mapping[str, Any]) -> Dict[str, ServiceDescriptor]:
        parsed = {}
        for service_name, methods in services.items():
            descriptors = tuple(
                MethodDescriptor(
                    service=service_name,
                    name=method_name,
                    input_type=entry['input'],
                    output_type=entry['output'],
                    client_streaming=bool(entry.get('client_streaming', False)),
                    server_streaming=bool(entry.get('server_streaming', False)),
                )
                for method_name, entry in methods.items()
            )
            parsed[service_name] = ServiceDescriptor(name=service_name, methods=descriptors)
        return parsed

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'StaticSchemaSource':
        """
        Load a descriptor document from a JSON file.

        Raises:
            SchemaUnavailableError: If the file cannot be read or parsed
        """
        path = Path(path)
        try:
            with open(path, 'r') as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SchemaUnavailableError(f"Unable to load schema from {path}: {e}")
        logger.debug(f"Loaded schema from {path}")
        return cls(document)

    def list_methods(self, service: str) -> List[str]:
        descriptor = self._services.get(service)
        if descriptor is None:
            raise SymbolNotFoundError(service)
        return [m.full_name for m in descriptor.methods]

    def find_symbol(self, name: str) -> Symbol:
        if name in self._messages:
            return self._messages[name]
        if name in self._services:
            return self._services[name]
        try:
            service, method = split_method_name(name)
        except SymbolNotFoundError:
            raise SymbolNotFoundError(name)
        descriptor = self._services.get(service)
        if descriptor is not None:
            for m in descriptor.methods:
                if m.name == method:
                    return m
        raise SymbolNotFoundError(name)


class SchemaCatalog:
    """
    Read-through cache of model types and methods over a SchemaSource.

    Safe for concurrent readers; cached entries are never mutated.
    """

    def __init__(self, source: SchemaSource, service: str = MODEL_SERVICE, package: str = MODEL_PACKAGE):
        self._source = source
        self._service = service
        self._package = package
        self._lock = threading.Lock()
        self._model_names: Optional[frozenset] = None
        self._types: Dict[str, ResourceType] = {}
        self._methods: Dict[str, MethodDescriptor] = {}

    @property
    def source(self) -> SchemaSource:
        return self._source

    def list_resource_types(self) -> Set[str]:
        """
        Enumerate model type names (every 'Get<Model>' method of the model service).

        Raises:
            SchemaUnavailableError: If the source cannot be reached
        """
        with self._lock:
            if self._model_names is None:
                try:
                    methods = self._source.list_methods(self._service)
                except SymbolNotFoundError as e:
                    raise SchemaUnavailableError(f"Model service {self._service} is not available: {e}")
                prefix = f"{self._service}.Get"
                self._model_names = frozenset(
                    m[len(prefix):] for m in methods if m.startswith(prefix) and len(m) > len(prefix)
                )
                logger.debug(f"Discovered {len(self._model_names)} model types")
            return set(self._model_names)

    def validate_resource_type(self, name: str) -> None:
        """
        Raises:
            UnknownModelTypeError: If the model type does not exist
        """
        if name not in self.list_resource_types():
            raise UnknownModelTypeError(name)

    def resolve_type(self, name: str) -> ResourceType:
        """
        Resolve a model type and its fields.

        Raises:
            UnknownModelTypeError: If the model type does not exist
        """
        with self._lock:
            cached = self._types.get(name)
        if cached is not None:
            return cached

        self.validate_resource_type(name)
        message_name = f"{self._package}.{name}"
        try:
            symbol = self._source.find_symbol(message_name)
        except SymbolNotFoundError:
            raise UnknownModelTypeError(name)
        if not isinstance(symbol, MessageType):
            raise SchemaUnavailableError(f"Failed to convert model {name} to a message descriptor")

        resolved = ResourceType(name=name, message_name=message_name, fields=symbol.fields)
        with self._lock:
            return self._types.setdefault(name, resolved)

    def resolve_field(self, type_name: str, field_name: str) -> FieldDescriptor:
        """
        Raises:
            UnknownModelTypeError: If the model type does not exist
            FieldDoesNotExistError: If the model has no such field
        """
        descriptor = self.resolve_type(type_name).find_field(field_name)
        if descriptor is None:
            raise FieldDoesNotExistError(type_name, field_name)
        return descriptor

    def resolve_method(self, method: str) -> MethodDescriptor:
        """
        Resolve 'pkg.Service.Method' or 'pkg.Service/Method' to its descriptor.

        Raises:
            SymbolNotFoundError: If the method is unknown
        """
        service, name = split_method_name(method)
        key = f"{service}.{name}"
        with self._lock:
            cached = self._methods.get(key)
        if cached is not None:
            return cached

        symbol = self._source.find_symbol(key)
        if not isinstance(symbol, MethodDescriptor):
            raise SymbolNotFoundError(key)
        with self._lock:
            return self._methods.setdefault(key, symbol)

    def model_method(self, verb: str, type_name: str) -> str:
        """Fully-qualified CRUD method name, e.g. ('Get', 'Slice') -> 'xos.xos.GetSlice'."""
        return f"{self._service}.{verb}{type_name}"
