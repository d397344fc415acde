"""Custom exception classes and RPC error classification for the model client.

Errors are grouped by how they should be presented:

    UserError        brief message, caused by input the user can fix
    TransferError    brief message, integrity problems during file transfer
    UnexpectedError  full diagnostic context (traceback) when surfaced
"""

import traceback
from dataclasses import dataclass, field
from typing import Dict, Optional

import grpc

from common.constants import GRPC_APPLICATION_EXCEPTION_PREFIX


@dataclass(frozen=True)
class CallStatus:
    """Terminal status of an RPC."""
    code: grpc.StatusCode = grpc.StatusCode.OK
    details: str = ''

    @property
    def ok(self) -> bool:
        return self.code == grpc.StatusCode.OK

    def to_error(self) -> 'RpcCallError':
        return RpcCallError(self)


class RpcCallError(Exception):
    """
    Raised by call channels when an RPC terminates with a non-OK status.
    """

    def __init__(self, status: CallStatus):
        self.status = status
        super().__init__(f"rpc error: code = {status.code.name} desc = {status.details}")

    def code(self) -> grpc.StatusCode:
        return self.status.code

    def details(self) -> str:
        return self.status.details


@dataclass
class ObjectReference:
    """The model (and optionally id or query) an error applies to."""
    model_name: str = ''
    id: int = 0
    queries: Optional[Dict[str, str]] = field(default=None)

    def is_valid(self) -> bool:
        return self.model_name != ''

    def __str__(self) -> str:
        if not self.is_valid():
            return ''
        if self.queries:
            kv = ', '.join(f"{k}{v}" for k, v in self.queries.items())
            return f"{self.model_name} <{kv}>"
        if self.id > 0:
            return f"{self.model_name} <id={self.id}>"
        return self.model_name

    def clause(self) -> str:
        """Returns ' [on model Name <id=N>]', or '' for an empty reference."""
        if not self.is_valid():
            return ''
        return f" [on model {self}]"


class ModelCtlError(Exception):
    """
    Base exception class for all model client errors.
    """
    dump_stack = False

    def __init__(self, message: str = '', obj: Optional[ObjectReference] = None):
        self.obj = obj if obj is not None else ObjectReference()
        self.message = message
        super().__init__(self.describe())

    def describe(self) -> str:
        return self.message


class UserError(ModelCtlError):
    """
    Errors caused by user input; a brief message is sufficient.
    """
    pass


class TransferError(ModelCtlError):
    """
    Errors caused by failed file transfers.
    """
    pass


class UnexpectedError(ModelCtlError):
    """
    Problems we do not expect to happen; surfaced with full context.
    """
    dump_stack = True


class DeadlineExceededError(ModelCtlError):
    """
    Raised when a polling deadline expires before convergence.
    """

    def __init__(self, message: str = 'context deadline exceeded', obj: Optional[ObjectReference] = None):
        super().__init__(message, obj)


class ChecksumMismatchError(TransferError):
    """
    Raised when a locally computed digest differs from the remote one.
    """

    def __init__(self, expected: str, actual: str, name: str = ''):
        self.expected = expected
        self.actual = actual
        self.name = name
        super().__init__()

    def describe(self) -> str:
        text = f"checksum mismatch (actual={self.actual}, expected={self.expected})"
        if self.name:
            return f"{self.name}: {text}"
        return text


class UnknownModelTypeError(UserError):
    """
    Raised when a model type is not exposed by the schema.
    """

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Model {name} does not exist. Use `modelctl modeltype list` to get a list of available models"
        )


class UnknownModelStateError(UserError):
    """
    Raised when a model state filter name is not recognized.
    """

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Model state {name} does not exist")


class FilterRequiredError(UserError):
    """
    Raised when a command needs exactly one of an ID, a filter, or --all.
    """

    def __init__(self):
        super().__init__(
            "Filter required. Use either an ID, --filter, or --all to specify which models to operate on"
        )


class AbortedError(UserError):
    """
    Raised when the user declines a confirmation prompt.
    """

    def __init__(self):
        super().__init__("Aborted")


class NoMatchError(UserError):
    """
    Raised when a filter selects no models.
    """

    def __init__(self):
        super().__init__("No Match")


class FieldDoesNotExistError(UserError):
    """
    Raised when a field name is not declared by a model.
    """

    def __init__(self, model_name: str, field_name: str):
        self.model_name = model_name
        self.field_name = field_name
        super().__init__(f"Model {model_name} does not have field {field_name}")


class IllegalQueryError(UserError):
    """
    Raised when a query string is malformed.
    """

    def __init__(self, query: str, reason: str = ''):
        self.query = query
        self.reason = reason
        message = f"Illegal query string {query}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UnsupportedFilterError(IllegalQueryError):
    """
    Raised when filtering is requested on a field kind that cannot be filtered.
    """

    def __init__(self, field_name: str):
        self.field_name = field_name
        UserError.__init__(self, f"Floating point filters are unsupported (field {field_name})")
        self.query = field_name
        self.reason = 'floating point'


class TypeConversionError(UnexpectedError):
    """
    Raised when a value cannot be converted to its declared kind.
    """

    def __init__(self, source: str, destination: str):
        self.source = source
        self.destination = destination
        super().__init__(f"Failed to type convert from {source} to {destination}")


class VersionConstraintError(UserError):
    """
    Raised when the server version does not satisfy the supported range.
    """

    def __init__(self, name: str, version: str, constraint: str):
        self.name = name
        self.version = version
        self.constraint = constraint
        super().__init__(f"{name} version {version} did not match constraint '{constraint}'")


class ModelNotFoundError(UserError):
    """
    Raised when a model does not exist.
    """

    def describe(self) -> str:
        return f"Not Found{self.obj.clause()}"


class PermissionDeniedError(UserError):
    """
    Raised when the server rejects the session credentials.
    """

    def describe(self) -> str:
        return f"Permission Denied{self.obj.clause()}. Please verify username and password are correct"


class InvalidInputError(UserError):
    """
    Catch-all for user mistakes not covered elsewhere.
    """
    pass


class InternalError(UnexpectedError):
    """
    Catch-all for server-side or unclassified failures.
    """

    def describe(self) -> str:
        return f"Internal Error{self.obj.clause()}: {self.message}"


class SchemaUnavailableError(UnexpectedError):
    """
    Raised when the schema source cannot be reached or parsed.
    """
    pass


class SymbolNotFoundError(UnexpectedError):
    """
    Raised when a schema symbol (message, method, service) is unknown.
    """

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Symbol not found: {symbol}")


class ServerUnavailableError(UnexpectedError):
    """
    Raised when a connection to the server cannot be established.
    """
    pass


def classify_rpc_error(err: Exception, obj: Optional[ObjectReference] = None) -> Exception:
    """
    Convert a transport error into a domain error.

    Args:
        err: Error raised by a call channel
        obj: The model/id/queries the call applied to

    Returns:
        A ModelCtlError for known status categories; any other error unchanged
    """
    if not isinstance(err, RpcCallError):
        return err

    obj = obj if obj is not None else ObjectReference()
    code = err.code()

    if code == grpc.StatusCode.PERMISSION_DENIED:
        classified = PermissionDeniedError(err.details(), obj)
    elif code == grpc.StatusCode.NOT_FOUND:
        classified = ModelNotFoundError(err.details(), obj)
    elif code == grpc.StatusCode.UNKNOWN:
        msg = err.details()
        if msg.startswith(GRPC_APPLICATION_EXCEPTION_PREFIX):
            msg = msg[len(GRPC_APPLICATION_EXCEPTION_PREFIX):]
        classified = InternalError(msg, obj)
    else:
        return err

    classified.__cause__ = err
    return classified


def is_not_found(err: Exception) -> bool:
    """True for not-found errors, classified or raw."""
    if isinstance(err, ModelNotFoundError):
        return True
    return isinstance(err, RpcCallError) and err.code() == grpc.StatusCode.NOT_FOUND


def is_transient(err: Exception) -> bool:
    """True for transport failures that a reconnect may cure."""
    if not isinstance(err, RpcCallError):
        return False
    if err.code() == grpc.StatusCode.UNAVAILABLE:
        return True
    return err.code() == grpc.StatusCode.INTERNAL and 'RST_STREAM' in err.details()


def describe_error(err: BaseException, verbose: bool = False) -> str:
    """
    Render an error for the user.

    Args:
        err: The error to describe
        verbose: Force full diagnostic context

    Returns:
        A one-line message, or the message plus traceback for unexpected errors
    """
    dump = verbose or getattr(err, 'dump_stack', not isinstance(err, ModelCtlError))
    if not dump:
        return str(err)
    trace = ''.join(traceback.format_exception(type(err), err, err.__traceback__))
    return f"{err}\n{trace}"
