"""
Request/response event bridge between call sites and the call channel.

A handler supplies outgoing messages on demand through ``get_params`` and
receives responses and the terminal status through ``on_receive_response``
and ``on_receive_trailers``. ``invoke_rpc`` drives a handler through one call
according to the method's streaming shape.
"""

import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from common.constants import RAW_JSON_FIELD
from common.logging_config import get_logger
from modelclient.channel import CallChannel, Message, Metadata
from modelclient.exceptions import CallStatus, InvalidInputError, RpcCallError
from modelclient.schema import MethodDescriptor, SchemaCatalog
from modelclient.session import SessionContext

logger = get_logger(__name__)


class BridgeState(Enum):
    AWAITING_PARAMETERS = "awaiting_parameters"
    COMPLETE = "complete"


class EventHandler(Protocol):
    async def get_params(self, message_type: str, message: Message) -> bool:
        ...

    def on_receive_response(self, message: Message) -> None:
        ...

    def on_receive_trailers(self, status: CallStatus, error: Optional[RpcCallError] = None) -> None:
        ...


class StatusCapture:
    """
    Terminal status bookkeeping shared by every handler.
    """

    def __init__(self):
        self.state = BridgeState.AWAITING_PARAMETERS
        self.status: Optional[CallStatus] = None
        self._error: Optional[RpcCallError] = None

    def on_receive_trailers(self, status: CallStatus, error: Optional[RpcCallError] = None) -> None:
        self.status = status
        self._error = error
        self.state = BridgeState.COMPLETE

    @property
    def complete(self) -> bool:
        return self.state == BridgeState.COMPLETE

    def raise_for_status(self) -> None:
        """
        Raises:
            RpcCallError: If the call ended with a non-OK status
            RuntimeError: If the call has not completed
        """
        if self.status is None:
            raise RuntimeError("Call has not completed")
        if self.status.ok:
            return
        if self._error is not None:
            raise self._error
        raise self.status.to_error()


class UnaryBridge(StatusCapture):
    """
    Supplies one message per message type and retains the last response.

    ``fields`` maps a message type name (e.g. 'xos.Slice') to the field values
    to set. A reserved '_json' entry holding a JSON object (text or dict) is
    merged into the message before the named fields are applied. Each entry is
    consumed once; asking again signals end-of-input.
    """

    def __init__(self, fields: Optional[Mapping[str, Mapping[str, Any]]] = None):
        super().__init__()
        self._fields: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (fields or {}).items()}
        self.response: Optional[Message] = None

    async def get_params(self, message_type: str, message: Message) -> bool:
        fields = self._fields.pop(message_type, None)
        if fields is None:
            return False

        raw = fields.pop(RAW_JSON_FIELD, None)
        if raw is not None:
            message.update(load_raw_json(raw))
        message.update(fields)
        return True

    def on_receive_response(self, message: Message) -> None:
        self.response = message


def load_raw_json(raw: Any) -> Dict[str, Any]:
    """
    Decode a reserved '_json' payload into a field map.

    Raises:
        InvalidInputError: If the payload is not a JSON object
    """
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Invalid {RAW_JSON_FIELD} payload: {e}")
    if not isinstance(payload, dict):
        raise InvalidInputError(f"{RAW_JSON_FIELD} payload must be a JSON object")
    return payload


class ClientStreamProducer(StatusCapture):
    """
    Pulls outgoing messages from ``next_message`` until it returns False.
    """

    def __init__(self, next_message: Callable[[Message], Awaitable[bool]]):
        super().__init__()
        self._next_message = next_message
        self.response: Optional[Message] = None

    async def get_params(self, message_type: str, message: Message) -> bool:
        return await self._next_message(message)

    def on_receive_response(self, message: Message) -> None:
        self.response = message


class DownloadConsumer(StatusCapture):
    """
    Sends one request message and hands every streamed response to ``consume``.
    """

    def __init__(self, request: Mapping[str, Any], consume: Callable[[Message], None]):
        super().__init__()
        self._request: Optional[Dict[str, Any]] = dict(request)
        self._consume = consume

    async def get_params(self, message_type: str, message: Message) -> bool:
        if self._request is None:
            return False
        message.update(self._request)
        self._request = None
        return True

    def on_receive_response(self, message: Message) -> None:
        self._consume(message)


async def _stream_requests(
    channel: CallChannel,
    descriptor: MethodDescriptor,
    handler: EventHandler,
    timeout: float,
    metadata: Metadata,
) -> Message:
    """
    Run a client-streaming call fed by ``handler.get_params``.

    Only end-of-input half-closes the stream. An error raised while producing
    a message aborts the call and is re-raised in place of the aborted call's
    own error.
    """
    producer_error: Optional[BaseException] = None

    async def requests():
        nonlocal producer_error
        while True:
            message: Message = {}
            try:
                more = await handler.get_params(descriptor.input_type, message)
            except Exception as e:
                producer_error = e
                raise
            if not more:
                return
            yield message

    try:
        return await channel.stream_unary(descriptor.path, requests(), timeout=timeout, metadata=metadata)
    except BaseException:
        if producer_error is not None:
            logger.debug(f"{descriptor.full_name} aborted: {producer_error}")
            raise producer_error
        raise


async def invoke_rpc(
    channel: CallChannel,
    catalog: SchemaCatalog,
    session: SessionContext,
    method: str,
    handler: EventHandler,
) -> EventHandler:
    """
    Perform one RPC, driving ``handler`` through its events.

    Transport failures are not raised; they are delivered to
    ``on_receive_trailers`` and the caller decides via ``raise_for_status``.

    Args:
        channel: Connected call channel
        catalog: Catalog used to resolve the method's shape and message types
        session: Supplies the per-call timeout and credentials
        method: 'pkg.Service.Method' or 'pkg.Service/Method'
        handler: Event handler for the call

    Returns:
        The handler, for chaining

    Raises:
        SymbolNotFoundError: If the method is unknown
        Exception: Whatever a client-streaming handler raises from get_params; the call is aborted first
    """
    descriptor = catalog.resolve_method(method)
    metadata = session.auth_headers()
    logger.debug(f"Invoking {descriptor.full_name}")

    try:
        if descriptor.client_streaming:
            response = await _stream_requests(channel, descriptor, handler, session.timeout, metadata)
            handler.on_receive_response(response)
        else:
            message: Message = {}
            # end-of-input on the only leg still sends an empty request
            await handler.get_params(descriptor.input_type, message)
            if descriptor.server_streaming:
                async for response in channel.unary_stream(
                    descriptor.path, message, timeout=session.timeout, metadata=metadata
                ):
                    handler.on_receive_response(response)
            else:
                response = await channel.unary_unary(
                    descriptor.path, message, timeout=session.timeout, metadata=metadata
                )
                handler.on_receive_response(response)
    except RpcCallError as e:
        logger.debug(f"{descriptor.full_name} failed: {e}")
        handler.on_receive_trailers(e.status, e)
        return handler

    handler.on_receive_trailers(CallStatus())
    return handler
