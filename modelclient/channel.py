"""Call channel contract and its gRPC implementation."""

import asyncio
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional, Protocol, Sequence, Tuple

import grpc

from common.constants import GRPC_KEEPALIVE_TIME_MS, GRPC_KEEPALIVE_TIMEOUT_MS
from common.logging_config import get_logger
from modelclient.exceptions import CallStatus, RpcCallError, ServerUnavailableError
from modelclient.session import SessionContext

logger = get_logger(__name__)

Message = Dict[str, Any]
Metadata = Sequence[Tuple[str, str]]


class CallChannel(Protocol):
    """
    A connected channel able to invoke RPCs by path ('/pkg.Service/Method').

    Messages are JSON-object dicts. Non-OK terminal statuses are raised as RpcCallError.
    """

    async def unary_unary(self, path: str, request: Message,
                          timeout: Optional[float] = None, metadata: Metadata = ()) -> Message:
        ...

    def unary_stream(self, path: str, request: Message,
                     timeout: Optional[float] = None, metadata: Metadata = ()) -> AsyncIterator[Message]:
        ...

    async def stream_unary(self, path: str, requests: AsyncIterable[Message],
                           timeout: Optional[float] = None, metadata: Metadata = ()) -> Message:
        ...

    async def close(self) -> None:
        ...


def encode_message(message: Message) -> bytes:
    return json.dumps(message).encode('utf-8')


def decode_message(data: bytes) -> Message:
    if not data:
        return {}
    return json.loads(data.decode('utf-8'))


def _translate(e: grpc.aio.AioRpcError) -> RpcCallError:
    return RpcCallError(CallStatus(code=e.code(), details=e.details() or ''))


class GrpcCallChannel:
    """
    CallChannel over a grpc.aio channel with JSON-encoded message bodies.
    """

    def __init__(self, channel: grpc.aio.Channel, target: str):
        self._channel = channel
        self._target = target

    @classmethod
    async def connect(cls, session: SessionContext) -> 'GrpcCallChannel':
        """
        Open a channel to the session's server and wait until it is ready.

        Args:
            session: Session whose server address and timeout are used

        Returns:
            Connected GrpcCallChannel

        Raises:
            ServerUnavailableError: If the server is not reachable within the timeout
        """
        options = [
            ('grpc.keepalive_time_ms', GRPC_KEEPALIVE_TIME_MS),
            ('grpc.keepalive_timeout_ms', GRPC_KEEPALIVE_TIMEOUT_MS),
            ('grpc.keepalive_permit_without_calls', 1),
        ]
        channel = grpc.aio.insecure_channel(session.server, options=options)
        try:
            await asyncio.wait_for(channel.channel_ready(), timeout=session.timeout)
        except asyncio.TimeoutError:
            await channel.close()
            raise ServerUnavailableError(f"Unable to connect to {session.server} within {session.timeout}s")
        except BaseException:
            await channel.close()
            raise
        logger.info(f"Established gRPC channel to {session.server}")
        return cls(channel, session.server)

    async def close(self) -> None:
        """Close gRPC channel."""
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
            logger.debug(f"Closed gRPC channel to {self._target}")

    def _require_channel(self) -> grpc.aio.Channel:
        if self._channel is None:
            raise ServerUnavailableError(f"Channel to {self._target} is closed")
        return self._channel

    async def unary_unary(self, path: str, request: Message,
                          timeout: Optional[float] = None, metadata: Metadata = ()) -> Message:
        multi_callable = self._require_channel().unary_unary(
            path,
            request_serializer=lambda x: x,
            response_deserializer=lambda x: x,
        )
        try:
            response_bytes = await multi_callable(
                encode_message(request), timeout=timeout, metadata=tuple(metadata)
            )
        except grpc.aio.AioRpcError as e:
            logger.debug(f"gRPC error calling {path}: {e.code().name} {e.details()}")
            raise _translate(e) from e
        return decode_message(response_bytes)

    async def unary_stream(self, path: str, request: Message,
                           timeout: Optional[float] = None, metadata: Metadata = ()) -> AsyncIterator[Message]:
        multi_callable = self._require_channel().unary_stream(
            path,
            request_serializer=lambda x: x,
            response_deserializer=lambda x: x,
        )
        response_stream = multi_callable(encode_message(request), timeout=timeout, metadata=tuple(metadata))
        try:
            async for response_bytes in response_stream:
                yield decode_message(response_bytes)
        except grpc.aio.AioRpcError as e:
            logger.debug(f"gRPC error streaming from {path}: {e.code().name} {e.details()}")
            raise _translate(e) from e
        finally:
            response_stream.cancel()

    async def stream_unary(self, path: str, requests: AsyncIterable[Message],
                           timeout: Optional[float] = None, metadata: Metadata = ()) -> Message:
        async def request_generator():
            async for request in requests:
                yield encode_message(request)

        multi_callable = self._require_channel().stream_unary(
            path,
            request_serializer=lambda x: x,
            response_deserializer=lambda x: x,
        )
        try:
            response_bytes = await multi_callable(
                request_generator(), timeout=timeout, metadata=tuple(metadata)
            )
        except grpc.aio.AioRpcError as e:
            logger.debug(f"gRPC error streaming to {path}: {e.code().name} {e.details()}")
            raise _translate(e) from e
        return decode_message(response_bytes)
