"""End-to-end tests for GrpcCallChannel against an in-process grpc.aio server."""

import contextlib
import json

import grpc
import pytest
from grpc import aio

from modelclient.bridge import ClientStreamProducer, DownloadConsumer, UnaryBridge, invoke_rpc
from modelclient.channel import GrpcCallChannel, decode_message, encode_message
from modelclient.exceptions import RpcCallError, ServerUnavailableError
from modelclient.session import SessionContext


class EchoServicer:
    """Minimal JSON servicer for the xos.xos, xos.filetransfer and xos.utility services."""

    def __init__(self):
        self.metadata = []

    async def GetSlice(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        self.metadata.append(dict(context.invocation_metadata()))
        request = json.loads(request_bytes)
        if request.get('id') != 1:
            await context.abort(grpc.StatusCode.NOT_FOUND, "Slice matching query does not exist.")
        return json.dumps({'id': 1, 'name': 'mysite_one'}).encode('utf-8')

    async def GetVersion(self, request_bytes: bytes, context: grpc.aio.ServicerContext) -> bytes:
        return json.dumps({'version': '4.0.0'}).encode('utf-8')

    async def Upload(self, request_iterator, context: grpc.aio.ServicerContext) -> bytes:
        count = 0
        async for request_bytes in request_iterator:
            json.loads(request_bytes)
            count += 1
        return json.dumps({'status': 'SUCCESS', 'chunks_received': count}).encode('utf-8')

    async def Download(self, request_bytes: bytes, context: grpc.aio.ServicerContext):
        request = json.loads(request_bytes)
        for piece in ('QUJD', 'REVG'):
            yield json.dumps({'uri': request['uri'], 'chunk': piece}).encode('utf-8')


def _handlers(service: str, methods: dict) -> grpc.GenericRpcHandler:
    return grpc.method_handlers_generic_handler(service, methods)


@contextlib.asynccontextmanager
async def running_server():
    server = aio.server()
    servicer = EchoServicer()
    identity = dict(request_deserializer=lambda x: x, response_serializer=lambda x: x)

    server.add_generic_rpc_handlers((
        _handlers('xos.xos', {
            'GetSlice': grpc.unary_unary_rpc_method_handler(servicer.GetSlice, **identity),
        }),
        _handlers('xos.utility', {
            'GetVersion': grpc.unary_unary_rpc_method_handler(servicer.GetVersion, **identity),
        }),
        _handlers('xos.filetransfer', {
            'Upload': grpc.stream_unary_rpc_method_handler(servicer.Upload, **identity),
            'Download': grpc.unary_stream_rpc_method_handler(servicer.Download, **identity),
        }),
    ))
    port = server.add_insecure_port('127.0.0.1:0')
    await server.start()
    try:
        yield servicer, SessionContext(server=f'127.0.0.1:{port}', username='admin', password='pw', timeout=5.0)
    finally:
        await server.stop(None)


def test_message_codec():
    assert decode_message(encode_message({'id': 3})) == {'id': 3}
    assert decode_message(b'') == {}


@pytest.mark.asyncio
async def test_unary_call():
    async with running_server() as (servicer, session):
        channel = await GrpcCallChannel.connect(session)
        try:
            response = await channel.unary_unary('/xos.xos/GetSlice', {'id': 1}, timeout=5, metadata=session.auth_headers())
        finally:
            await channel.close()

    assert response == {'id': 1, 'name': 'mysite_one'}
    assert servicer.metadata[0]['authorization'].startswith('basic ')


@pytest.mark.asyncio
async def test_error_is_translated():
    async with running_server() as (_, session):
        channel = await GrpcCallChannel.connect(session)
        try:
            with pytest.raises(RpcCallError) as exc_info:
                await channel.unary_unary('/xos.xos/GetSlice', {'id': 2}, timeout=5)
        finally:
            await channel.close()

    assert exc_info.value.code() == grpc.StatusCode.NOT_FOUND
    assert exc_info.value.details() == "Slice matching query does not exist."


@pytest.mark.asyncio
async def test_streaming_calls_through_invoke_rpc(catalog):
    async with running_server() as (_, session):
        channel = await GrpcCallChannel.connect(session)
        pieces = ['QUI=', 'Qw==']

        async def next_message(message):
            if not pieces:
                return False
            message.update({'uri': 'file:///x', 'chunk': pieces.pop(0)})
            return True

        received = []
        try:
            upload = await invoke_rpc(channel, catalog, session, 'xos.filetransfer.Upload',
                                      ClientStreamProducer(next_message))
            download = await invoke_rpc(channel, catalog, session, 'xos.filetransfer.Download',
                                        DownloadConsumer({'uri': 'file:///y'}, received.append))
            version = await invoke_rpc(channel, catalog, session, 'xos.utility.GetVersion', UnaryBridge())
        finally:
            await channel.close()

    upload.raise_for_status()
    download.raise_for_status()
    version.raise_for_status()
    assert upload.response['chunks_received'] == 2
    assert [m['chunk'] for m in received] == ['QUJD', 'REVG']
    assert version.response == {'version': '4.0.0'}


@pytest.mark.asyncio
async def test_failing_upload_source_aborts_stream(catalog):
    async with running_server() as (_, session):
        channel = await GrpcCallChannel.connect(session)
        sent = []

        async def next_message(message):
            if sent:
                raise OSError("disk went away")
            message.update({'uri': 'file:///x', 'chunk': 'QUI='})
            sent.append(message)
            return True

        try:
            with pytest.raises(OSError, match="disk went away"):
                await invoke_rpc(channel, catalog, session, 'xos.filetransfer.Upload',
                                 ClientStreamProducer(next_message))
        finally:
            await channel.close()


@pytest.mark.asyncio
async def test_closed_channel_refuses_calls():
    async with running_server() as (_, session):
        channel = await GrpcCallChannel.connect(session)
        await channel.close()

        with pytest.raises(ServerUnavailableError):
            await channel.unary_unary('/xos.xos/GetSlice', {'id': 1})


@pytest.mark.asyncio
async def test_connect_times_out():
    async with running_server() as (_, session):
        port = session.server.rsplit(':', 1)[1]

    # server is stopped, nothing listens on the port any more
    session = SessionContext(server=f'127.0.0.1:{port}', timeout=0.5)
    with pytest.raises(ServerUnavailableError):
        await GrpcCallChannel.connect(session)
