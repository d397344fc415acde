"""Tests for the RetryPoller convergence loop."""

import asyncio

import grpc
import pytest

from common.types import Convergence, ResourceInstance
from modelclient.exceptions import (
    DeadlineExceededError,
    ModelNotFoundError,
    RpcCallError,
    ServerUnavailableError,
)
from modelclient.poller import PollEvent, RetryPoller
from fakes import rpc_error


def instance(enacted=2.0, updated=1.0, status=None):
    raw = {'id': 1, 'enacted': enacted, 'updated': updated, 'status': status}
    return ResourceInstance(model_name='Slice', raw=raw, fields=dict(raw))


class ScriptedOperation:
    """Returns (or raises) the scripted results in order, repeating the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.channels = []

    @property
    def calls(self):
        return len(self.channels)

    async def __call__(self, channel):
        self.channels.append(channel)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def events():
    return []


@pytest.fixture
def poller(session, server, events):
    return RetryPoller(session, connect=server.connect, observer=events.append, interval=0.001)


class TestRetryPoller:

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, poller, server, events):
        n = 3
        operation = ScriptedOperation(*[rpc_error(grpc.StatusCode.UNAVAILABLE, "connection refused")] * n, instance())

        channel, result = await poller.poll(operation, Convergence(until_enacted=True))

        assert result.is_enacted()
        assert operation.calls == n + 1
        assert events == [PollEvent.RECONNECTING] * n
        assert len(server.connections) == n + 1
        assert all(c.closed for c in server.connections[:-1])
        assert channel is server.connections[-1]
        assert not channel.closed

    @pytest.mark.asyncio
    async def test_stale_connection_never_reused(self, poller, server, channel):
        operation = ScriptedOperation(rpc_error(grpc.StatusCode.UNAVAILABLE), instance())

        await poller.poll(operation, Convergence(), channel=channel)

        assert operation.channels[0] is channel
        assert operation.channels[1] is not channel
        assert channel.closed

    @pytest.mark.asyncio
    async def test_rst_stream_is_transient(self, poller, events):
        operation = ScriptedOperation(
            rpc_error(grpc.StatusCode.INTERNAL, "stream terminated by RST_STREAM with error code: 2"),
            instance(),
        )

        await poller.poll(operation, Convergence())

        assert operation.calls == 2
        assert events == [PollEvent.RECONNECTING]

    @pytest.mark.asyncio
    async def test_other_failures_are_terminal(self, poller, server, channel):
        operation = ScriptedOperation(rpc_error(grpc.StatusCode.INTERNAL, "boom"), instance())

        with pytest.raises(RpcCallError):
            await poller.poll(operation, Convergence(until_found=True, until_enacted=True), channel=channel)

        assert operation.calls == 1
        assert channel.closed

    @pytest.mark.asyncio
    async def test_not_found_retried_on_same_connection(self, poller, server, channel, events):
        operation = ScriptedOperation(ModelNotFoundError(), ModelNotFoundError(), instance())

        returned, result = await poller.poll(operation, Convergence(until_found=True), channel=channel)

        assert returned is channel
        assert operation.channels == [channel] * 3
        assert events == [PollEvent.NOT_FOUND] * 2
        assert len(server.connections) == 1

    @pytest.mark.asyncio
    async def test_not_found_is_terminal_unless_waiting_for_it(self, poller):
        operation = ScriptedOperation(rpc_error(grpc.StatusCode.NOT_FOUND), instance())

        with pytest.raises(RpcCallError):
            await poller.poll(operation, Convergence(until_enacted=True))
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_waits_until_enacted(self, poller, events):
        operation = ScriptedOperation(instance(enacted=0.0), instance(enacted=0.5), instance(enacted=1.0))

        _, result = await poller.poll(operation, Convergence(until_enacted=True))

        assert result.raw['enacted'] >= result.raw['updated']
        assert events == [PollEvent.NOT_ENACTED] * 2

    @pytest.mark.asyncio
    async def test_waits_until_status(self, poller, events):
        operation = ScriptedOperation(instance(status=""), instance(status="created"))

        _, result = await poller.poll(operation, Convergence(until_enacted=True, until_status=True))

        assert result.status == "created"
        assert events == [PollEvent.NO_STATUS]

    @pytest.mark.asyncio
    async def test_checks_in_fixed_order(self, poller, events):
        operation = ScriptedOperation(
            rpc_error(grpc.StatusCode.UNAVAILABLE),
            ModelNotFoundError(),
            instance(enacted=0.0),
            instance(status=None),
            instance(status="done"),
        )

        await poller.poll(operation, Convergence(until_found=True, until_enacted=True, until_status=True))

        assert events == [
            PollEvent.RECONNECTING,
            PollEvent.NOT_FOUND,
            PollEvent.NOT_ENACTED,
            PollEvent.NO_STATUS,
        ]

    @pytest.mark.asyncio
    async def test_deadline_stops_invocations(self, poller, channel):
        operation = ScriptedOperation(instance(enacted=0.0))

        with pytest.raises(DeadlineExceededError) as exc_info:
            await poller.poll(operation, Convergence(until_enacted=True), timeout=0.05, channel=channel)

        calls_at_expiry = operation.calls
        await asyncio.sleep(0.05)

        assert str(exc_info.value) == "context deadline exceeded"
        assert operation.calls == calls_at_expiry
        assert channel.closed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timeout", [None, 5.0])
    async def test_operation_timeout_is_not_a_deadline(self, poller, channel, timeout):
        operation = ScriptedOperation(TimeoutError("socket read timed out"))

        with pytest.raises(TimeoutError, match="socket read timed out") as exc_info:
            await poller.poll(operation, Convergence(until_enacted=True), timeout=timeout, channel=channel)

        assert not isinstance(exc_info.value, DeadlineExceededError)
        assert operation.calls == 1
        assert channel.closed

    @pytest.mark.asyncio
    async def test_connect_failure_is_terminal(self, poller, server):
        server.connect_failures = 1
        operation = ScriptedOperation(instance())

        with pytest.raises(ServerUnavailableError):
            await poller.poll(operation, Convergence())
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_cancellation_closes_connection(self, poller, channel):
        operation = ScriptedOperation(instance(enacted=0.0))
        task = asyncio.create_task(poller.poll(operation, Convergence(until_enacted=True), channel=channel))

        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert channel.closed
