"""Retry loop that waits for a model instance to converge on the server."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from common.constants import POLL_INTERVAL_SECONDS
from common.logging_config import get_logger
from common.types import Convergence, ResourceInstance
from modelclient.channel import CallChannel, GrpcCallChannel
from modelclient.exceptions import DeadlineExceededError, is_not_found, is_transient
from modelclient.session import SessionContext

logger = get_logger(__name__)

Operation = Callable[[CallChannel], Awaitable[ResourceInstance]]
Connector = Callable[[SessionContext], Awaitable[CallChannel]]


class PollEvent(Enum):
    """Progress marks reported to an observer, one per retried iteration."""

    RECONNECTING = "."
    NOT_FOUND = "x"
    NOT_ENACTED = "o"
    NO_STATUS = "O"


@dataclass
class _RetryState:
    channel: Optional[CallChannel] = None

    async def drop(self) -> None:
        if self.channel is not None:
            channel, self.channel = self.channel, None
            await channel.close()


class RetryPoller:
    """
    Re-issues a read operation until the requested convergence conditions hold.

    Each iteration is classified in a fixed order:

    1. transient transport failure: drop the connection, back off, reconnect
    2. not found while waiting to be found: back off, retry on the same connection
    3. any other failure: raised immediately
    4. not yet enacted / no status yet (when requested): back off, retry
    5. otherwise the instance is returned

    A stale connection is never reused to evaluate convergence.
    """

    def __init__(
        self,
        session: SessionContext,
        connect: Optional[Connector] = None,
        observer: Optional[Callable[[PollEvent], None]] = None,
        interval: float = POLL_INTERVAL_SECONDS,
    ):
        self._session = session
        self._connect = connect if connect is not None else GrpcCallChannel.connect
        self._observer = observer
        self._interval = interval

    def _notify(self, event: PollEvent) -> None:
        logger.debug(f"Poll iteration: {event.name.lower()}")
        if self._observer is not None:
            self._observer(event)

    async def poll(
        self,
        operation: Operation,
        convergence: Convergence,
        timeout: Optional[float] = None,
        channel: Optional[CallChannel] = None,
    ) -> Tuple[CallChannel, ResourceInstance]:
        """
        Run ``operation`` until its result satisfies ``convergence``.

        Args:
            operation: Coroutine function performing one read on a channel
            convergence: Conditions to wait for
            timeout: Overall deadline in seconds; None waits indefinitely
            channel: Existing connection to start with; one is opened when None.
                The poller owns it from here on and closes it on failure

        Returns:
            (live channel, converged instance)

        Raises:
            DeadlineExceededError: If the deadline expires first. A TimeoutError
                raised by ``operation`` itself is not a deadline and propagates as is
            ServerUnavailableError: If a connection cannot be established
            Exception: The first terminal failure of ``operation``
        """
        state = _RetryState(channel=channel)
        try:
            if timeout is None:
                instance = await self._run(state, operation, convergence)
            else:
                instance = await self._run_with_deadline(state, operation, convergence, timeout)
        except (asyncio.CancelledError, Exception):
            await state.drop()
            raise
        return state.channel, instance

    async def _run_with_deadline(
        self,
        state: _RetryState,
        operation: Operation,
        convergence: Convergence,
        timeout: float,
    ) -> ResourceInstance:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            return await asyncio.wait_for(self._run(state, operation, convergence), timeout)
        except asyncio.TimeoutError:
            # a TimeoutError raised by the operation itself is a terminal failure
            if loop.time() < deadline:
                raise
            raise DeadlineExceededError()

    async def _run(self, state: _RetryState, operation: Operation, convergence: Convergence) -> ResourceInstance:
        while True:
            if state.channel is None:
                state.channel = await self._connect(self._session)

            try:
                instance = await operation(state.channel)
            except Exception as e:
                if is_transient(e):
                    self._notify(PollEvent.RECONNECTING)
                    await state.drop()
                    await asyncio.sleep(self._interval)
                    continue
                if convergence.until_found and is_not_found(e):
                    self._notify(PollEvent.NOT_FOUND)
                    await asyncio.sleep(self._interval)
                    continue
                raise

            if convergence.until_enacted and not instance.is_enacted():
                self._notify(PollEvent.NOT_ENACTED)
                await asyncio.sleep(self._interval)
                continue

            if convergence.until_status and instance.status is None:
                self._notify(PollEvent.NO_STATUS)
                await asyncio.sleep(self._interval)
                continue

            return instance
