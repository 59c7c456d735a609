#!/usr/bin/env python3
"""
Per-feed MLLP connection management.

A ConnectionManager owns the one live stream of a feed (vital-wave or alarm),
re-dials it with a fixed backoff when a write or dial fails, drains whatever
the hub sends back, and serializes every outbound frame through one writer
task so producers sharing the feed never interleave bytes on the wire.

  Connecting -> Connected -> (failure) -> AwaitingRetry -> Connecting -> ...
"""

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field

from hl7_common import DialError, WriteError, write_frame

logger = logging.getLogger(__name__)

READ_CHUNK = 1024


class FeedState(enum.Enum):
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    AWAITING_RETRY = "AwaitingRetry"


@dataclass(frozen=True)
class Backoff:
    """Wait between failed dials: short for the first attempts, long after."""
    short_delay: float = 30.0
    long_delay: float = 60.0
    short_attempts: int = 5
    max_attempts: int | None = None

    def delay(self, attempt: int) -> float:
        return self.short_delay if attempt <= self.short_attempts else self.long_delay

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


class ReconnectSignal:
    """Single-slot, coalescing reconnect request."""

    def __init__(self):
        self._event = asyncio.Event()
        self.raised = 0

    @property
    def pending(self) -> bool:
        return self._event.is_set()

    def raise_(self) -> bool:
        """Arm the signal. Returns False if a request was already pending."""
        if self._event.is_set():
            return False
        self._event.set()
        self.raised += 1
        return True

    async def wait(self):
        await self._event.wait()
        self._event.clear()


@dataclass(eq=False)
class ConnectionHandle:
    feed: str
    generation: int
    reader: asyncio.StreamReader = field(repr=False)
    writer: asyncio.StreamWriter = field(repr=False)

    def close(self):
        if not self.writer.is_closing():
            self.writer.close()


class ConnectionManager:
    def __init__(self, feed: str, host: str, port: int, *,
                 rate_limit: float = 0.0,
                 backoff: Backoff | None = None,
                 connect_timeout: float = 10.0,
                 write_timeout: float = 10.0,
                 outbox_size: int = 64,
                 dial=asyncio.open_connection,
                 sleep=asyncio.sleep):
        self.feed = feed
        self.host = host
        self.port = port
        self.rate_limit = rate_limit
        self.backoff = backoff or Backoff()
        self.connect_timeout = connect_timeout
        self.write_timeout = write_timeout
        self.signal = ReconnectSignal()
        self.attempts = 0
        self.dropped = 0
        self._dial = dial
        self._sleep = sleep
        self._state = FeedState.CONNECTING
        self._handle: ConnectionHandle | None = None
        self._generation = 0
        self._retrying = False
        self._connected = asyncio.Event()
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def __repr__(self):
        return f"<ConnectionManager {self.feed} {self._state.value}>"

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def handle(self) -> ConnectionHandle | None:
        """The current handle. Always read this, never keep a copy across awaits."""
        return self._handle

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"{self.feed} {name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self):
        """Start the retry loop and writer, then make the first dial."""
        self._spawn(self.retry_loop(), "retry")
        self._spawn(self._writer_loop(), "writer")
        await self.connect()

    async def _open(self) -> ConnectionHandle:
        self._state = FeedState.CONNECTING
        try:
            reader, writer = await asyncio.wait_for(self._dial(self.host, self.port), self.connect_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            raise DialError(f"{self.host}:{self.port}: {str(exc) or exc.__class__.__name__}") from exc
        self._generation += 1
        return ConnectionHandle(self.feed, self._generation, reader, writer)

    def _publish(self, handle: ConnectionHandle):
        old, self._handle = self._handle, handle
        self._state = FeedState.CONNECTED
        self._connected.set()
        if old is not None:
            old.close()
        self._spawn(self._drain(handle), f"drain#{handle.generation}")

    async def connect(self) -> bool:
        """Single dial. On failure, hand the feed over to the retry loop."""
        try:
            handle = await self._open()
        except DialError as exc:
            logger.warning("%s: Failed to make connection: %s", self.feed, exc)
            self._state = FeedState.AWAITING_RETRY
            self.signal.raise_()
            return False
        self._publish(handle)
        logger.debug("%s: connected (#%d)", self.feed, handle.generation)
        return True

    def request_reconnect(self, handle: ConnectionHandle | None = None) -> bool:
        """
        Report a broken feed. Reports against a superseded handle, or made
        while a retry cycle is already running, are dropped.
        """
        if handle is not None and handle is not self._handle:
            return False
        if self._retrying or self._state is FeedState.CONNECTING:
            return False
        self._state = FeedState.AWAITING_RETRY
        return self.signal.raise_()

    async def retry_loop(self):
        while True:
            if self.rate_limit:
                await self._sleep(self.rate_limit)
            await self.signal.wait()
            self._retrying = True
            try:
                await self._redial()
            finally:
                self._retrying = False

    async def _redial(self):
        self.attempts = 0
        while True:
            self.attempts += 1
            logger.info("Attempting to reconnect %s feed...", self.feed)
            try:
                handle = await self._open()
            except DialError as exc:
                self._state = FeedState.AWAITING_RETRY
                if self.backoff.exhausted(self.attempts):
                    logger.error("%s: giving up after %d attempts: %s", self.feed, self.attempts, exc)
                    return
                delay = self.backoff.delay(self.attempts)
                logger.debug("%s: attempt %d failed (%s), next in %ss", self.feed, self.attempts, exc, delay)
                await self._sleep(delay)
                continue
            self._publish(handle)
            logger.info("Successfully reconnected %s feed!", self.feed)
            return

    async def wait_connected(self):
        await self._connected.wait()

    def submit(self, kind: str, body: str) -> bool:
        """Queue a message body for the writer. Never blocks; drops on overflow."""
        try:
            self._outbox.put_nowait((kind, body))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("%s: outbox full, dropped %s message", self.feed, kind)
            return False
        return True

    async def _writer_loop(self):
        while True:
            kind, body = await self._outbox.get()
            handle = self._handle
            if handle is None or self._state is not FeedState.CONNECTED:
                self.dropped += 1
                self.request_reconnect()
                continue
            try:
                await write_frame(handle.writer, body, self.write_timeout)
            except WriteError as exc:
                self.dropped += 1
                if self.request_reconnect(handle):
                    logger.warning("Error writing %s message, connection may have been lost. (%s: %s)",
                                   kind, self.feed, exc)

    async def _drain(self, handle: ConnectionHandle):
        # acks are read and thrown away; a read error is not the writer's problem
        with contextlib.suppress(OSError):
            while await handle.reader.read(READ_CHUNK):
                pass
        # hub hung up: close our side so the next write fails fast
        handle.close()

    async def close(self):
        if self._closed:
            return
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
            with contextlib.suppress(OSError):
                await handle.writer.wait_closed()
