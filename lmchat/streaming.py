"""
TextStream - pull-style async iterator over a background decode.

The producer task runs the turn and pushes user-visible fragments into
a bounded asyncio.Queue; a full queue blocks the producer, which pauses
decoding until the consumer catches up. The consumer sees:

    fragment, fragment, ..., end            (normal completion)
    fragment, fragment, ..., error          (engine failure, deferred)
    fragment, ..., fragment k  | cancel()   (nothing after k)

Breaking out of `async for` cancels the turn as cancel() does. Callers
driving __anext__() by hand must call cancel() or aclose() themselves.

Usage:
    async with client.stream_complete(messages) as stream:
        async for fragment in stream:
            print(fragment, end="")
    print(stream.result.stop_reason)
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from lmchat.config import DEFAULT_STREAM_QUEUE_SIZE
from lmchat.schemas import GenerationResult, SegmentKind, StreamingSegment

logger = logging.getLogger(__name__)

Emit = Callable[[StreamingSegment], Awaitable[None]]
Producer = Callable[[Emit, asyncio.Event], Awaitable[Optional[GenerationResult]]]


class TextStream:
    """Async iterator of text fragments produced by a background task."""

    def __init__(
        self,
        produce: Producer,
        queue_size: int = DEFAULT_STREAM_QUEUE_SIZE,
        on_abandon: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            produce: Coroutine function running the turn; awaited with (emit, cancel)
            queue_size: Fragments buffered before the producer blocks
            on_abandon: Called if the stream is cancelled before the producer started
        """
        self._produce = produce
        self._on_abandon = on_abandon
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self._cancel = asyncio.Event()
        self._signal = asyncio.Event()
        self._done = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._result: Optional[GenerationResult] = None
        self._error: Optional[BaseException] = None
        self._closed = False
        self._started = False

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._start()

    def _start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        self._started = True
        try:
            self._result = await self._produce(self._emit, self._cancel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Generation failed: %s", e)
            self._error = e
        finally:
            self._done.set()
            self._signal.set()

    async def _emit(self, segment: StreamingSegment) -> None:
        if segment.kind != SegmentKind.USER_VISIBLE or not segment.text:
            return
        if self._cancel.is_set():
            return
        await self._queue.put(segment.text)
        self._signal.set()

    # ─────────────────────────────────────────────────────────────────
    # CONSUMER
    # ─────────────────────────────────────────────────────────────────

    async def __aiter__(self) -> AsyncIterator[str]:
        # leaving an `async for` early closes this generator, which cancels the turn
        try:
            while True:
                try:
                    fragment = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield fragment
        finally:
            self.cancel()

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        self._start()
        try:
            while True:
                self._signal.clear()
                if not self._queue.empty():
                    return self._queue.get_nowait()
                if self._done.is_set():
                    self._closed = True
                    if self._error is not None:
                        raise self._error
                    raise StopAsyncIteration
                await self._signal.wait()
        except asyncio.CancelledError:
            self.cancel()
            raise

    async def __aenter__(self) -> "TextStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def result(self) -> Optional[GenerationResult]:
        """GenerationResult after normal completion; None while running or after cancel."""
        return self._result

    def cancel(self) -> None:
        """
        Stop the generation. No further fragment is delivered.

        Buffered fragments are discarded and the producer task cancelled.
        Calling cancel() after the stream ended is a no-op.
        """
        if self._done.is_set() and self._closed:
            return
        self._closed = True
        if self._done.is_set():
            return
        self._cancel.set()
        while not self._queue.empty():
            self._queue.get_nowait()
        if self._task is None:
            self._abandon()
        elif not self._task.done():
            self._task.add_done_callback(lambda _: self._abandon())
            self._task.cancel()
        logger.info("Stream cancelled")

    def _abandon(self) -> None:
        # a producer that never ran cannot release what it was handed
        if not self._started and self._on_abandon is not None:
            self._on_abandon()

    async def aclose(self) -> None:
        """Cancel if still running and wait for the producer to wind down."""
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def collect(self) -> str:
        """Drain the stream and return the concatenated text."""
        return "".join([fragment async for fragment in self])
