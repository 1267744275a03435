from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Coroutine, Optional, Union

import orjson
from loguru import logger

DONE_EVENT = b"data: [DONE]\n\n"


def encode_event(payload: dict[str, Any]) -> bytes:
    return b"data: " + orjson.dumps(payload) + b"\n\n"


class EventStream:
    """Server-sent event pipe with one writer and one reader.

    The writer may outlive the request handler that created the stream; the
    reader is handed to ``StreamingResponse`` right away. ``close`` is
    idempotent and anything written afterwards is dropped.
    """

    _EOF = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: Union[bytes, dict[str, Any]]) -> None:
        if self._closed:
            logger.debug("Dropping write to closed event stream")
            return
        self._queue.put_nowait(encode_event(data) if isinstance(data, dict) else data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._EOF)

    async def reader(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is self._EOF:
                return
            yield item


class BackgroundJobs:
    """Detached tasks that must keep running after their request handler returns.

    Holding a strong reference keeps the task from being garbage collected
    mid-flight; ``drain`` is called on shutdown before the HTTP client closes.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Background job {} failed", task.get_name())

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._tasks:
            return
        logger.info("Waiting for {} background job(s) to finish", len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            logger.warning("Cancelling unfinished background job {}", task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
