from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable

from carely_agent_core.models import Turn


class TurnQueue:
    """Strictly ordered turn dispatch.

    A single worker task dispatches one turn at a time; the next turn starts only after
    the previous dispatch (its whole stream) has finished, successfully or not.
    """

    def __init__(self, dispatch: Callable[[Turn], Awaitable[Any]]) -> None:
        self._dispatch = dispatch
        self._queue: asyncio.Queue[tuple[Turn, asyncio.Future[Any]]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._busy = False

    @property
    def idle(self) -> bool:
        return not self._busy and self._queue.empty()

    def enqueue(self, turn: Turn) -> asyncio.Future[Any]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._queue.put_nowait((turn, future))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run())
        return future

    async def join(self) -> None:
        await self._queue.join()

    async def aclose(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

    async def _run(self) -> None:
        while True:
            turn, future = await self._queue.get()
            self._busy = True
            try:
                result = await self._dispatch(turn)
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._busy = False
                self._queue.task_done()
