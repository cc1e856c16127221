"""Long-poll retrieval of updates with concurrent, deadline-bound dispatch."""

from __future__ import annotations

import contextlib
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import anyio

from .logging import get_logger
from .telegram.api_models import Update
from .telegram.client import BotClient

if TYPE_CHECKING:
    from anyio.abc import TaskGroup

logger = get_logger(__name__)

UpdateCallback = Callable[[BotClient, Update], Awaitable[None]]
# Second argument is True when the error comes from fetching, False from a handler.
ErrorSink = Callable[[Exception, bool], None]

FETCH_BACKOFF_S = 1.0


class Poller:
    """Fetches updates one call at a time and hands each to ``on_update``.

    The offset only lives in memory. It starts unset, so the first call
    returns whatever the server still holds, and after every non-empty batch
    it moves to one past the highest ``update_id`` seen. Handlers for a batch
    run concurrently in the poller's task group, each under its own
    ``handler_timeout``, and may still be running when the next fetch starts.
    """

    def __init__(
        self,
        bot: BotClient,
        *,
        fetch_timeout: float,
        handler_timeout: float,
        long_poll_timeout: int = 1,
        limit: int = 1,
        allowed_updates: list[str] | None = None,
        max_concurrent_handlers: int | None = None,
        backoff_s: float = FETCH_BACKOFF_S,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._bot = bot
        self._fetch_timeout = fetch_timeout
        self._handler_timeout = handler_timeout
        self._long_poll_timeout = long_poll_timeout
        self._limit = limit
        self._allowed_updates = allowed_updates
        self._max_concurrent_handlers = max_concurrent_handlers
        self._limiter: anyio.CapacityLimiter | None = None
        self._backoff_s = backoff_s
        self._sleep = sleep
        self._scope: anyio.CancelScope | None = None
        self._cancel_requested = False
        self.offset: int | None = None

    def cancel(self) -> None:
        """Stop fetching and cancel every in-flight handler."""
        self._cancel_requested = True
        if self._scope is not None:
            self._scope.cancel()

    async def run(self, on_update: UpdateCallback, on_error: ErrorSink) -> None:
        """Poll until cancelled.

        Returns normally after :meth:`cancel`; cancellation of an enclosing
        scope propagates as usual. Neither is reported to ``on_error``.
        """
        async with anyio.create_task_group() as tg:
            self._scope = tg.cancel_scope
            if self._max_concurrent_handlers is not None:
                self._limiter = anyio.CapacityLimiter(self._max_concurrent_handlers)
            try:
                if self._cancel_requested:
                    tg.cancel_scope.cancel()
                while not self._cancel_requested:
                    await self._poll_once(tg, on_update, on_error)
            finally:
                self._scope = None

    async def _poll_once(
        self, tg: TaskGroup, on_update: UpdateCallback, on_error: ErrorSink
    ) -> None:
        try:
            with anyio.fail_after(self._fetch_timeout):
                updates = await self._bot.get_updates(
                    offset=self.offset,
                    timeout_s=self._long_poll_timeout,
                    limit=self._limit,
                    allowed_updates=self._allowed_updates,
                )
        except Exception as exc:
            on_error(exc, True)
            await self._sleep(self._backoff_s)
            return

        if not updates:
            return

        logger.debug(
            "poller.batch",
            offset=self.offset,
            update_ids=[update.update_id for update in updates],
        )
        for update in updates:
            tg.start_soon(
                self._dispatch,
                update,
                on_update,
                on_error,
                name=f"update-{update.update_id}",
            )

        next_offset = max(update.update_id for update in updates) + 1
        if self.offset is None or next_offset > self.offset:
            self.offset = next_offset

    async def _dispatch(
        self, update: Update, on_update: UpdateCallback, on_error: ErrorSink
    ) -> None:
        limiter = self._limiter if self._limiter is not None else contextlib.nullcontext()
        async with limiter:
            try:
                with anyio.fail_after(self._handler_timeout):
                    await on_update(self._bot, update)
            except Exception as exc:
                on_error(exc, False)
