from __future__ import annotations

import signal

import anyio
import anyio.abc

from .config import Settings
from .handlers import ROUTED_UPDATES, Env, make_error_sink, make_router
from .logging import get_logger
from .poller import Poller
from .telegram.client import BotClient, TelegramClient, TelegramError

logger = get_logger(__name__)


async def _cancel_on_signal(
    scope: anyio.CancelScope,
    *,
    task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        task_status.started()
        async for signum in signals:
            logger.info("shutdown.signal", signal=signal.Signals(signum).name)
            scope.cancel()
            return


def build_poller(bot: BotClient, settings: Settings) -> Poller:
    return Poller(
        bot,
        fetch_timeout=settings.poller_timeout,
        handler_timeout=settings.handler_timeout,
        long_poll_timeout=settings.long_poll_timeout,
        allowed_updates=list(ROUTED_UPDATES),
        max_concurrent_handlers=settings.max_concurrent_handlers,
    )


async def serve(
    bot: BotClient,
    settings: Settings,
    *,
    handle_signals: bool = True,
) -> bool:
    """Check the token, then poll until interrupted.

    Returns False when the startup health check fails and True after a clean
    shutdown.
    """
    env = Env(directives=settings.directives)
    async with anyio.create_task_group() as tg:
        if handle_signals:
            await tg.start(_cancel_on_signal, tg.cancel_scope)

        try:
            me = await bot.get_me()
        except TelegramError as exc:
            logger.error(
                "startup.healthcheck.failed",
                error=str(exc),
                hint="check your connectivity or that the bot token is correct",
            )
            tg.cancel_scope.cancel()
            return False

        logger.info("startup.ready", first_name=me.first_name, username=me.username)

        poller = build_poller(bot, settings)
        await poller.run(make_router(env), make_error_sink(env))
        tg.cancel_scope.cancel()
    logger.info("shutdown.complete")
    return True


async def run_bot(token: str, settings: Settings) -> bool:
    bot = TelegramClient(token)
    try:
        return await serve(bot, settings)
    finally:
        with anyio.CancelScope(shield=True):
            await bot.close()
