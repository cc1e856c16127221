import anyio
import pytest

from linkshield.poller import Poller
from linkshield.telegram import TelegramAPIError, TelegramNetworkError, Update
from tests.telegram_fakes import _FakeBot, join_request_update, message_update


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await anyio.lowlevel.checkpoint()


def _poller(bot: _FakeBot, **kwargs) -> Poller:
    kwargs.setdefault("fetch_timeout", 5)
    kwargs.setdefault("handler_timeout", 5)
    return Poller(bot, **kwargs)


async def _run_until(poller: Poller, on_update, on_error, done: anyio.Event) -> None:
    async with anyio.create_task_group() as tg:
        tg.start_soon(poller.run, on_update, on_error)
        with anyio.fail_after(5):
            await done.wait()
        poller.cancel()


@pytest.mark.anyio
async def test_offset_advances_past_each_batch() -> None:
    bot = _FakeBot(
        [
            [message_update(5, "hi")],
            [message_update(6, "a"), message_update(9, "b")],
        ]
    )
    poller = _poller(bot, long_poll_timeout=3)
    seen: list[int] = []
    errors: list[tuple[Exception, bool]] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        seen.append(update.update_id)
        if len(seen) == 3:
            done.set()

    await _run_until(poller, on_update, lambda exc, origin: errors.append((exc, origin)), done)

    assert sorted(seen) == [5, 6, 9]
    assert [call["offset"] for call in bot.get_updates_calls] == [None, 6, 10]
    assert all(call["limit"] == 1 for call in bot.get_updates_calls)
    assert all(call["timeout_s"] == 3 for call in bot.get_updates_calls)
    assert poller.offset == 10
    assert errors == []


@pytest.mark.anyio
async def test_offset_never_moves_backwards() -> None:
    bot = _FakeBot([[message_update(10, "x")], [message_update(4, "y")]])
    poller = _poller(bot)
    seen: list[int] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        seen.append(update.update_id)
        if len(seen) == 2:
            done.set()

    await _run_until(poller, on_update, lambda exc, origin: None, done)

    assert [call["offset"] for call in bot.get_updates_calls] == [None, 11, 11]
    assert poller.offset == 11


@pytest.mark.anyio
async def test_handler_failure_is_reported_and_isolated() -> None:
    bot = _FakeBot([[message_update(1, "bad"), message_update(2, "good")]])
    poller = _poller(bot)
    attempts: list[int] = []
    errors: list[tuple[Exception, bool]] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        attempts.append(update.update_id)
        if len(attempts) == 2:
            done.set()
        if update.update_id == 1:
            raise RuntimeError("handler exploded")

    await _run_until(poller, on_update, lambda exc, origin: errors.append((exc, origin)), done)

    assert sorted(attempts) == [1, 2]
    assert len(errors) == 1
    exc, from_poller = errors[0]
    assert isinstance(exc, RuntimeError)
    assert from_poller is False
    assert poller.offset == 3


@pytest.mark.anyio
async def test_fetch_failure_backs_off_and_keeps_offset() -> None:
    failure = TelegramNetworkError("getUpdates", "ConnectError: boom")
    bot = _FakeBot([[message_update(1, "a")], failure, [message_update(2, "b")]])
    sleeps = _Sleeps()
    poller = _poller(bot, sleep=sleeps)
    seen: list[int] = []
    errors: list[tuple[Exception, bool]] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        seen.append(update.update_id)
        if len(seen) == 2:
            done.set()

    await _run_until(poller, on_update, lambda exc, origin: errors.append((exc, origin)), done)

    assert errors == [(failure, True)]
    assert sleeps.calls == [1.0]
    assert [call["offset"] for call in bot.get_updates_calls] == [None, 2, 2, 3]
    assert sorted(seen) == [1, 2]


@pytest.mark.anyio
async def test_api_error_is_reported_as_poller_error() -> None:
    failure = TelegramAPIError("getUpdates", error_code=409, description="Conflict")
    bot = _FakeBot([failure, [message_update(1, "a")]])
    sleeps = _Sleeps()
    poller = _poller(bot, sleep=sleeps)
    errors: list[tuple[Exception, bool]] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        done.set()

    await _run_until(poller, on_update, lambda exc, origin: errors.append((exc, origin)), done)

    assert errors == [(failure, True)]
    assert sleeps.calls == [1.0]


@pytest.mark.anyio
async def test_empty_batch_polls_again_without_backoff() -> None:
    bot = _FakeBot([[], [], [message_update(1, "a")]])
    sleeps = _Sleeps()
    poller = _poller(bot, sleep=sleeps)
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        done.set()

    await _run_until(poller, on_update, lambda exc, origin: None, done)

    assert sleeps.calls == []
    assert [call["offset"] for call in bot.get_updates_calls] == [None, None, None, 2]


@pytest.mark.anyio
async def test_fetch_timeout_is_reported() -> None:
    bot = _FakeBot()
    errors: list[tuple[Exception, bool]] = []
    poller: Poller

    async def cancel_on_backoff(delay: float) -> None:
        poller.cancel()
        await anyio.lowlevel.checkpoint()

    poller = _poller(bot, fetch_timeout=0.05, sleep=cancel_on_backoff)

    async def on_update(_bot, update: Update) -> None:
        raise AssertionError("no updates expected")

    with anyio.fail_after(5):
        await poller.run(on_update, lambda exc, origin: errors.append((exc, origin)))

    assert len(errors) == 1
    assert isinstance(errors[0][0], TimeoutError)
    assert errors[0][1] is True
    assert len(bot.get_updates_calls) == 1


@pytest.mark.anyio
async def test_handler_timeout_is_reported() -> None:
    bot = _FakeBot([[join_request_update(1, 100, 42)]])
    poller = _poller(bot, handler_timeout=0.05)
    errors: list[tuple[Exception, bool]] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        await anyio.sleep_forever()

    def on_error(exc: Exception, from_poller: bool) -> None:
        errors.append((exc, from_poller))
        done.set()

    await _run_until(poller, on_update, on_error, done)

    assert len(errors) == 1
    assert isinstance(errors[0][0], TimeoutError)
    assert errors[0][1] is False


@pytest.mark.anyio
async def test_cancel_while_fetch_blocked_returns_without_refetch() -> None:
    bot = _FakeBot()
    poller = _poller(bot)
    errors: list[tuple[Exception, bool]] = []
    bot.on_exhausted = poller.cancel

    async def on_update(_bot, update: Update) -> None:
        raise AssertionError("no updates expected")

    with anyio.fail_after(1):
        await poller.run(on_update, lambda exc, origin: errors.append((exc, origin)))

    assert len(bot.get_updates_calls) == 1
    assert errors == []


@pytest.mark.anyio
async def test_cancel_before_run_skips_fetching() -> None:
    bot = _FakeBot([[message_update(1, "a")]])
    poller = _poller(bot)
    poller.cancel()

    async def on_update(_bot, update: Update) -> None:
        raise AssertionError("no updates expected")

    with anyio.fail_after(1):
        await poller.run(on_update, lambda exc, origin: None)

    assert bot.get_updates_calls == []


@pytest.mark.anyio
async def test_allowed_updates_are_sent_with_every_fetch() -> None:
    bot = _FakeBot([[]])
    poller = _poller(bot, allowed_updates=["chat_join_request"])
    bot.on_exhausted = poller.cancel

    async def on_update(_bot, update: Update) -> None:
        raise AssertionError("no updates expected")

    with anyio.fail_after(1):
        await poller.run(on_update, lambda exc, origin: None)

    assert [call["allowed_updates"] for call in bot.get_updates_calls] == [
        ["chat_join_request"],
        ["chat_join_request"],
    ]


@pytest.mark.anyio
async def test_outer_cancellation_is_not_reported() -> None:
    bot = _FakeBot()
    poller = _poller(bot)
    errors: list[tuple[Exception, bool]] = []

    async def on_update(_bot, update: Update) -> None:
        raise AssertionError("no updates expected")

    with anyio.move_on_after(0.05) as scope:
        await poller.run(on_update, lambda exc, origin: errors.append((exc, origin)))

    assert scope.cancelled_caught
    assert errors == []


@pytest.mark.anyio
async def test_cancel_reaches_in_flight_handlers() -> None:
    bot = _FakeBot([[message_update(1, "a"), message_update(2, "b")]])
    poller = _poller(bot)
    started: list[int] = []
    cancelled: list[int] = []
    errors: list[tuple[Exception, bool]] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        started.append(update.update_id)
        if len(started) == 2:
            done.set()
        try:
            await anyio.sleep_forever()
        except anyio.get_cancelled_exc_class():
            cancelled.append(update.update_id)
            raise

    await _run_until(poller, on_update, lambda exc, origin: errors.append((exc, origin)), done)

    assert sorted(cancelled) == [1, 2]
    assert errors == []


@pytest.mark.anyio
async def test_max_concurrent_handlers_bounds_dispatch() -> None:
    bot = _FakeBot([[message_update(i, "x") for i in range(1, 5)]])
    poller = _poller(bot, max_concurrent_handlers=1)
    active = 0
    peak = 0
    finished: list[int] = []
    done = anyio.Event()

    async def on_update(_bot, update: Update) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await anyio.sleep(0.01)
        active -= 1
        finished.append(update.update_id)
        if len(finished) == 4:
            done.set()

    await _run_until(poller, on_update, lambda exc, origin: None, done)

    assert peak == 1
    assert sorted(finished) == [1, 2, 3, 4]
