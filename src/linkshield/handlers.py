from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .logging import get_logger
from .poller import ErrorSink, UpdateCallback
from .telegram.api_models import ChatJoinRequest, Message, Update
from .telegram.client import BotClient, TelegramAPIError, TelegramError

START_COMMAND = "/start"

START_TEXT = (
    "Hey there! I'm a private instance of "
    '<a href="https://t.me/LinkShieldBot">LinkShieldBot</a> - '
    "a bot to filter unwanted chat join requests.\n"
    "Check my channel out to learn more or run your own instance."
)

# Update kinds route_update acts on; Telegram filters out the rest.
ROUTED_UPDATES = ("message", "chat_join_request")

APPROVED_STATUSES = frozenset({"creator", "administrator", "member", "restricted"})

# Bot API descriptions for join requests that were already approved or declined.
ALREADY_RESOLVED_MARKERS = ("HIDE_REQUESTER_MISSING", "USER_ALREADY_PARTICIPANT")


class JoinDecision(enum.Enum):
    APPROVE = "approve"
    DECLINE = "decline"


class UpdateHandlingError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class Env:
    directives: Mapping[int, int]
    logger: Any = field(default_factory=lambda: get_logger(__name__))


def decide(status: str | None) -> JoinDecision:
    if status in APPROVED_STATUSES:
        return JoinDecision.APPROVE
    return JoinDecision.DECLINE


def is_already_resolved(exc: TelegramAPIError) -> bool:
    return any(marker in exc.description for marker in ALREADY_RESOLVED_MARKERS)


async def handle_start(bot: BotClient, message: Message, env: Env) -> None:
    env.logger.debug("command.start", chat_id=message.chat.id)
    try:
        await bot.send_message(message.chat.id, START_TEXT, parse_mode="HTML")
    except TelegramError as exc:
        raise UpdateHandlingError(
            f"failed to reply to /start (chat_id={message.chat.id}): {exc}"
        ) from exc


async def handle_join_request(
    bot: BotClient, request: ChatJoinRequest, env: Env
) -> JoinDecision | None:
    """Approve or decline a join request based on reference chat membership.

    Returns the decision that was sent, or None when the chat has no
    directive. Failures leave the request pending on Telegram's side.
    """
    chat_id = request.chat.id
    user_id = request.user_id
    log = env.logger.bind(chat_id=chat_id, user_id=user_id)

    reference_chat_id = env.directives.get(chat_id)
    if reference_chat_id is None:
        log.debug("join_request.no_directive")
        return None

    log.debug("join_request.received", reference_chat_id=reference_chat_id)

    try:
        member = await bot.get_chat_member(reference_chat_id, user_id)
    except TelegramError as exc:
        raise UpdateHandlingError(
            f"failed to get chat member (chat_id={reference_chat_id}, "
            f"user_id={user_id}): {exc}"
        ) from exc

    decision = decide(member.status)
    if decision is JoinDecision.APPROVE:
        send = bot.approve_chat_join_request
    else:
        send = bot.decline_chat_join_request

    try:
        ok = await send(chat_id, user_id)
    except TelegramAPIError as exc:
        if not is_already_resolved(exc):
            raise UpdateHandlingError(
                f"failed to {decision.value} join request "
                f"(chat_id={chat_id}, user_id={user_id}): {exc}"
            ) from exc
        ok = False
    except TelegramError as exc:
        raise UpdateHandlingError(
            f"failed to {decision.value} join request "
            f"(chat_id={chat_id}, user_id={user_id}): {exc}"
        ) from exc

    if not ok:
        log.info(
            "join_request.already_resolved",
            decision=decision.value,
            status=member.status,
        )
        return decision

    log.debug(
        "join_request.approved"
        if decision is JoinDecision.APPROVE
        else "join_request.declined",
        status=member.status,
    )
    return decision


async def route_update(bot: BotClient, update: Update, env: Env) -> None:
    message = update.message
    if message is not None:
        if message.chat.type == "private" and message.text == START_COMMAND:
            await handle_start(bot, message, env)
        return
    if update.chat_join_request is not None:
        await handle_join_request(bot, update.chat_join_request, env)


def make_router(env: Env) -> UpdateCallback:
    async def _route(bot: BotClient, update: Update) -> None:
        await route_update(bot, update, env)

    return _route


def make_error_sink(env: Env) -> ErrorSink:
    def on_error(exc: Exception, from_poller: bool) -> None:
        fields: dict[str, Any] = {
            "error": str(exc),
            "error_type": exc.__class__.__name__,
        }
        if isinstance(exc, TelegramAPIError):
            fields["error_code"] = exc.error_code
        elif isinstance(exc.__cause__, TelegramAPIError):
            fields["error_code"] = exc.__cause__.error_code
        if from_poller:
            env.logger.warning("poller.fetch.failed", retrying=True, **fields)
        else:
            env.logger.error("update.failed", **fields)

    return on_error
