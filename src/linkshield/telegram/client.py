from __future__ import annotations

from typing import Any, Protocol, TypeVar

import httpx
import msgspec

from ..logging import get_logger, redact_token
from .api_models import ChatMember, Message, Update, User

logger = get_logger(__name__)

T = TypeVar("T")

API_BASE = "https://api.telegram.org"


class TelegramError(Exception):
    """Base class for failed Bot API calls."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method


class TelegramNetworkError(TelegramError):
    """The call never produced a Bot API reply (transport or decoding failure)."""


class TelegramAPIError(TelegramError):
    """The Bot API answered with ``ok: false``."""

    def __init__(
        self,
        method: str,
        *,
        error_code: int | None,
        description: str,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(method, f'api error {error_code}: "{description}"')
        self.error_code = error_code
        self.description = description
        self.retry_after = retry_after


class BotClient(Protocol):
    async def close(self) -> None: ...

    async def get_me(self) -> User: ...

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        limit: int | None = None,
        allowed_updates: list[str] | None = None,
    ) -> list[Update]: ...

    async def send_message(
        self,
        chat_id: int,
        text: str,
        parse_mode: str | None = None,
    ) -> Message: ...

    async def get_chat_member(self, chat_id: int, user_id: int) -> ChatMember: ...

    async def approve_chat_join_request(self, chat_id: int, user_id: int) -> bool: ...

    async def decline_chat_join_request(self, chat_id: int, user_id: int) -> bool: ...


def retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool):
            return float(retry_after)
    return None


class _UpdateId(msgspec.Struct, forbid_unknown_fields=False):
    update_id: int


def decode_update(raw: dict[str, Any]) -> Update:
    """Decode one update, degrading to a bare id when its payload is unusable.

    A single malformed update must not make the whole batch undecodable,
    otherwise the offset could never move past it.
    """
    try:
        return msgspec.convert(raw, type=Update)
    except msgspec.ValidationError as exc:
        try:
            bare = msgspec.convert(raw, type=_UpdateId)
        except msgspec.ValidationError:
            raise exc from None
        logger.warning(
            "telegram.update.undecodable",
            update_id=bare.update_id,
            error=str(exc),
        )
        return Update(update_id=bare.update_id)


class TelegramClient:
    def __init__(
        self,
        token: str,
        timeout_s: float = 120,
        client: httpx.AsyncClient | None = None,
        *,
        base_url: str = API_BASE,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{base_url}/bot{token}"
        self._client = client or httpx.AsyncClient(
            timeout=timeout_s, follow_redirects=False
        )
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, method: str, json_data: dict[str, Any], kind: type[T]) -> T:
        logger.debug("telegram.request", method=method, payload=json_data)
        try:
            resp = await self._client.post(f"{self._base}/{method}", json=json_data)
        except httpx.HTTPError as e:
            # httpx messages may embed the request URL, which carries the token.
            raise TelegramNetworkError(
                method, redact_token(f"{e.__class__.__name__}: {e}")
            ) from None

        try:
            payload = resp.json()
        except ValueError:
            raise TelegramNetworkError(
                method, f"non-JSON response (status {resp.status_code})"
            ) from None

        if not isinstance(payload, dict) or "ok" not in payload:
            raise TelegramNetworkError(
                method, f"invalid payload (status {resp.status_code})"
            )

        if not payload.get("ok"):
            error_code = payload.get("error_code")
            raise TelegramAPIError(
                method,
                error_code=error_code if isinstance(error_code, int) else None,
                description=str(payload.get("description") or ""),
                retry_after=retry_after_from_payload(payload),
            )

        logger.debug("telegram.response", method=method, payload=payload)
        try:
            return msgspec.convert(payload.get("result"), type=kind)
        except msgspec.ValidationError as e:
            raise TelegramNetworkError(method, f"unexpected result: {e}") from None

    async def get_me(self) -> User:
        return await self._post("getMe", {}, User)

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        limit: int | None = None,
        allowed_updates: list[str] | None = None,
    ) -> list[Update]:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        if limit is not None:
            params["limit"] = limit
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        raw = await self._post("getUpdates", params, list[dict[str, Any]])
        try:
            return [decode_update(item) for item in raw]
        except msgspec.ValidationError as e:
            raise TelegramNetworkError("getUpdates", f"unexpected result: {e}") from None

    async def send_message(
        self,
        chat_id: int,
        text: str,
        parse_mode: str | None = None,
    ) -> Message:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
        }
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        return await self._post("sendMessage", params, Message)

    async def get_chat_member(self, chat_id: int, user_id: int) -> ChatMember:
        return await self._post(
            "getChatMember", {"chat_id": chat_id, "user_id": user_id}, ChatMember
        )

    async def approve_chat_join_request(self, chat_id: int, user_id: int) -> bool:
        return await self._post(
            "approveChatJoinRequest", {"chat_id": chat_id, "user_id": user_id}, bool
        )

    async def decline_chat_join_request(self, chat_id: int, user_id: int) -> bool:
        return await self._post(
            "declineChatJoinRequest", {"chat_id": chat_id, "user_id": user_id}, bool
        )
