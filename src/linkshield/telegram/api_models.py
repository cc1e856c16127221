from __future__ import annotations

import msgspec

__all__ = [
    "Chat",
    "ChatJoinRequest",
    "ChatMember",
    "Message",
    "Update",
    "User",
]


class User(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    is_bot: bool = False
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None


class Chat(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    type: str
    title: str | None = None


class ChatMember(msgspec.Struct, forbid_unknown_fields=False):
    status: str
    user: User | None = None


class Message(msgspec.Struct, forbid_unknown_fields=False):
    message_id: int
    chat: Chat
    from_: User | None = msgspec.field(default=None, name="from")
    text: str | None = None


class ChatJoinRequest(msgspec.Struct, forbid_unknown_fields=False):
    chat: Chat
    from_: User = msgspec.field(name="from")
    date: int = 0
    user_chat_id: int | None = None

    @property
    def user_id(self) -> int:
        return self.from_.id


class Update(msgspec.Struct, forbid_unknown_fields=False):
    update_id: int
    message: Message | None = None
    chat_join_request: ChatJoinRequest | None = None
