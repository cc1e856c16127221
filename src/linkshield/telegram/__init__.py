from .api_models import Chat, ChatJoinRequest, ChatMember, Message, Update, User
from .client import (
    BotClient,
    TelegramAPIError,
    TelegramClient,
    TelegramError,
    TelegramNetworkError,
)

__all__ = [
    "BotClient",
    "Chat",
    "ChatJoinRequest",
    "ChatMember",
    "Message",
    "TelegramAPIError",
    "TelegramClient",
    "TelegramError",
    "TelegramNetworkError",
    "Update",
    "User",
]
