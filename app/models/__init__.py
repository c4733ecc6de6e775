from .account import Account, AccountProvider
from .base import Base
from .message import Message, MessageDirection
from .thread import Thread

__all__ = [
    "Base",
    "Account",
    "AccountProvider",
    "Message",
    "MessageDirection",
    "Thread",
]
