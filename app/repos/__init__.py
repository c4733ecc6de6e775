from .account import AccountRepo
from .message import MessageRepo
from .store import MailStore, Store
from .thread import ThreadRepo

__all__ = [
    "AccountRepo",
    "MailStore",
    "MessageRepo",
    "Store",
    "ThreadRepo",
]
