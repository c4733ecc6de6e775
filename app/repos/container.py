from dependency_injector import containers, providers

from app.repos.account import AccountRepo
from app.repos.message import MessageRepo
from app.repos.store import MailStore
from app.repos.thread import ThreadRepo


class RepoContainer(containers.DeclarativeContainer):
    account = providers.Singleton(AccountRepo)
    thread = providers.Singleton(ThreadRepo)
    message = providers.Singleton(MessageRepo)

    store = providers.Singleton(MailStore, account_repo=account, thread_repo=thread, message_repo=message)
