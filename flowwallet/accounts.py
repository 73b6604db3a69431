"""Account records, the account-added event and an in-memory account store."""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .datastore import ListOptions

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AccountType(str, Enum):
    CUSTODIAL = "custodial"
    NON_CUSTODIAL = "non-custodial"


@dataclass
class Account:
    address: str = ""
    username: str = ""
    password: str = ""
    keys: List[Any] = field(default_factory=list)
    type: AccountType = AccountType.CUSTODIAL
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


@dataclass
class AccountRequest:
    username: str = ""
    password: str = ""


@dataclass
class AccountAddedPayload:
    address: str
    initialized_fungible_tokens: List[Any] = field(default_factory=list)


class AccountAddedEvent:
    """Fan-out of new-account notifications, each handler in its own thread."""

    def __init__(self):
        self._handlers: List[Callable[[AccountAddedPayload], None]] = []

    def register(self, handler: Callable[[AccountAddedPayload], None]) -> None:
        log.debug("Registering AccountAdded event handler")
        self._handlers.append(handler)

    def trigger(self, payload: AccountAddedPayload) -> None:
        log.debug("Handling AccountAdded event payload=%s", payload)
        for handler in list(self._handlers):
            threading.Thread(target=handler, args=(payload,), daemon=True).start()


account_added = AccountAddedEvent()


class RecordNotFound(LookupError):
    """No stored record matches the query."""

    def __init__(self, message: str = "record not found"):
        super().__init__(message)


class MemoryAccountStore:
    """Thread-safe account store kept in memory; records are copied in and out."""

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._lock = threading.RLock()

    def _live(self) -> List[Account]:
        return [a for a in self._accounts.values() if a.deleted_at is None]

    def _first(self, predicate: Callable[[Account], bool]) -> Account:
        matches = sorted((a for a in self._live() if predicate(a)), key=lambda a: a.address)
        if not matches:
            raise RecordNotFound()
        return matches[0]

    def accounts(self, options: ListOptions) -> List[Account]:
        with self._lock:
            ordered = sorted(
                self._live(),
                key=lambda a: a.created_at or datetime.min.replace(tzinfo=timezone.utc),
                reverse=True,
            )
            if options.limit < 0:
                page = ordered[options.offset:]
            else:
                page = ordered[options.offset:options.offset + options.limit]
            return [copy.deepcopy(a) for a in page]

    def account(self, address: str) -> Account:
        with self._lock:
            return copy.deepcopy(self._first(lambda a: a.address == address))

    def get_username(self, username: str) -> Account:
        """First account with the username; an empty username matches any account."""
        with self._lock:
            found = self._first(lambda a: not username or a.username == username)
            return copy.deepcopy(found)

    def account_detail_by_username(self, username: str, password: str) -> Account:
        """Address and type of the account matching the credentials; empty values match any."""
        with self._lock:
            found = self._first(
                lambda a: (not username or a.username == username)
                and (not password or a.password == password)
            )
            return Account(address=found.address, type=found.type)

    def insert_account(self, account: Account) -> None:
        with self._lock:
            if account.address in self._accounts:
                raise ValueError(f"duplicate key: {account.address}")
            now = _now()
            if account.created_at is None:
                account.created_at = now
            if account.updated_at is None:
                account.updated_at = now
            self._accounts[account.address] = copy.deepcopy(account)

    def save_account(self, account: Account) -> None:
        with self._lock:
            now = _now()
            if account.created_at is None:
                account.created_at = now
            account.updated_at = now
            self._accounts[account.address] = copy.deepcopy(account)

    def hard_delete_account(self, account: Account) -> None:
        with self._lock:
            self._accounts.pop(account.address, None)