# core/stores.py
"""
Interfaces to the external data store, plus in-memory implementations.

The guards only ever talk to these interfaces. The in-memory classes back
single-instance development setups and the test suite; core/sql_stores.py and
core/redis_stores.py hold the production backings.
"""

import itertools
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Set, Tuple


@dataclass(frozen=True)
class Session:
    """Issued session record"""
    token: str
    identity: str
    issued_at: float
    expires_at: float
    fingerprint: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class Account:
    """The parts of a user record the guards read"""
    identity: str
    password_hash: str
    verified: bool = False
    fingerprint: Optional[str] = None
    honeytoken: bool = False


@dataclass
class StoredMessage:
    id: int
    sender: str
    recipient: str
    subject: str
    body: str
    digest: str
    score: float
    source_ip: Optional[str]
    timestamp: float
    delivery_status: str = 'pending'


class SessionStore(ABC):

    @abstractmethod
    def create(self, identity: str, token: str, expires_at: float,
               fingerprint: Optional[str] = None, issued_at: Optional[float] = None) -> Session:
        pass

    @abstractmethod
    def find(self, token: str) -> Optional[Session]:
        pass

    @abstractmethod
    def delete_expired(self, before: float) -> int:
        pass


class AccountStore(ABC):

    @abstractmethod
    def find_by_identity(self, identity: str) -> Optional[Account]:
        pass

    @abstractmethod
    def update_fingerprint(self, identity: str, fingerprint: str) -> None:
        pass


class BlockStore(ABC):

    @abstractmethod
    def is_blocked(self, blocker: str, blocked: str) -> bool:
        pass


class MessageStore(ABC):

    @abstractmethod
    def insert(self, sender: str, recipient: str, subject: str, body: str, digest: str,
               score: float, source_ip: Optional[str], timestamp: float) -> int:
        """Persist an accepted message and return its id"""

    def mark_delivery(self, message_id: int, status: str) -> None:
        """Record the outcome of the delivery attempt; optional for backings"""


class MemorySessionStore(SessionStore):

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, identity, token, expires_at, fingerprint=None, issued_at=None):
        record = Session(
            token=token,
            identity=identity,
            issued_at=issued_at if issued_at is not None else time.time(),
            expires_at=expires_at,
            fingerprint=fingerprint
        )
        with self._lock:
            self._sessions[token] = record
        return record

    def find(self, token):
        return self._sessions.get(token)

    def delete_expired(self, before):
        with self._lock:
            expired = [token for token, s in self._sessions.items() if s.expires_at <= before]
            for token in expired:
                del self._sessions[token]
        return len(expired)


class MemoryAccountStore(AccountStore):

    def __init__(self, accounts: Optional[List[Account]] = None):
        self._accounts: Dict[str, Account] = {}
        for account in accounts or []:
            self.add(account)

    def add(self, account: Account) -> None:
        self._accounts[account.identity] = account

    def find_by_identity(self, identity):
        return self._accounts.get(identity)

    def update_fingerprint(self, identity, fingerprint):
        account = self._accounts.get(identity)
        if account is not None:
            self._accounts[identity] = replace(account, fingerprint=fingerprint)


class MemoryBlockStore(BlockStore):

    def __init__(self):
        self._pairs: Set[Tuple[str, str]] = set()

    def block(self, blocker: str, blocked: str) -> None:
        self._pairs.add((blocker, blocked))

    def unblock(self, blocker: str, blocked: str) -> None:
        self._pairs.discard((blocker, blocked))

    def is_blocked(self, blocker, blocked):
        return (blocker, blocked) in self._pairs


class MemoryMessageStore(MessageStore):

    def __init__(self):
        self.messages: List[StoredMessage] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def insert(self, sender, recipient, subject, body, digest, score, source_ip, timestamp):
        with self._lock:
            message = StoredMessage(
                id=next(self._ids),
                sender=sender,
                recipient=recipient,
                subject=subject,
                body=body,
                digest=digest,
                score=score,
                source_ip=source_ip,
                timestamp=timestamp
            )
            self.messages.append(message)
        return message.id

    def mark_delivery(self, message_id, status):
        for message in self.messages:
            if message.id == message_id:
                message.delivery_status = status
