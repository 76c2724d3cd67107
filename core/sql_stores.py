# core/sql_stores.py
"""
SQLAlchemy backings for the store interfaces.

Timestamps cross this boundary as POSIX seconds and are stored as naive UTC
datetimes. Any SQLAlchemyError surfaces as DependencyUnavailable so callers
fail closed without knowing which table broke.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from core.database_models import AccountRecord, Base, BlockRecord, MessageRecord, SessionRecord
from core.errors import DependencyUnavailable
from core.stores import Account, AccountStore, BlockStore, MessageStore, Session, SessionStore

logger = logging.getLogger(__name__)


def to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


def create_session_factory(database_url: str, create_tables: bool = False) -> sessionmaker:
    """Build a session factory for the given database URL"""
    engine = create_engine(database_url, pool_pre_ping=True)
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


class _SQLStore:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self, operation: str):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"{type(self).__name__}.{operation} failed: {str(e)}")
            raise DependencyUnavailable(f"database:{operation}") from e
        finally:
            db.close()


class SQLSessionStore(_SQLStore, SessionStore):

    def create(self, identity, token, expires_at, fingerprint=None, issued_at=None):
        issued_at = issued_at if issued_at is not None else datetime.now(timezone.utc).timestamp()
        with self._session('create') as db:
            db.add(SessionRecord(
                session_token=token,
                user_email=identity,
                fingerprint=fingerprint,
                issued_at=to_datetime(issued_at),
                expires_at=to_datetime(expires_at)
            ))
        return Session(token=token, identity=identity, issued_at=issued_at,
                       expires_at=expires_at, fingerprint=fingerprint)

    def find(self, token):
        with self._session('find') as db:
            record = db.execute(
                select(SessionRecord).where(SessionRecord.session_token == token)
            ).scalar_one_or_none()
            if record is None:
                return None
            return Session(
                token=record.session_token,
                identity=record.user_email,
                issued_at=to_timestamp(record.issued_at),
                expires_at=to_timestamp(record.expires_at),
                fingerprint=record.fingerprint
            )

    def delete_expired(self, before):
        with self._session('delete_expired') as db:
            result = db.execute(
                delete(SessionRecord).where(SessionRecord.expires_at <= to_datetime(before))
            )
            return result.rowcount or 0


class SQLAccountStore(_SQLStore, AccountStore):

    def find_by_identity(self, identity):
        with self._session('find_by_identity') as db:
            record = db.execute(
                select(AccountRecord).where(AccountRecord.email == identity)
            ).scalar_one_or_none()
            if record is None:
                return None
            return Account(
                identity=record.email,
                password_hash=record.password_hash,
                verified=bool(record.verified),
                fingerprint=record.last_fingerprint,
                honeytoken=bool(record.is_honeytoken)
            )

    def update_fingerprint(self, identity, fingerprint):
        with self._session('update_fingerprint') as db:
            record = db.execute(
                select(AccountRecord).where(AccountRecord.email == identity)
            ).scalar_one_or_none()
            if record is not None:
                record.last_fingerprint = fingerprint


class SQLBlockStore(_SQLStore, BlockStore):

    def is_blocked(self, blocker, blocked):
        with self._session('is_blocked') as db:
            found = db.execute(
                select(BlockRecord.id).where(
                    BlockRecord.blocker_email == blocker,
                    BlockRecord.blocked_email == blocked
                )
            ).first()
            return found is not None


class SQLMessageStore(_SQLStore, MessageStore):

    def insert(self, sender, recipient, subject, body, digest, score, source_ip, timestamp):
        with self._session('insert') as db:
            record = MessageRecord(
                from_user=sender,
                to_user=recipient,
                subject=subject,
                body=body,
                body_digest=digest,
                spam_score=score,
                source_ip=source_ip,
                delivery_status='pending',
                sent_at=to_datetime(timestamp)
            )
            db.add(record)
            db.flush()
            return record.id

    def mark_delivery(self, message_id: int, status: str) -> None:
        with self._session('mark_delivery') as db:
            record = db.get(MessageRecord, message_id)
            if record is not None:
                record.delivery_status = status
