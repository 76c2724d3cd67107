from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, Float, ForeignKey, UniqueConstraint
)

from sqlalchemy.orm import declarative_base

Base = declarative_base()

class AccountRecord(Base):
    __tablename__ = 'accounts'

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    username = Column(String(100))
    password_hash = Column(String(255), nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    last_fingerprint = Column(String(64))  # sha256 hex of UA | language | IP
    is_honeytoken = Column(Boolean, default=False, nullable=False)  # decoy account, never log in
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class SessionRecord(Base):
    __tablename__ = 'sessions'

    id = Column(Integer, primary_key=True)
    session_token = Column(String(255), nullable=False, unique=True, index=True)
    user_email = Column(String(255), nullable=False, index=True)
    fingerprint = Column(String(64))
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

class BlockRecord(Base):
    __tablename__ = 'blocks'
    __table_args__ = (UniqueConstraint('blocker_email', 'blocked_email'),)

    id = Column(Integer, primary_key=True)
    blocker_email = Column(String(255), ForeignKey('accounts.email'), nullable=False, index=True)
    blocked_email = Column(String(255), ForeignKey('accounts.email'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

class MessageRecord(Base):
    __tablename__ = 'messages'

    id = Column(Integer, primary_key=True)
    from_user = Column(String(255), nullable=False, index=True)
    to_user = Column(String(255), nullable=False, index=True)
    subject = Column(String(255), nullable=False, default='')
    body = Column(Text, nullable=False)  # stored escaped
    body_digest = Column(String(64), nullable=False)
    spam_score = Column(Float, default=0.0)
    source_ip = Column(String(45))
    delivery_status = Column(String(20), default='pending')  # 'pending', 'sent', 'failed'
    sent_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
