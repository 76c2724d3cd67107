# app.py
"""
Flask Application Factory for the session and messaging guard service

Wires the guards to their backing stores:
- redis (REDIS_URL) for rate windows, sessions and the audit trail
- SQL (DATABASE_URL) for accounts, blocks, messages and, without redis, sessions
- in-memory stores when neither is configured (single instance / development)
"""

import os
import time
import logging
import logging.handlers
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import click
import redis
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from api.auth import auth_bp, limiter
from api.messages import messages_bp
from config.security import SecurityConfig, DevelopmentConfig, TestingConfig
from core.audit import AuditTrail
from core.crypto_box import CryptoBox
from core.errors import GuardError
from core.fingerprint import FingerprintDeriver
from core.login_guard import LoginGuard, LoginPolicy
from core.message_guard import MessageGuard, MessagePolicy
from core.passwords import PasswordHasher
from core.rate_limiter import MemoryCounterStore, RedisCounterStore, SlidingWindowCounter
from core.redis_stores import RedisSessionStore
from core.session_manager import SessionManager
from core.spam_scorer import SpamPolicy, SpamScorer
from core.sql_stores import (
    SQLAccountStore, SQLBlockStore, SQLMessageStore, SQLSessionStore, create_session_factory
)
from core.stores import (
    MemoryAccountStore, MemoryBlockStore, MemoryMessageStore, MemorySessionStore
)
from middleware.security import handle_guard_error, security_headers
from services.captcha import CaptchaVerifier
from services.mail_transport import SMTPMailTransport

CONFIGS = {
    'production': SecurityConfig,
    'development': DevelopmentConfig,
    'testing': TestingConfig,
}


@dataclass
class GuardServices:
    """Everything the request handlers reach through app.extensions['guards']"""
    sessions: SessionManager
    login: LoginGuard
    messages: MessageGuard
    counter: SlidingWindowCounter
    fingerprints: FingerprintDeriver
    hasher: PasswordHasher
    audit: AuditTrail
    accounts: Any
    blocks: Any
    message_store: Any
    session_store: Any


def setup_logging(app: Flask) -> None:
    """
    Configure logging: journal-style stream output, optional rotating file
    """
    app.logger.handlers.clear()

    journal_formatter = logging.Formatter(fmt=app.config.get('LOG_FORMAT'))
    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(getattr(h, '_guard_handler', False) for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(journal_formatter)
        stream_handler._guard_handler = True
        root.addHandler(stream_handler)

        if app.config.get('LOG_FILE'):
            file_handler = logging.handlers.RotatingFileHandler(
                app.config['LOG_FILE'],
                maxBytes=10*1024*1024,  # 10MB
                backupCount=5
            )
            file_handler.setFormatter(detailed_formatter)
            file_handler._guard_handler = True
            root.addHandler(file_handler)

    # Suppress verbose third-party logs in production
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)


def create_redis_client(app: Flask) -> Optional[redis.Redis]:
    """Redis client for rate windows, sessions and audit entries, if configured"""
    url = app.config.get('REDIS_URL')
    if not url:
        app.logger.warning("REDIS_URL not set; rate windows and sessions are per-process")
        return None

    client = redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
    try:
        client.ping()
        app.logger.info("Redis client connected successfully")
    except redis.ConnectionError as e:
        app.logger.error(f"Redis connection failed: {e}")
        raise
    return client


def build_guards(config: Dict[str, Any], redis_client: Optional[redis.Redis] = None,
                 session_factory=None, clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep,
                 captcha: Optional[CaptchaVerifier] = None,
                 transport: Optional[SMTPMailTransport] = None) -> GuardServices:
    """
    Assemble the guards from configuration and backing clients
    """
    if session_factory is not None:
        accounts = SQLAccountStore(session_factory)
        blocks = SQLBlockStore(session_factory)
        message_store = SQLMessageStore(session_factory)
        session_store = SQLSessionStore(session_factory)
    else:
        accounts = MemoryAccountStore()
        blocks = MemoryBlockStore()
        message_store = MemoryMessageStore()
        session_store = MemorySessionStore()

    if redis_client is not None:
        counter_store = RedisCounterStore(redis_client)
        session_store = RedisSessionStore(redis_client)
    else:
        counter_store = MemoryCounterStore()

    if captcha is None and config.get('CAPTCHA_SECRET'):
        captcha = CaptchaVerifier(
            config['CAPTCHA_SECRET'],
            verify_url=config['CAPTCHA_VERIFY_URL'],
            timeout=config['CAPTCHA_TIMEOUT']
        )
    if transport is None and config.get('SMTP_HOST'):
        transport = SMTPMailTransport(
            config['SMTP_HOST'],
            port=config['SMTP_PORT'],
            username=config.get('SMTP_USERNAME'),
            password=config.get('SMTP_PASSWORD'),
            from_address=config.get('MAIL_FROM_ADDRESS') or '',
            from_name=config.get('MAIL_FROM_NAME', 'Botnev Mail'),
            timeout=config['SMTP_TIMEOUT']
        )

    login_policy = LoginPolicy.from_config(config)
    crypto_box = CryptoBox(config['SESSION_SECRET'], iterations=config['KDF_ITERATIONS'])
    counter = SlidingWindowCounter(counter_store, clock=clock)
    fingerprints = FingerprintDeriver()
    hasher = PasswordHasher(iterations=config['PASSWORD_HASH_ITERATIONS'])
    audit = AuditTrail(redis_client, retention_days=config.get('AUDIT_LOG_RETENTION_DAYS', 90))
    sessions = SessionManager(session_store, crypto_box,
                              default_ttl=login_policy.session_ttl, clock=clock)

    login = LoginGuard(accounts, sessions, counter, hasher, fingerprints, audit,
                       captcha=captcha, policy=login_policy, sleep=sleep)
    messages = MessageGuard(sessions, accounts, blocks, message_store, counter,
                            fingerprints, audit,
                            scorer=SpamScorer(SpamPolicy.from_config(config)),
                            transport=transport,
                            policy=MessagePolicy.from_config(config),
                            clock=clock)

    return GuardServices(
        sessions=sessions,
        login=login,
        messages=messages,
        counter=counter,
        fingerprints=fingerprints,
        hasher=hasher,
        audit=audit,
        accounts=accounts,
        blocks=blocks,
        message_store=message_store,
        session_store=session_store
    )


def configure_error_handlers(app: Flask) -> None:
    """
    Map guard errors and unexpected exceptions to JSON responses
    """
    app.register_error_handler(GuardError, handle_guard_error)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Endpoint rate limit exceeded: {error.description}")
        return jsonify({
            'success': False,
            'kind': 'rate_limited',
            'error': 'Rate limit exceeded'
        }), 429

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return jsonify({'success': False, 'error': e.name}), e.code

        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({
            'success': False,
            'error': 'Internal server error'
        }), 500


def configure_health_checks(app: Flask, redis_client: Optional[redis.Redis]) -> None:

    @app.route('/api/health')
    def health_check():
        status = {
            'status': 'ok',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'components': {}
        }
        if redis_client is not None:
            try:
                redis_client.ping()
                status['components']['redis'] = 'healthy'
            except redis.RedisError as e:
                status['components']['redis'] = f'unhealthy: {str(e)}'
                status['status'] = 'degraded'
        return jsonify(status), 200 if status['status'] == 'ok' else 503


def register_commands(app: Flask) -> None:

    @app.cli.command('sweep')
    def sweep_command():
        """Remove expired sessions and rate windows."""
        guards = app.extensions['guards']
        sessions = guards.sessions.sweep_expired()
        windows = guards.counter.sweep()
        click.echo(f"Removed {sessions} expired sessions and {windows} rate windows")


def create_app(config_name: Optional[str] = None, **overrides: Any) -> Flask:
    """
    Application factory

    Args:
        config_name: 'production', 'development' or 'testing'
            (FLASK_ENV when omitted)
        overrides: Config keys to override, plus the build_guards keywords
            clock, sleep, captcha and transport
    """
    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    guard_kwargs = {key: overrides.pop(key) for key in ('clock', 'sleep', 'captcha', 'transport')
                    if key in overrides}

    app = Flask(__name__)
    app.config.from_object(CONFIGS.get(config_name, SecurityConfig))
    app.config.update(overrides)

    setup_logging(app)

    if app.config.get('TRUST_X_FORWARDED_FOR'):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)

    redis_client = create_redis_client(app)
    session_factory = None
    if app.config.get('DATABASE_URL'):
        session_factory = create_session_factory(
            app.config['DATABASE_URL'],
            create_tables=app.config.get('CREATE_TABLES', False)
        )

    app.extensions['guards'] = build_guards(app.config, redis_client=redis_client,
                                            session_factory=session_factory, **guard_kwargs)

    limiter.init_app(app)
    app.register_blueprint(auth_bp)
    app.register_blueprint(messages_bp)
    app.after_request(security_headers)

    configure_error_handlers(app)
    configure_health_checks(app, redis_client)
    register_commands(app)

    app.logger.info(f"Guard service created ({config_name})")
    return app


if __name__ == '__main__':
    create_app('development').run('127.0.0.1', 8000, debug=False)
