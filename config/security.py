# config/security.py
"""
Security Configuration for the session and messaging guards
"""

import os
import secrets


def as_bool(value) -> bool:
    """Config flag from a bool or an environment-style string"""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


def _env_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return as_bool(v)


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class SecurityConfig:
    """Security configuration settings"""

    # Encryption settings
    SESSION_SECRET = os.environ.get('SESSION_SECRET') or secrets.token_urlsafe(32)
    KDF_ITERATIONS = _env_int('KDF_ITERATIONS', 100000)
    PASSWORD_HASH_ITERATIONS = _env_int('PASSWORD_HASH_ITERATIONS', 200000)

    # Session settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_urlsafe(32)
    SESSION_COOKIE_NAME = '__Host-session_secure'
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Strict'
    SESSION_LIFETIME = _env_int('SESSION_LIFETIME', 8 * 3600)
    REMEMBER_ME_LIFETIME = _env_int('REMEMBER_ME_LIFETIME', 90 * 86400)
    SESSION_BIND_FINGERPRINT = _env_bool('SESSION_BIND_FINGERPRINT', True)

    # Login defense
    LOGIN_MAX_ATTEMPTS = _env_int('LOGIN_MAX_ATTEMPTS', 5)
    LOGIN_ATTEMPT_WINDOW = _env_int('LOGIN_ATTEMPT_WINDOW', 600)
    LOGIN_CAPTCHA_AFTER_FAILURES = _env_int('LOGIN_CAPTCHA_AFTER_FAILURES', 3)
    LOGIN_CAPTCHA_ALWAYS = _env_bool('LOGIN_CAPTCHA_ALWAYS', False)
    LOGIN_MIN_DELAY = _env_float('LOGIN_MIN_DELAY', 0.5)
    LOGIN_MAX_DELAY = _env_float('LOGIN_MAX_DELAY', 1.5)
    LOGIN_ENFORCE_DEVICE_BINDING = _env_bool('LOGIN_ENFORCE_DEVICE_BINDING', True)

    # Messaging
    MESSAGE_MAX_BODY_LENGTH = _env_int('MESSAGE_MAX_BODY_LENGTH', 5000)
    MESSAGE_MAX_SUBJECT_LENGTH = _env_int('MESSAGE_MAX_SUBJECT_LENGTH', 200)
    MESSAGE_SHORT_WINDOW = _env_int('MESSAGE_SHORT_WINDOW', 1800)
    MESSAGE_SHORT_LIMIT = _env_int('MESSAGE_SHORT_LIMIT', 30)
    MESSAGE_LONG_WINDOW = _env_int('MESSAGE_LONG_WINDOW', 86400)
    MESSAGE_LONG_LIMIT = _env_int('MESSAGE_LONG_LIMIT', 100)
    MESSAGE_IP_WINDOW = _env_int('MESSAGE_IP_WINDOW', 1800)
    MESSAGE_IP_LIMIT = _env_int('MESSAGE_IP_LIMIT', 60)
    MESSAGE_DUPLICATE_WINDOW = os.environ.get('MESSAGE_DUPLICATE_WINDOW')

    # Spam heuristic
    SPAM_MAX_LINKS = _env_int('SPAM_MAX_LINKS', 3)
    SPAM_THRESHOLD = _env_float('SPAM_THRESHOLD', 5.0)

    # CAPTCHA (hCaptcha)
    CAPTCHA_SECRET = os.environ.get('CAPTCHA_SECRET_KEY')
    CAPTCHA_VERIFY_URL = os.environ.get('CAPTCHA_VERIFY_URL', 'https://hcaptcha.com/siteverify')
    CAPTCHA_TIMEOUT = _env_float('CAPTCHA_TIMEOUT', 5.0)

    # Outbound mail
    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = _env_int('SMTP_PORT', 587)
    SMTP_USERNAME = os.environ.get('EMAIL_USER')
    SMTP_PASSWORD = os.environ.get('EMAIL_PASS')
    SMTP_TIMEOUT = _env_float('SMTP_TIMEOUT', 10.0)
    MAIL_FROM_ADDRESS = os.environ.get('MAIL_FROM_ADDRESS') or os.environ.get('EMAIL_USER')
    MAIL_FROM_NAME = os.environ.get('MAIL_FROM_NAME', 'Botnev Mail')

    # Backing stores (in-memory when unset)
    REDIS_URL = os.environ.get('REDIS_URL')
    DATABASE_URL = os.environ.get('DATABASE_URL')

    # Coarse per-IP endpoint limits (Flask-Limiter)
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    RATELIMIT_STRATEGY = 'fixed-window'
    RATELIMIT_HEADERS_ENABLED = True
    LOGIN_ENDPOINT_LIMIT = os.environ.get('LOGIN_ENDPOINT_LIMIT', '20 per minute')
    MESSAGE_ENDPOINT_LIMIT = os.environ.get('MESSAGE_ENDPOINT_LIMIT', '60 per minute')

    # Trust X-Forwarded-For from LB/Ingress
    TRUST_X_FORWARDED_FOR = _env_bool('TRUST_X_FORWARDED_FOR', True)

    # Security headers
    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Referrer-Policy': 'no-referrer',
        'Content-Security-Policy': "default-src 'none'; frame-ancestors 'none'",
        'Permissions-Policy': 'camera=(), microphone=(), geolocation=()'
    }

    # Audit / logging
    AUDIT_LOG_RETENTION_DAYS = _env_int('AUDIT_LOG_RETENTION_DAYS', 90)
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')
    LOG_FORMAT = '%(name)s[%(process)d]: %(levelname)s %(message)s'


class DevelopmentConfig(SecurityConfig):
    """Local development: plain-HTTP cookies, verbose logs"""

    SESSION_COOKIE_NAME = 'session_token'
    SESSION_COOKIE_SECURE = False
    LOG_LEVEL = 'DEBUG'


class TestingConfig(SecurityConfig):
    """Test suite: fast key derivation, no failure delay, fixed secret"""

    TESTING = True
    SESSION_SECRET = 'test-session-secret'
    SECRET_KEY = 'test-secret-key'
    KDF_ITERATIONS = 1000
    PASSWORD_HASH_ITERATIONS = 1000
    LOGIN_MIN_DELAY = 0.0
    LOGIN_MAX_DELAY = 0.0
    REDIS_URL = None
    DATABASE_URL = None
    CAPTCHA_SECRET = None
    SMTP_HOST = None
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'
