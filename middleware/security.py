# middleware/security.py
"""
Security Middleware for Request Processing

This is the one place that reads session tokens and fingerprint inputs off
the HTTP request; handlers and guards receive plain values.
"""

from flask import request, jsonify, g, current_app
from functools import wraps
import logging
from typing import Optional

from core.errors import GuardError
from core.fingerprint import ClientContext

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAMES = ('__Host-session_secure', 'session_token')


def security_headers(response):
    """Add security headers to all responses"""
    for header, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers.setdefault(header, value)
    response.headers['Cache-Control'] = 'no-store'
    return response


def extract_client_context() -> ClientContext:
    """
    Fingerprint inputs and source address of the current request

    remote_addr already reflects X-Forwarded-For when the app runs behind
    ProxyFix (TRUST_X_FORWARDED_FOR).
    """
    return ClientContext(
        ip=request.remote_addr or '',
        user_agent=request.headers.get('User-Agent', ''),
        accept_language=request.headers.get('Accept-Language', '')
    )


def extract_session_token() -> Optional[str]:
    """Session token from the session cookie or an Authorization: Bearer header"""
    cookie_name = current_app.config.get('SESSION_COOKIE_NAME')
    for name in (cookie_name,) + SESSION_COOKIE_NAMES:
        if name and request.cookies.get(name):
            return request.cookies[name]

    auth = request.headers.get('Authorization', '')
    if auth.lower().startswith('bearer '):
        return auth[7:].strip() or None
    return None


def require_session(f):
    """Decorator to require a valid session; sets g.identity and g.client"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        guards = current_app.extensions['guards']
        g.client = extract_client_context()
        g.session_token = extract_session_token()
        g.identity = guards.sessions.verify(
            g.session_token,
            guards.fingerprints.for_client(g.client)
        )
        return f(*args, **kwargs)
    return decorated_function


def handle_guard_error(error: GuardError):
    """Render a guard failure; internal reasons stay in the logs"""
    logger.info(f"{request.endpoint}: {error.kind} ({error.reason})")
    response = jsonify(error.to_dict())
    response.status_code = error.status_code
    retry_after = getattr(error, 'retry_after', None)
    if retry_after:
        response.headers['Retry-After'] = str(retry_after)
    return response
