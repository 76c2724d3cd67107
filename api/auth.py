# api/auth.py
"""
Login and session-check endpoints
"""

from flask import Blueprint, request, jsonify, current_app, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import logging
from datetime import datetime, timezone

from core.errors import ValidationFailed
from core.login_guard import LoginAttempt
from middleware.security import extract_client_context, require_session

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# Coarse per-address limits in front of the guards' own windows
limiter = Limiter(key_func=get_remote_address)


@auth_bp.route('/api/auth/login', methods=['POST'])
@limiter.limit(lambda: current_app.config['LOGIN_ENDPOINT_LIMIT'])
def login():
    """
    Authenticate and issue a session cookie
    """
    data = request.get_json(silent=True) or {}
    email = data.get('email', '')
    password = data.get('password', '')

    if not isinstance(email, str) or not isinstance(password, str):
        raise ValidationFailed('email', "Email and password must be strings")
    if not email.strip() or not password:
        raise ValidationFailed('email', "Email and password required")

    guards = current_app.extensions['guards']
    result = guards.login.login(LoginAttempt(
        identity_claim=email,
        secret=password,
        captcha_assertion=data.get('captcha_token') or data.get('h-captcha-response'),
        client=extract_client_context(),
        remember_me=bool(data.get('remember_me'))
    ))

    expires = datetime.fromtimestamp(result.expires_at, tz=timezone.utc)
    response = jsonify({
        'success': True,
        'message': 'Login successful!',
        'session_token': result.session_token,
        'expires_at': expires.isoformat()
    })
    response.set_cookie(
        current_app.config['SESSION_COOKIE_NAME'],
        result.session_token,
        expires=expires,
        path='/',
        secure=current_app.config['SESSION_COOKIE_SECURE'],
        httponly=True,
        samesite=current_app.config['SESSION_COOKIE_SAMESITE']
    )
    return response


@auth_bp.route('/api/auth/session', methods=['GET'])
@require_session
def check_session():
    """Report the identity behind the presented session"""
    return jsonify({'success': True, 'user': {'email': g.identity}})
