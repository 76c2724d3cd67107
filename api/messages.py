# api/messages.py
"""
Send-message endpoint
"""

from flask import Blueprint, request, jsonify, current_app
import logging

from api.auth import limiter
from core.errors import ValidationFailed
from middleware.security import extract_client_context, extract_session_token

messages_bp = Blueprint('messages', __name__)
logger = logging.getLogger(__name__)


@messages_bp.route('/api/messages', methods=['POST'])
@limiter.limit(lambda: current_app.config['MESSAGE_ENDPOINT_LIMIT'])
def send_message():
    data = request.get_json(silent=True) or {}
    fields = {name: data.get(name) for name in ('to_user', 'subject', 'body')}
    for name, value in fields.items():
        if value is not None and not isinstance(value, str):
            raise ValidationFailed(name, f"{name} must be a string")

    guards = current_app.extensions['guards']
    result = guards.messages.send(
        extract_session_token(),
        extract_client_context(),
        fields['to_user'] or '',
        fields['subject'],
        fields['body'] or ''
    )

    body = result.to_dict()
    body['message'] = 'Message sent' if result.delivered else 'Message stored, delivery pending'
    return jsonify(body)
