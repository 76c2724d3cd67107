# services/captcha.py
"""
CAPTCHA assertion verification against the provider's siteverify endpoint.

Calls are bounded by a timeout. Network errors, timeouts and unreadable
responses raise DependencyUnavailable so the login path fails closed.
"""

import logging
from typing import Optional

import requests

from core.errors import DependencyUnavailable

logger = logging.getLogger(__name__)

HCAPTCHA_VERIFY_URL = 'https://hcaptcha.com/siteverify'


class CaptchaVerifier:

    def __init__(self, secret: str, verify_url: str = HCAPTCHA_VERIFY_URL,
                 timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self.http = session or requests.Session()

    def verify(self, assertion: str, client_ip: Optional[str] = None) -> bool:
        """
        Verify a CAPTCHA response token

        Args:
            assertion: Token produced by the client-side widget
            client_ip: Remote address forwarded to the provider

        Returns:
            True if the provider accepted the token
        """
        if not assertion:
            return False

        data = {'secret': self.secret, 'response': assertion}
        if client_ip:
            data['remoteip'] = client_ip

        try:
            resp = self.http.post(self.verify_url, data=data, timeout=self.timeout)
            resp.raise_for_status()
            result = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"CAPTCHA verification unavailable: {str(e)}")
            raise DependencyUnavailable("captcha") from e

        if not result.get('success'):
            logger.info(f"CAPTCHA rejected: {result.get('error-codes', [])}")
            return False
        return True
