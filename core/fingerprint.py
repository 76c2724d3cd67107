# core/fingerprint.py
"""
Device fingerprint derivation.

A fingerprint is a soft binding signal, not a secret: the same request
attributes always hash to the same value, and missing attributes count as
empty strings.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional

SEPARATOR = '|'


@dataclass(frozen=True)
class ClientContext:
    """Client attributes taken from the request at the API boundary"""
    ip: str = ''
    user_agent: str = ''
    accept_language: str = ''


class FingerprintDeriver:

    def derive(self, user_agent: Optional[str], accept_language: Optional[str],
               forwarded_ip: Optional[str]) -> str:
        parts = [user_agent or '', accept_language or '', forwarded_ip or '']
        return hashlib.sha256(SEPARATOR.join(parts).encode('utf-8')).hexdigest()

    def for_client(self, client: ClientContext) -> str:
        return self.derive(client.user_agent, client.accept_language, client.ip)
