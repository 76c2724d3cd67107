# services/mail_transport.py
"""
Outbound mail delivery for accepted messages.

Best effort: deliver() reports failure by returning False (or raising
DependencyUnavailable on timeout) and never undoes the stored message.
"""

import logging
import smtplib
import socket
import ssl
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from typing import Optional

from core.errors import DependencyUnavailable

logger = logging.getLogger(__name__)


class SMTPMailTransport:
    """
    SMTP transport with bounded connect/send time
    """

    def __init__(self, host: str, port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, from_address: str = '',
                 from_name: str = 'Botnev Mail', timeout: float = 10.0,
                 domain: str = 'localhost'):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address or username or ''
        self.from_name = from_name
        self.timeout = timeout
        self.domain = domain

    def build_message(self, to: str, subject: str, text: str, html: Optional[str] = None,
                      reply_to: Optional[str] = None) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')

        # Basic headers
        msg['Subject'] = subject or 'New message'
        msg['From'] = formataddr((self.from_name, self.from_address))
        msg['To'] = to
        msg['Date'] = formatdate(localtime=True)
        msg['Message-ID'] = f"<{uuid.uuid4()}@{self.domain}>"
        if reply_to:
            msg['Reply-To'] = reply_to

        msg.attach(MIMEText(text, 'plain', 'utf-8'))
        if html:
            msg.attach(MIMEText(html, 'html', 'utf-8'))
        return msg

    def deliver(self, to: str, subject: str, text: str, html: Optional[str] = None,
                reply_to: Optional[str] = None) -> bool:
        """
        Send one message

        Returns:
            True if the server accepted the message, False on an SMTP-level refusal

        Raises:
            DependencyUnavailable: connection failure or timeout
        """
        msg = self.build_message(to, subject, text, html=html, reply_to=reply_to)
        try:
            if self.port == 465:  # Implicit TLS
                smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout,
                                        context=ssl.create_default_context())
            else:
                smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with smtp:
                if self.port == 587:
                    smtp.starttls(context=ssl.create_default_context())
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                refused = smtp.send_message(msg)
        except smtplib.SMTPException as e:
            logger.warning(f"SMTP refused message to {to}: {str(e)}")
            return False
        except (socket.timeout, OSError) as e:
            logger.error(f"SMTP transport unavailable: {str(e)}")
            raise DependencyUnavailable("mail_transport") from e

        if refused:
            logger.warning(f"SMTP refused recipients: {list(refused)}")
            return False

        logger.info(f"Delivered message {msg['Message-ID']} to {to}")
        return True
