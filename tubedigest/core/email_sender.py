#!/usr/bin/env python3
"""
Email Delivery
Multipart digest emails over Gmail SMTP, falling back to a configured relay
"""

import smtplib
import logging
from time import sleep
from typing import Dict, List, Optional
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from bs4 import BeautifulSoup

from tubedigest.core.constants import GMAIL_SMTP_HOST, SMTP_PORT, SMTP_TIMEOUT, RETRY_ATTEMPTS


logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    """No transport could deliver the message"""


def html_to_text(html: str) -> str:
    text = BeautifulSoup(html, 'html.parser').get_text('\n')
    return '\n'.join(line.strip() for line in text.splitlines() if line.strip())


class EmailSender:
    """SMTP email sender with Gmail first and a relay second"""

    RETRY_ATTEMPTS = RETRY_ATTEMPTS
    RETRY_DELAY_BASE = 5  # seconds

    def __init__(
        self,
        gmail_user: Optional[str] = None,
        gmail_password: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: int = SMTP_PORT,
        smtp_user: Optional[str] = None,
        smtp_pass: Optional[str] = None,
        smtp_from: Optional[str] = None,
    ):
        self.gmail_user = gmail_user
        self.gmail_password = gmail_password
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port or SMTP_PORT
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.smtp_from = smtp_from

    @classmethod
    def from_settings(cls, settings) -> 'EmailSender':
        return cls(
            gmail_user=settings.get('GMAIL_USER'),
            gmail_password=settings.get('GMAIL_APP_PASSWORD'),
            smtp_host=settings.get('SMTP_HOST'),
            smtp_port=settings.get_int('SMTP_PORT', SMTP_PORT),
            smtp_user=settings.get('SMTP_USER'),
            smtp_pass=settings.get('SMTP_PASS'),
            smtp_from=settings.get('SMTP_FROM'),
        )

    def transports(self) -> List[Dict]:
        """Configured transports in the order they are tried"""
        result = []
        if self.gmail_user and self.gmail_password:
            result.append({
                'name': 'gmail',
                'host': GMAIL_SMTP_HOST,
                'port': SMTP_PORT,
                'user': self.gmail_user,
                'password': self.gmail_password,
                'sender': self.gmail_user,
            })
        if self.smtp_host and self.smtp_user and self.smtp_pass:
            result.append({
                'name': 'smtp',
                'host': self.smtp_host,
                'port': self.smtp_port,
                'user': self.smtp_user,
                'password': self.smtp_pass,
                'sender': self.smtp_from or self.smtp_user,
            })
        return result

    def is_configured(self) -> bool:
        return bool(self.transports())

    @staticmethod
    def build_message(to: str, subject: str, html: str, text: Optional[str], sender: str) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = Header(subject, 'utf-8')
        msg['From'] = sender
        msg['To'] = to
        domain = sender.split('@')[-1] if '@' in sender else None
        msg['Message-ID'] = make_msgid(domain=domain)
        # Plain part first; clients render the last part they understand
        msg.attach(MIMEText(text if text is not None else html_to_text(html), 'plain', 'utf-8'))
        msg.attach(MIMEText(html, 'html', 'utf-8'))
        return msg

    def _send_via(self, transport: Dict, msg: MIMEMultipart) -> bool:
        """
        Send with retry over one transport
        Returns True on success; auth failures are not retried
        """
        for attempt in range(self.RETRY_ATTEMPTS):
            try:
                with smtplib.SMTP(transport['host'], transport['port'], timeout=SMTP_TIMEOUT) as server:
                    server.ehlo()
                    server.starttls()
                    server.ehlo()
                    server.login(transport['user'], transport['password'])
                    server.send_message(msg)

                logger.debug(f"Email sent via {transport['name']} (attempt {attempt + 1})")
                return True

            except smtplib.SMTPAuthenticationError:
                logger.error(f"SMTP authentication failed for {transport['name']} ({transport['user']})")
                return False

            except (smtplib.SMTPException, OSError) as e:
                logger.warning(f"SMTP error via {transport['name']} (attempt {attempt + 1}/{self.RETRY_ATTEMPTS}): {e}")
                if attempt < self.RETRY_ATTEMPTS - 1:
                    delay = self.RETRY_DELAY_BASE * (2 ** attempt)
                    logger.info(f"Retrying in {delay}s...")
                    sleep(delay)
                else:
                    logger.error(f"Max retries reached for {transport['name']}")

        return False

    def send_digest(self, to: str, subject: str, html: str, text: Optional[str] = None) -> str:
        """
        Send a digest email

        Returns:
            The Message-ID of the delivered email

        Raises:
            EmailDeliveryError: when no transport is configured or all fail
        """
        transports = self.transports()
        if not transports:
            raise EmailDeliveryError("No email transport configured (set GMAIL_USER/GMAIL_APP_PASSWORD or SMTP_*)")

        for transport in transports:
            msg = self.build_message(to, subject, html, text, transport['sender'])
            if self._send_via(transport, msg):
                logger.info(f"Digest email sent to {to} via {transport['name']}")
                return msg['Message-ID']
            logger.warning(f"Transport {transport['name']} failed for {to}")

        raise EmailDeliveryError(f"All email transports failed for {to}")

    def test_configuration(self) -> Dict[str, str]:
        """Connect and authenticate with the first transport, without sending"""
        transports = self.transports()
        if not transports:
            return {'status': 'error', 'message': 'No email transport configured'}

        transport = transports[0]
        try:
            with smtplib.SMTP(transport['host'], transport['port'], timeout=SMTP_TIMEOUT) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(transport['user'], transport['password'])
            return {'status': 'ok', 'message': f"Email configuration valid ({transport['name']})"}
        except smtplib.SMTPAuthenticationError:
            return {'status': 'error', 'message': 'Authentication failed. Check the username and app password'}
        except (smtplib.SMTPException, OSError) as e:
            return {'status': 'error', 'message': f'SMTP error: {e}'}
