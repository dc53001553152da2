"""
Outbound email over SMTP.

All messages of a batch are delivered through one SMTP session so the
scheduler opens at most one connection per tick.
"""

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage as MIMEMessage
from email.utils import formatdate
from typing import List, Optional, Sequence

from .config import Config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds
IMPLICIT_TLS_PORT = 465


@dataclass
class EmailMessage:
    """A single HTML email to be sent."""
    to: List[str]
    subject: str
    body: str


class EmailError(Exception):
    """Custom exception for email delivery errors."""
    pass


class SMTPSender:
    """
    Sends batches of HTML emails over a single authenticated SMTP session.

    Port 465 uses implicit TLS; any other port is upgraded with STARTTLS.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.user = user
        self._password = password
        self.sender = sender or user
        self.timeout = timeout
        self._tls_context = ssl.create_default_context()

    @classmethod
    def from_config(cls, config: Config) -> "SMTPSender":
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            user=config.smtp_user,
            password=config.smtp_pass,
            sender=config.smtp_from,
        )

    def _create_client(self) -> smtplib.SMTP:
        """Dial the server and secure the connection."""
        try:
            if self.port == IMPLICIT_TLS_PORT:
                return smtplib.SMTP_SSL(
                    self.host, self.port, timeout=self.timeout, context=self._tls_context
                )

            client = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        except (OSError, smtplib.SMTPException) as e:
            logger.error(f"Failed to dial SMTP {self.host}:{self.port}: {e}")
            raise EmailError(f"failed to dial SMTP on {self.host}:{self.port}: {e}") from e

        try:
            client.ehlo()
            if not client.has_extn("starttls"):
                raise EmailError("SMTP server does not support STARTTLS")
            client.starttls(context=self._tls_context)
            client.ehlo()
        except (OSError, smtplib.SMTPException) as e:
            client.close()
            logger.error(f"Failed to start TLS: {e}")
            raise EmailError(f"failed to start TLS: {e}") from e
        except EmailError:
            client.close()
            raise

        return client

    def _build(self, message: EmailMessage) -> MIMEMessage:
        mime = MIMEMessage()
        mime["Date"] = formatdate(localtime=True)
        mime["From"] = self.sender
        mime["To"] = ", ".join(message.to)
        mime["Subject"] = message.subject
        mime.set_content(message.body, subtype="html", charset="utf-8")
        return mime

    def send_batch(self, messages: Sequence[EmailMessage]) -> None:
        """Open a single SMTP session and send all messages sequentially."""
        if not messages:
            return

        client = self._create_client()
        try:
            try:
                client.login(self.user, self._password)
            except smtplib.SMTPException as e:
                logger.error(f"SMTP authentication failed: {e}")
                raise EmailError(f"failed to authenticate: {e}") from e

            for message in messages:
                try:
                    client.send_message(self._build(message), from_addr=self.sender, to_addrs=message.to)
                except smtplib.SMTPException as e:
                    logger.error(f"Sending to {message.to} failed: {e}")
                    raise EmailError(f"failed to send to {message.to}: {e}") from e
                logger.debug(f"Email sent to {message.to}: {message.subject}")
        finally:
            try:
                client.quit()
            except (OSError, smtplib.SMTPException) as e:
                logger.warning(f"Failed to close SMTP connection: {e}")

        logger.info(f"All messages sent successfully: {len(messages)}")
