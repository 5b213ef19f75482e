"""E-mail delivery over SMTP."""
import asyncio
import logging
import smtplib
import ssl
from email.mime.text import MIMEText

from core.config import SmtpConfig
from core.errors import ChannelNotConfiguredError

logger = logging.getLogger(__name__)

SMTPS_PORT = 465


class EmailNotifier:
    """Sends plain text reminder mails."""

    def __init__(self, smtp: SmtpConfig, timeout: int = 30):
        """
        Initialize notifier.

        Args:
            smtp: SMTP server settings
            timeout: Connection timeout in seconds
        """
        self.smtp = smtp
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        """Check if an SMTP server is configured."""
        return self.smtp.configured

    async def send_email_message(self, to: str, subject: str, text: str):
        """
        Send a plain text mail.

        Args:
            to: Recipient address
            subject: Mail subject
            text: Mail body

        Raises:
            ChannelNotConfiguredError: If SMTP is not configured
            smtplib.SMTPException, OSError: On delivery errors
        """
        if not self.configured:
            raise ChannelNotConfiguredError("smtp_not_configured")

        msg = MIMEText(text, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.smtp.from_address
        msg["To"] = to

        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._send, msg, to)
        logger.info(f"Mail sent to {to}")

    def _send(self, msg: MIMEText, to: str):
        context = ssl.create_default_context()
        if self.smtp.port == SMTPS_PORT:
            with smtplib.SMTP_SSL(self.smtp.host, self.smtp.port, timeout=self.timeout, context=context) as server:
                server.login(self.smtp.user, self.smtp.password)
                server.sendmail(self.smtp.from_address, [to], msg.as_string())
        else:
            with smtplib.SMTP(self.smtp.host, self.smtp.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                server.login(self.smtp.user, self.smtp.password)
                server.sendmail(self.smtp.from_address, [to], msg.as_string())
