from __future__ import annotations

import smtplib
from email.message import EmailMessage

from app.integrations.common import IntegrationResult
from app.integrations.email.base import EmailProvider


class SmtpEmailProvider(EmailProvider):
    name = "smtp"

    def __init__(self, *, host: str, port: int, sender: str, username: str = "", password: str = "", reply_to: str = ""):
        self.host = host
        self.port = int(port)
        self.sender = sender
        self.username = username
        self.password = password
        self.reply_to = reply_to

    def send_email(self, *, to: str, subject: str, body: str, reference: str = "") -> IntegrationResult:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        if reference:
            msg["X-BuyLock-Reference"] = reference
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            return IntegrationResult(ok=False, code="EMAIL_SEND_FAILED", message=str(e)[:200])
        return IntegrationResult(ok=True, code="OK", message="sent", provider_ref=reference)
