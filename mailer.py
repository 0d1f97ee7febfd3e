"""
Outbound email over SMTP.

`EmailGateway.is_configured()` lets callers detect a missing transport
without attempting a send.
"""
import html
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Optional

import config

logger = logging.getLogger(__name__)


class MailDeliveryError(Exception):
    pass


class EmailGateway:
    def __init__(
        self,
        host: Optional[str] = config.SMTP_HOST,
        port: Optional[int] = config.SMTP_PORT,
        username: Optional[str] = config.SMTP_USERNAME,
        password: Optional[str] = config.SMTP_PASSWORD,
        sender_name: str = config.SMTP_NAME,
        timeout: float = config.SMTP_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender_name = sender_name
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.host and self.port and self.username and self.password)

    def _connect(self) -> smtplib.SMTP:
        if self.port == 465:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        smtp.ehlo()
        if smtp.has_extn("starttls"):
            smtp.starttls()
            smtp.ehlo()
        return smtp

    def send(self, to: str, subject: str, html_body: str):
        if not self.is_configured():
            raise MailDeliveryError("SMTP configuration missing")
        msg = EmailMessage()
        msg["From"] = f"{self.sender_name} <{self.username}>"
        msg["To"] = to
        msg["Subject"] = subject
        msg["X-Priority"] = "1"
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html_body, subtype="html")
        try:
            with self._connect() as smtp:
                smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"Failed to send email: {e}") from e


def mention_template(mentioner_name: str, project_name: str, file_name: str, comment_text: str, comment_url: str) -> str:
    esc = html.escape
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta http-equiv="Content-Type" content="text/html; charset=utf-8" />
  <title>You were mentioned in a comment</title>
</head>
<body style="margin: 0; padding: 0; font-family: Arial, sans-serif; background-color: #f5f5f5; color: #333333;">
  <table border="0" cellpadding="0" cellspacing="0" width="100%" style="max-width: 600px; margin: 0 auto;">
    <tr>
      <td bgcolor="#4662D7" style="padding: 20px; text-align: center; color: #ffffff;">
        <h2 style="margin: 0;">You were mentioned in a comment</h2>
      </td>
    </tr>
    <tr>
      <td bgcolor="#ffffff" style="padding: 30px 25px;">
        <p>Hello,</p>
        <p><strong>{esc(mentioner_name)}</strong> mentioned you in a comment on <strong>{esc(file_name)}</strong>.</p>
        <p>Project: <strong>{esc(project_name)}</strong></p>
        <p style="padding: 18px; background-color: #f7f9fc; border-left: 4px solid #4662D7;">{esc(comment_text)}</p>
        <p><a href="{esc(comment_url, quote=True)}" style="color: #4662D7; font-weight: 600;">View Comment</a></p>
        <p>Thank you,<br />The Filestage Team</p>
      </td>
    </tr>
    <tr>
      <td style="padding: 20px 25px; text-align: center; color: #777777; font-size: 14px;">&copy; {datetime.now().year} Filestage</td>
    </tr>
  </table>
</body>
</html>
"""
