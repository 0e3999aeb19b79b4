"""
Transactional email sending.

Templates live in app/templates/emails as `<name>.html` and `<name>.txt`
pairs rendered with Jinja2; messages go out over SMTP.
"""

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "emails"


class EmailError(Exception):
    """Raised when a transactional email could not be rendered or delivered."""


class Mailer:
    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        template_dir: Path = TEMPLATE_DIR,
    ):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, data: dict[str, Any]) -> tuple[str, str]:
        """Render the (html, text) bodies for a template."""
        try:
            html = self.env.get_template(f"{template_name}.html").render(**data)
            text = self.env.get_template(f"{template_name}.txt").render(**data)
        except Exception as e:
            logger.error(f"Failed to render email template {template_name}: {e}")
            raise EmailError(f"Template {template_name} could not be rendered") from e
        return html, text

    def send_transactional(self, to: str, subject: str, template_name: str, data: dict[str, Any]) -> str:
        """Render and send one email. Returns the Message-ID."""
        html, text = self.render(template_name, data)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg["Message-ID"] = make_msgid(domain="sunshine-app.com")
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            if self.port == 465:
                server = smtplib.SMTP_SSL(self.host, self.port, context=ssl.create_default_context(), timeout=30)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=30)
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
            with server:
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send to {to} failed ({template_name}): {e}")
            raise EmailError(f"Failed to send {template_name} email") from e

        logger.info(f"Sent {template_name} email to {to}")
        return msg["Message-ID"]
