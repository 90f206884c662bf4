from __future__ import annotations

import logging
import smtplib
import ssl
from datetime import date
from email.message import EmailMessage
from pathlib import Path

from .config import EmailConfig
from .errors import DeliveryFailure

logger = logging.getLogger(__name__)


def save_document(data: bytes, path: str) -> Path:
    p = Path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    except OSError as exc:
        raise DeliveryFailure(f"Could not write PDF to {p}: {exc}") from exc
    logger.info("PDF saved to: %s", p.resolve())
    return p


def build_message(data: bytes, cfg: EmailConfig, day: date) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = f"{cfg.from_name} <{cfg.from_email}>" if cfg.from_name else cfg.from_email
    msg["To"] = cfg.printer_email
    msg["Subject"] = f"Daily Calendar - {day.strftime('%B %-d, %Y')}"
    msg.set_content("Daily calendar printout attached.")
    msg.add_attachment(
        data,
        maintype="application",
        subtype="pdf",
        filename=f"daily-calendar-{day.isoformat()}.pdf",
    )
    return msg


def email_document(data: bytes, cfg: EmailConfig, day: date, timeout: float = 30) -> None:
    """Send the PDF to the printer's mailbox over SMTP with STARTTLS."""
    msg = build_message(data, cfg, day)
    context = ssl.create_default_context()
    try:
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=timeout) as s:
            s.ehlo()
            s.starttls(context=context)
            s.ehlo()
            s.login(cfg.smtp_username, cfg.smtp_password)
            s.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        raise DeliveryFailure(f"Email could not be sent. Mailer Error: {exc}") from exc
    logger.info("Calendar email sent to %s", cfg.printer_email)
