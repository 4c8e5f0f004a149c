import html
import logging
import smtplib
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from config import Settings
from errors import BlobStoreError, EmailDeliveryError
from models import TicketType
from ticket_utils import qr_blob_key

logger = logging.getLogger(__name__)


def _esc(value) -> str:
    return html.escape(str(value), quote=True)


def format_sek(amount: int) -> str:
    return f"{amount:,}".replace(",", " ") + " kr"


class EmailService:
    """SMTP mailer for registration receipts and ticket delivery"""

    def __init__(self, settings: Settings, store=None):
        self.settings = settings
        self.store = store

    def ensure_configured(self):
        self.settings.require_smtp()

    @property
    def from_address(self) -> str:
        sender = self.settings.smtp_from_email or self.settings.smtp_user
        return f"{self.settings.smtp_from_name} <{sender}>"

    def send(self, to_email: str, subject: str, html_body: str, text_body: str,
             attachments=(), headers: Optional[dict] = None):
        """
        Send one message. ``attachments`` are (cid, filename, png bytes)
        triples referenced from the HTML as ``cid:<cid>``. Raises
        EmailDeliveryError on any transport failure.
        """
        self.ensure_configured()
        msg = MIMEMultipart("related")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to_email
        if self.settings.mail_reply_to:
            msg["Reply-To"] = self.settings.mail_reply_to
        for name, value in (headers or {}).items():
            msg[name] = value

        msg_alternative = MIMEMultipart("alternative")
        msg.attach(msg_alternative)
        msg_alternative.attach(MIMEText(text_body, "plain", "utf-8"))
        msg_alternative.attach(MIMEText(html_body, "html", "utf-8"))

        for cid, filename, data in attachments:
            image = MIMEImage(data, "png")
            image.add_header("Content-ID", f"<{cid}>")
            image.add_header("Content-Disposition", "inline", filename=filename)
            msg.attach(image)

        recipients = [to_email] + ([self.settings.mail_bcc] if self.settings.mail_bcc else [])
        try:
            if self.settings.smtp_port == 465:
                server = smtplib.SMTP_SSL(self.settings.smtp_host, self.settings.smtp_port,
                                          timeout=self.settings.smtp_timeout)
            else:
                server = smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port,
                                      timeout=self.settings.smtp_timeout)
            with server:
                if self.settings.smtp_port != 465:
                    server.starttls()
                server.login(self.settings.smtp_user, self.settings.smtp_password)
                server.send_message(msg, to_addrs=recipients)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("✗ Email error for %s: %s", to_email, e)
            raise EmailDeliveryError(str(e) or e.__class__.__name__) from e

        logger.info("✓ Email sent to %s", to_email)

    def send_registration_email(self, registration):
        """Receipt for a new registration; tickets follow after payment review"""
        rows = "".join(
            f"<li>{ticket_type.value.capitalize()}: {count}</li>"
            for ticket_type, count in registration.counts_by_type().items()
        )
        html_body = f"""
        <div style="font-family:system-ui,Segoe UI,Roboto,Helvetica,Arial,sans-serif;max-width:640px;margin:0 auto;padding:16px;">
            <h2>Registration received</h2>
            <p>Hi {_esc(registration.name)},</p>
            <p>Thank you for registering for <strong>{_esc(self.settings.event_name)}</strong>.</p>
            <p>Your order:</p>
            <ul>{rows}</ul>
            <p>Total: <strong>{format_sek(registration.total_amount)}</strong></p>
            <p>We will send your tickets once we have verified your payment (up to 48 hours).</p>
        </div>
        """
        lines = "\n".join(
            f"- {ticket_type.value.capitalize()}: {count}"
            for ticket_type, count in registration.counts_by_type().items()
        )
        text_body = (
            f"Hi {registration.name},\n\n"
            f"Thank you for registering for {self.settings.event_name}.\n\n"
            f"Your order:\n{lines}\n\nTotal: {format_sek(registration.total_amount)}\n\n"
            "We will send your tickets once we have verified your payment (up to 48 hours).\n"
        )
        self.send(
            registration.email,
            f"Your registration to {self.settings.event_name} is received",
            html_body,
            text_body,
            headers={"X-Entity-Ref-ID": registration.id},
        )

    def _qr_attachment(self, ticket):
        if self.store is None:
            return None
        try:
            data = self.store.get(qr_blob_key(ticket.registration_id, ticket.ticket_no))
        except BlobStoreError as e:
            logger.warning("QR for %s not embeddable, linking instead: %s", ticket.ticket_no, e)
            return None
        return (f"qr-{ticket.ticket_no}@tickets", f"{ticket.ticket_no}.png", data)

    def send_tickets_email(self, to_email: str, name: str, tickets, subject: str = "Your Tickets"):
        """Send issued tickets with their QR codes embedded inline"""
        if not tickets:
            return

        attachments = []
        rows = []
        for ticket in tickets:
            attachment = self._qr_attachment(ticket)
            if attachment:
                attachments.append(attachment)
                img_src = f"cid:{attachment[0]}"
            else:
                img_src = ticket.qr_url
            rows.append(f"""
                <tr>
                    <td style="padding:8px;border:1px solid #e5e7eb;">
                        <div style="font-weight:600">{_esc(ticket.ticket_no)}</div>
                        <div style="font-size:12px;color:#6b7280">{_esc(TicketType(ticket.type).value)}</div>
                    </td>
                    <td style="padding:8px;border:1px solid #e5e7eb;">
                        <a href="{_esc(ticket.qr_url)}"><img src="{_esc(img_src)}" alt="QR for {_esc(ticket.ticket_no)}" style="display:block;width:160px;height:auto;border:0;" /></a>
                    </td>
                </tr>""")

        html_body = f"""
        <div style="font-family:system-ui,Segoe UI,Roboto,Helvetica,Arial,sans-serif;max-width:640px;margin:0 auto;padding:16px;">
            <h2>Your ticket(s) are ready</h2>
            <p>Hi {_esc(name)},</p>
            <p>Show the QR at entry and keep the ticket numbers. See you there!</p>
            <table style="border-collapse:collapse;width:100%;margin:12px 0 16px 0;">
                <thead><tr><th style="text-align:left;padding:8px;">Ticket</th><th style="text-align:left;padding:8px;">QR</th></tr></thead>
                <tbody>{"".join(rows)}</tbody>
            </table>
            <p style="font-size:12px;color:#6b7280;">Problems? Reply to this email.</p>
        </div>
        """
        lines = "\n".join(f"- {t.ticket_no} ({TicketType(t.type).value}): {t.qr_url}" for t in tickets)
        text_body = (
            f"Hi {name},\n\nYour ticket(s) are ready:\n{lines}\n\n"
            "Show the QR at entry and keep the ticket number(s). See you there!\n"
        )
        self.send(to_email, subject, html_body, text_body, attachments=attachments)


_mailer: Optional[EmailService] = None


def get_mailer() -> EmailService:
    """Dependency for FastAPI routes to get the mailer"""
    global _mailer
    if _mailer is None:
        from config import get_settings
        from storage import get_blob_store

        _mailer = EmailService(get_settings(), get_blob_store())
    return _mailer
