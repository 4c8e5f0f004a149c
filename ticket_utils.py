import io
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import qrcode
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from errors import BlobStoreError, InvalidTicketCode, TicketNumberExhausted
from models import TicketSequence

logger = logging.getLogger(__name__)

# No 0/O or 1/I so codes can be read out and typed at the door
TICKET_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TOKEN_ALGORITHM = "HS256"


def make_ticket_no(prefix: str, length: int = 4) -> str:
    """Generate a random ticket number such as SIS25-K7QM"""
    suffix = "".join(secrets.choice(TICKET_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


class RandomTicketNumbers:
    """Random codes; callers retry on a unique-constraint collision"""

    def __init__(self, prefix: str, length: int):
        self.prefix = prefix
        self.length = length

    def next(self, db: Session) -> str:
        return make_ticket_no(self.prefix, self.length)


class SequenceTicketNumbers:
    """
    Monotonic per-prefix counter kept in the ticket_sequences table.

    ``next`` commits the session: the increment must be durable before the
    number is handed out.
    """

    def __init__(self, prefix: str, width: int):
        self.prefix = prefix
        self.width = width

    def next(self, db: Session) -> str:
        updated = (
            db.query(TicketSequence)
            .filter(TicketSequence.prefix == self.prefix)
            .update({TicketSequence.last_value: TicketSequence.last_value + 1}, synchronize_session=False)
        )
        if not updated:
            db.add(TicketSequence(prefix=self.prefix, last_value=1))
            try:
                db.flush()
            except IntegrityError:
                # Another writer created the row first
                db.rollback()
                return self.next(db)

        value = db.query(TicketSequence.last_value).filter(TicketSequence.prefix == self.prefix).scalar()
        db.commit()
        return f"{self.prefix}-{value:0{self.width}d}"


def make_number_generator(settings: Settings):
    if settings.ticket_strategy == "sequence":
        return SequenceTicketNumbers(settings.ticket_prefix, settings.ticket_len)
    return RandomTicketNumbers(settings.ticket_prefix, settings.ticket_len)


def retry_on_collision(generate, persist, is_collision, max_attempts: int = 5):
    """
    Call ``persist(generate())`` until it succeeds, regenerating whenever
    ``is_collision`` says the failure was a uniqueness clash. Any other
    error propagates; running out of attempts raises TicketNumberExhausted.
    """
    last_error = None
    for attempt in range(1, max_attempts + 1):
        candidate = generate()
        try:
            return persist(candidate)
        except Exception as e:
            if not is_collision(e):
                raise
            last_error = e
            logger.warning("Collision on attempt %d/%d, regenerating", attempt, max_attempts)
    raise TicketNumberExhausted(
        f"Could not generate a unique ticket number after {max_attempts} attempts"
    ) from last_error


def is_ticket_no_collision(error: Exception) -> bool:
    return isinstance(error, IntegrityError) and "ticket_no" in str(getattr(error, "orig", error))


def generate_qr_png(data: str) -> bytes:
    """Render QR code data to PNG bytes"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=1,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def qr_blob_key(registration_id: str, ticket_no: str) -> str:
    return f"qr/{registration_id}/{ticket_no}.png"


@dataclass
class Credential:
    qr_url: str
    qr_key: str
    token: str


class TicketCredentials:
    """Signs ticket tokens and stores their QR images"""

    def __init__(self, settings: Settings, store):
        self.settings = settings
        self.store = store

    def sign(self, registration_id: str, ticket_no: str) -> str:
        if not self.settings.ticket_use_jwt:
            return ""
        self.settings.require_signing()
        expires = datetime.now(timezone.utc) + timedelta(days=self.settings.ticket_token_days)
        claims = {"v": 1, "t": ticket_no, "r": registration_id, "exp": expires}
        return jwt.encode(claims, self.settings.ticket_signing_secret, algorithm=TOKEN_ALGORITHM)

    def qr_payload(self, ticket_no: str, token: str) -> str:
        prefix = self.settings.ticket_prefix
        return f"{prefix}|{ticket_no}|{token}" if token else f"{prefix}|{ticket_no}"

    def issue(self, registration_id: str, ticket_no: str) -> Credential:
        """Sign, render and upload the QR for one ticket; storage errors propagate"""
        token = self.sign(registration_id, ticket_no)
        png = generate_qr_png(self.qr_payload(ticket_no, token))
        key = qr_blob_key(registration_id, ticket_no)
        qr_url = self.store.put(key, png, "image/png")
        return Credential(qr_url=qr_url, qr_key=key, token=token)

    def discard(self, credential: Credential):
        """Remove the QR of a ticket that was never recorded"""
        try:
            self.store.delete(credential.qr_key)
        except BlobStoreError as e:
            logger.warning("✗ Orphaned QR %s left in storage: %s", credential.qr_key, e)


def _verify_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.ticket_signing_secret, algorithms=[TOKEN_ALGORITHM])
    except JWTError as e:
        raise InvalidTicketCode(f"Ticket signature invalid: {e}") from e


def extract_ticket_no(code, settings: Settings) -> str:
    """
    Accept whatever the scanner or the door staff produce and return the
    ticket number: a plain number, ``PREFIX|number[|token]`` from our QR
    codes, or a bare signed token. A pipe-format token that fails
    verification is rejected.
    """
    value = str(code or "").strip()
    if not value:
        raise InvalidTicketCode("Empty code")
    can_verify = settings.ticket_use_jwt and bool(settings.ticket_signing_secret)

    if "|" in value:
        parts = value.split("|")
        if len(parts) not in (2, 3) or not parts[1].strip():
            raise InvalidTicketCode("Unrecognised ticket code")
        ticket_no = parts[1].strip().upper()
        token: Optional[str] = parts[2].strip() if len(parts) == 3 else None
        if token and can_verify:
            claims = _verify_token(token, settings)
            if str(claims.get("t", "")).upper() != ticket_no:
                raise InvalidTicketCode("Ticket signature does not match ticket number")
        return ticket_no

    if value.count(".") == 2 and can_verify:
        try:
            claims = jwt.decode(value, settings.ticket_signing_secret, algorithms=[TOKEN_ALGORITHM])
        except JWTError:
            logger.debug("Code looked like a token but did not verify; treating as plain")
        else:
            if claims.get("t"):
                return str(claims["t"]).upper()

    return value.upper()
