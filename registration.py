import logging

from sqlalchemy.orm import Session

from config import Settings
from errors import EmailDeliveryError, RegistrationError
from models import (
    MANUAL_PROOF_UNVERIFIED,
    MANUAL_PROOF_VERIFIED,
    PaymentStatus,
    Registration,
    ReviewStatus,
    TicketType,
)

logger = logging.getLogger(__name__)


def order_totals(settings: Settings, counts):
    """Return (total tickets, total amount) for a {TicketType: count} mapping"""
    for ticket_type, count in counts.items():
        if count is None or count < 0:
            raise RegistrationError(f"Invalid ticket quantity for {ticket_type.value}")
    total_tickets = sum(counts.values())
    if total_tickets <= 0:
        raise RegistrationError("Select at least one ticket.")
    total_amount = sum(settings.price_for(t) * n for t, n in counts.items())
    return total_tickets, total_amount


def _new_registration(settings, name, email, counts, **fields):
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name or not email:
        raise RegistrationError("Name and email are required.")
    total_tickets, total_amount = order_totals(settings, counts)
    return Registration(
        name=name,
        email=email,
        tickets_regular=counts[TicketType.REGULAR],
        tickets_member=counts[TicketType.MEMBER],
        tickets_student=counts[TicketType.STUDENT],
        tickets_children=counts[TicketType.CHILDREN],
        total_tickets=total_tickets,
        total_amount=total_amount,
        **fields,
    )


def create_registration(db: Session, settings: Settings, mailer, name, email, counts, proof_url) -> Registration:
    """
    Store a public registration as pending and send the receipt email.
    A failed receipt leaves invoice_sent false; the registration stands.
    """
    proof_url = (proof_url or "").strip()
    if not proof_url:
        raise RegistrationError("Payment proof is required.")

    registration = _new_registration(
        settings, name, email, counts,
        proof_url=proof_url,
        payment_status=PaymentStatus.PENDING,
        review_status=ReviewStatus.PENDING,
    )
    db.add(registration)
    db.commit()
    db.refresh(registration)
    logger.info("Registration %s created (%d tickets, %d kr)", registration.id,
                registration.total_tickets, registration.total_amount)

    try:
        mailer.send_registration_email(registration)
    except EmailDeliveryError as e:
        logger.warning("Receipt email for %s not sent: %s", registration.id, e)
    else:
        registration.invoice_sent = True
        db.commit()
    return registration


def create_manual_registration(db: Session, settings: Settings, name, email, counts,
                               payment_verified: bool) -> Registration:
    """Registration taken at the desk; no uploaded proof, payment checked by staff"""
    registration = _new_registration(
        settings, name, email, counts,
        proof_url=MANUAL_PROOF_VERIFIED if payment_verified else MANUAL_PROOF_UNVERIFIED,
        payment_status=PaymentStatus.CONFIRMED if payment_verified else PaymentStatus.PENDING,
        review_status=ReviewStatus.OK,
    )
    db.add(registration)
    db.commit()
    db.refresh(registration)
    logger.info("Manual registration %s created (verified=%s)", registration.id, payment_verified)
    return registration
